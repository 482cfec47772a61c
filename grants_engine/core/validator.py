"""
Business-rule checks for normalized grants.

Errors reject the record; warnings only flag it as low quality:
- amount_min above amount_max is an error
- Deadlines already passed, or more than a year out, are warnings
- Placeholder descriptions ("coming soon", "TBD", ...) are warnings
"""

import re
from dataclasses import dataclass, field
from datetime import date, timedelta

from .models import Grant

MAX_DEADLINE_HORIZON = timedelta(days=365)

PLACEHOLDER_PATTERNS = [
    re.compile(r"lorem ipsum", re.IGNORECASE),
    re.compile(r"placeholder", re.IGNORECASE),
    re.compile(r"coming soon", re.IGNORECASE),
    re.compile(r"to be determined", re.IGNORECASE),
    re.compile(r"\btbd\b", re.IGNORECASE),
]


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_grant(grant: Grant, today: date) -> ValidationResult:
    """
    Check a normalized grant against the catalog's business rules.

    Args:
        grant: Normalized grant
        today: Reference date for deadline checks

    Returns:
        ValidationResult; the grant must not be stored when it has errors
    """
    result = ValidationResult()

    if grant.amount_min is not None and grant.amount_max is not None:
        if grant.amount_min > grant.amount_max:
            result.errors.append("amount_min_exceeds_max")

    if grant.deadline is not None:
        if grant.deadline < today:
            result.warnings.append("deadline_past")
        elif grant.deadline - today > MAX_DEADLINE_HORIZON:
            result.warnings.append("deadline_far_future")

    if grant.description:
        if any(pattern.search(grant.description) for pattern in PLACEHOLDER_PATTERNS):
            result.warnings.append("placeholder_description")

    return result
