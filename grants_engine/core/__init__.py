"""
Core layer - stable foundation for the scraping engine.

Components:
- models: Source, Job, Grant, Funder dataclasses and engine records
- clock: Wall clock and manual clock for tests
- rate_limiter: Per-source request gating
- selectors: CSS selector extraction of raw records
- normalizer: Amount, date, text and category normalization
- deduplicator: Fingerprints for catalog deduplication
- validator: Business-rule errors and quality warnings for grants
"""

from .models import (
    EngineKind,
    FetchResult,
    Frequency,
    Funder,
    Grant,
    IngestResult,
    Job,
    JobOutcome,
    JobStatus,
    JobTrigger,
    RateLimitOverride,
    RawRecord,
    Source,
    SourceSelectors,
    SourceStatus,
    SourceType,
)
from .clock import Clock, ManualClock
from .rate_limiter import Permit, RateLimiter
from .normalizer import (
    normalize_text,
    normalize_title,
    normalize_key,
    detect_currency,
    parse_amount,
    parse_funding_range,
    parse_deadline,
    infer_category,
)
from .deduplicator import generate_fingerprint
from .validator import ValidationResult, validate_grant
from .selectors import extract_records

__all__ = [
    "EngineKind",
    "FetchResult",
    "Frequency",
    "Funder",
    "Grant",
    "IngestResult",
    "Job",
    "JobOutcome",
    "JobStatus",
    "JobTrigger",
    "RateLimitOverride",
    "RawRecord",
    "Source",
    "SourceSelectors",
    "SourceStatus",
    "SourceType",
    "Clock",
    "ManualClock",
    "Permit",
    "RateLimiter",
    "normalize_text",
    "normalize_title",
    "normalize_key",
    "detect_currency",
    "parse_amount",
    "parse_funding_range",
    "parse_deadline",
    "infer_category",
    "generate_fingerprint",
    "ValidationResult",
    "validate_grant",
    "extract_records",
]
