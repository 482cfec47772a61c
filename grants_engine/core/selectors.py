"""
CSS selector extraction of raw grant records.

Both engines hand the page HTML to ``extract_records``; per-source
extraction rules are data (SourceSelectors), not code.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

import structlog

from .models import RawRecord, SourceSelectors
from .normalizer import normalize_text

logger = structlog.get_logger(__name__)


@dataclass
class ExtractionResult:
    """Records found on a page plus what the page looked like."""
    records: list[RawRecord]
    containers: int = 0
    empty_marker_found: bool = False
    body_empty: bool = False


def select_text(element: Tag, selector: Optional[str]) -> Optional[str]:
    """
    Text of the first match of selector within element.

    Falls back to the element itself when it matches the selector.

    Args:
        element: Container element
        selector: CSS selector (None/empty = not configured)

    Returns:
        Cleaned text or None
    """
    if not selector or not selector.strip():
        return None

    target = element.select_one(selector)
    if target is None:
        if _matches(element, selector):
            target = element
        else:
            return None

    text = normalize_text(target.get_text(" ", strip=True))
    return text or None


def select_url(element: Tag, selector: Optional[str], base_url: str) -> Optional[str]:
    """
    Absolute URL from the first match of selector.

    Uses href, then src, then the element text when it looks like a URL.
    """
    if not selector or not selector.strip():
        return None

    target = element.select_one(selector)
    if target is None:
        if _matches(element, selector):
            target = element
        else:
            return None

    href = target.get("href") or target.get("src")
    if not href:
        text = target.get_text(strip=True)
        if text.startswith(("http://", "https://", "/")):
            href = text
    if not href:
        return None

    return urljoin(base_url, href.strip())


def _matches(element: Tag, selector: str) -> bool:
    if element.parent is None:
        return False
    return any(match is element for match in element.parent.select(selector))


def extract_records(html: str, selectors: SourceSelectors, base_url: str) -> ExtractionResult:
    """
    Extract raw grant records from a listing page.

    Each element matched by ``grant_container`` becomes one record;
    containers without a title are skipped.

    Args:
        html: Page HTML
        selectors: Source extraction rules
        base_url: Page URL for resolving relative links

    Returns:
        ExtractionResult with records and page diagnostics
    """
    if not html or not html.strip():
        return ExtractionResult(records=[], body_empty=True)

    soup = BeautifulSoup(html, "lxml")

    empty_marker_found = bool(
        selectors.empty_marker and soup.select_one(selectors.empty_marker)
    )

    containers = soup.select(selectors.grant_container)
    records = []

    for index, container in enumerate(containers):
        title = select_text(container, selectors.title)
        if not title:
            logger.debug("container_without_title", index=index, url=base_url)
            continue

        records.append(
            RawRecord(
                title=title,
                source_url=base_url,
                description=select_text(container, selectors.description),
                deadline=select_text(container, selectors.deadline),
                funding_amount=select_text(container, selectors.funding_amount),
                eligibility=select_text(container, selectors.eligibility),
                application_url=select_url(container, selectors.application_url, base_url),
                funder_name=select_text(container, selectors.funder),
            )
        )

    body = soup.body or soup
    body_empty = not body.get_text(strip=True)

    return ExtractionResult(
        records=records,
        containers=len(containers),
        empty_marker_found=empty_marker_found,
        body_empty=body_empty,
    )
