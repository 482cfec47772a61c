"""
Normalization utilities for scraped grant data.

Handles:
- Funding amounts ("$10,000 - $50,000", "up to $1.5M", "500 thousand")
- Deadlines (2025-03-31, 03/31/2025, "March 31, 2025", "31 March 2025")
- Text cleanup and funder name keys
- Keyword-based category inference
"""

import re
from datetime import date
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


# Full names and the usual abbreviations only; "Decision" is not December
MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7, "aug": 8,
    "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}

CURRENCY_SYMBOLS = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
}

CURRENCY_CODES = ["USD", "EUR", "GBP", "JPY", "INR", "CAD", "AUD", "CHF"]

MULTIPLIERS = {
    "k": 1_000,
    "thousand": 1_000,
    "m": 1_000_000,
    "mm": 1_000_000,
    "million": 1_000_000,
    "b": 1_000_000_000,
    "bn": 1_000_000_000,
    "billion": 1_000_000_000,
}

# A number with optional thousands separators/decimals and an optional magnitude word
AMOUNT_PATTERN = re.compile(
    r"(?P<symbol>[$€£¥₹])?\s*"
    r"(?P<number>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"
    r"(?:\s*(?P<mult>thousand|million|billion|bn|mm|k|m|b)\b)?",
    re.IGNORECASE,
)

UPPER_BOUND_KEYWORDS = ["up to", "maximum", "max.", "not to exceed", "no more than"]
LOWER_BOUND_KEYWORDS = ["minimum", "at least", "starting at", "from "]

CATEGORY_KEYWORDS = {
    "HEALTHCARE_PUBLIC_HEALTH": [
        "health", "medical", "healthcare", "disease", "wellness", "public health", "medicine",
    ],
    "EDUCATION_TRAINING": [
        "education", "school", "university", "training", "learning", "academic", "student",
    ],
    "ENVIRONMENT_SUSTAINABILITY": [
        "environment", "climate", "sustainability", "green", "renewable", "conservation", "ecology",
    ],
    "SOCIAL_SERVICES": [
        "social", "welfare", "poverty", "homeless", "family", "children", "services",
    ],
    "ARTS_CULTURE": [
        "arts", "culture", "music", "theater", "museum", "creative", "cultural",
    ],
    "TECHNOLOGY_INNOVATION": [
        "technology", "innovation", "tech", "digital", "software",
    ],
    "RESEARCH_DEVELOPMENT": [
        "research", "science", "scientific", "study", "investigation",
    ],
    "COMMUNITY_DEVELOPMENT": [
        "community", "economic", "infrastructure", "housing", "urban",
    ],
}

DEFAULT_CATEGORY = "COMMUNITY_DEVELOPMENT"

# Deadlines before this year are treated as misparsed
MIN_DEADLINE_YEAR = 2000


def normalize_text(text: Optional[str]) -> str:
    """
    Clean up text extracted from HTML.

    - Strips tags and common entities
    - Removes control characters
    - Collapses whitespace

    Args:
        text: Raw text

    Returns:
        Cleaned single-line text ("" for None)
    """
    if not text:
        return ""

    cleaned = re.sub(r"<[^>]*>", " ", text)
    cleaned = cleaned.replace("&nbsp;", " ").replace(" ", " ")
    cleaned = cleaned.replace("&amp;", "&").replace("&lt;", "<").replace("&gt;", ">")
    cleaned = cleaned.replace("&quot;", '"').replace("&#39;", "'")
    cleaned = re.sub(r"[\x00-\x08\x0b-\x1f\x7f]", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)

    return cleaned.strip()


def normalize_title(title: Optional[str]) -> str:
    """Normalize grant title for display (whitespace only)."""
    return normalize_text(title)


def normalize_key(text: Optional[str]) -> str:
    """
    Case- and punctuation-insensitive key for matching.

    Used for funder name matching and fingerprints:
    "The  Ford Foundation." -> "the ford foundation"
    """
    normalized = normalize_text(text).casefold()
    normalized = re.sub(r"[^\w\s]", " ", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def detect_currency(text: Optional[str]) -> str:
    """Detect currency from symbols or ISO codes, defaulting to USD."""
    if not text:
        return "USD"

    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code

    upper = text.upper()
    for code in CURRENCY_CODES:
        if re.search(rf"\b{code}\b", upper):
            return code

    return "USD"


def parse_amount(text: Optional[str]) -> Optional[float]:
    """
    Parse a single monetary amount.

    Supported formats:
    - "$50,000" -> 50000
    - "1.5M" / "1.5 million" -> 1500000
    - "250k" -> 250000
    - "75000" -> 75000

    Args:
        text: String containing one amount

    Returns:
        Amount as float or None if nothing parseable
    """
    amounts = extract_amounts(text)
    return amounts[0] if amounts else None


def extract_amounts(text: Optional[str]) -> list[float]:
    """
    Extract all plausible monetary amounts from text, in order.

    Bare numbers without a currency symbol or magnitude word must have
    at least four digits, so "3 awards" or "2025" style noise is dropped
    unless it clearly reads as money.
    """
    if not text:
        return []

    amounts = []
    for match in AMOUNT_PATTERN.finditer(text.replace(" ", " ")):
        number = match.group("number")
        symbol = match.group("symbol")
        mult = (match.group("mult") or "").lower()

        digits = number.replace(",", "")
        if not symbol and not mult:
            # Years and small counts are not amounts
            if len(digits.split(".")[0]) < 4 or _looks_like_year(digits):
                continue

        try:
            value = float(digits) * MULTIPLIERS.get(mult, 1)
        except ValueError:
            continue

        if value > 0:
            amounts.append(value)

    return amounts


def _looks_like_year(digits: str) -> bool:
    return len(digits) == 4 and digits.isdigit() and 1900 <= int(digits) <= 2100


def parse_funding_range(text: Optional[str]) -> tuple[Optional[float], Optional[float]]:
    """
    Parse funding text into a (min, max) range.

    - "up to $100,000" -> (None, 100000)
    - "at least $5,000" -> (5000, None)
    - "$10,000 - $50,000" -> (10000, 50000)
    - "$25,000" -> (25000, 25000)

    Args:
        text: Funding text as found on the page

    Returns:
        Tuple (min, max); both None when no amount was found
    """
    amounts = extract_amounts(text)
    if not amounts:
        if text:
            logger.debug("amount_not_parsed", text=text[:80])
        return None, None

    lower = text.lower()

    if any(keyword in lower for keyword in UPPER_BOUND_KEYWORDS):
        return None, max(amounts)

    if any(keyword in lower for keyword in LOWER_BOUND_KEYWORDS) and len(amounts) == 1:
        return amounts[0], None

    if len(amounts) == 1:
        return amounts[0], amounts[0]

    return min(amounts), max(amounts)


def parse_deadline(text: Optional[str]) -> Optional[date]:
    """
    Parse a deadline string into a calendar date.

    Supported formats:
    - "2025-03-31" / "2025/03/31" (ISO)
    - "03/31/2025" / "3-31-2025" (US month first)
    - "31/12/2025" (day first, when the first number cannot be a month)
    - "March 31, 2025" / "Mar 31 2025"
    - "31 March 2025"

    Args:
        text: String containing a date

    Returns:
        date or None if parsing fails
    """
    if not text:
        return None

    text = normalize_text(text)

    match = re.search(r"(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})", text)
    if match:
        year, month, day = (int(g) for g in match.groups())
        return _safe_date(year, month, day, text)

    match = re.search(r"(\d{1,2})[-/.](\d{1,2})[-/.](\d{4})", text)
    if match:
        first, second, year = (int(g) for g in match.groups())
        if first > 12 >= second:
            return _safe_date(year, second, first, text)
        return _safe_date(year, first, second, text)

    for match in re.finditer(r"([A-Za-z]{3,})\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})", text):
        month = _month_number(match.group(1))
        if month:
            return _safe_date(int(match.group(3)), month, int(match.group(2)), text)

    for match in re.finditer(r"(\d{1,2})(?:st|nd|rd|th)?\s+([A-Za-z]{3,})\.?,?\s+(\d{4})", text):
        month = _month_number(match.group(2))
        if month:
            return _safe_date(int(match.group(3)), month, int(match.group(1)), text)

    logger.debug("deadline_not_parsed", text=text[:80])
    return None


def _month_number(name: str) -> Optional[int]:
    return MONTHS.get(name.lower())


def _safe_date(year: int, month: int, day: int, text: str) -> Optional[date]:
    if year < MIN_DEADLINE_YEAR:
        return None
    try:
        return date(year, month, day)
    except ValueError as e:
        logger.warning("invalid_date", text=text[:80], error=str(e))
        return None


def infer_category(text: Optional[str]) -> str:
    """
    Infer grant category from content by keyword frequency.

    Args:
        text: Title and description

    Returns:
        Category name (DEFAULT_CATEGORY when nothing matches)
    """
    lower = (text or "").lower()

    best, best_score = DEFAULT_CATEGORY, 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        score = sum(len(re.findall(rf"\b{re.escape(k)}\b", lower)) for k in keywords)
        if score > best_score:
            best, best_score = category, score

    return best
