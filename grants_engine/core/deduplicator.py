"""
Grant fingerprinting for catalog deduplication.

The fingerprint decides insert-vs-update in the processor: the same
grant re-scraped from the same source maps to the same catalog row.
"""

import hashlib

from .normalizer import normalize_key


def generate_fingerprint(title: str, funder: str, source_id: str) -> str:
    """
    Generate SHA-256 fingerprint for a grant.

    Hash is based on:
    - title: normalized (case, whitespace, punctuation)
    - funder: normalized funder name
    - source_id: source identifier (verbatim)

    Args:
        title: Grant title
        funder: Funder name ("" when unknown)
        source_id: Source identifier

    Returns:
        SHA-256 hex digest
    """
    content = f"{normalize_key(title)}|{normalize_key(funder)}|{source_id}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
