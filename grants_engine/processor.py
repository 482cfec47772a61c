"""
Normalization and deduplication processor.

Turns raw records into catalog grants:
- Text cleanup, amount ranges, deadlines, categories
- Funder match-or-create
- Fingerprint-based insert vs update

Records are applied in small all-or-nothing batches; each batch also
adds its counts to the job, so a job's totals always match what was
committed. A grant already written by the same job (a retried attempt
re-ingesting its listing) is rewritten but not counted again, so the
totals count distinct grants per job.
"""

import asyncio
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog

from grants_engine.core.clock import Clock
from grants_engine.core.deduplicator import generate_fingerprint
from grants_engine.core.models import Grant, IngestResult, RawRecord, Source
from grants_engine.core.normalizer import (
    detect_currency,
    infer_category,
    normalize_text,
    normalize_title,
    parse_deadline,
    parse_funding_range,
)
from grants_engine.core.validator import validate_grant
from grants_engine.errors import ProcessorError
from grants_engine.storage import Database, GrantStore, JobStore, SourceStore

logger = structlog.get_logger(__name__)


@dataclass
class NormalizedRecord:
    """A raw record after normalization, ready for the catalog."""
    grant: Grant
    funder_name: Optional[str]


class Processor:
    """
    Writes scraped records into the catalog.

    Usage:
        processor = Processor(db, clock=clock)
        result = await processor.ingest(source.id, job.id, fetch_result.records)
    """

    def __init__(self, db: Database, clock: Optional[Clock] = None, batch_size: int = 25):
        """
        Initialize processor.

        Args:
            db: Catalog database
            clock: Time source for timestamps
            batch_size: Records per transaction
        """
        self.db = db
        self.clock = clock or Clock()
        self.batch_size = max(1, batch_size)
        self.sources = SourceStore(db)
        self.grants = GrantStore(db)
        self.jobs = JobStore(db)

    async def ingest(self, source_id: str, job_id: str, records: list[RawRecord]) -> IngestResult:
        """
        Normalize records and upsert them into the catalog.

        Args:
            source_id: Source the records came from
            job_id: Job to attribute writes and counts to
            records: Raw records from the engine

        Returns:
            IngestResult with found/inserted/updated/skipped counts

        Raises:
            ProcessorError: if a batch cannot be written (it is rolled back)
        """
        log = logger.bind(source_id=source_id, job_id=job_id)
        source = self.sources.get(source_id)
        total = IngestResult()

        for start in range(0, len(records), self.batch_size):
            batch = records[start:start + self.batch_size]
            now = self.clock.now()

            normalized = []
            skipped = 0
            for record in batch:
                item = self.normalize(record, source, job_id, now)
                if item is None:
                    skipped += 1
                else:
                    normalized.append(item)

            try:
                result = self._apply_batch(normalized, job_id, now)
            except sqlite3.Error as e:
                log.error("batch_write_failed", batch_start=start, error=str(e))
                raise ProcessorError(f"Catalog write failed for source {source_id}: {e}") from e

            result.skipped = skipped
            total.add(result)

            # Cancellation lands between batches, never inside one
            await asyncio.sleep(0)

        log.info(
            "records_ingested",
            found=total.found,
            inserted=total.inserted,
            updated=total.updated,
            skipped=total.skipped,
        )
        return total

    def normalize(
        self,
        record: RawRecord,
        source: Source,
        job_id: str,
        now: datetime,
    ) -> Optional[NormalizedRecord]:
        """
        Normalize one raw record.

        Returns:
            NormalizedRecord, or None when the record has no usable title
            or breaks a business rule (e.g. amount_min above amount_max)
        """
        title = normalize_title(record.title)
        if not title:
            logger.debug("record_skipped", source_id=source.id, reason="missing_title")
            return None

        description = normalize_text(record.description) or None
        funder_name = normalize_text(record.funder_name) or source.funder_name or None
        amount_min, amount_max = parse_funding_range(record.funding_amount)

        grant = Grant(
            id=uuid.uuid4().hex,
            fingerprint=generate_fingerprint(title, funder_name or "", source.id),
            title=title,
            source_id=source.id,
            description=description,
            category=source.category or infer_category(f"{title} {description or ''}"),
            amount_min=amount_min,
            amount_max=amount_max,
            currency=detect_currency(record.funding_amount),
            deadline=parse_deadline(record.deadline),
            eligibility=normalize_text(record.eligibility) or None,
            application_url=record.application_url,
            source_url=record.source_url or source.url,
            created_by_job_id=job_id,
            last_job_id=job_id,
            created_at=now,
            updated_at=now,
        )
        validation = validate_grant(grant, now.date())
        if not validation.valid:
            logger.warning(
                "record_rejected",
                source_id=source.id,
                title=title[:80],
                errors=validation.errors,
            )
            return None
        if validation.warnings:
            logger.info(
                "record_quality_warnings",
                source_id=source.id,
                title=title[:80],
                warnings=validation.warnings,
            )

        return NormalizedRecord(grant=grant, funder_name=funder_name)

    def _apply_batch(self, items: list[NormalizedRecord], job_id: str, now: datetime) -> IngestResult:
        result = IngestResult()

        with self.db.transaction() as conn:
            for item in items:
                grant = item.grant
                if item.funder_name:
                    grant.funder_id = self.grants.match_or_create_funder(conn, item.funder_name, now)

                existing = self.grants.find_by_fingerprint(conn, grant.fingerprint)
                if existing is None:
                    self.grants.insert(conn, grant)
                    result.inserted += 1
                elif existing["last_job_id"] == job_id:
                    # Already counted by an earlier batch or attempt of this job
                    self.grants.update(conn, existing["id"], grant)
                    continue
                else:
                    self.grants.update(conn, existing["id"], grant)
                    result.updated += 1
                result.found += 1

            self.jobs.record_progress(conn, job_id, result.found, result.inserted, result.updated)

        return result
