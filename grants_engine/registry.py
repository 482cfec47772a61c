"""
Source registry.

Owns the configured scrape targets: which are due, and how healthy each
one is. Health statistics are written only through ``record_outcome``,
which the scheduler calls once per finished job.
"""

from datetime import datetime
from typing import Iterable, Optional

import structlog

from grants_engine.core.clock import Clock
from grants_engine.core.models import JobOutcome, Source, SourceStatus
from grants_engine.storage import Database, JobStore, SourceStore

logger = structlog.get_logger(__name__)

# Weight of history in the success rate moving average
EMA_DECAY = 0.9


class SourceRegistry:
    """
    Registry of scrape sources backed by the catalog store.

    Usage:
        registry = SourceRegistry(db, clock=clock)
        for source in registry.list_due(clock.now()):
            ...
        registry.record_outcome(source.id, JobOutcome(success=True, duration_ms=850))
    """

    def __init__(
        self,
        db: Database,
        clock: Optional[Clock] = None,
        failure_threshold: int = 5,
    ):
        """
        Initialize registry.

        Args:
            db: Catalog database
            clock: Time source
            failure_threshold: Consecutive failures before a source is flagged
        """
        self.db = db
        self.store = SourceStore(db)
        self.jobs = JobStore(db)
        self.clock = clock or Clock()
        self.failure_threshold = failure_threshold

    def register(self, source: Source) -> Source:
        """Add a source or update its configuration (health is kept)."""
        self.store.upsert(source, self.clock.now())
        logger.info("source_registered", source_id=source.id, engine=source.engine)
        return self.store.get(source.id)

    def register_all(self, sources: Iterable[Source]) -> int:
        count = 0
        for source in sources:
            self.register(source)
            count += 1
        return count

    def get(self, source_id: str) -> Source:
        """
        Retrieve source by ID.

        Raises:
            NotFoundError: if the source does not exist
        """
        return self.store.get(source_id)

    def list_all(self) -> list[Source]:
        return self.store.list()

    def list_active(self) -> list[Source]:
        return self.store.list(status=SourceStatus.ACTIVE)

    def set_status(self, source_id: str, status: SourceStatus) -> Source:
        """Pause, disable or re-activate a source. Sources are never deleted."""
        self.store.set_status(source_id, status, self.clock.now())
        logger.info("source_status_changed", source_id=source_id, status=status.value)
        return self.store.get(source_id)

    def list_due(self, now: Optional[datetime] = None) -> list[Source]:
        """
        Active sources due for scraping.

        A source is due when ``last_scraped_at + interval(frequency) <= now``;
        never-scraped sources are always due. Ordered longest-overdue first,
        then by fewest consecutive failures, then by id.

        Args:
            now: Reference time (defaults to the clock)

        Returns:
            List of due sources
        """
        now = now or self.clock.now()
        due = [source for source in self.list_active() if source.is_due(now)]

        def order(source: Source):
            due_at = source.next_due_at()
            # Never-scraped sources sort before every overdue one
            overdue = float("inf") if due_at is None else (now - due_at).total_seconds()
            return (-overdue, source.fail_count, source.id)

        return sorted(due, key=order)

    def record_outcome(self, source_id: str, outcome: JobOutcome) -> Source:
        """
        Fold a finished job into the source's health statistics.

        - success_rate: exponential moving average (first outcome sets it)
        - avg_parse_time: running mean of job durations
        - fail_count: consecutive failures, reset on success
        - last_error: set on failure, cleared on success

        Args:
            source_id: Source the job ran against
            outcome: Job result

        Returns:
            Updated Source
        """
        now = self.clock.now()

        with self.db.transaction() as conn:
            source = self.store.get(source_id, conn=conn)
            sample = 1.0 if outcome.success else 0.0

            if source.total_jobs == 0:
                source.success_rate = sample
            else:
                source.success_rate = EMA_DECAY * source.success_rate + (1 - EMA_DECAY) * sample
            source.success_rate = min(1.0, max(0.0, source.success_rate))

            source.avg_parse_time = (
                source.avg_parse_time * source.total_jobs + outcome.duration_ms
            ) / (source.total_jobs + 1)
            source.total_jobs += 1

            if outcome.success:
                source.fail_count = 0
                source.last_error = None
                source.last_success_at = now
            else:
                source.fail_count += 1
                source.last_error = outcome.error

            source.last_scraped_at = now
            source.updated_at = now

            self.store.save_health(source, conn=conn)

        log = logger.bind(source_id=source_id)
        log.debug(
            "source_outcome_recorded",
            success=outcome.success,
            success_rate=round(source.success_rate, 4),
            fail_count=source.fail_count,
        )

        if not outcome.success and source.fail_count == self.failure_threshold:
            log.warning(
                "source_flagged",
                fail_count=source.fail_count,
                last_error=source.last_error,
            )

        return source

    def is_flagged(self, source: Source) -> bool:
        return source.fail_count >= self.failure_threshold

    def flagged(self) -> list[Source]:
        """Sources at or over the failure threshold (never auto-disabled)."""
        return [source for source in self.list_all() if self.is_flagged(source)]

    def snapshot(self, running: Optional[set[str]] = None) -> list[dict]:
        """
        Per-source health for the status API.

        Args:
            running: IDs of sources with a job in flight

        Returns:
            List of source dicts with lastJobStatus, running and flagged
        """
        running = running or set()
        last_status = self.jobs.last_status_by_source()

        snapshot = []
        for source in self.list_all():
            entry = source.to_dict()
            status = last_status.get(source.id)
            entry["lastJobStatus"] = status.value if status else None
            entry["running"] = source.id in running
            entry["flagged"] = self.is_flagged(source)
            entry["nextDueAt"] = (
                source.next_due_at().isoformat() if source.next_due_at() else None
            )
            snapshot.append(entry)
        return snapshot
