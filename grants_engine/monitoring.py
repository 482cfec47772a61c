"""
Monitoring dashboard aggregation.

Summarizes job history over a time window: volumes, success rate,
durations, catalog growth, best sources and recent failures. Reads
only; best-effort (missing sources never break the dashboard).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Union

import structlog

from grants_engine.core.clock import Clock
from grants_engine.core.models import Job, JobStatus, Source, SourceStatus
from grants_engine.errors import BadRequestError
from grants_engine.registry import SourceRegistry
from grants_engine.storage import JobStore

logger = structlog.get_logger(__name__)

TIME_RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

TOP_SOURCES_LIMIT = 5
RECENT_ERRORS_LIMIT = 10
RECENT_JOBS_LIMIT = 10


def parse_time_range(value: Union[str, timedelta, None]) -> tuple[str, timedelta]:
    """
    Resolve a dashboard time range.

    Args:
        value: "24h", "7d", "30d", a timedelta, or None (24h)

    Returns:
        Tuple (label, window)

    Raises:
        BadRequestError: for unknown labels or non-positive windows
    """
    if value is None:
        value = "24h"

    if isinstance(value, timedelta):
        if value <= timedelta(0):
            raise BadRequestError("Time range must be positive")
        return _label(value), value

    window = TIME_RANGES.get(value.strip().lower())
    if window is None:
        raise BadRequestError(
            f"Invalid time range {value!r} (allowed: {', '.join(TIME_RANGES)})"
        )
    return value.strip().lower(), window


def _label(window: timedelta) -> str:
    for label, candidate in TIME_RANGES.items():
        if candidate == window:
            return label
    if window.total_seconds() % 86400 == 0:
        return f"{int(window.total_seconds() // 86400)}d"
    return f"{int(window.total_seconds() // 3600)}h"


@dataclass
class SourcePerformance:
    source_id: str
    name: Optional[str]
    url: Optional[str]
    source_type: Optional[str]
    total_jobs: int
    successful_jobs: int
    success_rate: float  # percent
    avg_grants_found: float
    avg_duration: float  # ms

    def to_dict(self) -> dict:
        return {
            "id": self.source_id,
            "name": self.name,
            "url": self.url,
            "type": self.source_type,
            "totalJobs": self.total_jobs,
            "successfulJobs": self.successful_jobs,
            "successRate": self.success_rate,
            "avgGrantsFound": self.avg_grants_found,
            "avgDuration": self.avg_duration,
        }


@dataclass
class ErrorEntry:
    job_id: str
    source_id: str
    source_url: Optional[str]
    error_type: Optional[str]
    error: Optional[str]
    occurred_at: datetime

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "sourceId": self.source_id,
            "sourceUrl": self.source_url,
            "errorType": self.error_type,
            "error": self.error,
            "occurredAt": self.occurred_at.isoformat(),
        }


@dataclass
class Dashboard:
    """Aggregated engine health over one time window."""

    time_range: str
    generated_at: datetime
    active_sources: int = 0
    total_jobs: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0
    success_rate: float = 0.0  # percent, 2 decimals
    avg_duration: float = 0.0  # ms
    grants_scraped: int = 0
    new_grants: int = 0
    updated_grants: int = 0
    top_performing_sources: list[SourcePerformance] = field(default_factory=list)
    recent_errors: list[ErrorEntry] = field(default_factory=list)
    recent_jobs: list[Job] = field(default_factory=list)
    flagged_sources: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "realTimeMetrics": {
                "activeSources": self.active_sources,
                "totalJobs": self.total_jobs,
                "successfulJobs": self.successful_jobs,
                "failedJobs": self.failed_jobs,
                "successRate": self.success_rate,
                "averageDuration": self.avg_duration,
                "grantsScraped": self.grants_scraped,
                "newGrants": self.new_grants,
                "updatedGrants": self.updated_grants,
            },
            "recentActivity": {
                "jobs": [job.to_dict() for job in self.recent_jobs],
                "errors": [entry.to_dict() for entry in self.recent_errors],
            },
            "topPerformingSources": [entry.to_dict() for entry in self.top_performing_sources],
            "flaggedSources": self.flagged_sources,
            "timeRange": self.time_range,
            "generatedAt": self.generated_at.isoformat(),
        }


class DashboardAggregator:
    """
    Builds dashboards from job history.

    Usage:
        aggregator = DashboardAggregator(registry)
        dashboard = aggregator.get_dashboard("7d")
        payload = dashboard.to_dict()
    """

    def __init__(self, registry: SourceRegistry, clock: Optional[Clock] = None):
        self.registry = registry
        self.jobs = JobStore(registry.db)
        self.clock = clock or registry.clock

    def get_dashboard(self, time_range: Union[str, timedelta, None] = "24h") -> Dashboard:
        """
        Aggregate jobs created within ``[now - range, now]``.

        Args:
            time_range: "24h", "7d", "30d" or a timedelta

        Returns:
            Dashboard

        Raises:
            BadRequestError: for an unknown time range
        """
        label, window = parse_time_range(time_range)
        now = self.clock.now()
        jobs = self.jobs.list(since=now - window, until=now, limit=None)
        sources = {source.id: source for source in self.registry.list_all()}

        dashboard = Dashboard(time_range=label, generated_at=now)
        dashboard.active_sources = sum(1 for s in sources.values() if s.status == SourceStatus.ACTIVE)
        dashboard.total_jobs = len(jobs)

        succeeded = [job for job in jobs if job.status == JobStatus.SUCCESS]
        failed = [job for job in jobs if job.status == JobStatus.FAILED]
        dashboard.successful_jobs = len(succeeded)
        dashboard.failed_jobs = len(failed)
        dashboard.success_rate = _percent(len(succeeded), len(jobs))

        durations = [
            job.duration_ms for job in jobs
            if job.status.is_terminal and job.duration_ms is not None
        ]
        dashboard.avg_duration = round(sum(durations) / len(durations), 2) if durations else 0

        dashboard.new_grants = sum(job.total_inserted for job in succeeded)
        dashboard.updated_grants = sum(job.total_updated for job in succeeded)
        dashboard.grants_scraped = dashboard.new_grants + dashboard.updated_grants

        dashboard.top_performing_sources = self._top_sources(jobs, sources)
        dashboard.recent_errors = [
            ErrorEntry(
                job_id=job.id,
                source_id=job.source_id,
                source_url=sources[job.source_id].url if job.source_id in sources else None,
                error_type=job.error_type,
                error=job.error,
                occurred_at=job.finished_at or job.created_at,
            )
            for job in failed[:RECENT_ERRORS_LIMIT]
        ]
        dashboard.recent_jobs = jobs[:RECENT_JOBS_LIMIT]
        dashboard.flagged_sources = [
            {
                "id": source.id,
                "name": source.name,
                "failCount": source.fail_count,
                "lastError": source.last_error,
            }
            for source in sources.values()
            if self.registry.is_flagged(source)
        ]

        logger.debug(
            "dashboard_generated",
            time_range=label,
            jobs=dashboard.total_jobs,
            success_rate=dashboard.success_rate,
        )
        return dashboard

    def _top_sources(self, jobs: list[Job], sources: dict[str, Source]) -> list[SourcePerformance]:
        by_source: dict[str, list[Job]] = {}
        for job in jobs:
            source = sources.get(job.source_id)
            if source is None or source.status != SourceStatus.ACTIVE:
                continue
            by_source.setdefault(job.source_id, []).append(job)

        performances = []
        for source_id, source_jobs in by_source.items():
            source = sources[source_id]
            successful = sum(1 for job in source_jobs if job.status == JobStatus.SUCCESS)
            durations = [job.duration_ms for job in source_jobs if job.duration_ms is not None]
            performances.append(
                SourcePerformance(
                    source_id=source_id,
                    name=source.name,
                    url=source.url,
                    source_type=source.source_type.value,
                    total_jobs=len(source_jobs),
                    successful_jobs=successful,
                    success_rate=_percent(successful, len(source_jobs)),
                    avg_grants_found=round(
                        sum(job.total_found for job in source_jobs) / len(source_jobs), 2
                    ),
                    avg_duration=round(sum(durations) / len(durations), 2) if durations else 0,
                )
            )

        performances.sort(
            key=lambda p: (-p.successful_jobs / p.total_jobs, -p.total_jobs, p.source_id)
        )
        return performances[:TOP_SOURCES_LIMIT]


def _percent(part: int, whole: int) -> float:
    if whole == 0:
        return 0
    return round(part / whole * 100, 2)
