"""
Data models for the scraping engine.

Sources, jobs, grants and funders as stored in the catalog, plus the
records exchanged between engines, processor and scheduler.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from grants_engine.errors import EngineError


class SourceType(str, Enum):
    """Kind of organization publishing the listings."""
    GOV = "GOV"
    FOUNDATION = "FOUNDATION"
    BUSINESS = "BUSINESS"
    NGO = "NGO"
    OTHER = "OTHER"


class Frequency(str, Enum):
    """Polling frequency of a source."""
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"

    @property
    def interval(self) -> timedelta:
        return FREQUENCY_INTERVALS[self]


FREQUENCY_INTERVALS = {
    Frequency.HOURLY: timedelta(hours=1),
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(days=7),
    Frequency.MONTHLY: timedelta(days=30),
}


class SourceStatus(str, Enum):
    """Operator-controlled source state."""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    DISABLED = "DISABLED"


class EngineKind(str, Enum):
    """Fetch/parse strategy used for a source."""
    STATIC = "static"
    BROWSER = "browser"


class JobStatus(str, Enum):
    """Job state machine: PENDING -> RUNNING -> SUCCESS | FAILED."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED)


class JobTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SourceSelectors:
    """CSS selectors describing how to extract grants from a listing page."""

    grant_container: str
    title: str
    description: Optional[str] = None
    deadline: Optional[str] = None
    funding_amount: Optional[str] = None
    eligibility: Optional[str] = None
    application_url: Optional[str] = None
    funder: Optional[str] = None

    # Matches when the page states that nothing is currently listed
    empty_marker: Optional[str] = None

    # Browser engine only: wait for this selector before reading the DOM
    wait_for: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "SourceSelectors":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class RateLimitOverride:
    """Per-source override of the global rate limit."""
    requests_per_minute: Optional[int] = None
    delay_between_requests: Optional[int] = None  # ms

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class Source:
    """
    A configured scrape target.

    Health fields are written only through the registry's outcome
    recording, driven by the scheduler.
    """

    id: str
    name: str
    url: str
    selectors: SourceSelectors

    source_type: SourceType = SourceType.OTHER
    category: Optional[str] = None
    region: Optional[str] = None
    engine: str = EngineKind.STATIC.value
    frequency: Frequency = Frequency.DAILY
    status: SourceStatus = SourceStatus.ACTIVE

    headers: dict = field(default_factory=dict)
    funder_name: Optional[str] = None
    api_key_ref: Optional[str] = None
    rate_limit: RateLimitOverride = field(default_factory=RateLimitOverride)

    # Health
    success_rate: float = 0.0
    avg_parse_time: float = 0.0  # ms
    fail_count: int = 0
    total_jobs: int = 0
    last_error: Optional[str] = None
    last_scraped_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if isinstance(self.engine, EngineKind):
            self.engine = self.engine.value

    @property
    def is_active(self) -> bool:
        return self.status == SourceStatus.ACTIVE

    def next_due_at(self) -> Optional[datetime]:
        """When the source becomes due again (None = never scraped, due now)."""
        if self.last_scraped_at is None:
            return None
        return self.last_scraped_at + self.frequency.interval

    def is_due(self, now: datetime) -> bool:
        due_at = self.next_due_at()
        return due_at is None or due_at <= now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "type": self.source_type.value,
            "category": self.category,
            "region": self.region,
            "engine": self.engine,
            "frequency": self.frequency.value,
            "status": self.status.value,
            "successRate": round(self.success_rate, 4),
            "avgParseTime": round(self.avg_parse_time, 1),
            "failCount": self.fail_count,
            "totalJobs": self.total_jobs,
            "lastError": self.last_error,
            "lastScrapedAt": self.last_scraped_at.isoformat() if self.last_scraped_at else None,
            "lastSuccessAt": self.last_success_at.isoformat() if self.last_success_at else None,
        }


@dataclass
class Job:
    """One execution of fetch + parse + ingest against a source."""

    id: str
    source_id: str
    status: JobStatus = JobStatus.PENDING
    trigger: JobTrigger = JobTrigger.SCHEDULED

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    attempts: int = 0

    total_found: int = 0
    total_inserted: int = 0
    total_updated: int = 0

    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "status": self.status.value,
            "trigger": self.trigger.value,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration_ms,
            "attempts": self.attempts,
            "totalFound": self.total_found,
            "totalInserted": self.total_inserted,
            "totalUpdated": self.total_updated,
            "error": self.error,
            "errorType": self.error_type,
        }


@dataclass
class Funder:
    """Organization offering grants. Matched case-insensitively by name."""
    id: str
    name: str
    funder_type: SourceType = SourceType.OTHER
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Grant:
    """Normalized catalog entry."""

    id: str
    fingerprint: str
    title: str
    source_id: str
    funder_id: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    amount_min: Optional[float] = None
    amount_max: Optional[float] = None
    currency: str = "USD"
    deadline: Optional[date] = None
    eligibility: Optional[str] = None
    application_url: Optional[str] = None
    source_url: Optional[str] = None

    created_by_job_id: Optional[str] = None
    last_job_id: Optional[str] = None
    times_seen: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RawRecord:
    """
    Candidate grant as extracted from a page, before normalization.

    Values are kept exactly as found (strings), the processor
    interprets them.
    """

    title: str
    source_url: str
    description: Optional[str] = None
    deadline: Optional[str] = None
    funding_amount: Optional[str] = None
    eligibility: Optional[str] = None
    application_url: Optional[str] = None
    funder_name: Optional[str] = None
    scraped_at: datetime = field(default_factory=utcnow)


@dataclass
class FetchResult:
    """Outcome of one engine fetch. ``error`` is set instead of raising."""

    records: list[RawRecord] = field(default_factory=list)
    duration_ms: int = 0
    error: Optional[EngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


@dataclass
class IngestResult:
    """Counts of what the processor actually persisted."""
    found: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    def add(self, other: "IngestResult") -> None:
        self.found += other.found
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped


@dataclass
class JobOutcome:
    """What the scheduler reports to the registry when a job finishes."""
    success: bool
    duration_ms: int
    error: Optional[str] = None
