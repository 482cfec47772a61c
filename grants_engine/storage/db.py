"""
Lightweight SQLite database wrapper.

Handles:
- Database initialization
- Schema creation
- Connection and transaction management

Writes that must be atomic (job transitions, catalog batches, source
health) run inside ``transaction()``, which takes the write lock up
front with BEGIN IMMEDIATE.
"""

import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import structlog

logger = structlog.get_logger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sources (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        url TEXT NOT NULL,
        source_type TEXT NOT NULL DEFAULT 'OTHER',
        category TEXT,
        region TEXT,
        engine TEXT NOT NULL DEFAULT 'static',
        frequency TEXT NOT NULL DEFAULT 'DAILY',
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        selectors_json TEXT NOT NULL,
        headers_json TEXT NOT NULL DEFAULT '{}',
        funder_name TEXT,
        api_key_ref TEXT,
        rate_limit_json TEXT NOT NULL DEFAULT '{}',
        success_rate REAL NOT NULL DEFAULT 0,
        avg_parse_time REAL NOT NULL DEFAULT 0,
        fail_count INTEGER NOT NULL DEFAULT 0,
        total_jobs INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        last_scraped_at TEXT,
        last_success_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_sources_status
    ON sources(status);
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        source_id TEXT NOT NULL,
        status TEXT NOT NULL,
        trigger TEXT NOT NULL DEFAULT 'scheduled',
        created_at TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT,
        duration_ms INTEGER,
        attempts INTEGER NOT NULL DEFAULT 0,
        total_found INTEGER NOT NULL DEFAULT 0,
        total_inserted INTEGER NOT NULL DEFAULT 0,
        total_updated INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        error_type TEXT,
        FOREIGN KEY (source_id) REFERENCES sources(id)
    );
    """,
    # At most one non-terminal job per source
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_one_active_per_source
    ON jobs(source_id) WHERE status IN ('PENDING', 'RUNNING');
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_jobs_created_at
    ON jobs(created_at);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_jobs_source_created
    ON jobs(source_id, created_at);
    """,
    """
    CREATE TABLE IF NOT EXISTS funders (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        name_key TEXT NOT NULL UNIQUE,
        funder_type TEXT NOT NULL DEFAULT 'OTHER',
        created_at TEXT NOT NULL
    );
    """,
    # Job references are attribution only; removing a job never removes grants
    """
    CREATE TABLE IF NOT EXISTS grants (
        id TEXT PRIMARY KEY,
        fingerprint TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        description TEXT,
        funder_id TEXT,
        category TEXT,
        amount_min REAL,
        amount_max REAL,
        currency TEXT NOT NULL DEFAULT 'USD',
        deadline TEXT,
        eligibility TEXT,
        application_url TEXT,
        source_url TEXT,
        source_id TEXT NOT NULL,
        created_by_job_id TEXT,
        last_job_id TEXT,
        times_seen INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (funder_id) REFERENCES funders(id),
        FOREIGN KEY (source_id) REFERENCES sources(id),
        FOREIGN KEY (created_by_job_id) REFERENCES jobs(id) ON DELETE SET NULL,
        FOREIGN KEY (last_job_id) REFERENCES jobs(id) ON DELETE SET NULL
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_grants_source
    ON grants(source_id);
    """,
]


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a sortable UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_db_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def from_db_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


class Database:
    """
    SQLite database wrapper for the catalog.

    Usage:
        db = Database("grants.db")
        with db.get_connection() as conn:
            conn.execute("SELECT * FROM sources")

        with db.transaction() as conn:
            conn.execute("UPDATE jobs SET ...")
    """

    def __init__(self, path: str = "grants.db", timeout: float = 30.0):
        """
        Initialize database.

        Args:
            path: Path to SQLite database file
            timeout: Seconds to wait for another writer's lock
        """
        self.path = str(path)
        self.timeout = timeout

        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

        logger.info("database_initialized", path=self.path)

    def _init_db(self):
        """Create database schema if it doesn't exist."""
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

        with self.get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

        logger.debug("database_schema_verified")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """
        Get an autocommit connection for reads and single statements.

        Yields:
            sqlite3.Connection
        """
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run statements in one write transaction.

        Commits on success, rolls back on any exception (including
        task cancellation) and re-raises.

        Yields:
            sqlite3.Connection
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            logger.error("database_error", error=str(e))
            raise
        finally:
            conn.close()
