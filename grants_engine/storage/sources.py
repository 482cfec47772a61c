"""
Storage layer for Source records.

Handles:
- Seeding and updating source configuration
- Status changes (soft disable)
- Persisting health statistics
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import structlog

from grants_engine.core.models import (
    Frequency,
    RateLimitOverride,
    Source,
    SourceSelectors,
    SourceStatus,
    SourceType,
)
from grants_engine.errors import NotFoundError

from .db import Database, from_db_time, to_db_time

logger = structlog.get_logger(__name__)


class SourceStore:
    """
    Persistent storage for Source objects.

    Usage:
        store = SourceStore(db)
        store.upsert(source, now)
        source = store.get("grants-gov")
    """

    def __init__(self, db: Database):
        self.db = db

    @contextmanager
    def _conn(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.db.get_connection() as own:
                yield own

    def upsert(self, source: Source, now: datetime, conn: Optional[sqlite3.Connection] = None) -> None:
        """
        Insert a source or update its configuration.

        Health statistics of an existing source are left untouched.
        """
        with self._conn(conn) as c:
            c.execute(
                """
                INSERT INTO sources (
                    id, name, url, source_type, category, region, engine,
                    frequency, status, selectors_json, headers_json,
                    funder_name, api_key_ref, rate_limit_json,
                    created_at, updated_at
                )
                VALUES (
                    :id, :name, :url, :source_type, :category, :region, :engine,
                    :frequency, :status, :selectors_json, :headers_json,
                    :funder_name, :api_key_ref, :rate_limit_json,
                    :now, :now
                )
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    url=excluded.url,
                    source_type=excluded.source_type,
                    category=excluded.category,
                    region=excluded.region,
                    engine=excluded.engine,
                    frequency=excluded.frequency,
                    status=excluded.status,
                    selectors_json=excluded.selectors_json,
                    headers_json=excluded.headers_json,
                    funder_name=excluded.funder_name,
                    api_key_ref=excluded.api_key_ref,
                    rate_limit_json=excluded.rate_limit_json,
                    updated_at=excluded.updated_at;
                """,
                {
                    "id": source.id,
                    "name": source.name,
                    "url": source.url,
                    "source_type": source.source_type.value,
                    "category": source.category,
                    "region": source.region,
                    "engine": source.engine,
                    "frequency": source.frequency.value,
                    "status": source.status.value,
                    "selectors_json": json.dumps(source.selectors.to_dict()),
                    "headers_json": json.dumps(source.headers or {}),
                    "funder_name": source.funder_name,
                    "api_key_ref": source.api_key_ref,
                    "rate_limit_json": json.dumps(source.rate_limit.to_dict()),
                    "now": to_db_time(now),
                },
            )

        logger.debug("source_upserted", source_id=source.id)

    def get(self, source_id: str, conn: Optional[sqlite3.Connection] = None) -> Source:
        """
        Retrieve source by ID.

        Raises:
            NotFoundError: if the source does not exist
        """
        with self._conn(conn) as c:
            row = c.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()

        if row is None:
            raise NotFoundError(f"Source not found: {source_id}")
        return self._row_to_source(row)

    def exists(self, source_id: str) -> bool:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT 1 FROM sources WHERE id = ? LIMIT 1", (source_id,)).fetchone()
        return row is not None

    def list(self, status: Optional[SourceStatus] = None) -> list[Source]:
        """List sources, optionally filtered by status, ordered by id."""
        query = "SELECT * FROM sources"
        params = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY id"

        with self.db.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [self._row_to_source(row) for row in rows]

    def set_status(self, source_id: str, status: SourceStatus, now: datetime) -> None:
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE sources SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, to_db_time(now), source_id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Source not found: {source_id}")

    def save_health(self, source: Source, conn: Optional[sqlite3.Connection] = None) -> None:
        """Persist the health fields of a source."""
        with self._conn(conn) as c:
            c.execute(
                """
                UPDATE sources SET
                    success_rate = :success_rate,
                    avg_parse_time = :avg_parse_time,
                    fail_count = :fail_count,
                    total_jobs = :total_jobs,
                    last_error = :last_error,
                    last_scraped_at = :last_scraped_at,
                    last_success_at = :last_success_at,
                    updated_at = :updated_at
                WHERE id = :id
                """,
                {
                    "id": source.id,
                    "success_rate": source.success_rate,
                    "avg_parse_time": source.avg_parse_time,
                    "fail_count": source.fail_count,
                    "total_jobs": source.total_jobs,
                    "last_error": source.last_error,
                    "last_scraped_at": to_db_time(source.last_scraped_at),
                    "last_success_at": to_db_time(source.last_success_at),
                    "updated_at": to_db_time(source.updated_at),
                },
            )

    def count_by_status(self) -> dict[str, int]:
        with self.db.get_connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM sources GROUP BY status"
            ).fetchall()
        return {row["status"]: row["n"] for row in rows}

    def _row_to_source(self, row) -> Source:
        return Source(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            selectors=SourceSelectors.from_dict(json.loads(row["selectors_json"])),
            source_type=SourceType(row["source_type"]),
            category=row["category"],
            region=row["region"],
            engine=row["engine"],
            frequency=Frequency(row["frequency"]),
            status=SourceStatus(row["status"]),
            headers=json.loads(row["headers_json"] or "{}"),
            funder_name=row["funder_name"],
            api_key_ref=row["api_key_ref"],
            rate_limit=RateLimitOverride(**json.loads(row["rate_limit_json"] or "{}")),
            success_rate=row["success_rate"],
            avg_parse_time=row["avg_parse_time"],
            fail_count=row["fail_count"],
            total_jobs=row["total_jobs"],
            last_error=row["last_error"],
            last_scraped_at=from_db_time(row["last_scraped_at"]),
            last_success_at=from_db_time(row["last_success_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

