"""
Storage layer for catalog grants and funders.

All write methods take the caller's connection so the processor can
apply a whole batch (funders, grants, job counters) in one transaction.
"""

import sqlite3
import uuid
from datetime import datetime
from typing import Optional

import structlog

from grants_engine.core.models import Funder, Grant, SourceType
from grants_engine.core.normalizer import normalize_key, normalize_text

from .db import Database, from_db_date, from_db_time, to_db_date, to_db_time

logger = structlog.get_logger(__name__)


class GrantStore:
    """
    Persistent storage for Grant and Funder objects.

    Usage:
        store = GrantStore(db)
        with db.transaction() as conn:
            funder_id = store.match_or_create_funder(conn, "Ford Foundation", now)
            existing = store.find_by_fingerprint(conn, fingerprint)
    """

    def __init__(self, db: Database):
        self.db = db

    def match_or_create_funder(
        self,
        conn: sqlite3.Connection,
        name: str,
        now: datetime,
        funder_type: SourceType = SourceType.OTHER,
    ) -> str:
        """
        Return the id of the funder with this name, creating it if needed.

        Matching is case- and punctuation-insensitive.
        """
        key = normalize_key(name)
        row = conn.execute("SELECT id FROM funders WHERE name_key = ?", (key,)).fetchone()
        if row is not None:
            return row["id"]

        funder_id = uuid.uuid4().hex
        conn.execute(
            """
            INSERT INTO funders (id, name, name_key, funder_type, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (funder_id, normalize_text(name), key, funder_type.value, to_db_time(now)),
        )
        logger.debug("funder_created", funder_id=funder_id, name=name)
        return funder_id

    def find_by_fingerprint(self, conn: sqlite3.Connection, fingerprint: str) -> Optional[sqlite3.Row]:
        """The (id, last_job_id) row of the grant with this fingerprint, or None."""
        return conn.execute(
            "SELECT id, last_job_id FROM grants WHERE fingerprint = ?", (fingerprint,)
        ).fetchone()

    def insert(self, conn: sqlite3.Connection, grant: Grant) -> None:
        conn.execute(
            """
            INSERT INTO grants (
                id, fingerprint, title, description, funder_id, category,
                amount_min, amount_max, currency, deadline, eligibility,
                application_url, source_url, source_id,
                created_by_job_id, last_job_id, times_seen,
                created_at, updated_at
            )
            VALUES (
                :id, :fingerprint, :title, :description, :funder_id, :category,
                :amount_min, :amount_max, :currency, :deadline, :eligibility,
                :application_url, :source_url, :source_id,
                :created_by_job_id, :last_job_id, :times_seen,
                :created_at, :updated_at
            )
            """,
            self._grant_params(grant),
        )

    def update(self, conn: sqlite3.Connection, grant_id: str, grant: Grant) -> None:
        """
        Overwrite descriptive fields of an existing grant.

        Keeps id, fingerprint, created_by_job_id and created_at; stamps
        last_job_id and bumps times_seen once per job.
        """
        params = self._grant_params(grant)
        params["id"] = grant_id
        conn.execute(
            """
            UPDATE grants SET
                title = :title,
                description = :description,
                funder_id = :funder_id,
                category = :category,
                amount_min = :amount_min,
                amount_max = :amount_max,
                currency = :currency,
                deadline = :deadline,
                eligibility = :eligibility,
                application_url = :application_url,
                source_url = :source_url,
                last_job_id = :last_job_id,
                times_seen = times_seen + (CASE WHEN last_job_id = :last_job_id THEN 0 ELSE 1 END),
                updated_at = :updated_at
            WHERE id = :id
            """,
            params,
        )

    def get(self, grant_id: str) -> Optional[Grant]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM grants WHERE id = ?", (grant_id,)).fetchone()
        return self._row_to_grant(row) if row else None

    def get_by_fingerprint(self, fingerprint: str) -> Optional[Grant]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM grants WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
        return self._row_to_grant(row) if row else None

    def list(self, source_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> list[Grant]:
        """List grants, most recently updated first."""
        query = "SELECT * FROM grants"
        params: list = []
        if source_id is not None:
            query += " WHERE source_id = ?"
            params.append(source_id)
        query += " ORDER BY updated_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self.db.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_grant(row) for row in rows]

    def count(self, source_id: Optional[str] = None) -> int:
        with self.db.get_connection() as conn:
            if source_id is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM grants").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM grants WHERE source_id = ?", (source_id,)
                ).fetchone()
        return row["n"]

    def get_funder(self, funder_id: str) -> Optional[Funder]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM funders WHERE id = ?", (funder_id,)).fetchone()
        if row is None:
            return None
        return Funder(
            id=row["id"],
            name=row["name"],
            funder_type=SourceType(row["funder_type"]),
            created_at=from_db_time(row["created_at"]),
        )

    def count_funders(self) -> int:
        with self.db.get_connection() as conn:
            return conn.execute("SELECT COUNT(*) AS n FROM funders").fetchone()["n"]

    def _grant_params(self, grant: Grant) -> dict:
        return {
            "id": grant.id,
            "fingerprint": grant.fingerprint,
            "title": grant.title,
            "description": grant.description,
            "funder_id": grant.funder_id,
            "category": grant.category,
            "amount_min": grant.amount_min,
            "amount_max": grant.amount_max,
            "currency": grant.currency,
            "deadline": to_db_date(grant.deadline),
            "eligibility": grant.eligibility,
            "application_url": grant.application_url,
            "source_url": grant.source_url,
            "source_id": grant.source_id,
            "created_by_job_id": grant.created_by_job_id,
            "last_job_id": grant.last_job_id,
            "times_seen": grant.times_seen,
            "created_at": to_db_time(grant.created_at),
            "updated_at": to_db_time(grant.updated_at),
        }

    def _row_to_grant(self, row) -> Grant:
        return Grant(
            id=row["id"],
            fingerprint=row["fingerprint"],
            title=row["title"],
            source_id=row["source_id"],
            funder_id=row["funder_id"],
            description=row["description"],
            category=row["category"],
            amount_min=row["amount_min"],
            amount_max=row["amount_max"],
            currency=row["currency"],
            deadline=from_db_date(row["deadline"]),
            eligibility=row["eligibility"],
            application_url=row["application_url"],
            source_url=row["source_url"],
            created_by_job_id=row["created_by_job_id"],
            last_job_id=row["last_job_id"],
            times_seen=row["times_seen"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )
