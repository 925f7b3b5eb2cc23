from __future__ import annotations

from uuid import uuid4

from backend.agenttube.repositories.common import utc_now_iso
from backend.agenttube.repositories.database import Database


class UsageRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def append_event(self, *, owner_id: str, feature_kind: str, occurred_at: str | None = None) -> str:
        event_id = f"use_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO usage_events (id, owner_id, feature_kind, occurred_at)
                VALUES (?, ?, ?, ?)
                """,
                (event_id, owner_id, feature_kind, occurred_at or utc_now_iso()),
            )
        return event_id

    def count_since(self, *, owner_id: str, feature_kind: str, since_iso: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total
                FROM usage_events
                WHERE owner_id = ? AND feature_kind = ? AND occurred_at >= ?
                """,
                (owner_id, feature_kind, since_iso),
            ).fetchone()
        return int(row["total"]) if row is not None else 0

    def register_identity(self, owner_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO metering_identities (owner_id, created_at)
                VALUES (?, ?)
                ON CONFLICT(owner_id) DO NOTHING
                """,
                (owner_id, utc_now_iso()),
            )
        return cursor.rowcount == 1

    def has_identity(self, owner_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM metering_identities WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        return row is not None
