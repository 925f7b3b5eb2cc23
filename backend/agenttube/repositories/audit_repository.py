from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

from backend.agenttube.repositories.common import utc_now_iso
from backend.agenttube.repositories.database import Database


@dataclass(frozen=True)
class AuditEvent:
    event_id: str
    owner_id: str
    collection: str
    resource_id: str
    feature_kind: str
    created_at: str


class AuditRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def record_creation(
        self,
        *,
        owner_id: str,
        collection: str,
        resource_id: str,
        feature_kind: str,
    ) -> str:
        event_id = f"evt_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_events
                (id, owner_id, collection, resource_id, feature_kind, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (event_id, owner_id, collection, resource_id, feature_kind, utc_now_iso()),
            )
        return event_id

    def list_for_owner(self, owner_id: str, *, limit: int = 100) -> list[AuditEvent]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, owner_id, collection, resource_id, feature_kind, created_at
                FROM audit_events
                WHERE owner_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (owner_id, max(1, limit)),
            ).fetchall()
        return [
            AuditEvent(
                event_id=str(row["id"]),
                owner_id=str(row["owner_id"]),
                collection=str(row["collection"]),
                resource_id=str(row["resource_id"]),
                feature_kind=str(row["feature_kind"]),
                created_at=str(row["created_at"]),
            )
            for row in rows
        ]
