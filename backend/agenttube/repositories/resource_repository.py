from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from backend.agenttube.repositories.common import load_json_object, utc_now_iso
from backend.agenttube.repositories.database import Database


@dataclass(frozen=True)
class ResourceKey:
    owner_id: str
    resource_id: str

    @classmethod
    def for_artifact(cls, owner_id: str, video_id: str, artifact_id: str) -> ResourceKey:
        return cls(owner_id=owner_id, resource_id=f"{video_id}:{artifact_id}")


@dataclass(frozen=True)
class ResourceRecord:
    collection: str
    key: ResourceKey
    created_at: str
    payload: dict[str, Any] = field(default_factory=lambda: {})


class ResourceRepository:
    """Keyed records per collection; one row per (collection, owner, resource)."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, collection: str, key: ResourceKey) -> ResourceRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT collection, owner_id, resource_id, payload_json, created_at
                FROM resources
                WHERE collection = ? AND owner_id = ? AND resource_id = ?
                """,
                (collection, key.owner_id, key.resource_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    def insert_if_absent(
        self,
        collection: str,
        key: ResourceKey,
        payload: dict[str, Any],
    ) -> tuple[ResourceRecord, bool]:
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO resources (
                    collection, owner_id, resource_id, payload_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(collection, owner_id, resource_id) DO NOTHING
                """,
                (
                    collection,
                    key.owner_id,
                    key.resource_id,
                    json.dumps(payload, sort_keys=True),
                    now_iso,
                    now_iso,
                ),
            )
            inserted = cursor.rowcount == 1
            row = conn.execute(
                """
                SELECT collection, owner_id, resource_id, payload_json, created_at
                FROM resources
                WHERE collection = ? AND owner_id = ? AND resource_id = ?
                """,
                (collection, key.owner_id, key.resource_id),
            ).fetchone()
        return _row_to_record(row), inserted

    def list_for_owner(
        self,
        collection: str,
        owner_id: str,
        *,
        resource_prefix: str | None = None,
        limit: int = 50,
    ) -> list[ResourceRecord]:
        query = """
            SELECT collection, owner_id, resource_id, payload_json, created_at
            FROM resources
            WHERE collection = ? AND owner_id = ?
        """
        params: list[object] = [collection, owner_id]
        if resource_prefix is not None:
            query += " AND substr(resource_id, 1, ?) = ?"
            params.extend([len(resource_prefix), resource_prefix])
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(max(1, limit))

        with self._db.connection() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_row_to_record(row) for row in rows]


def _row_to_record(row: Any) -> ResourceRecord:
    return ResourceRecord(
        collection=str(row["collection"]),
        key=ResourceKey(owner_id=str(row["owner_id"]), resource_id=str(row["resource_id"])),
        created_at=str(row["created_at"]),
        payload=load_json_object(row["payload_json"]),
    )
