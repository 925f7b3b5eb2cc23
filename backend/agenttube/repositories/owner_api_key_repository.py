from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

from backend.agenttube.repositories.common import utc_now_iso
from backend.agenttube.repositories.database import Database

KEY_ID_PREFIX = "okey_"


@dataclass(frozen=True)
class OwnerApiKeyRecord:
    key_id: str
    owner_id: str
    label: str
    created_at: str
    revoked_at: str | None
    last_used_at: str | None


class OwnerApiKeyRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def create_key(self, owner_id: str, *, label: str = "default") -> tuple[OwnerApiKeyRecord, str]:
        normalized_owner = owner_id.strip()
        if not normalized_owner:
            raise ValueError("owner_id must not be empty")
        normalized_label = label.strip() or "default"

        key_id = f"{KEY_ID_PREFIX}{secrets.token_urlsafe(9)}"
        secret = secrets.token_urlsafe(24)
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO owner_api_keys (
                    key_id, owner_id, label, secret_hash, created_at, revoked_at, last_used_at
                )
                VALUES (?, ?, ?, ?, ?, NULL, NULL)
                """,
                (key_id, normalized_owner, normalized_label, _hash_secret(secret), now_iso),
            )
        return (
            OwnerApiKeyRecord(
                key_id=key_id,
                owner_id=normalized_owner,
                label=normalized_label,
                created_at=now_iso,
                revoked_at=None,
                last_used_at=None,
            ),
            f"{key_id}.{secret}",
        )

    def resolve_owner(self, *, key_id: str, secret: str) -> str | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT owner_id, secret_hash
                FROM owner_api_keys
                WHERE key_id = ? AND revoked_at IS NULL
                """,
                (key_id,),
            ).fetchone()
        if row is None:
            return None
        if not secrets.compare_digest(str(row["secret_hash"]), _hash_secret(secret)):
            return None
        return str(row["owner_id"])

    def mark_used(self, key_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE owner_api_keys
                SET last_used_at = ?
                WHERE key_id = ? AND revoked_at IS NULL
                """,
                (utc_now_iso(), key_id),
            )

    def revoke_key(self, key_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE owner_api_keys
                SET revoked_at = ?
                WHERE key_id = ? AND revoked_at IS NULL
                """,
                (utc_now_iso(), key_id.strip()),
            )
        return cursor.rowcount > 0

    def list_keys(self, *, include_revoked: bool) -> list[OwnerApiKeyRecord]:
        query = """
            SELECT key_id, owner_id, label, created_at, revoked_at, last_used_at
            FROM owner_api_keys
        """
        if not include_revoked:
            query += " WHERE revoked_at IS NULL"
        query += " ORDER BY created_at DESC"

        with self._db.connection() as conn:
            rows = conn.execute(query).fetchall()

        return [
            OwnerApiKeyRecord(
                key_id=str(row["key_id"]),
                owner_id=str(row["owner_id"]),
                label=str(row["label"]),
                created_at=str(row["created_at"]),
                revoked_at=(str(row["revoked_at"]) if row["revoked_at"] is not None else None),
                last_used_at=(
                    str(row["last_used_at"]) if row["last_used_at"] is not None else None
                ),
            )
            for row in rows
        ]


def _hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()
