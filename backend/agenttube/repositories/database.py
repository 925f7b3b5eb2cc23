from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from backend.agenttube.errors import StoreUnavailableError

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS resources (
    collection TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    resource_id TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, owner_id, resource_id)
);

CREATE INDEX IF NOT EXISTS idx_resources_owner_created
ON resources(collection, owner_id, created_at DESC);

CREATE TABLE IF NOT EXISTS stored_objects (
    reference TEXT PRIMARY KEY,
    path TEXT NOT NULL,
    content_type TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    sha256 TEXT NULL,
    url TEXT NULL,
    created_at TEXT NOT NULL,
    finalized_at TEXT NULL
);

CREATE TABLE IF NOT EXISTS usage_events (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    feature_kind TEXT NOT NULL,
    occurred_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_events_owner_feature
ON usage_events(owner_id, feature_kind, occurred_at);

CREATE TABLE IF NOT EXISTS metering_identities (
    owner_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS owner_api_keys (
    key_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    label TEXT NOT NULL,
    secret_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    revoked_at TEXT NULL,
    last_used_at TEXT NULL
);

CREATE TABLE IF NOT EXISTS audit_events (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    collection TEXT NOT NULL,
    resource_id TEXT NOT NULL,
    feature_kind TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

DEFAULT_BUSY_TIMEOUT_SECONDS = 30.0


class Database:
    def __init__(self, path: Path, *, busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS) -> None:
        self._path = path
        self._busy_timeout_seconds = busy_timeout_seconds

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._path, timeout=self._busy_timeout_seconds)
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"sqlite connect failed path={self._path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"sqlite operation failed path={self._path}: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
