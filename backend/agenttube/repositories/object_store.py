from __future__ import annotations

import hashlib
import logging
import secrets
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from backend.agenttube.repositories.common import utc_now_iso
from backend.agenttube.repositories.database import Database

LOGGER = logging.getLogger("agenttube.object_store")

_CONTENT_TYPE_SUFFIXES: dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "application/json": ".json",
}


@dataclass(frozen=True)
class StoredObject:
    reference: str
    path: Path
    content_type: str
    size_bytes: int
    url: str | None


class LocalObjectStore:
    """Filesystem-backed blob store whose public URL appears only after finalization.

    Uploads land as ``.partial`` files; a background worker moves them into place,
    records a checksum and only then publishes the URL, so readers must poll.
    """

    def __init__(
        self,
        db: Database,
        root_dir: Path,
        *,
        public_base_url: str,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._db = db
        self._root_dir = root_dir
        self._public_base_url = public_base_url.rstrip("/")
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2,
            thread_name_prefix="agenttube-object-finalizer",
        )

    def upload(self, data: bytes, *, content_type: str) -> str:
        reference = f"obj_{secrets.token_urlsafe(12)}"
        suffix = _CONTENT_TYPE_SUFFIXES.get(content_type, ".bin")
        self._root_dir.mkdir(parents=True, exist_ok=True)
        final_path = self._root_dir / f"{reference}{suffix}"
        partial_path = final_path.with_name(f"{final_path.name}.partial")
        partial_path.write_bytes(data)

        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO stored_objects (
                    reference, path, content_type, size_bytes, sha256, url,
                    created_at, finalized_at
                )
                VALUES (?, ?, ?, ?, NULL, NULL, ?, NULL)
                """,
                (reference, str(final_path), content_type, len(data), utc_now_iso()),
            )

        LOGGER.info(
            "object upload accepted reference=%s content_type=%s size_bytes=%s",
            reference,
            content_type,
            len(data),
        )
        self._submit_finalize(reference, partial_path, final_path)
        return reference

    def resolve_url(self, reference: str) -> str | None:
        stored = self.get(reference)
        if stored is None:
            return None
        return stored.url

    def get(self, reference: str) -> StoredObject | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT reference, path, content_type, size_bytes, url
                FROM stored_objects
                WHERE reference = ?
                """,
                (reference,),
            ).fetchone()
        if row is None:
            return None
        return StoredObject(
            reference=str(row["reference"]),
            path=Path(str(row["path"])),
            content_type=str(row["content_type"]),
            size_bytes=int(row["size_bytes"]),
            url=str(row["url"]) if row["url"] is not None else None,
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _submit_finalize(self, reference: str, partial_path: Path, final_path: Path) -> None:
        future = self._executor.submit(self._finalize, reference, partial_path, final_path)
        future.add_done_callback(_log_finalize_failure)

    def _finalize(self, reference: str, partial_path: Path, final_path: Path) -> str:
        checksum = hashlib.sha256(partial_path.read_bytes()).hexdigest()
        partial_path.replace(final_path)
        url = f"{self._public_base_url}/artifacts/{reference}"
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE stored_objects
                SET sha256 = ?, url = ?, finalized_at = ?
                WHERE reference = ?
                """,
                (checksum, url, utc_now_iso(), reference),
            )
        LOGGER.debug("object finalized reference=%s", reference)
        return reference


def _log_finalize_failure(future: Future[str]) -> None:
    exc = future.exception()
    if exc is not None:
        LOGGER.error("object finalize failed", exc_info=exc)
