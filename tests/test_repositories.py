from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path

from backend.agenttube.repositories.audit_repository import AuditRepository
from backend.agenttube.repositories.common import load_json_object, utc_month_start_iso
from backend.agenttube.repositories.database import Database
from backend.agenttube.repositories.object_store import LocalObjectStore
from backend.agenttube.repositories.owner_api_key_repository import OwnerApiKeyRepository
from backend.agenttube.repositories.resource_repository import ResourceKey, ResourceRepository
from backend.agenttube.repositories.usage_repository import UsageRepository


def _db(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


def test_resource_repository_insert_if_absent_keeps_first_payload(tmp_path: Path) -> None:
    repo = ResourceRepository(_db(tmp_path))
    key = ResourceKey(owner_id="owner_1", resource_id="vid_1")

    first, first_inserted = repo.insert_if_absent("transcripts", key, {"segments": ["a"]})
    second, second_inserted = repo.insert_if_absent("transcripts", key, {"segments": ["b"]})

    assert first_inserted is True
    assert second_inserted is False
    assert second.payload == {"segments": ["a"]}
    assert first.created_at == second.created_at
    assert repo.get("videos", key) is None
    assert repo.get("transcripts", ResourceKey(owner_id="owner_2", resource_id="vid_1")) is None


def test_resource_repository_prefix_listing(tmp_path: Path) -> None:
    repo = ResourceRepository(_db(tmp_path))
    for artifact_id in ("t1", "t2"):
        repo.insert_if_absent(
            "titles",
            ResourceKey.for_artifact("owner_1", "vid_1", artifact_id),
            {"title": artifact_id},
        )
    repo.insert_if_absent("titles", ResourceKey.for_artifact("owner_1", "vid_2", "t3"), {"title": "t3"})

    listed = repo.list_for_owner("titles", "owner_1", resource_prefix="vid_1:")

    assert sorted(record.key.resource_id for record in listed) == ["vid_1:t1", "vid_1:t2"]
    assert repo.list_for_owner("titles", "owner_2") == []


def test_object_store_publishes_url_only_after_finalize(tmp_path: Path) -> None:
    db = _db(tmp_path)
    executor = ThreadPoolExecutor(max_workers=1)
    gate_open = False

    def _wait_for_gate() -> None:
        while not gate_open:
            time.sleep(0.005)

    executor.submit(_wait_for_gate)
    store = LocalObjectStore(
        db,
        tmp_path / "objects",
        public_base_url="http://testserver/",
        executor=executor,
    )

    reference = store.upload(b"\x89PNG-bytes", content_type="image/png")
    assert store.resolve_url(reference) is None

    gate_open = True
    store.shutdown()

    stored = store.get(reference)
    assert stored is not None
    assert stored.url == f"http://testserver/artifacts/{reference}"
    assert stored.path.suffix == ".png"
    assert stored.path.read_bytes() == b"\x89PNG-bytes"
    assert store.resolve_url("obj_missing") is None


def test_owner_api_keys_resolve_and_revoke(tmp_path: Path) -> None:
    repo = OwnerApiKeyRepository(_db(tmp_path))
    record, token = repo.create_key(" owner_1 ", label="laptop")
    key_id, _, secret = token.partition(".")

    assert record.owner_id == "owner_1"
    assert key_id == record.key_id
    assert repo.resolve_owner(key_id=key_id, secret=secret) == "owner_1"
    assert repo.resolve_owner(key_id=key_id, secret="wrong") is None

    assert repo.revoke_key(key_id) is True
    assert repo.revoke_key(key_id) is False
    assert repo.resolve_owner(key_id=key_id, secret=secret) is None
    assert repo.list_keys(include_revoked=False) == []
    assert [item.key_id for item in repo.list_keys(include_revoked=True)] == [key_id]


def test_usage_repository_counts_by_window(tmp_path: Path) -> None:
    repo = UsageRepository(_db(tmp_path))
    repo.append_event(owner_id="owner_1", feature_kind="transcription", occurred_at="2000-01-01T00:00:00+00:00")
    repo.append_event(owner_id="owner_1", feature_kind="transcription")
    repo.append_event(owner_id="owner_1", feature_kind="image-generation")

    assert repo.count_since(owner_id="owner_1", feature_kind="transcription", since_iso=utc_month_start_iso()) == 1
    assert repo.count_since(owner_id="owner_2", feature_kind="transcription", since_iso="1999-01-01") == 0

    assert repo.register_identity("owner_1") is True
    assert repo.register_identity("owner_1") is False
    assert repo.has_identity("owner_1") is True
    assert repo.has_identity("owner_2") is False


def test_audit_repository_lists_owner_events(tmp_path: Path) -> None:
    repo = AuditRepository(_db(tmp_path))
    repo.record_creation(owner_id="owner_1", collection="images", resource_id="vid_1:obj_1", feature_kind="image-generation")
    repo.record_creation(owner_id="owner_2", collection="titles", resource_id="vid_1:t1", feature_kind="title-generations")

    events = repo.list_for_owner("owner_1")

    assert [(event.collection, event.resource_id) for event in events] == [("images", "vid_1:obj_1")]
    assert events[0].event_id.startswith("evt_")


def test_month_start_and_json_helpers() -> None:
    now = datetime(2025, 3, 17, 12, 30, tzinfo=UTC)

    assert utc_month_start_iso(now).startswith("2025-03-01T00:00:00")
    assert load_json_object('{"a": 1}') == {"a": 1}
    assert load_json_object("[1, 2]") == {}
    assert load_json_object("not json") == {}
