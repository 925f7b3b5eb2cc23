from __future__ import annotations

import threading
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import pytest

from backend.agenttube.errors import QuotaExceededError
from backend.agenttube.repositories.audit_repository import AuditRepository
from backend.agenttube.repositories.database import Database
from backend.agenttube.repositories.resource_repository import ResourceKey, ResourceRepository
from backend.agenttube.services.bounded_cache import BoundedTTLCache
from backend.agenttube.services.metering import (
    EntitlementDecision,
    FeatureKind,
    FeatureUsage,
    UsageEvent,
)
from backend.agenttube.services.resource_gate import ResourceGate
from backend.agenttube.services.usage_meter import UsageMeter
from backend.agenttube.telemetry import TelemetryClient


class _RecordingMetering:
    def __init__(self, *, allowed: bool = True, reason: str | None = None) -> None:
        self.allowed = allowed
        self.reason = reason
        self.events: list[UsageEvent] = []
        self.limit_checks = 0
        self._lock = threading.Lock()

    def check_limit(self, owner_id: str, feature_kind: FeatureKind) -> EntitlementDecision:
        _ = (owner_id, feature_kind)
        with self._lock:
            self.limit_checks += 1
        return EntitlementDecision(allowed=self.allowed, reason=self.reason)

    def check_flag(self, owner_id: str, feature_kind: FeatureKind) -> bool:
        _ = (owner_id, feature_kind)
        return True

    def feature_usage(self, owner_id: str, feature_kind: FeatureKind) -> FeatureUsage:
        _ = owner_id
        return FeatureUsage(feature_kind=feature_kind, usage=len(self.events), allocation=None)

    def record_usage(self, event: UsageEvent) -> None:
        with self._lock:
            self.events.append(event)

    def identify(self, owner_id: str) -> None:
        _ = owner_id


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[str] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        _ = attributes
        self.events.append(event_name)


def _build_gate(
    tmp_path: Path,
    metering: _RecordingMetering,
    *,
    telemetry: TelemetryClient | None = None,
) -> tuple[ResourceGate, Database]:
    database = Database(tmp_path / "gate.db")
    database.initialize()
    gate = ResourceGate(
        collection="transcripts",
        feature_kind=FeatureKind.TRANSCRIPTION,
        repository=ResourceRepository(database),
        entitlements=metering,
        usage_meter=UsageMeter(metering, identity_cache=BoundedTTLCache(max_entries=10)),
        audit_repository=AuditRepository(database),
        telemetry=telemetry,
    )
    return gate, database


def test_concurrent_creates_bill_exactly_once(tmp_path: Path) -> None:
    metering = _RecordingMetering()
    gate, _ = _build_gate(tmp_path, metering)
    key = ResourceKey(owner_id="owner_1", resource_id="vid_1")
    workers = 8
    barrier = threading.Barrier(workers)

    def _create() -> bool:
        def _payload() -> dict[str, Any]:
            barrier.wait(timeout=5)
            return {"video_id": "vid_1"}

        result = gate.get_or_create(key, True, build_payload=_payload)
        assert result.record is not None
        return result.created

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(lambda _: _create(), range(workers)))

    assert outcomes.count(True) == 1
    assert outcomes.count(False) == workers - 1
    assert len(metering.events) == 1


def test_hit_ignores_create_flag_and_skips_billing(tmp_path: Path) -> None:
    metering = _RecordingMetering()
    gate, _ = _build_gate(tmp_path, metering)
    key = ResourceKey(owner_id="owner_1", resource_id="vid_1")

    first = gate.get_or_create(key, True, build_payload=lambda: {"n": 1})
    second = gate.get_or_create(key, False, build_payload=lambda: {"n": 2})

    assert first.created is True
    assert second.created is False
    assert second.record is not None
    assert second.record.payload == {"n": 1}
    assert len(metering.events) == 1
    assert metering.limit_checks == 1


def test_missing_key_without_create_flag_returns_nothing(tmp_path: Path) -> None:
    metering = _RecordingMetering()
    gate, _ = _build_gate(tmp_path, metering)
    calls: list[str] = []

    result = gate.get_or_create(
        ResourceKey(owner_id="owner_1", resource_id="vid_missing"),
        False,
        build_payload=lambda: calls.append("built") or {},
    )

    assert result.record is None
    assert result.created is False
    assert calls == []
    assert metering.events == []
    assert metering.limit_checks == 0


def test_quota_exceeded_blocks_creation_with_plan_copy(tmp_path: Path) -> None:
    metering = _RecordingMetering(allowed=False, reason="You have reached your transcription limit.")
    gate, _ = _build_gate(tmp_path, metering)
    key = ResourceKey(owner_id="owner_1", resource_id="vid_1")

    with pytest.raises(QuotaExceededError) as exc_info:
        gate.get_or_create(key, True, build_payload=lambda: {"video_id": "vid_1"})

    assert exc_info.value.user_message == "You have reached your transcription limit."
    assert gate.get(key) is None
    assert metering.events == []


def test_lost_race_returns_existing_record_without_billing(tmp_path: Path) -> None:
    metering = _RecordingMetering()
    sink = _CaptureSink()
    gate, database = _build_gate(
        tmp_path,
        metering,
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )
    key = ResourceKey(owner_id="owner_1", resource_id="vid_1")
    repository = ResourceRepository(database)

    def _payload_written_by_someone_else() -> dict[str, Any]:
        repository.insert_if_absent("transcripts", key, {"winner": "other"})
        return {"winner": "me"}

    result = gate.get_or_create(key, True, build_payload=_payload_written_by_someone_else)

    assert result.created is False
    assert result.record is not None
    assert result.record.payload == {"winner": "other"}
    assert metering.events == []
    assert "resource.gate.lost_race" in sink.events


def test_created_record_writes_audit_event(tmp_path: Path) -> None:
    metering = _RecordingMetering()
    gate, database = _build_gate(tmp_path, metering)

    gate.get_or_create(ResourceKey(owner_id="owner_1", resource_id="vid_1"), True)

    audit_events = AuditRepository(database).list_for_owner("owner_1")
    assert [(event.collection, event.resource_id, event.feature_kind) for event in audit_events] == [
        ("transcripts", "vid_1", "transcription")
    ]


def test_meter_failure_does_not_fail_creation(tmp_path: Path) -> None:
    class _BrokenMetering(_RecordingMetering):
        def record_usage(self, event: UsageEvent) -> None:
            raise RuntimeError("metering backend down")

    gate, _ = _build_gate(tmp_path, _BrokenMetering())

    result = gate.get_or_create(ResourceKey(owner_id="owner_1", resource_id="vid_1"), True)

    assert result.created is True
    assert result.record is not None
