from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from backend.agenttube.errors import QuotaExceededError
from backend.agenttube.repositories.audit_repository import AuditRepository
from backend.agenttube.repositories.resource_repository import (
    ResourceKey,
    ResourceRecord,
    ResourceRepository,
)
from backend.agenttube.services.metering import FeatureKind, MeteringProvider
from backend.agenttube.services.usage_meter import UsageMeter
from backend.agenttube.telemetry import TelemetryClient

LOGGER = logging.getLogger("agenttube.resource_gate")

PayloadBuilder = Callable[[], dict[str, Any]]


@dataclass(frozen=True)
class GateResult:
    record: ResourceRecord | None
    created: bool


class ResourceGate:
    """Idempotent get-or-create over one collection of keyed records.

    Billing follows the insert outcome only: the meter fires once per call that
    actually created the row, strictly after the insert, and never on a lost race.
    """

    def __init__(
        self,
        *,
        collection: str,
        feature_kind: FeatureKind,
        repository: ResourceRepository,
        entitlements: MeteringProvider,
        usage_meter: UsageMeter,
        audit_repository: AuditRepository | None = None,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._collection = collection
        self._feature_kind = feature_kind
        self._repository = repository
        self._entitlements = entitlements
        self._usage_meter = usage_meter
        self._audit_repository = audit_repository
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    @property
    def collection(self) -> str:
        return self._collection

    @property
    def feature_kind(self) -> FeatureKind:
        return self._feature_kind

    def get(self, key: ResourceKey) -> ResourceRecord | None:
        return self._repository.get(self._collection, key)

    def list_for_owner(
        self,
        owner_id: str,
        *,
        resource_prefix: str | None = None,
        limit: int = 50,
    ) -> list[ResourceRecord]:
        return self._repository.list_for_owner(
            self._collection,
            owner_id,
            resource_prefix=resource_prefix,
            limit=limit,
        )

    def ensure_allowed(self, owner_id: str, *, resource_id: str | None = None) -> None:
        """Raise ``QuotaExceededError`` when the owner may not create another record.

        Callers that pay for provider work before the insert run this first;
        ``get_or_create`` repeats it on the create path.
        """
        decision = self._entitlements.check_limit(owner_id, self._feature_kind)
        if decision.allowed:
            return
        LOGGER.info(
            "resource gate quota_exceeded collection=%s owner_id=%s feature=%s",
            self._collection,
            owner_id,
            self._feature_kind.value,
        )
        self._telemetry.emit(
            "resource.gate.quota_exceeded",
            collection=self._collection,
            owner_id=owner_id,
            resource_id=resource_id,
            feature=self._feature_kind.value,
        )
        raise QuotaExceededError(
            f"{self._feature_kind.value} limit reached for {owner_id}",
            user_message=decision.reason,
        )

    def get_or_create(
        self,
        key: ResourceKey,
        should_create_if_missing: bool,
        build_payload: PayloadBuilder | None = None,
    ) -> GateResult:
        existing = self._repository.get(self._collection, key)
        if existing is not None:
            self._emit("resource.gate.hit", key)
            return GateResult(record=existing, created=False)

        if not should_create_if_missing:
            self._emit("resource.gate.skip", key)
            return GateResult(record=None, created=False)

        self.ensure_allowed(key.owner_id, resource_id=key.resource_id)

        payload = build_payload() if build_payload is not None else {}
        record, inserted = self._repository.insert_if_absent(self._collection, key, payload)
        if not inserted:
            LOGGER.info(
                "resource gate lost_race collection=%s owner_id=%s resource_id=%s",
                self._collection,
                key.owner_id,
                key.resource_id,
            )
            self._emit("resource.gate.lost_race", key)
            return GateResult(record=record, created=False)

        LOGGER.info(
            "resource gate created collection=%s owner_id=%s resource_id=%s",
            self._collection,
            key.owner_id,
            key.resource_id,
        )
        self._emit("resource.gate.created", key)
        self._usage_meter.record_usage(key.owner_id, self._feature_kind)
        self._record_audit(key)
        return GateResult(record=record, created=True)

    def _record_audit(self, key: ResourceKey) -> None:
        if self._audit_repository is None:
            return
        try:
            self._audit_repository.record_creation(
                owner_id=key.owner_id,
                collection=self._collection,
                resource_id=key.resource_id,
                feature_kind=self._feature_kind.value,
            )
        except Exception:
            LOGGER.warning(
                "resource gate audit write failed collection=%s resource_id=%s",
                self._collection,
                key.resource_id,
                exc_info=True,
            )

    def _emit(self, event_name: str, key: ResourceKey) -> None:
        self._telemetry.emit(
            event_name,
            collection=self._collection,
            owner_id=key.owner_id,
            resource_id=key.resource_id,
            feature=self._feature_kind.value,
        )
