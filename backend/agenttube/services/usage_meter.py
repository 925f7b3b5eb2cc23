from __future__ import annotations

import logging

from backend.agenttube.repositories.common import utc_now_iso
from backend.agenttube.services.bounded_cache import BoundedTTLCache
from backend.agenttube.services.metering import FeatureKind, MeteringProvider, UsageEvent
from backend.agenttube.telemetry import TelemetryClient

LOGGER = logging.getLogger("agenttube.usage")


class UsageMeter:
    """Best-effort billing emitter; nothing it does may fail the caller."""

    def __init__(
        self,
        provider: MeteringProvider,
        *,
        identity_cache: BoundedTTLCache[str, bool],
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._provider = provider
        self._identity_cache = identity_cache
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def record_usage(self, owner_id: str, feature_kind: FeatureKind) -> bool:
        self._ensure_identity(owner_id)
        event = UsageEvent(owner_id=owner_id, feature_kind=feature_kind, timestamp=utc_now_iso())
        try:
            self._provider.record_usage(event)
        except Exception as exc:
            LOGGER.warning(
                "usage record failed owner_id=%s feature=%s",
                owner_id,
                feature_kind.value,
                exc_info=True,
            )
            self._telemetry.emit_error(
                "usage.record.error",
                exc,
                owner_id=owner_id,
                feature=feature_kind,
            )
            return False

        LOGGER.info("usage recorded owner_id=%s feature=%s", owner_id, feature_kind.value)
        self._telemetry.emit("usage.record.ok", owner_id=owner_id, feature=feature_kind)
        return True

    def _ensure_identity(self, owner_id: str) -> None:
        if self._identity_cache.get(owner_id):
            return
        try:
            self._provider.identify(owner_id)
        except Exception as exc:
            LOGGER.warning("metering identify failed owner_id=%s", owner_id, exc_info=True)
            self._telemetry.emit_error("usage.identify.error", exc, owner_id=owner_id)
            return
        self._identity_cache.set(owner_id, True)
