from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol, TypeVar

from backend.agenttube.errors import ArtifactTimeoutError
from backend.agenttube.repositories.resource_repository import ResourceKey, ResourceRecord
from backend.agenttube.telemetry import TelemetryClient

LOGGER = logging.getLogger("agenttube.artifact_poller")

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_INTERVAL_SECONDS = 1.5

T = TypeVar("T")


class RecordReader(Protocol):
    def get(self, key: ResourceKey) -> ResourceRecord | None:
        ...


class ArtifactPoller:
    """Waits for a just-written record to expose a resolvable field.

    Store errors raised by the reader or predicate propagate unchanged; only a
    missing value at or after the deadline becomes ``ArtifactTimeoutError``.
    """

    def __init__(
        self,
        reader: RecordReader,
        *,
        telemetry: TelemetryClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._reader = reader
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._sleep = sleep
        self._clock = clock

    def wait_for_field(
        self,
        key: ResourceKey,
        field_predicate: Callable[[ResourceRecord], T | None],
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> T:
        started_at = self._clock()
        deadline = started_at + max(0.0, timeout_seconds)
        attempts = 0
        while True:
            attempts += 1
            record = self._reader.get(key)
            value = field_predicate(record) if record is not None else None
            if value is not None:
                elapsed_ms = int((self._clock() - started_at) * 1000)
                LOGGER.info(
                    "artifact resolved resource_id=%s attempts=%s elapsed_ms=%s",
                    key.resource_id,
                    attempts,
                    elapsed_ms,
                )
                self._telemetry.emit(
                    "artifact.poll.resolved",
                    resource_id=key.resource_id,
                    attempts=attempts,
                    duration_ms=elapsed_ms,
                )
                return value

            now = self._clock()
            if now >= deadline:
                LOGGER.warning(
                    "artifact poll timed out resource_id=%s attempts=%s timeout_seconds=%s",
                    key.resource_id,
                    attempts,
                    timeout_seconds,
                )
                self._telemetry.emit(
                    "artifact.poll.timeout",
                    resource_id=key.resource_id,
                    attempts=attempts,
                    timeout_seconds=timeout_seconds,
                )
                raise ArtifactTimeoutError(
                    f"artifact {key.resource_id} not resolvable after {timeout_seconds}s"
                )
            self._sleep(min(interval_seconds, max(0.0, deadline - now)))
