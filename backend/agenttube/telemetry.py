from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any, Literal, Protocol

import structlog

from backend.agenttube.errors import classify_error

TELEMETRY_LOGGER_NAME = "agenttube.telemetry"
REDACTED = "[redacted]"

# Attribute keys containing any of these are never forwarded to a sink.
_SENSITIVE_KEY_TOKENS: tuple[str, ...] = (
    "api_key",
    "authorization",
    "content",
    "cookie",
    "image_bytes",
    "message_text",
    "messages",
    "payload",
    "prompt",
    "secret",
    "token",
    "transcript",
)
_MAX_STRING_LENGTH = 160

TelemetryValue = bool | int | float | str | None


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    """Writes each event as one structlog record on the telemetry logger."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    """Named-event emitter shared by the HTTP layer, the gate, the poller and chat.

    ``bind`` returns a client that adds fixed attributes (a turn id, a tool name)
    to every event. Attributes are sanitized before they reach the sink.
    """

    enabled: bool
    sink: TelemetrySink
    base_attributes: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def bind(self, **attributes: Any) -> TelemetryClient:
        return TelemetryClient(
            enabled=self.enabled,
            sink=self.sink,
            base_attributes={**self.base_attributes, **attributes},
        )

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        merged = {**self.base_attributes, **attributes}
        self.sink.emit(event_name=event_name, attributes=sanitize_attributes(merged))

    def emit_error(self, event_name: str, exc: BaseException, **attributes: Any) -> None:
        if not self.enabled:
            return
        self.emit(
            event_name,
            error_type=type(exc).__name__,
            error_kind=classify_error(exc).kind,
            **attributes,
        )


def elapsed_ms(started_at: float) -> int:
    return int((perf_counter() - started_at) * 1000)


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())

    logging.getLogger(TELEMETRY_LOGGER_NAME).warning(
        "unsupported telemetry sink requested; disabling telemetry sink=%s",
        sink,
    )
    return TelemetryClient.disabled()


def is_sensitive_key(key: str) -> bool:
    return any(token in key for token in _SENSITIVE_KEY_TOKENS)


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    sanitized: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        sanitized[key] = REDACTED if is_sensitive_key(key) else _sanitize_value(raw_value)
    return sanitized


def _sanitize_value(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, Enum):
        return _sanitize_value(value.value)
    if isinstance(value, str):
        compact = " ".join(value.split())
        if len(compact) <= _MAX_STRING_LENGTH:
            return compact
        return f"{compact[:_MAX_STRING_LENGTH]}..."
    return type(value).__name__
