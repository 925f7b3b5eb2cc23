from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from backend.agenttube.errors import EntitlementCheckError
from backend.agenttube.repositories.common import utc_month_start_iso, utc_now_iso
from backend.agenttube.repositories.usage_repository import UsageRepository

LOGGER = logging.getLogger("agenttube.metering")

NOT_ON_PLAN_MESSAGE = (
    "This feature is not available on your current plan, please upgrade to continue."
)


class FeatureKind(StrEnum):
    ANALYSE_VIDEO = "analyse-video"
    TRANSCRIPTION = "transcription"
    TITLE_GENERATION = "title-generations"
    IMAGE_GENERATION = "image-generation"

    @property
    def label(self) -> str:
        return _FEATURE_LABELS[self]


_FEATURE_LABELS: dict[FeatureKind, str] = {
    FeatureKind.ANALYSE_VIDEO: "video analysis",
    FeatureKind.TRANSCRIPTION: "transcription",
    FeatureKind.TITLE_GENERATION: "title generation",
    FeatureKind.IMAGE_GENERATION: "thumbnail generation",
}


@dataclass(frozen=True)
class UsageEvent:
    owner_id: str
    feature_kind: FeatureKind
    timestamp: str


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class FeatureUsage:
    feature_kind: FeatureKind
    usage: int
    allocation: int | None

    @property
    def remaining(self) -> int | None:
        if self.allocation is None:
            return None
        return max(self.allocation - self.usage, 0)


class MeteringProviderError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, body: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = dict(body or {})


class MeteringProvider(Protocol):
    def check_limit(self, owner_id: str, feature_kind: FeatureKind) -> EntitlementDecision:
        ...

    def check_flag(self, owner_id: str, feature_kind: FeatureKind) -> bool:
        ...

    def feature_usage(self, owner_id: str, feature_kind: FeatureKind) -> FeatureUsage:
        ...

    def record_usage(self, event: UsageEvent) -> None:
        ...

    def identify(self, owner_id: str) -> None:
        ...


def exceeded_message(feature_kind: FeatureKind) -> str:
    return (
        f"You have reached your {feature_kind.label} limit. "
        "Please upgrade your plan to continue using this feature."
    )


def decide_from_usage(usage: FeatureUsage) -> EntitlementDecision:
    if usage.allocation is None or usage.allocation <= 0:
        return EntitlementDecision(allowed=False, reason=NOT_ON_PLAN_MESSAGE)
    if usage.usage >= usage.allocation:
        return EntitlementDecision(allowed=False, reason=exceeded_message(usage.feature_kind))
    return EntitlementDecision(allowed=True)


class LocalMeteringProvider:
    """Plan allocations from settings, usage counted per calendar month in SQLite."""

    def __init__(
        self,
        repository: UsageRepository,
        *,
        allocations: Mapping[FeatureKind, int],
    ) -> None:
        self._repository = repository
        self._allocations = dict(allocations)

    def check_limit(self, owner_id: str, feature_kind: FeatureKind) -> EntitlementDecision:
        return decide_from_usage(self.feature_usage(owner_id, feature_kind))

    def check_flag(self, owner_id: str, feature_kind: FeatureKind) -> bool:
        _ = owner_id
        return self._allocations.get(feature_kind, 0) > 0

    def feature_usage(self, owner_id: str, feature_kind: FeatureKind) -> FeatureUsage:
        allocation = self._allocations.get(feature_kind, 0)
        usage = self._repository.count_since(
            owner_id=owner_id,
            feature_kind=feature_kind.value,
            since_iso=utc_month_start_iso(),
        )
        return FeatureUsage(
            feature_kind=feature_kind,
            usage=usage,
            allocation=allocation if allocation > 0 else None,
        )

    def record_usage(self, event: UsageEvent) -> None:
        self._repository.append_event(
            owner_id=event.owner_id,
            feature_kind=event.feature_kind.value,
            occurred_at=event.timestamp,
        )

    def identify(self, owner_id: str) -> None:
        self._repository.register_identity(owner_id)


class SchematicMeteringProvider:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.schematichq.com",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    def check_limit(self, owner_id: str, feature_kind: FeatureKind) -> EntitlementDecision:
        try:
            usage = self.feature_usage(owner_id, feature_kind)
        except MeteringProviderError as exc:
            if _is_company_not_found(exc):
                LOGGER.warning(
                    "schematic company missing; allowing until first track owner_id=%s",
                    owner_id,
                )
                return EntitlementDecision(allowed=True)
            raise EntitlementCheckError(f"schematic limit check failed: {exc}") from exc
        return decide_from_usage(usage)

    def check_flag(self, owner_id: str, feature_kind: FeatureKind) -> bool:
        try:
            payload = self._request_json(
                "POST",
                f"/flags/{feature_kind.value}/check",
                body={"company": {"id": owner_id}, "user": {"id": owner_id}},
            )
        except MeteringProviderError as exc:
            LOGGER.warning(
                "schematic flag check failed owner_id=%s feature=%s status=%s",
                owner_id,
                feature_kind.value,
                exc.status_code,
            )
            return False
        data = _as_dict(payload.get("data"))
        return data.get("value") is True

    def feature_usage(self, owner_id: str, feature_kind: FeatureKind) -> FeatureUsage:
        payload = self._request_json(
            "GET",
            "/usage-by-company",
            params={"keys[id]": owner_id},
        )
        features = _as_dict(payload.get("data")).get("features")
        for raw_feature in cast(list[Any], features) if isinstance(features, list) else []:
            entry = _as_dict(raw_feature)
            feature = _as_dict(entry.get("feature"))
            subtype = feature.get("event_subtype") or feature.get("eventSubtype")
            if subtype != feature_kind.value:
                continue
            usage = entry.get("usage")
            allocation = entry.get("allocation")
            return FeatureUsage(
                feature_kind=feature_kind,
                usage=usage if isinstance(usage, int) else 0,
                allocation=allocation if isinstance(allocation, int) else None,
            )
        return FeatureUsage(feature_kind=feature_kind, usage=0, allocation=None)

    def record_usage(self, event: UsageEvent) -> None:
        self._request_json(
            "POST",
            "/events",
            body={
                "event_type": "track",
                "body": {
                    "event": event.feature_kind.value,
                    "company": {"id": event.owner_id},
                    "user": {"userId": event.owner_id},
                    "sent_at": event.timestamp,
                },
            },
        )

    def identify(self, owner_id: str) -> None:
        self._request_json(
            "POST",
            "/events",
            body={
                "event_type": "identify",
                "body": {
                    "company": {"keys": {"id": owner_id}},
                    "keys": {"userId": owner_id},
                    "sent_at": utc_now_iso(),
                },
            },
        )

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        query = urlencode(dict(params or {}))
        url = f"{self._base_url}{path}"
        if query:
            url = f"{url}?{query}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = Request(
            url,
            data=data,
            headers={
                "X-Schematic-Api-Key": self._api_key,
                "accept": "application/json",
                "content-type": "application/json",
                "user-agent": "agenttube/1.0",
            },
            method=method,
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw_body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            error_body = _parse_json_dict(exc.read().decode("utf-8", errors="replace"))
            raise MeteringProviderError(
                f"schematic request failed status={exc.code} path={path}",
                status_code=int(exc.code),
                body=error_body,
            ) from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise MeteringProviderError(f"schematic request failed path={path}: {exc}") from exc
        return _parse_json_dict(raw_body)


def _is_company_not_found(exc: MeteringProviderError) -> bool:
    if exc.status_code != 404:
        return False
    message = exc.body.get("error")
    return isinstance(message, str) and message.strip().lower() == "company not found"


def _parse_json_dict(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    return _as_dict(parsed)


def _as_dict(value: object) -> dict[str, Any]:
    if isinstance(value, dict):
        return {str(key): item for key, item in cast(dict[object, Any], value).items()}
    return {}
