from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from backend.agenttube.errors import (
    ErrorKind,
    ProviderRateLimitedError,
    ServiceError,
    TranscriptProviderError,
    TranscriptUnavailableError,
    classify_provider_signal,
    translate_upstream_error,
)

LOGGER = logging.getLogger("agenttube.transcripts")

SUPADATA_PENDING_JOB_STATUSES: frozenset[str] = frozenset(
    {"queued", "pending", "processing", "running", "in_progress", "in progress"}
)


@dataclass(frozen=True)
class TranscriptSegment:
    text: str
    start_seconds: float | None

    @property
    def timestamp(self) -> str:
        return format_timestamp(self.start_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "timestamp": self.timestamp, "start": self.start_seconds}


class TranscriptProvider(Protocol):
    def fetch_segments(self, video_id: str) -> list[TranscriptSegment]:
        ...


def format_timestamp(start_seconds: float | None) -> str:
    if start_seconds is None:
        return "0:00"
    total = int(max(0.0, start_seconds))
    minutes, seconds = divmod(total, 60)
    return f"{minutes}:{seconds:02d}"


class SupadataTranscriptProvider:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.supadata.ai/v1",
        mode: str = "native",
        lang: str = "en",
        http_timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 1.0,
        poll_max_attempts: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._mode = mode
        self._lang = lang
        self._http_timeout_seconds = http_timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._poll_max_attempts = max(1, poll_max_attempts)
        self._sleep = sleep

    def fetch_segments(self, video_id: str) -> list[TranscriptSegment]:
        status_code, payload = self._fetch_json(
            f"{self._base_url}/transcript",
            params={
                "url": f"https://www.youtube.com/watch?v={video_id}",
                "text": "false",
                "mode": self._mode,
                "lang": self._lang,
            },
        )

        if status_code == 202:
            job_id = _extract_job_id(payload)
            if job_id is None:
                raise TranscriptProviderError(
                    "Supadata transcript job was accepted but no job ID was returned."
                )
            status_code, payload = self._poll_job(job_id)

        _raise_for_status(status_code, payload)

        segments = _extract_segments(payload)
        if not segments:
            LOGGER.info("transcript unavailable video_id=%s status=%s", video_id, status_code)
            raise TranscriptUnavailableError(f"no transcript segments for video {video_id}")
        LOGGER.info("transcript fetched video_id=%s segments=%s", video_id, len(segments))
        return segments

    def _poll_job(self, job_id: str) -> tuple[int, dict[str, Any]]:
        for attempt in range(self._poll_max_attempts):
            status_code, payload = self._fetch_json(
                f"{self._base_url}/transcript/{job_id}",
                params=None,
            )
            if status_code >= 400:
                return status_code, payload

            job_status = _extract_job_status(payload)
            if job_status in SUPADATA_PENDING_JOB_STATUSES:
                if attempt < self._poll_max_attempts - 1:
                    self._sleep(self._poll_interval_seconds)
                    continue
                break
            return 200, payload

        raise TranscriptProviderError(f"Supadata transcript job {job_id} timed out before completion.")

    def _fetch_json(
        self,
        url: str,
        *,
        params: dict[str, str] | None,
    ) -> tuple[int, dict[str, Any]]:
        query = urlencode(params or {})
        request = Request(
            f"{url}?{query}" if query else url,
            headers={
                "x-api-key": self._api_key,
                "accept": "application/json",
                "user-agent": "agenttube/1.0",
            },
            method="GET",
        )
        try:
            with urlopen(request, timeout=self._http_timeout_seconds) as response:
                status_code = int(response.getcode() or 0)
                raw_body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            status_code = int(exc.code)
            raw_body = exc.read().decode("utf-8", errors="replace")
        except (URLError, TimeoutError, OSError) as exc:
            raise _provider_failure(
                translate_upstream_error(exc),
                f"Supadata request failed: {exc}",
            ) from exc
        return status_code, _parse_json_dict(raw_body)


def _raise_for_status(status_code: int, payload: dict[str, Any]) -> None:
    if status_code < 400:
        return
    message = _extract_error_message(payload) or f"Supadata request failed (status {status_code})."
    if status_code == 429:
        raise ProviderRateLimitedError(message)
    if status_code == 404 or _is_transcript_unavailable(payload):
        raise TranscriptUnavailableError(message)
    raise _provider_failure(classify_provider_signal(message=message, status_code=status_code), message)


def _provider_failure(translated: ServiceError, message: str) -> ServiceError:
    if translated.kind is ErrorKind.UNKNOWN:
        return TranscriptProviderError(message)
    return translated


def _containers(payload: dict[str, Any]) -> tuple[dict[str, Any], ...]:
    return (payload, _as_dict(payload.get("data")), _as_dict(payload.get("result")))


def _extract_segments(payload: dict[str, Any]) -> list[TranscriptSegment]:
    for container in _containers(payload):
        for key in ("content", "segments"):
            segments = _normalize_segments(container.get(key))
            if segments:
                return segments
    return []


def _normalize_segments(raw_segments: object) -> list[TranscriptSegment]:
    if not isinstance(raw_segments, list):
        return []
    segments: list[TranscriptSegment] = []
    for raw_segment in cast(list[Any], raw_segments):
        segment = _as_dict(raw_segment)
        text = _coerce_nonempty_string(segment.get("text")) or _coerce_nonempty_string(
            segment.get("content")
        )
        if text is None:
            continue
        start = _coerce_time(segment.get("offset"), milliseconds=True)
        if start is None:
            start = _coerce_time(segment.get("start"), milliseconds=False)
        if start is None:
            start = _coerce_time(segment.get("offsetMs"), milliseconds=True)
        segments.append(TranscriptSegment(text=text, start_seconds=start))
    return segments


def _coerce_time(raw_value: object, *, milliseconds: bool) -> float | None:
    numeric: float | None = None
    if isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, int | float):
        numeric = float(raw_value)
    elif isinstance(raw_value, str):
        try:
            numeric = float(raw_value.strip())
        except ValueError:
            return None
    if numeric is None:
        return None
    if milliseconds:
        numeric /= 1000.0
    return max(0.0, numeric)


def _extract_job_id(payload: dict[str, Any]) -> str | None:
    for container in _containers(payload):
        for key in ("jobId", "job_id", "id"):
            value = _coerce_nonempty_string(container.get(key))
            if value is not None:
                return value
    return None


def _extract_job_status(payload: dict[str, Any]) -> str | None:
    for container in _containers(payload):
        raw_status = _coerce_nonempty_string(container.get("status"))
        if raw_status is not None:
            return raw_status.lower()
    return None


def _extract_error_message(payload: dict[str, Any]) -> str | None:
    for container in _containers(payload):
        for key in ("message", "detail", "error"):
            value = container.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            nested = _as_dict(value).get("message")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return None


def _is_transcript_unavailable(payload: dict[str, Any]) -> bool:
    for container in _containers(payload):
        for key in ("error", "message", "detail", "details"):
            value = container.get(key)
            if not isinstance(value, str):
                continue
            normalized = value.strip().lower()
            if "transcript-unavailable" in normalized or "transcript unavailable" in normalized:
                return True
    return False


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


def _coerce_nonempty_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
