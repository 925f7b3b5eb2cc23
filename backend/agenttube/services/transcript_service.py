from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, cast

from backend.agenttube.repositories.resource_repository import ResourceKey
from backend.agenttube.services.resource_gate import ResourceGate
from backend.agenttube.services.transcript_provider import TranscriptProvider

LOGGER = logging.getLogger("agenttube.transcripts")

CACHE_HIT_MESSAGE = "Cached transcript reused without updating plan usage."
CACHE_MISS_MESSAGE = "Transcript saved to your library and plan usage updated for this request."


@dataclass(frozen=True)
class TranscriptResult:
    video_id: str
    segments: list[dict[str, Any]] = field(default_factory=lambda: [])
    cache: str = ""
    is_new: bool = False


class TranscriptService:
    """Read-through transcript cache; provider fetches happen only on a billed miss."""

    def __init__(self, *, gate: ResourceGate, provider: TranscriptProvider) -> None:
        self._gate = gate
        self._provider = provider

    def get_transcript(
        self,
        owner_id: str,
        video_id: str,
        *,
        should_process: bool = True,
    ) -> TranscriptResult:
        result = self._gate.get_or_create(
            ResourceKey(owner_id=owner_id, resource_id=video_id),
            should_process,
            build_payload=lambda: self._fetch_payload(video_id),
        )
        if result.record is None:
            LOGGER.info("transcript skipped owner_id=%s video_id=%s", owner_id, video_id)
            return TranscriptResult(video_id=video_id)

        LOGGER.info(
            "transcript %s owner_id=%s video_id=%s",
            "cache_miss" if result.created else "cache_hit",
            owner_id,
            video_id,
        )
        return TranscriptResult(
            video_id=video_id,
            segments=_segments_from_payload(result.record.payload),
            cache=CACHE_MISS_MESSAGE if result.created else CACHE_HIT_MESSAGE,
            is_new=result.created,
        )

    def _fetch_payload(self, video_id: str) -> dict[str, Any]:
        segments = self._provider.fetch_segments(video_id)
        return {
            "video_id": video_id,
            "segments": [segment.to_dict() for segment in segments],
        }


def _segments_from_payload(payload: dict[str, Any]) -> list[dict[str, Any]]:
    raw_segments = payload.get("segments")
    if not isinstance(raw_segments, list):
        return []
    segments: list[dict[str, Any]] = []
    for raw in cast(list[Any], raw_segments):
        if isinstance(raw, dict):
            entry = cast(dict[str, Any], raw)
            segments.append(
                {
                    "text": str(entry.get("text", "")),
                    "timestamp": str(entry.get("timestamp", "0:00")),
                }
            )
    return segments


def format_transcript_lines(segments: list[dict[str, Any]], *, limit: int) -> str:
    return "\n".join(
        f"[{segment.get('timestamp', '0:00')}] {segment.get('text', '')}"
        for segment in segments[: max(0, limit)]
    )
