from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from backend.agenttube.errors import classify_error
from backend.agenttube.repositories.resource_repository import ResourceKey
from backend.agenttube.services.resource_gate import ResourceGate
from backend.agenttube.services.video_details import VideoDetailsLookup

LOGGER = logging.getLogger("agenttube.videos")


@dataclass(frozen=True)
class VideoOutcome:
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    is_new: bool | None = None


class VideoService:
    def __init__(self, *, gate: ResourceGate, details: VideoDetailsLookup) -> None:
        self._gate = gate
        self._details = details

    def get_or_create(self, owner_id: str, video_id: str, *, should_process: bool) -> VideoOutcome:
        try:
            result = self._gate.get_or_create(
                ResourceKey(owner_id=owner_id, resource_id=video_id),
                should_process,
                build_payload=lambda: self._build_payload(video_id),
            )
        except Exception as exc:
            classified = classify_error(exc)
            LOGGER.warning(
                "video get_or_create failed owner_id=%s video_id=%s kind=%s",
                owner_id,
                video_id,
                classified.kind.value,
                exc_info=True,
            )
            return VideoOutcome(success=False, error=classified.user_message)

        if result.record is None:
            return VideoOutcome(success=True, data=None, is_new=False)
        data = {
            "videoId": video_id,
            "userId": owner_id,
            "createdAt": result.record.created_at,
            **result.record.payload,
        }
        return VideoOutcome(success=True, data=data, is_new=result.created)

    def _build_payload(self, video_id: str) -> dict[str, Any]:
        details = self._details.get(video_id)
        payload: dict[str, Any] = {"video_id": video_id}
        if details is not None:
            payload["details"] = details.to_dict()
        return payload
