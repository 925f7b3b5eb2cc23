from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from backend.agenttube.errors import ServiceError
from backend.agenttube.repositories.resource_repository import ResourceKey
from backend.agenttube.services.language_model import TextModel
from backend.agenttube.services.prompts import TITLE_SYSTEM_PROMPT, VideoContext, title_prompt
from backend.agenttube.services.resource_gate import ResourceGate

LOGGER = logging.getLogger("agenttube.titles")


@dataclass(frozen=True)
class GeneratedTitle:
    title_id: str
    video_id: str
    title: str
    created_at: str


class TitleService:
    def __init__(self, *, gate: ResourceGate, model: TextModel) -> None:
        self._gate = gate
        self._model = model

    def generate(self, owner_id: str, video: VideoContext, instructions: str) -> GeneratedTitle:
        self._gate.ensure_allowed(owner_id, resource_id=video.video_id)
        title = self._model.complete(
            system=TITLE_SYSTEM_PROMPT,
            prompt=title_prompt(video, instructions),
        ).strip().strip('"')
        if not title:
            raise ServiceError("title model returned an empty title")

        title_id = f"title_{uuid4().hex}"
        result = self._gate.get_or_create(
            ResourceKey.for_artifact(owner_id, video.video_id, title_id),
            True,
            build_payload=lambda: {
                "video_id": video.video_id,
                "title": title,
                "instructions": instructions,
            },
        )
        if result.record is None:
            raise ServiceError(f"title record missing after create title_id={title_id}")
        LOGGER.info("title generated owner_id=%s video_id=%s", owner_id, video.video_id)
        return GeneratedTitle(
            title_id=title_id,
            video_id=video.video_id,
            title=title,
            created_at=result.record.created_at,
        )

    def list_titles(self, owner_id: str, video_id: str) -> list[GeneratedTitle]:
        records = self._gate.list_for_owner(owner_id, resource_prefix=f"{video_id}:")
        return [
            GeneratedTitle(
                title_id=record.key.resource_id.split(":", 1)[-1],
                video_id=video_id,
                title=str(record.payload.get("title", "")),
                created_at=record.created_at,
            )
            for record in records
        ]
