from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from backend.agenttube.errors import ServiceError
from backend.agenttube.repositories.resource_repository import ResourceKey, ResourceRecord
from backend.agenttube.services.artifact_poller import ArtifactPoller
from backend.agenttube.services.language_model import ImageModel
from backend.agenttube.services.resource_gate import ResourceGate

LOGGER = logging.getLogger("agenttube.thumbnails")

IMAGE_CONTENT_TYPE = "image/png"


class BlobStore(Protocol):
    def upload(self, data: bytes, *, content_type: str) -> str:
        ...

    def resolve_url(self, reference: str) -> str | None:
        ...


@dataclass(frozen=True)
class GeneratedImage:
    storage_id: str
    video_id: str
    image_url: str | None
    prompt: str
    created_at: str


class ThumbnailService:
    """Generate -> upload -> save metadata -> wait for the public URL.

    The record is created (and billed) before the URL exists; an
    ``ArtifactTimeoutError`` therefore means "saved, still processing".
    """

    def __init__(
        self,
        *,
        gate: ResourceGate,
        model: ImageModel,
        object_store: BlobStore,
        poller: ArtifactPoller,
        poll_timeout_seconds: float,
        poll_interval_seconds: float,
    ) -> None:
        self._gate = gate
        self._model = model
        self._object_store = object_store
        self._poller = poller
        self._poll_timeout_seconds = poll_timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds

    def generate(
        self,
        owner_id: str,
        video_id: str,
        prompt: str,
        *,
        max_wait_seconds: float | None = None,
    ) -> GeneratedImage:
        self._gate.ensure_allowed(owner_id, resource_id=video_id)
        image_bytes = self._model.generate_image(prompt)
        storage_id = self._object_store.upload(image_bytes, content_type=IMAGE_CONTENT_TYPE)
        key = ResourceKey.for_artifact(owner_id, video_id, storage_id)

        result = self._gate.get_or_create(
            key,
            True,
            build_payload=lambda: {
                "video_id": video_id,
                "storage_id": storage_id,
                "prompt": prompt,
            },
        )
        if result.record is None:
            raise ServiceError(f"image record missing after create storage_id={storage_id}")

        poll_timeout_seconds = self._poll_timeout_seconds
        if max_wait_seconds is not None:
            poll_timeout_seconds = max(0.0, min(poll_timeout_seconds, max_wait_seconds))
        image_url = self._poller.wait_for_field(
            key,
            self._resolve_record_url,
            timeout_seconds=poll_timeout_seconds,
            interval_seconds=self._poll_interval_seconds,
        )
        LOGGER.info(
            "thumbnail generated owner_id=%s video_id=%s storage_id=%s",
            owner_id,
            video_id,
            storage_id,
        )
        return GeneratedImage(
            storage_id=storage_id,
            video_id=video_id,
            image_url=image_url,
            prompt=prompt,
            created_at=result.record.created_at,
        )

    def list_images(self, owner_id: str, video_id: str) -> list[GeneratedImage]:
        records = self._gate.list_for_owner(owner_id, resource_prefix=f"{video_id}:")
        return [
            GeneratedImage(
                storage_id=str(record.payload.get("storage_id", "")),
                video_id=video_id,
                image_url=self._resolve_record_url(record),
                prompt=str(record.payload.get("prompt", "")),
                created_at=record.created_at,
            )
            for record in records
        ]

    def _resolve_record_url(self, record: ResourceRecord) -> str | None:
        storage_id = record.payload.get("storage_id")
        if not isinstance(storage_id, str) or not storage_id:
            return None
        return self._object_store.resolve_url(storage_id)
