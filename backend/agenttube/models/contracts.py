from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

_RESOURCE_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


def _validate_resource_id(value: str | None) -> str | None:
    if value is None:
        return None
    if not _RESOURCE_ID_PATTERN.fullmatch(value):
        raise ValueError("video id contains unsupported characters")
    return value


class TranscriptRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    resource_id: str = Field(validation_alias=AliasChoices("resourceId", "videoId", "resource_id"))
    should_process: bool = Field(
        default=True,
        validation_alias=AliasChoices("shouldProcess", "should_process"),
    )

    @field_validator("resource_id", mode="before")
    @classmethod
    def _normalize_resource_id(cls, value: object) -> str:
        normalized = _validate_resource_id(_normalize_optional_text(value))
        if normalized is None:
            raise ValueError("resourceId is required")
        return normalized


class TranscriptSegmentPayload(BaseModel):
    text: str
    timestamp: str


class TranscriptResponse(BaseModel):
    transcript: list[TranscriptSegmentPayload]
    cache: str
    is_new: bool = Field(serialization_alias="isNew")


class VideoRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    video_id: str = Field(validation_alias=AliasChoices("videoId", "resourceId", "video_id"))
    should_process: bool = Field(
        default=True,
        validation_alias=AliasChoices("shouldProcess", "should_process"),
    )

    @field_validator("video_id", mode="before")
    @classmethod
    def _normalize_video_id(cls, value: object) -> str:
        normalized = _validate_resource_id(_normalize_optional_text(value))
        if normalized is None:
            raise ValueError("videoId is required")
        return normalized


class VideoResponse(BaseModel):
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    is_new: bool | None = Field(default=None, serialization_alias="isNew")


class ChatMessagePart(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "text"
    text: str | None = None


class ChatMessagePayload(BaseModel):
    """Accepts plain ``content`` strings or UI-style ``parts`` lists."""

    model_config = ConfigDict(extra="ignore")

    role: Literal["user", "assistant", "system", "tool"]
    content: str | None = None
    parts: list[ChatMessagePart] | None = None

    def text(self) -> str:
        if self.content and self.content.strip():
            return self.content.strip()
        if not self.parts:
            return ""
        return "".join(part.text or "" for part in self.parts if part.type == "text").strip()


def _default_chat_messages() -> list[ChatMessagePayload]:
    return []


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    session_id: str | None = Field(
        default=None,
        max_length=120,
        validation_alias=AliasChoices("sessionId", "id", "session_id"),
    )
    resource_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("resourceId", "videoId", "resource_id"),
    )
    messages: list[ChatMessagePayload] = Field(default_factory=_default_chat_messages)

    @field_validator("session_id", mode="before")
    @classmethod
    def _normalize_session_id(cls, value: object) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("resource_id", mode="before")
    @classmethod
    def _normalize_resource_id(cls, value: object) -> str | None:
        return _validate_resource_id(_normalize_optional_text(value))

    def message_dicts(self) -> list[dict[str, str]]:
        return [
            {"role": message.role, "content": message.text()}
            for message in self.messages
            if message.role in {"user", "assistant"}
        ]


class ErrorResponse(BaseModel):
    error: str


class TitlePayload(BaseModel):
    title_id: str = Field(serialization_alias="titleId")
    video_id: str = Field(serialization_alias="videoId")
    title: str
    created_at: str = Field(serialization_alias="createdAt")


class TitleListResponse(BaseModel):
    titles: list[TitlePayload]


class ImagePayload(BaseModel):
    storage_id: str = Field(serialization_alias="storageId")
    video_id: str = Field(serialization_alias="videoId")
    image_url: str | None = Field(serialization_alias="imageUrl")
    prompt: str
    created_at: str = Field(serialization_alias="createdAt")


class ImageListResponse(BaseModel):
    images: list[ImagePayload]


class FeatureUsagePayload(BaseModel):
    feature: str
    label: str
    usage: int
    allocation: int | None
    remaining: int | None
    enabled: bool


class UsageResponse(BaseModel):
    owner_id: str = Field(serialization_alias="ownerId")
    features: list[FeatureUsagePayload]
