from __future__ import annotations

import base64
import json
import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, cast

import openai
from openai import OpenAI

from backend.agenttube.errors import (
    ContentPolicyViolationError,
    ProviderOverloadedError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ServiceError,
    translate_upstream_error,
)

LOGGER = logging.getLogger("agenttube.language_model")

MessageRole = Literal["user", "assistant", "tool"]


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    call_id: str
    name: str
    arguments: dict[str, Any]


ModelEvent = TextDelta | ToolCallRequest


@dataclass(frozen=True)
class ModelMessage:
    role: MessageRole
    content: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


class ModelStream(Protocol):
    def __iter__(self) -> Iterator[ModelEvent]:
        ...

    def close(self) -> None:
        ...


class ChatModel(Protocol):
    def stream_chat(
        self,
        *,
        system: str,
        messages: Sequence[ModelMessage],
        tools: Sequence[ToolSpec] = (),
    ) -> ModelStream:
        ...


class TextModel(Protocol):
    def complete(self, *, system: str, prompt: str) -> str:
        ...


class ImageModel(Protocol):
    def generate_image(self, prompt: str) -> bytes:
        ...


def translate_openai_error(exc: Exception) -> ServiceError:
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeoutError(str(exc))
    if isinstance(exc, openai.RateLimitError):
        return ProviderRateLimitedError(str(exc))
    if isinstance(exc, openai.APIConnectionError):
        return ProviderOverloadedError(str(exc))
    if isinstance(exc, openai.APIStatusError):
        code = getattr(exc, "code", None)
        if code == "content_policy_violation":
            return ContentPolicyViolationError(str(exc))
        if exc.status_code in {500, 502, 503, 529}:
            return ProviderOverloadedError(str(exc))
    return translate_upstream_error(exc)


class OpenAIChatStream:
    def __init__(self, stream: Any) -> None:
        self._stream = stream

    def __iter__(self) -> Iterator[ModelEvent]:
        pending: dict[int, dict[str, str]] = {}
        try:
            for chunk in self._stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield TextDelta(delta.content)
                for tool_call in delta.tool_calls or []:
                    entry = pending.setdefault(
                        tool_call.index, {"id": "", "name": "", "arguments": ""}
                    )
                    if tool_call.id:
                        entry["id"] = tool_call.id
                    if tool_call.function is not None:
                        entry["name"] += tool_call.function.name or ""
                        entry["arguments"] += tool_call.function.arguments or ""
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc

        for index in sorted(pending):
            entry = pending[index]
            yield ToolCallRequest(
                call_id=entry["id"] or f"call_{index}",
                name=entry["name"],
                arguments=_parse_arguments(entry["arguments"]),
            )

    def close(self) -> None:
        self._stream.close()


class OpenAILanguageModel:
    """Chat streaming, short completions and image generation over one SDK client."""

    def __init__(
        self,
        *,
        api_key: str,
        chat_model: str,
        title_model: str,
        image_model: str,
        image_size: str,
        timeout_seconds: float,
        max_retries: int = 2,
        client: OpenAI | None = None,
    ) -> None:
        self._client = client or OpenAI(
            api_key=api_key,
            timeout=timeout_seconds,
            max_retries=max_retries,
        )
        self._chat_model = chat_model
        self._title_model = title_model
        self._image_model = image_model
        self._image_size = image_size

    def stream_chat(
        self,
        *,
        system: str,
        messages: Sequence[ModelMessage],
        tools: Sequence[ToolSpec] = (),
    ) -> OpenAIChatStream:
        request: dict[str, Any] = {
            "model": self._chat_model,
            "messages": to_openai_messages(system, messages),
            "stream": True,
        }
        if tools:
            request["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in tools
            ]
        try:
            stream = self._client.chat.completions.create(**request)
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc
        return OpenAIChatStream(stream)

    def complete(self, *, system: str, prompt: str) -> str:
        try:
            response = self._client.chat.completions.create(
                model=self._title_model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.95,
                top_p=0.95,
                max_tokens=120,
            )
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc
        content = response.choices[0].message.content if response.choices else None
        return (content or "").strip()

    def generate_image(self, prompt: str) -> bytes:
        request: dict[str, Any] = {
            "model": self._image_model,
            "prompt": prompt,
            "n": 1,
            "size": self._image_size,
        }
        if self._image_model == "dall-e-3":
            request.update(quality="standard", style="vivid", response_format="b64_json")
        try:
            response = self._client.images.generate(**request)
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc

        image = response.data[0] if response.data else None
        encoded = image.b64_json if image is not None else None
        if not encoded:
            raise ServiceError("image response did not include b64_json data")
        LOGGER.info("image generated model=%s size=%s", self._image_model, self._image_size)
        return base64.b64decode(encoded)


def to_openai_messages(system: str, messages: Sequence[ModelMessage]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = [{"role": "system", "content": system}]
    for message in messages:
        if message.role == "tool":
            converted.append(
                {
                    "role": "tool",
                    "tool_call_id": message.tool_call_id,
                    "content": message.content or "",
                }
            )
            continue
        entry: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in message.tool_calls
            ]
        converted.append(entry)
    return converted


def _parse_arguments(raw_arguments: str) -> dict[str, Any]:
    if not raw_arguments.strip():
        return {}
    try:
        parsed = json.loads(raw_arguments)
    except json.JSONDecodeError:
        LOGGER.warning("tool call arguments were not valid JSON; ignoring them")
        return {}
    if isinstance(parsed, dict):
        return {str(key): value for key, value in cast(dict[object, Any], parsed).items()}
    return {}
