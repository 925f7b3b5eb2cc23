from __future__ import annotations

import logging
from dataclasses import dataclass
from time import perf_counter
from typing import Any

from backend.agenttube.errors import ErrorKind, classify_error
from backend.agenttube.models.tool_contracts import (
    CHAT_TOOLS,
    ChatToolName,
    ToolError,
    ToolInvocation,
)
from backend.agenttube.services.language_model import ToolCallRequest, ToolSpec
from backend.agenttube.services.metering import FeatureKind, MeteringProvider
from backend.agenttube.services.prompts import (
    VideoContext,
    fallback_thumbnail_prompt,
    fallback_title_instruction,
)
from backend.agenttube.services.thumbnail_service import ThumbnailService
from backend.agenttube.services.title_service import TitleService
from backend.agenttube.services.transcript_service import TranscriptService
from backend.agenttube.telemetry import TelemetryClient, elapsed_ms

LOGGER = logging.getLogger("agenttube.tools")

TOOL_DESCRIPTIONS: dict[ChatToolName, str] = {
    "fetchTranscript": (
        "Fetch the transcript of the current video. Reuses the saved copy when one exists."
    ),
    "generateTitle": (
        "Generate a YouTube-ready title for the current video. Pass the desired tone or "
        "angle as the prompt."
    ),
    "generateImage": (
        "Generate a YouTube thumbnail for the current video. Pass a detailed visual "
        "description as the prompt, or omit it for a default design."
    ),
}

TOOL_PARAMETERS: dict[ChatToolName, dict[str, Any]] = {
    "fetchTranscript": {
        "type": "object",
        "properties": {
            "videoId": {"type": "string", "description": "Optional; defaults to the current video."}
        },
    },
    "generateTitle": {
        "type": "object",
        "properties": {
            "prompt": {
                "type": "string",
                "description": "Tone, style or angle for the title, e.g. 'make it funny'.",
            }
        },
    },
    "generateImage": {
        "type": "object",
        "properties": {
            "prompt": {
                "type": "string",
                "description": "Detailed description of the thumbnail to generate.",
            }
        },
    },
}

BILLABLE_FEATURES: dict[ChatToolName, FeatureKind] = {
    "fetchTranscript": FeatureKind.TRANSCRIPTION,
    "generateTitle": FeatureKind.TITLE_GENERATION,
    "generateImage": FeatureKind.IMAGE_GENERATION,
}

_UPGRADE_MESSAGES: dict[FeatureKind, str] = {
    FeatureKind.TITLE_GENERATION: (
        "Title generation is not enabled on your plan yet. Upgrade your plan to unlock it."
    ),
    FeatureKind.IMAGE_GENERATION: (
        "Thumbnail generation is not enabled on your plan yet. Upgrade your plan to unlock it."
    ),
}


@dataclass(frozen=True)
class ToolContext:
    owner_id: str
    video: VideoContext
    # Seconds left in the chat turn; caps any waiting a tool does.
    time_budget_seconds: float | None = None


class ChatToolDispatcher:
    """Runs model-requested tools and always returns a result the model can relay.

    Failures are classified into friendly ``ToolError`` payloads instead of raising,
    so one failing tool never aborts the surrounding chat turn.
    """

    def __init__(
        self,
        *,
        transcript_service: TranscriptService,
        title_service: TitleService,
        thumbnail_service: ThumbnailService,
        entitlements: MeteringProvider,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._transcript_service = transcript_service
        self._title_service = title_service
        self._thumbnail_service = thumbnail_service
        self._entitlements = entitlements
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def tool_specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(name=name, description=TOOL_DESCRIPTIONS[name], parameters=TOOL_PARAMETERS[name])
            for name in CHAT_TOOLS
        ]

    def execute(self, call: ToolCallRequest, context: ToolContext) -> ToolInvocation:
        started_at = perf_counter()
        telemetry = self._telemetry.bind(tool_name=call.name, call_id=call.call_id)
        telemetry.emit("tool.execute.start", owner_id=context.owner_id, video_id=context.video.video_id)
        try:
            invocation = self._execute_tool(call, context)
        except Exception as exc:
            classified = classify_error(exc)
            LOGGER.warning(
                "tool failed tool=%s video_id=%s kind=%s",
                call.name,
                context.video.video_id,
                classified.kind.value,
                exc_info=True,
            )
            telemetry.emit_error("tool.execute.error", exc, duration_ms=elapsed_ms(started_at))
            return ToolInvocation(
                call_id=call.call_id,
                tool_name=call.name,
                input=call.arguments,
                error=ToolError(
                    code=classified.kind.value,
                    message=classified.user_message,
                    retryable=classified.retryable,
                    upgrade_required=classified.kind == ErrorKind.QUOTA_EXCEEDED,
                ),
            )

        telemetry.emit(
            "tool.execute.finish",
            duration_ms=elapsed_ms(started_at),
            outcome="ok" if invocation.ok else "error",
        )
        return invocation

    def _execute_tool(self, call: ToolCallRequest, context: ToolContext) -> ToolInvocation:
        if call.name == "fetchTranscript":
            return self._handle_fetch_transcript(call, context)
        if call.name == "generateTitle":
            return self._handle_generate_title(call, context)
        if call.name == "generateImage":
            return self._handle_generate_image(call, context)
        return ToolInvocation(
            call_id=call.call_id,
            tool_name=call.name,
            input=call.arguments,
            error=ToolError(code="unknown_tool", message=f"Tool {call.name} is not available."),
        )

    def _handle_fetch_transcript(self, call: ToolCallRequest, context: ToolContext) -> ToolInvocation:
        result = self._transcript_service.get_transcript(
            context.owner_id,
            context.video.video_id,
            should_process=True,
        )
        return ToolInvocation(
            call_id=call.call_id,
            tool_name=call.name,
            input=call.arguments,
            result={
                "videoId": result.video_id,
                "cache": result.cache,
                "transcript": result.segments,
            },
        )

    def _handle_generate_title(self, call: ToolCallRequest, context: ToolContext) -> ToolInvocation:
        denied = self._upgrade_required(call, context, FeatureKind.TITLE_GENERATION)
        if denied is not None:
            return denied

        custom_prompt = _prompt_argument(call.arguments)
        instructions = custom_prompt or fallback_title_instruction(context.video)
        generated = self._title_service.generate(context.owner_id, context.video, instructions)
        result: dict[str, Any] = {"title": generated.title}
        if custom_prompt is None:
            result["message"] = (
                "No custom tone detected, so a balanced SEO title was generated automatically."
            )
        return ToolInvocation(
            call_id=call.call_id,
            tool_name=call.name,
            input=call.arguments,
            result=result,
        )

    def _handle_generate_image(self, call: ToolCallRequest, context: ToolContext) -> ToolInvocation:
        denied = self._upgrade_required(call, context, FeatureKind.IMAGE_GENERATION)
        if denied is not None:
            return denied

        custom_prompt = _prompt_argument(call.arguments)
        prompt = custom_prompt or fallback_thumbnail_prompt(context.video)
        image = self._thumbnail_service.generate(
            context.owner_id,
            context.video.video_id,
            prompt,
            max_wait_seconds=context.time_budget_seconds,
        )
        result: dict[str, Any] = {
            "image": {"imageUrl": image.image_url, "storageId": image.storage_id}
        }
        if custom_prompt is None:
            result["message"] = "No custom prompt detected, so a default thumbnail prompt was used."
        return ToolInvocation(
            call_id=call.call_id,
            tool_name=call.name,
            input=call.arguments,
            result=result,
        )

    def _upgrade_required(
        self,
        call: ToolCallRequest,
        context: ToolContext,
        feature_kind: FeatureKind,
    ) -> ToolInvocation | None:
        if self._entitlements.check_flag(context.owner_id, feature_kind):
            return None
        LOGGER.info(
            "tool feature disabled tool=%s owner_id=%s feature=%s",
            call.name,
            context.owner_id,
            feature_kind.value,
        )
        return ToolInvocation(
            call_id=call.call_id,
            tool_name=call.name,
            input=call.arguments,
            error=ToolError(
                code="upgrade_required",
                message=_UPGRADE_MESSAGES[feature_kind],
                upgrade_required=True,
            ),
        )


def _prompt_argument(arguments: dict[str, Any]) -> str | None:
    raw_prompt = arguments.get("prompt")
    if isinstance(raw_prompt, str) and raw_prompt.strip():
        return raw_prompt.strip()
    return None
