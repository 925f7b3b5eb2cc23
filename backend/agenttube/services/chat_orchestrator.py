from __future__ import annotations

import contextvars
import json
import logging
import queue
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, cast
from uuid import uuid4

from backend.agenttube.errors import (
    ErrorKind,
    MissingContextError,
    ProviderTimeoutError,
    TranscriptUnavailableError,
    classify_error,
)
from backend.agenttube.models.tool_contracts import ToolInvocation
from backend.agenttube.services.bounded_cache import BoundedTTLCache
from backend.agenttube.services.fuzzy_intent import (
    DEFAULT_MAX_EDIT_DISTANCE,
    TRANSCRIPT_KEYWORDS,
    latest_user_text,
    matches,
)
from backend.agenttube.services.language_model import (
    ChatModel,
    ModelEvent,
    ModelMessage,
    ModelStream,
    TextDelta,
    ToolCallRequest,
    ToolSpec,
)
from backend.agenttube.services.prompts import (
    VideoContext,
    default_system_prompt,
    transcript_answer_system_prompt,
    transcript_answer_user_prompt,
    transcript_unavailable_system_prompt,
    transcript_unavailable_user_prompt,
)
from backend.agenttube.services.tool_dispatcher import ChatToolDispatcher, ToolContext
from backend.agenttube.services.transcript_service import (
    TranscriptService,
    format_transcript_lines,
)
from backend.agenttube.services.video_details import VideoDetails, VideoDetailsLookup
from backend.agenttube.telemetry import TelemetryClient

LOGGER = logging.getLogger("agenttube.chat")

ChatFlow = Literal["transcript", "transcript_unavailable", "default"]
ChatEventType = Literal["start", "text-delta", "tool-call", "tool-result", "error", "finish"]

_SURFACED_TRANSCRIPT_FAILURES = frozenset(
    {ErrorKind.PROVIDER_OVERLOADED, ErrorKind.PROVIDER_RATE_LIMITED}
)
_FINAL_MESSAGE_PREVIEW_CHARS = 200
_STREAM_FINISHED = object()


def _default_messages() -> list[dict[str, str]]:
    return []


@dataclass(frozen=True)
class ChatTurnRequest:
    owner_id: str
    session_id: str | None = None
    resource_id: str | None = None
    messages: list[dict[str, str]] = field(default_factory=_default_messages)


@dataclass(frozen=True)
class ChatEvent:
    type: ChatEventType
    data: dict[str, Any]

    def to_sse(self) -> str:
        return f"data: {json.dumps({'type': self.type, **self.data})}\n\n"


@dataclass(frozen=True)
class _OpenedFlow:
    flow: ChatFlow
    system: str
    messages: list[ModelMessage]
    tools: tuple[ToolSpec, ...]
    stream: ModelStream


class ChatOrchestrator:
    """Resolves the video for a chat turn, picks a flow and opens the model stream.

    ``start_turn`` does every step that can fail before the first byte is sent, so
    the HTTP layer can still answer with a classified status. Everything after that
    happens inside ``ChatTurn.events()``.
    """

    def __init__(
        self,
        *,
        chat_model: ChatModel,
        transcript_service: TranscriptService,
        video_details: VideoDetailsLookup,
        tool_dispatcher: ChatToolDispatcher,
        session_context: BoundedTTLCache[str, str],
        telemetry: TelemetryClient | None = None,
        turn_timeout_seconds: float = 120.0,
        max_tool_rounds: int = 4,
        transcript_segment_limit: int = 60,
        fuzzy_max_distance: int = DEFAULT_MAX_EDIT_DISTANCE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._chat_model = chat_model
        self._transcript_service = transcript_service
        self._video_details = video_details
        self._tool_dispatcher = tool_dispatcher
        self._session_context = session_context
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._turn_timeout_seconds = turn_timeout_seconds
        self._max_tool_rounds = max(0, max_tool_rounds)
        self._transcript_segment_limit = transcript_segment_limit
        self._fuzzy_max_distance = fuzzy_max_distance
        self._clock = clock

    def resolve_context(self, request: ChatTurnRequest) -> str:
        if request.resource_id:
            if request.session_id:
                self._session_context.set(request.session_id, request.resource_id)
            return request.resource_id
        if request.session_id:
            cached = self._session_context.get(request.session_id)
            if cached:
                return cached
            self._session_context.pop(request.session_id)
        raise MissingContextError("chat request has no resource id and no cached session context")

    def start_turn(self, request: ChatTurnRequest) -> ChatTurn:
        turn_id = f"turn_{uuid4().hex}"
        deadline = self._clock() + self._turn_timeout_seconds
        telemetry = self._telemetry.bind(turn_id=turn_id)
        telemetry.emit(
            "chat.turn.start",
            owner_id=request.owner_id,
            session_id=request.session_id,
            message_count=len(request.messages),
        )
        try:
            video_id = self.resolve_context(request)
            video = VideoContext.from_details(video_id, self._lookup_details(video_id))
            latest = latest_user_text(request.messages)
            opened: _OpenedFlow | None = None
            if matches(latest, TRANSCRIPT_KEYWORDS, self._fuzzy_max_distance):
                opened = self._open_transcript_flow(request.owner_id, video, latest)
            if opened is None:
                opened = self._open_default_flow(video, request.messages)
        except Exception as exc:
            telemetry.emit_error("chat.turn.error", exc, stage="start")
            raise

        LOGGER.info(
            "chat turn started turn_id=%s owner_id=%s video_id=%s flow=%s",
            turn_id,
            request.owner_id,
            video.video_id,
            opened.flow,
        )
        return ChatTurn(
            turn_id=turn_id,
            owner_id=request.owner_id,
            session_id=request.session_id,
            video=video,
            opened=opened,
            chat_model=self._chat_model,
            tool_dispatcher=self._tool_dispatcher,
            telemetry=telemetry,
            max_tool_rounds=self._max_tool_rounds,
            deadline=deadline,
            clock=self._clock,
        )

    def _lookup_details(self, video_id: str) -> VideoDetails | None:
        try:
            return self._video_details.get(video_id)
        except Exception:
            LOGGER.warning("video details unavailable for chat video_id=%s", video_id, exc_info=True)
            return None

    def _open_transcript_flow(
        self,
        owner_id: str,
        video: VideoContext,
        latest: str | None,
    ) -> _OpenedFlow | None:
        try:
            transcript = self._transcript_service.get_transcript(
                owner_id,
                video.video_id,
                should_process=True,
            )
            if not transcript.segments:
                raise TranscriptUnavailableError(f"no transcript segments video_id={video.video_id}")
            lines = format_transcript_lines(transcript.segments, limit=self._transcript_segment_limit)
            return self._open_flow(
                "transcript",
                transcript_answer_system_prompt(video),
                [ModelMessage(role="user", content=transcript_answer_user_prompt(latest, lines))],
                (),
            )
        except TranscriptUnavailableError:
            LOGGER.info("chat transcript unavailable video_id=%s", video.video_id)
            return self._open_flow(
                "transcript_unavailable",
                transcript_unavailable_system_prompt(video),
                [ModelMessage(role="user", content=transcript_unavailable_user_prompt(latest, video))],
                (),
            )
        except Exception as exc:
            kind = classify_error(exc).kind
            if kind in _SURFACED_TRANSCRIPT_FAILURES:
                raise
            LOGGER.warning(
                "chat transcript flow failed; using default flow video_id=%s kind=%s",
                video.video_id,
                kind.value,
                exc_info=True,
            )
            return None

    def _open_default_flow(
        self,
        video: VideoContext,
        messages: Sequence[Mapping[str, Any]],
    ) -> _OpenedFlow:
        return self._open_flow(
            "default",
            default_system_prompt(video),
            _history_messages(messages),
            tuple(self._tool_dispatcher.tool_specs()),
        )

    def _open_flow(
        self,
        flow: ChatFlow,
        system: str,
        messages: list[ModelMessage],
        tools: tuple[ToolSpec, ...],
    ) -> _OpenedFlow:
        stream = self._chat_model.stream_chat(system=system, messages=messages, tools=tools)
        return _OpenedFlow(flow=flow, system=system, messages=messages, tools=tools, stream=stream)


class ChatTurn:
    """One streaming answer; iterate ``events()`` exactly once."""

    def __init__(
        self,
        *,
        turn_id: str,
        owner_id: str,
        session_id: str | None,
        video: VideoContext,
        opened: _OpenedFlow,
        chat_model: ChatModel,
        tool_dispatcher: ChatToolDispatcher,
        telemetry: TelemetryClient,
        max_tool_rounds: int,
        deadline: float,
        clock: Callable[[], float],
    ) -> None:
        self.turn_id = turn_id
        self.owner_id = owner_id
        self.session_id = session_id
        self.video = video
        self.flow = opened.flow
        self._system = opened.system
        self._messages = list(opened.messages)
        self._tools = opened.tools
        self._stream: ModelStream | None = opened.stream
        self._chat_model = chat_model
        self._tool_dispatcher = tool_dispatcher
        self._telemetry = telemetry
        self._max_tool_rounds = max_tool_rounds
        self._deadline = deadline
        self._clock = clock
        self._cancelled = threading.Event()
        self._close_lock = threading.Lock()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def close(self) -> None:
        with self._close_lock:
            stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.close()
        except Exception:
            LOGGER.debug("closing model stream failed turn_id=%s", self.turn_id, exc_info=True)

    def events(self) -> Iterator[ChatEvent]:
        assembled: list[str] = []
        tool_rounds = 0
        outcome = "success"
        yield ChatEvent(
            "start",
            {"turnId": self.turn_id, "videoId": self.video.video_id, "flow": self.flow},
        )
        try:
            while True:
                round_text: list[str] = []
                tool_calls: list[ToolCallRequest] = []
                for model_event in self._bounded_stream_events():
                    if self._cancelled.is_set():
                        outcome = "cancelled"
                        return
                    if isinstance(model_event, TextDelta):
                        round_text.append(model_event.text)
                        assembled.append(model_event.text)
                        yield ChatEvent("text-delta", {"delta": model_event.text})
                    else:
                        tool_calls.append(model_event)
                        yield ChatEvent(
                            "tool-call",
                            {
                                "toolCallId": model_event.call_id,
                                "toolName": model_event.name,
                                "input": model_event.arguments,
                            },
                        )
                self.close()

                if not tool_calls or not self._tools:
                    break
                if tool_rounds >= self._max_tool_rounds:
                    LOGGER.warning(
                        "chat tool round limit reached turn_id=%s rounds=%s",
                        self.turn_id,
                        tool_rounds,
                    )
                    break
                tool_rounds += 1

                self._messages.append(
                    ModelMessage(
                        role="assistant",
                        content="".join(round_text) or None,
                        tool_calls=tuple(tool_calls),
                    )
                )
                for call in tool_calls:
                    if self._cancelled.is_set():
                        outcome = "cancelled"
                        return
                    invocation = self._execute_tool(call)
                    output = invocation.model_output()
                    yield ChatEvent(
                        "tool-result",
                        {
                            "toolCallId": call.call_id,
                            "toolName": call.name,
                            "output": output,
                            "isError": not invocation.ok,
                        },
                    )
                    self._messages.append(
                        ModelMessage(role="tool", content=json.dumps(output), tool_call_id=call.call_id)
                    )

                self._remaining_seconds()
                self._stream = self._chat_model.stream_chat(
                    system=self._system,
                    messages=self._messages,
                    tools=self._tools,
                )
            yield ChatEvent("finish", {"finishReason": "stop", "toolRounds": tool_rounds})
        except Exception as exc:
            outcome = "error"
            classified = classify_error(exc)
            LOGGER.warning(
                "chat turn failed turn_id=%s video_id=%s kind=%s",
                self.turn_id,
                self.video.video_id,
                classified.kind.value,
                exc_info=True,
            )
            self._telemetry.emit_error("chat.turn.error", exc, stage="stream")
            yield ChatEvent(
                "error",
                {"error": classified.user_message, "kind": classified.kind.value},
            )
        finally:
            if outcome == "success" and self._cancelled.is_set():
                outcome = "cancelled"
            self.close()
            self._finalize("".join(assembled), outcome, tool_rounds)

    def _current_stream(self) -> ModelStream:
        with self._close_lock:
            stream = self._stream
        if stream is None:
            raise ProviderTimeoutError(f"model stream already closed turn_id={self.turn_id}")
        return stream

    def _remaining_seconds(self) -> float:
        remaining = self._deadline - self._clock()
        if remaining <= 0:
            raise ProviderTimeoutError(f"chat turn exceeded its deadline turn_id={self.turn_id}")
        return remaining

    def _bounded_stream_events(self) -> Iterator[ModelEvent]:
        """Yield model events, giving up once the turn deadline passes.

        The stream is drained on a worker thread so a stalled provider cannot hold
        the turn past its deadline; on timeout the stream is closed.
        """
        pending: queue.Queue[object] = queue.Queue()
        _start_worker(
            _drain_stream,
            self._current_stream(),
            pending,
            name=f"chat-stream-{self.turn_id}",
        )
        while True:
            try:
                item = pending.get(timeout=self._remaining_seconds())
            except queue.Empty:
                self.close()
                raise ProviderTimeoutError(
                    f"model stream stalled past the turn deadline turn_id={self.turn_id}"
                ) from None
            if item is _STREAM_FINISHED:
                return
            if isinstance(item, Exception):
                raise item
            yield cast(ModelEvent, item)

    def _execute_tool(self, call: ToolCallRequest) -> ToolInvocation:
        budget = self._remaining_seconds()
        context = ToolContext(owner_id=self.owner_id, video=self.video, time_budget_seconds=budget)
        results: queue.Queue[ToolInvocation] = queue.Queue(maxsize=1)
        _start_worker(
            lambda: results.put(self._tool_dispatcher.execute(call, context)),
            name=f"chat-tool-{call.call_id}",
        )
        try:
            return results.get(timeout=budget)
        except queue.Empty:
            LOGGER.warning(
                "chat tool exceeded the turn deadline turn_id=%s tool=%s",
                self.turn_id,
                call.name,
            )
            raise ProviderTimeoutError(
                f"tool {call.name} ran past the turn deadline turn_id={self.turn_id}"
            ) from None

    def _finalize(self, message_text: str, outcome: str, tool_rounds: int) -> None:
        try:
            LOGGER.info(
                "chat turn finished turn_id=%s session_id=%s video_id=%s outcome=%s chars=%s",
                self.turn_id,
                self.session_id,
                self.video.video_id,
                outcome,
                len(message_text),
            )
            LOGGER.debug(
                "chat turn final message turn_id=%s text=%s",
                self.turn_id,
                message_text[:_FINAL_MESSAGE_PREVIEW_CHARS],
            )
            self._telemetry.emit(
                "chat.turn.finish",
                flow=self.flow,
                outcome=outcome,
                tool_rounds=tool_rounds,
                message_text=message_text,
                message_chars=len(message_text),
            )
        except Exception:
            LOGGER.debug("chat turn finalize failed turn_id=%s", self.turn_id, exc_info=True)


def _history_messages(messages: Sequence[Mapping[str, Any]]) -> list[ModelMessage]:
    history: list[ModelMessage] = []
    for message in messages:
        role = message.get("role")
        content = str(message.get("content") or "").strip()
        if not content:
            continue
        if role == "user":
            history.append(ModelMessage(role="user", content=content))
        elif role == "assistant":
            history.append(ModelMessage(role="assistant", content=content))
    return history


def _start_worker(target: Callable[..., None], *args: Any, name: str) -> None:
    context = contextvars.copy_context()
    threading.Thread(target=context.run, args=(target, *args), name=name, daemon=True).start()


def _drain_stream(stream: ModelStream, pending: queue.Queue[object]) -> None:
    try:
        for model_event in stream:
            pending.put(model_event)
    except Exception as exc:
        pending.put(exc)
        return
    pending.put(_STREAM_FINISHED)
