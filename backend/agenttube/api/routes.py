from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse, Response, StreamingResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.agenttube.dependencies import ServiceContainer, get_services
from backend.agenttube.errors import EntitlementCheckError, classify_error
from backend.agenttube.models.contracts import (
    ChatRequest,
    ErrorResponse,
    FeatureUsagePayload,
    ImageListResponse,
    ImagePayload,
    TitleListResponse,
    TitlePayload,
    TranscriptRequest,
    TranscriptResponse,
    TranscriptSegmentPayload,
    UsageResponse,
    VideoRequest,
    VideoResponse,
)
from backend.agenttube.repositories.object_store import LocalObjectStore
from backend.agenttube.services.auth import parse_bearer_header
from backend.agenttube.services.chat_orchestrator import ChatTurn, ChatTurnRequest
from backend.agenttube.services.metering import FeatureKind, MeteringProviderError

LOGGER = logging.getLogger("agenttube.api")

router = APIRouter()

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def get_current_owner(
    services: Annotated[ServiceContainer, Depends(get_services)],
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    owner_id = services.auth_provider.current_user(parse_bearer_header(authorization))
    if owner_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return owner_id


CurrentOwner = Annotated[str, Depends(get_current_owner)]
Services = Annotated[ServiceContainer, Depends(get_services)]


@router.post(
    "/transcript",
    response_model=TranscriptResponse,
    responses={**_ERROR_RESPONSES, 404: {"model": ErrorResponse}},
    tags=["transcripts"],
    operation_id="get_transcript",
)
def get_transcript(
    payload: TranscriptRequest,
    owner_id: CurrentOwner,
    services: Services,
) -> TranscriptResponse:
    result = services.transcript_service.get_transcript(
        owner_id,
        payload.resource_id,
        should_process=payload.should_process,
    )
    return TranscriptResponse(
        transcript=[TranscriptSegmentPayload(**segment) for segment in result.segments],
        cache=result.cache,
        is_new=result.is_new,
    )


@router.post(
    "/videos",
    response_model=VideoResponse,
    response_model_exclude_none=True,
    tags=["videos"],
    operation_id="get_or_create_video",
)
def get_or_create_video(
    payload: VideoRequest,
    owner_id: CurrentOwner,
    services: Services,
) -> VideoResponse:
    outcome = services.video_service.get_or_create(
        owner_id,
        payload.video_id,
        should_process=payload.should_process,
    )
    return VideoResponse(
        success=outcome.success,
        data=outcome.data,
        error=outcome.error,
        is_new=outcome.is_new,
    )


@router.get(
    "/videos/{video_id}/titles",
    response_model=TitleListResponse,
    tags=["videos"],
    operation_id="list_video_titles",
)
def list_video_titles(video_id: str, owner_id: CurrentOwner, services: Services) -> TitleListResponse:
    return TitleListResponse(
        titles=[
            TitlePayload(
                title_id=title.title_id,
                video_id=title.video_id,
                title=title.title,
                created_at=title.created_at,
            )
            for title in services.title_service.list_titles(owner_id, video_id)
        ]
    )


@router.get(
    "/videos/{video_id}/images",
    response_model=ImageListResponse,
    tags=["videos"],
    operation_id="list_video_images",
)
def list_video_images(video_id: str, owner_id: CurrentOwner, services: Services) -> ImageListResponse:
    return ImageListResponse(
        images=[
            ImagePayload(
                storage_id=image.storage_id,
                video_id=image.video_id,
                image_url=image.image_url,
                prompt=image.prompt,
                created_at=image.created_at,
            )
            for image in services.thumbnail_service.list_images(owner_id, video_id)
        ]
    )


@router.get("/usage", response_model=UsageResponse, tags=["usage"], operation_id="get_usage")
def get_usage(owner_id: CurrentOwner, services: Services) -> UsageResponse:
    features: list[FeatureUsagePayload] = []
    for feature_kind in FeatureKind:
        try:
            usage = services.metering_provider.feature_usage(owner_id, feature_kind)
        except MeteringProviderError as exc:
            raise EntitlementCheckError(f"usage lookup failed: {exc}") from exc
        features.append(
            FeatureUsagePayload(
                feature=feature_kind.value,
                label=feature_kind.label,
                usage=usage.usage,
                allocation=usage.allocation,
                remaining=usage.remaining,
                enabled=services.metering_provider.check_flag(owner_id, feature_kind),
            )
        )
    return UsageResponse(owner_id=owner_id, features=features)


@router.get(
    "/artifacts/{reference}",
    response_class=FileResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["artifacts"],
    operation_id="get_artifact",
)
def get_artifact(reference: str, services: Services) -> Response:
    store = services.object_store
    stored = store.get(reference) if isinstance(store, LocalObjectStore) else None
    if stored is None or stored.url is None or not stored.path.is_file():
        return JSONResponse(status_code=404, content={"error": "Artifact not found."})
    return FileResponse(
        stored.path,
        media_type=stored.content_type,
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )


@router.post(
    "/chat",
    response_class=StreamingResponse,
    responses=_ERROR_RESPONSES,
    tags=["chat"],
    operation_id="chat",
)
async def chat(
    request: Request,
    payload: ChatRequest,
    owner_id: CurrentOwner,
    services: Services,
) -> Response:
    context_tokens = bind_contextvars(chat_session_id=payload.session_id or "")
    try:
        turn = await run_in_threadpool(
            services.chat_orchestrator.start_turn,
            ChatTurnRequest(
                owner_id=owner_id,
                session_id=payload.session_id,
                resource_id=payload.resource_id,
                messages=payload.message_dicts(),
            ),
        )
    except Exception as exc:
        classified = classify_error(exc)
        LOGGER.warning(
            "chat turn rejected owner_id=%s session_id=%s kind=%s",
            owner_id,
            payload.session_id,
            classified.kind.value,
            exc_info=True,
        )
        return JSONResponse(
            status_code=classified.http_status,
            content={"error": classified.user_message},
        )
    finally:
        reset_contextvars(**context_tokens)

    return StreamingResponse(
        _stream_turn(request, turn),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def _stream_turn(request: Request, turn: ChatTurn) -> AsyncIterator[str]:
    events = turn.events()
    finished = False
    try:
        while True:
            if await request.is_disconnected():
                LOGGER.info("chat client disconnected turn_id=%s", turn.turn_id)
                break
            event = await run_in_threadpool(next, events, None)
            if event is None:
                finished = True
                break
            yield event.to_sse()
        if finished:
            yield "data: [DONE]\n\n"
    finally:
        if not finished:
            turn.cancel()
        try:
            events.close()
        except ValueError:
            # Still running in a worker thread; it stops at the next event.
            LOGGER.debug("chat stream busy during close turn_id=%s", turn.turn_id)
        turn.close()
