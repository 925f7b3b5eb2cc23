from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.agenttube.api.routes import router
from backend.agenttube.dependencies import get_settings, get_telemetry, shutdown_cached_services
from backend.agenttube.errors import AuthProviderError, ServiceError, classify_error
from backend.agenttube.logging_config import configure_application_logging
from backend.agenttube.telemetry import elapsed_ms

LOGGER = logging.getLogger("agenttube.http")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    LOGGER.info(
        "agenttube started db_path=%s metering_mode=%s",
        settings.db_path,
        settings.metering_mode,
    )
    try:
        yield
    finally:
        shutdown_cached_services()


async def classified_error_handler(request: Request, exc: Exception) -> JSONResponse:
    classified = classify_error(exc)
    log = LOGGER.error if classified.http_status >= 500 and not classified.retryable else LOGGER.warning
    log(
        "request failed path=%s kind=%s status=%s",
        request.url.path,
        classified.kind.value,
        classified.http_status,
        exc_info=exc,
    )
    return JSONResponse(status_code=classified.http_status, content={"error": classified.user_message})


def create_app() -> FastAPI:
    app = FastAPI(title="AgentTube API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        started_at = perf_counter()
        telemetry = get_telemetry().bind(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        telemetry.emit("http.request.start")
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit_error("http.request.error", exc, duration_ms=elapsed_ms(started_at))
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            telemetry.emit(
                "http.request.finish",
                duration_ms=elapsed_ms(started_at),
                status_code=response.status_code,
            )
            return response
        finally:
            reset_contextvars(**context_tokens)

    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(ServiceError, classified_error_handler)
    app.add_exception_handler(AuthProviderError, classified_error_handler)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    return app


app = create_app()
