from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor

from backend.agenttube.config import AppSettings
from backend.agenttube.telemetry import TELEMETRY_LOGGER_NAME

ROOT_LOGGER_NAME = "agenttube"
LOG_FILE_NAME = "agenttube.log"
TELEMETRY_LOG_FILE_NAME = "agenttube-telemetry.log"
# SDK loggers that echo request bodies at DEBUG.
_QUIET_LIBRARY_LOGGERS: tuple[str, ...] = ("openai", "httpx", "httpcore")


@dataclass(frozen=True)
class LoggingPaths:
    application_log: Path
    telemetry_log: Path


def configure_application_logging(settings: AppSettings) -> LoggingPaths:
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    paths = LoggingPaths(
        application_log=settings.log_dir / LOG_FILE_NAME,
        telemetry_log=settings.log_dir / TELEMETRY_LOG_FILE_NAME,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console_handler = logging.StreamHandler(stream=sys.stdout)
    console_handler.setLevel(_resolve_log_level(settings.log_level))
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_shared_pre_chain(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=_isatty(sys.stdout)),
            ],
        )
    )
    _install_handlers(
        logging.getLogger(ROOT_LOGGER_NAME),
        level=logging.DEBUG,
        handlers=[console_handler, _json_file_handler(paths.application_log, logging.DEBUG)],
    )
    _install_handlers(
        logging.getLogger(TELEMETRY_LOGGER_NAME),
        level=logging.INFO,
        handlers=[_json_file_handler(paths.telemetry_log, logging.INFO)],
    )
    for library_logger in _QUIET_LIBRARY_LOGGERS:
        logging.getLogger(library_logger).setLevel(logging.WARNING)

    logging.getLogger(ROOT_LOGGER_NAME).info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        settings.log_level.upper(),
        paths.application_log,
        paths.telemetry_log,
    )
    return paths


def _install_handlers(
    logger: logging.Logger,
    *,
    level: int,
    handlers: list[logging.Handler],
) -> None:
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    for handler in handlers:
        logger.addHandler(handler)


def _json_file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_shared_pre_chain(),
            processors=[
                _add_thread_metadata,
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
        )
    )
    return handler


def _resolve_log_level(raw_level: str) -> int:
    resolved = logging.getLevelName(raw_level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _shared_pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _add_thread_metadata(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["func_name"] = record.funcName
        event_dict["lineno"] = record.lineno
        event_dict["thread_name"] = record.threadName
    return event_dict


def _isatty(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if not callable(isatty):
        return False
    try:
        return bool(isatty())
    except ValueError:
        return False
