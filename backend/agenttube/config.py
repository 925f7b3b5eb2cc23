from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".agenttube"
ALLOWED_IMAGE_SIZES: frozenset[str] = frozenset(
    {
        "1024x1024",
        "512x512",
        "256x256",
        "1792x1024",
        "1024x1792",
        "1536x1024",
        "1024x1536",
    }
)
DEFAULT_IMAGE_SIZE = "1024x1024"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("artifacts_dir", Path("artifacts")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = ("telemetry_enabled",)
_OPTIONAL_SECRET_FIELDS: tuple[str, ...] = (
    "openai_api_key",
    "supadata_api_key",
    "youtube_api_key",
    "schematic_api_key",
)
_BASE_URL_FIELDS: tuple[str, ...] = (
    "public_base_url",
    "supadata_base_url",
    "schematic_base_url",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{AGENTTUBE_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return {1: True, 0: False}.get(value, default)
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option reads from `AGENTTUBE_*` environment variables (or `.env`) and
    documents its default here.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTTUBE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the database, artifacts and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )
    artifacts_dir: Path = Field(
        default=_default_in_data_dir(Path("artifacts")),
        description=(
            f"Directory for uploaded artifacts. {_data_dir_default_note(Path('artifacts'))}"
        ),
    )
    public_base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Externally reachable base URL used to build artifact URLs.",
    )

    # OpenAI.
    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key for chat, title and image generation.",
    )
    openai_chat_model: str = Field(
        default="gpt-4o-mini",
        description="Model used for streamed chat turns.",
    )
    openai_title_model: str = Field(
        default="gpt-4o-mini",
        description="Model used for title generation.",
    )
    openai_image_model: str = Field(
        default="dall-e-3",
        description="Model used for thumbnail generation.",
    )
    openai_image_size: str = Field(
        default=DEFAULT_IMAGE_SIZE,
        description="Thumbnail size; unsupported values fall back to 1024x1024.",
    )
    openai_timeout_seconds: float = Field(
        default=60.0,
        description="Per-request timeout for OpenAI calls.",
    )
    openai_max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="SDK-level retries for transient OpenAI failures.",
    )

    # Supadata transcript provider.
    supadata_api_key: str | None = Field(
        default=None,
        description="Supadata API key for transcript retrieval.",
    )
    supadata_base_url: str = Field(
        default="https://api.supadata.ai/v1",
        description="Supadata API base URL.",
    )
    supadata_transcript_mode: str = Field(
        default="native",
        description="Supadata transcript mode passed to transcript requests.",
    )
    supadata_transcript_lang: str = Field(
        default="en",
        description="Preferred transcript language.",
    )
    supadata_http_timeout_seconds: float = Field(
        default=30.0,
        description="HTTP timeout for Supadata requests.",
    )
    supadata_poll_interval_seconds: float = Field(
        default=1.0,
        description="Polling interval for async Supadata transcript jobs.",
    )
    supadata_poll_max_attempts: int = Field(
        default=30,
        description="Maximum polling attempts for async Supadata transcript jobs.",
    )

    # YouTube Data API.
    youtube_api_key: str | None = Field(
        default=None,
        description="YouTube Data API v3 key for video details; details are skipped when unset.",
    )
    youtube_http_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout for YouTube Data API requests.",
    )

    # Metering and plan allocations.
    metering_mode: Literal["local", "schematic"] = Field(
        default="local",
        description="`local` counts usage in SQLite; `schematic` delegates to the Schematic API.",
    )
    schematic_api_key: str | None = Field(
        default=None,
        description="Schematic secret API key (required when metering_mode=schematic).",
    )
    schematic_base_url: str = Field(
        default="https://api.schematichq.com",
        description="Schematic API base URL.",
    )
    schematic_http_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout for Schematic requests.",
    )
    plan_analyse_video_limit: int = Field(
        default=10,
        ge=0,
        description="Monthly video analyses per owner in local metering mode (0 disables).",
    )
    plan_transcription_limit: int = Field(
        default=10,
        ge=0,
        description="Monthly transcript fetches per owner in local metering mode (0 disables).",
    )
    plan_title_generation_limit: int = Field(
        default=10,
        ge=0,
        description="Monthly title generations per owner in local metering mode (0 disables).",
    )
    plan_image_generation_limit: int = Field(
        default=5,
        ge=0,
        description="Monthly thumbnail generations per owner in local metering mode (0 disables).",
    )

    # Artifact polling and chat turns.
    artifact_poll_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Hard wall-clock limit while waiting for an uploaded artifact URL.",
    )
    artifact_poll_interval_seconds: float = Field(
        default=1.5,
        gt=0,
        description="Fixed interval between artifact URL lookups.",
    )
    chat_turn_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Overall wall-clock limit for one streamed chat turn.",
    )
    chat_max_tool_rounds: int = Field(
        default=4,
        ge=0,
        le=16,
        description="Maximum model/tool round trips within one chat turn.",
    )
    chat_transcript_segment_limit: int = Field(
        default=60,
        ge=1,
        description="Transcript segments included in the transcript answer prompt.",
    )
    chat_fuzzy_max_distance: int = Field(
        default=1,
        ge=0,
        le=3,
        description="Edit distance tolerated when matching transcript intent keywords.",
    )
    session_context_max_entries: int = Field(
        default=10_000,
        ge=1,
        description="Maximum chat sessions whose video context is remembered.",
    )
    session_context_ttl_seconds: float = Field(
        default=86_400.0,
        gt=0,
        description="How long a chat session's video context is remembered.",
    )
    identity_cache_max_entries: int = Field(
        default=100_000,
        ge=1,
        description="Maximum owners remembered as registered with the metering provider.",
    )

    # Owner API keys.
    auth_rate_limit_window_seconds: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Per-key request window in seconds.",
    )
    auth_rate_limit_max_requests: int = Field(
        default=120,
        ge=1,
        le=10_000,
        description="Maximum authenticated requests per key in each window.",
    )

    # Logging and telemetry.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink backend. `log` writes structured events; `none` disables output.",
    )

    @field_validator("telemetry_sink", "metering_mode", mode="before")
    @classmethod
    def _normalize_choice(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"AGENTTUBE_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        return value.strip().lower()

    @field_validator("openai_image_size", mode="before")
    @classmethod
    def _normalize_image_size(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().lower() in ALLOWED_IMAGE_SIZES:
            return value.strip().lower()
        return DEFAULT_IMAGE_SIZE

    @field_validator("supadata_transcript_mode", mode="before")
    @classmethod
    def _normalize_transcript_mode(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().lower() in {"native", "auto", "generate"}:
            return value.strip().lower()
        return "native"

    @field_validator(*_BASE_URL_FIELDS, mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"AGENTTUBE_{str(info.field_name).upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator(*_OPTIONAL_SECRET_FIELDS, mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_provider_configuration(settings: AppSettings) -> None:
    errors: list[str] = []
    if settings.openai_api_key is None:
        errors.append("AGENTTUBE_OPENAI_API_KEY is required for chat, titles and thumbnails.")
    if settings.supadata_api_key is None:
        errors.append("AGENTTUBE_SUPADATA_API_KEY is required for transcripts.")
    if settings.metering_mode == "schematic" and settings.schematic_api_key is None:
        errors.append("AGENTTUBE_SCHEMATIC_API_KEY is required when metering_mode=schematic.")

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(f"Invalid provider configuration:\n{bullets}")


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    return settings.model_copy(
        update={
            field_name: _resolve_path(getattr(settings, field_name))
            for field_name in _PATH_FIELDS
        }
    )


def load_settings(*, validate_provider_secrets: bool = True) -> AppSettings:
    settings = _resolve_path_fields(_apply_path_defaults(AppSettings()))
    if validate_provider_secrets:
        _validate_provider_configuration(settings)
    return settings
