from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from backend.agenttube.config import AppSettings, load_settings
from backend.agenttube.repositories.audit_repository import AuditRepository
from backend.agenttube.repositories.database import Database
from backend.agenttube.repositories.object_store import LocalObjectStore
from backend.agenttube.repositories.owner_api_key_repository import OwnerApiKeyRepository
from backend.agenttube.repositories.resource_repository import ResourceRepository
from backend.agenttube.repositories.usage_repository import UsageRepository
from backend.agenttube.services.artifact_poller import ArtifactPoller
from backend.agenttube.services.auth import ApiKeyAuthProvider, AuthProvider
from backend.agenttube.services.bounded_cache import BoundedTTLCache
from backend.agenttube.services.chat_orchestrator import ChatOrchestrator
from backend.agenttube.services.language_model import (
    ChatModel,
    ImageModel,
    OpenAILanguageModel,
    TextModel,
)
from backend.agenttube.services.metering import (
    FeatureKind,
    LocalMeteringProvider,
    MeteringProvider,
    SchematicMeteringProvider,
)
from backend.agenttube.services.rate_limiter import SlidingWindowRateLimiter
from backend.agenttube.services.resource_gate import ResourceGate
from backend.agenttube.services.thumbnail_service import BlobStore, ThumbnailService
from backend.agenttube.services.title_service import TitleService
from backend.agenttube.services.tool_dispatcher import ChatToolDispatcher
from backend.agenttube.services.transcript_provider import (
    SupadataTranscriptProvider,
    TranscriptProvider,
)
from backend.agenttube.services.transcript_service import TranscriptService
from backend.agenttube.services.usage_meter import UsageMeter
from backend.agenttube.services.video_details import VideoDetailsLookup, YouTubeVideoDetailsClient
from backend.agenttube.services.video_service import VideoService
from backend.agenttube.telemetry import TelemetryClient, build_telemetry_client

VIDEOS_COLLECTION = "videos"
TRANSCRIPTS_COLLECTION = "transcripts"
TITLES_COLLECTION = "titles"
IMAGES_COLLECTION = "images"


@dataclass(frozen=True)
class ServiceContainer:
    settings: AppSettings
    database: Database
    telemetry: TelemetryClient
    auth_provider: AuthProvider
    metering_provider: MeteringProvider
    audit_repository: AuditRepository
    object_store: BlobStore
    video_service: VideoService
    transcript_service: TranscriptService
    title_service: TitleService
    thumbnail_service: ThumbnailService
    tool_dispatcher: ChatToolDispatcher
    chat_orchestrator: ChatOrchestrator

    def shutdown(self) -> None:
        if isinstance(self.object_store, LocalObjectStore):
            self.object_store.shutdown()


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_services() -> ServiceContainer:
    return build_services(get_settings(), telemetry=get_telemetry())


def build_services(
    settings: AppSettings,
    *,
    telemetry: TelemetryClient | None = None,
    chat_model: ChatModel | None = None,
    text_model: TextModel | None = None,
    image_model: ImageModel | None = None,
    transcript_provider: TranscriptProvider | None = None,
    video_details: VideoDetailsLookup | None = None,
    metering_provider: MeteringProvider | None = None,
    auth_provider: AuthProvider | None = None,
    object_store: BlobStore | None = None,
) -> ServiceContainer:
    """Wire every service from settings; keyword overrides replace external collaborators."""
    telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
    database = Database(settings.db_path)
    database.initialize()

    resource_repository = ResourceRepository(database)
    audit_repository = AuditRepository(database)

    if chat_model is None or text_model is None or image_model is None:
        openai_model = _build_openai_model(settings)
        chat_model = chat_model or openai_model
        text_model = text_model or openai_model
        image_model = image_model or openai_model
    if transcript_provider is None:
        transcript_provider = _build_transcript_provider(settings)
    if video_details is None:
        video_details = YouTubeVideoDetailsClient(
            api_key=settings.youtube_api_key,
            http_timeout_seconds=settings.youtube_http_timeout_seconds,
        )
    if metering_provider is None:
        metering_provider = _build_metering_provider(settings, database)
    if auth_provider is None:
        auth_provider = ApiKeyAuthProvider(
            OwnerApiKeyRepository(database),
            rate_limiter=SlidingWindowRateLimiter(
                max_requests=settings.auth_rate_limit_max_requests,
                window_seconds=settings.auth_rate_limit_window_seconds,
            ),
        )
    if object_store is None:
        object_store = LocalObjectStore(
            database,
            settings.artifacts_dir,
            public_base_url=settings.public_base_url,
        )

    usage_meter = UsageMeter(
        metering_provider,
        identity_cache=BoundedTTLCache(max_entries=settings.identity_cache_max_entries),
        telemetry=telemetry,
    )

    def gate(collection: str, feature_kind: FeatureKind) -> ResourceGate:
        return ResourceGate(
            collection=collection,
            feature_kind=feature_kind,
            repository=resource_repository,
            entitlements=metering_provider,
            usage_meter=usage_meter,
            audit_repository=audit_repository,
            telemetry=telemetry,
        )

    image_gate = gate(IMAGES_COLLECTION, FeatureKind.IMAGE_GENERATION)
    transcript_service = TranscriptService(
        gate=gate(TRANSCRIPTS_COLLECTION, FeatureKind.TRANSCRIPTION),
        provider=transcript_provider,
    )
    title_service = TitleService(
        gate=gate(TITLES_COLLECTION, FeatureKind.TITLE_GENERATION),
        model=text_model,
    )
    thumbnail_service = ThumbnailService(
        gate=image_gate,
        model=image_model,
        object_store=object_store,
        poller=ArtifactPoller(image_gate, telemetry=telemetry),
        poll_timeout_seconds=settings.artifact_poll_timeout_seconds,
        poll_interval_seconds=settings.artifact_poll_interval_seconds,
    )
    tool_dispatcher = ChatToolDispatcher(
        transcript_service=transcript_service,
        title_service=title_service,
        thumbnail_service=thumbnail_service,
        entitlements=metering_provider,
        telemetry=telemetry,
    )
    chat_orchestrator = ChatOrchestrator(
        chat_model=chat_model,
        transcript_service=transcript_service,
        video_details=video_details,
        tool_dispatcher=tool_dispatcher,
        session_context=BoundedTTLCache(
            max_entries=settings.session_context_max_entries,
            ttl_seconds=settings.session_context_ttl_seconds,
        ),
        telemetry=telemetry,
        turn_timeout_seconds=settings.chat_turn_timeout_seconds,
        max_tool_rounds=settings.chat_max_tool_rounds,
        transcript_segment_limit=settings.chat_transcript_segment_limit,
        fuzzy_max_distance=settings.chat_fuzzy_max_distance,
    )

    return ServiceContainer(
        settings=settings,
        database=database,
        telemetry=telemetry,
        auth_provider=auth_provider,
        metering_provider=metering_provider,
        audit_repository=audit_repository,
        object_store=object_store,
        video_service=VideoService(
            gate=gate(VIDEOS_COLLECTION, FeatureKind.ANALYSE_VIDEO),
            details=video_details,
        ),
        transcript_service=transcript_service,
        title_service=title_service,
        thumbnail_service=thumbnail_service,
        tool_dispatcher=tool_dispatcher,
        chat_orchestrator=chat_orchestrator,
    )


def _build_openai_model(settings: AppSettings) -> OpenAILanguageModel:
    if settings.openai_api_key is None:
        raise ValueError("AGENTTUBE_OPENAI_API_KEY is required to build the OpenAI client.")
    return OpenAILanguageModel(
        api_key=settings.openai_api_key,
        chat_model=settings.openai_chat_model,
        title_model=settings.openai_title_model,
        image_model=settings.openai_image_model,
        image_size=settings.openai_image_size,
        timeout_seconds=settings.openai_timeout_seconds,
        max_retries=settings.openai_max_retries,
    )


def _build_transcript_provider(settings: AppSettings) -> SupadataTranscriptProvider:
    if settings.supadata_api_key is None:
        raise ValueError("AGENTTUBE_SUPADATA_API_KEY is required to fetch transcripts.")
    return SupadataTranscriptProvider(
        api_key=settings.supadata_api_key,
        base_url=settings.supadata_base_url,
        mode=settings.supadata_transcript_mode,
        lang=settings.supadata_transcript_lang,
        http_timeout_seconds=settings.supadata_http_timeout_seconds,
        poll_interval_seconds=settings.supadata_poll_interval_seconds,
        poll_max_attempts=settings.supadata_poll_max_attempts,
    )


def _build_metering_provider(settings: AppSettings, database: Database) -> MeteringProvider:
    if settings.metering_mode == "schematic":
        if settings.schematic_api_key is None:
            raise ValueError("AGENTTUBE_SCHEMATIC_API_KEY is required when metering_mode=schematic.")
        return SchematicMeteringProvider(
            api_key=settings.schematic_api_key,
            base_url=settings.schematic_base_url,
            timeout_seconds=settings.schematic_http_timeout_seconds,
        )
    return LocalMeteringProvider(
        UsageRepository(database),
        allocations={
            FeatureKind.ANALYSE_VIDEO: settings.plan_analyse_video_limit,
            FeatureKind.TRANSCRIPTION: settings.plan_transcription_limit,
            FeatureKind.TITLE_GENERATION: settings.plan_title_generation_limit,
            FeatureKind.IMAGE_GENERATION: settings.plan_image_generation_limit,
        },
    )


def shutdown_cached_services() -> None:
    if get_services.cache_info().currsize:
        get_services().shutdown()


def reset_cached_dependencies() -> None:
    shutdown_cached_services()
    get_services.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
