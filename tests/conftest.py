from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from backend.agenttube.dependencies import (
    ServiceContainer,
    build_services,
    get_services,
    get_settings,
    reset_cached_dependencies,
)
from backend.agenttube.errors import TranscriptUnavailableError
from backend.agenttube.main import create_app
from backend.agenttube.repositories.owner_api_key_repository import OwnerApiKeyRepository
from backend.agenttube.services.language_model import (
    ModelEvent,
    ModelMessage,
    TextDelta,
    ToolSpec,
)
from backend.agenttube.services.transcript_provider import TranscriptSegment
from backend.agenttube.services.video_details import VideoDetails

SOUP_VIDEO_ID = "vid_soup_01"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FakeModelStream:
    def __init__(self, model: FakeChatModel, events: Sequence[ModelEvent | Exception]) -> None:
        self._model = model
        self._events = list(events)

    def __iter__(self) -> Iterator[ModelEvent]:
        for event in self._events:
            if isinstance(event, Exception):
                raise event
            yield event

    def close(self) -> None:
        self._model.closed_streams += 1


class FakeChatModel:
    """Replays one scripted list of events per ``stream_chat`` call."""

    def __init__(self) -> None:
        self.rounds: list[list[ModelEvent | Exception]] = []
        self.calls: list[dict[str, Any]] = []
        self.error: Exception | None = None
        self.closed_streams = 0

    def stream_chat(
        self,
        *,
        system: str,
        messages: Sequence[ModelMessage],
        tools: Sequence[ToolSpec] = (),
    ) -> FakeModelStream:
        self.calls.append({"system": system, "messages": list(messages), "tools": list(tools)})
        if self.error is not None:
            raise self.error
        events = self.rounds.pop(0) if self.rounds else [TextDelta("## Hello there!")]
        return FakeModelStream(self, events)


class FakeTextModel:
    def __init__(self, reply: str = '"Ten Soups You Must Try"') -> None:
        self.reply = reply
        self.prompts: list[str] = []

    def complete(self, *, system: str, prompt: str) -> str:
        _ = system
        self.prompts.append(prompt)
        return self.reply


class FakeImageModel:
    def __init__(self) -> None:
        self.prompts: list[str] = []

    def generate_image(self, prompt: str) -> bytes:
        self.prompts.append(prompt)
        return PNG_BYTES


class FakeTranscriptProvider:
    def __init__(self) -> None:
        self.segments: dict[str, list[TranscriptSegment]] = {SOUP_VIDEO_ID: sample_segments()}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    def fetch_segments(self, video_id: str) -> list[TranscriptSegment]:
        self.calls.append(video_id)
        if video_id in self.errors:
            raise self.errors[video_id]
        segments = self.segments.get(video_id)
        if not segments:
            raise TranscriptUnavailableError(f"no transcript for {video_id}")
        return segments


class FakeVideoDetails:
    def __init__(self) -> None:
        self.details: dict[str, VideoDetails] = {SOUP_VIDEO_ID: sample_details()}

    def get(self, video_id: str) -> VideoDetails | None:
        return self.details.get(video_id)


def sample_segments() -> list[TranscriptSegment]:
    return [
        TranscriptSegment(text="Welcome back to the kitchen.", start_seconds=0.0),
        TranscriptSegment(text="Today we make leek soup.", start_seconds=4.5),
        TranscriptSegment(text="Chop the leeks finely.", start_seconds=65.0),
    ]


def sample_details(video_id: str = SOUP_VIDEO_ID) -> VideoDetails:
    return VideoDetails(
        video_id=video_id,
        title="Leek And Potato Soup",
        thumbnail_url="https://i.ytimg.com/vi/vid_soup_01/hqdefault.jpg",
        published_at="2024-02-01T10:00:00Z",
        views=12_345,
        likes=678,
        comments=9,
        channel_title="Test Cooking",
        channel_thumbnail_url=None,
        channel_subscribers=1_000,
    )


@dataclass
class ApiHarness:
    client: TestClient
    services: ServiceContainer
    chat_model: FakeChatModel
    text_model: FakeTextModel
    image_model: FakeImageModel
    transcripts: FakeTranscriptProvider
    video_details: FakeVideoDetails
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture(autouse=True)
def _provider_env_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.setenv("AGENTTUBE_DATA_DIR", str(tmp_path / "runtime-data"))
    monkeypatch.setenv("AGENTTUBE_OPENAI_API_KEY", "test-openai-key")
    monkeypatch.setenv("AGENTTUBE_SUPADATA_API_KEY", "test-supadata-key")
    monkeypatch.setenv("AGENTTUBE_METERING_MODE", "local")
    monkeypatch.setenv("AGENTTUBE_TELEMETRY_SINK", "none")
    monkeypatch.setenv("AGENTTUBE_ARTIFACT_POLL_INTERVAL_SECONDS", "0.02")
    monkeypatch.setenv("AGENTTUBE_ARTIFACT_POLL_TIMEOUT_SECONDS", "5")
    for name in ("AGENTTUBE_SCHEMATIC_API_KEY", "AGENTTUBE_YOUTUBE_API_KEY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_chat_model() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture
def fake_text_model() -> FakeTextModel:
    return FakeTextModel()


@pytest.fixture
def fake_image_model() -> FakeImageModel:
    return FakeImageModel()


@pytest.fixture
def fake_transcripts() -> FakeTranscriptProvider:
    return FakeTranscriptProvider()


@pytest.fixture
def fake_video_details() -> FakeVideoDetails:
    return FakeVideoDetails()


@pytest.fixture
def services(
    fake_chat_model: FakeChatModel,
    fake_text_model: FakeTextModel,
    fake_image_model: FakeImageModel,
    fake_transcripts: FakeTranscriptProvider,
    fake_video_details: FakeVideoDetails,
) -> Iterator[ServiceContainer]:
    reset_cached_dependencies()
    container = build_services(
        get_settings(),
        chat_model=fake_chat_model,
        text_model=fake_text_model,
        image_model=fake_image_model,
        transcript_provider=fake_transcripts,
        video_details=fake_video_details,
    )
    yield container
    container.shutdown()
    reset_cached_dependencies()


@pytest.fixture
def api(
    services: ServiceContainer,
    fake_chat_model: FakeChatModel,
    fake_text_model: FakeTextModel,
    fake_image_model: FakeImageModel,
    fake_transcripts: FakeTranscriptProvider,
    fake_video_details: FakeVideoDetails,
) -> Iterator[ApiHarness]:
    _, token = OwnerApiKeyRepository(services.database).create_key("owner_1", label="tests")

    app = create_app()
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as test_client:
        yield ApiHarness(
            client=test_client,
            services=services,
            chat_model=fake_chat_model,
            text_model=fake_text_model,
            image_model=fake_image_model,
            transcripts=fake_transcripts,
            video_details=fake_video_details,
            token=token,
        )
