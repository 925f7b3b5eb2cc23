from __future__ import annotations

import asyncio
import json
import time
from typing import Any, cast

import pytest
from conftest import PNG_BYTES, SOUP_VIDEO_ID, ApiHarness
from fastapi import Request

from backend.agenttube.api.routes import _stream_turn
from backend.agenttube.errors import ProviderOverloadedError
from backend.agenttube.services.chat_orchestrator import ChatTurnRequest
from backend.agenttube.services.language_model import TextDelta, ToolCallRequest
from backend.agenttube.services.metering import EntitlementDecision


def _sse_events(body: str) -> list[dict[str, Any] | str]:
    events: list[dict[str, Any] | str] = []
    for frame in body.split("\n\n"):
        if not frame.startswith("data: "):
            continue
        data = frame[len("data: ") :]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


def test_health(api: ApiHarness) -> None:
    response = api.client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"]


def test_requests_without_valid_key_are_unauthorized(api: ApiHarness) -> None:
    missing = api.client.post("/transcript", json={"resourceId": SOUP_VIDEO_ID})
    wrong = api.client.post(
        "/transcript",
        json={"resourceId": SOUP_VIDEO_ID},
        headers={"Authorization": "Bearer okey_nope.secret"},
    )
    basic = api.client.get("/usage", headers={"Authorization": "Basic abc"})

    assert [missing.status_code, wrong.status_code, basic.status_code] == [401, 401, 401]


def test_transcript_miss_then_hit(api: ApiHarness) -> None:
    first = api.client.post(
        "/transcript",
        json={"resourceId": SOUP_VIDEO_ID, "shouldProcess": True},
        headers=api.headers,
    )
    second = api.client.post(
        "/transcript",
        json={"videoId": SOUP_VIDEO_ID},
        headers=api.headers,
    )

    assert first.status_code == 200
    body = first.json()
    assert body["isNew"] is True
    assert body["transcript"][1] == {"text": "Today we make leek soup.", "timestamp": "0:04"}
    assert second.json()["isNew"] is False
    assert "without updating plan usage" in second.json()["cache"]
    assert api.transcripts.calls == [SOUP_VIDEO_ID]


def test_transcript_lookup_only_returns_empty(api: ApiHarness) -> None:
    response = api.client.post(
        "/transcript",
        json={"resourceId": "vid_other", "shouldProcess": False},
        headers=api.headers,
    )

    assert response.status_code == 200
    assert response.json() == {"transcript": [], "cache": "", "isNew": False}


def test_transcript_unavailable_is_404(api: ApiHarness) -> None:
    response = api.client.post(
        "/transcript",
        json={"resourceId": "vid_no_captions"},
        headers=api.headers,
    )

    assert response.status_code == 404
    assert response.json() == {"error": "Transcript not available for this video."}


def test_transcript_rejects_malformed_resource_id(api: ApiHarness) -> None:
    response = api.client.post(
        "/transcript",
        json={"resourceId": "../../etc/passwd"},
        headers=api.headers,
    )

    assert response.status_code == 422


def test_transcript_quota_exceeded_is_403(api: ApiHarness, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        api.services.metering_provider,
        "check_limit",
        lambda owner_id, feature_kind: EntitlementDecision(
            allowed=False,
            reason="You have reached your transcription limit.",
        ),
    )

    response = api.client.post("/transcript", json={"resourceId": SOUP_VIDEO_ID}, headers=api.headers)

    assert response.status_code == 403
    assert response.json() == {"error": "You have reached your transcription limit."}


def test_videos_get_or_create(api: ApiHarness) -> None:
    lookup = api.client.post(
        "/videos",
        json={"videoId": SOUP_VIDEO_ID, "shouldProcess": False},
        headers=api.headers,
    )
    created = api.client.post("/videos", json={"videoId": SOUP_VIDEO_ID}, headers=api.headers)
    repeated = api.client.post("/videos", json={"videoId": SOUP_VIDEO_ID}, headers=api.headers)

    assert lookup.json() == {"success": True, "isNew": False}
    created_body = created.json()
    assert created_body["success"] is True
    assert created_body["isNew"] is True
    assert created_body["data"]["videoId"] == SOUP_VIDEO_ID
    assert created_body["data"]["userId"] == "owner_1"
    assert created_body["data"]["details"]["title"] == "Leek And Potato Soup"
    assert repeated.json()["isNew"] is False


def test_chat_streams_sse_until_done(api: ApiHarness) -> None:
    api.chat_model.rounds = [[TextDelta("## Hello there! "), TextDelta("Welcome.")]]

    response = api.client.post(
        "/chat",
        json={
            "id": "chat_1",
            "resourceId": SOUP_VIDEO_ID,
            "messages": [{"role": "user", "parts": [{"type": "text", "text": "hi!"}]}],
        },
        headers=api.headers,
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(response.text)
    assert [event["type"] for event in events[:-1] if isinstance(event, dict)] == [
        "start",
        "text-delta",
        "text-delta",
        "finish",
    ]
    assert events[-1] == "[DONE]"
    assert api.chat_model.calls[0]["messages"][0].content == "hi!"


class _DisconnectingRequest:
    def __init__(self, connected_checks: int) -> None:
        self._connected_checks = connected_checks

    async def is_disconnected(self) -> bool:
        self._connected_checks -= 1
        return self._connected_checks < 0


def test_chat_stream_cancels_turn_when_client_disconnects(api: ApiHarness) -> None:
    api.chat_model.rounds = [[TextDelta("one"), TextDelta("two"), TextDelta("three")]]
    turn = api.services.chat_orchestrator.start_turn(
        ChatTurnRequest(
            owner_id="owner_1",
            session_id="chat_1",
            resource_id=SOUP_VIDEO_ID,
            messages=[{"role": "user", "content": "hello there"}],
        )
    )

    async def _read_until_disconnect() -> list[str]:
        request = cast(Request, _DisconnectingRequest(connected_checks=2))
        return [frame async for frame in _stream_turn(request, turn)]

    frames = asyncio.run(_read_until_disconnect())

    events = _sse_events("".join(frames))
    assert [event["type"] for event in events if isinstance(event, dict)] == ["start", "text-delta"]
    assert "[DONE]" not in events
    assert turn.cancelled is True
    assert api.chat_model.closed_streams == 1

def test_chat_reuses_session_context(api: ApiHarness) -> None:
    api.client.post(
        "/chat",
        json={"id": "chat_9", "resourceId": SOUP_VIDEO_ID, "messages": [{"role": "user", "content": "hi"}]},
        headers=api.headers,
    )
    follow_up = api.client.post(
        "/chat",
        json={"id": "chat_9", "messages": [{"role": "user", "content": "and again"}]},
        headers=api.headers,
    )

    assert follow_up.status_code == 200
    assert f"- Video ID: {SOUP_VIDEO_ID}" in api.chat_model.calls[1]["system"]


def test_chat_without_context_is_400(api: ApiHarness) -> None:
    response = api.client.post(
        "/chat",
        json={"id": "chat_new", "messages": [{"role": "user", "content": "hi"}]},
        headers=api.headers,
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Video context missing"}


def test_chat_overload_before_stream_is_503(api: ApiHarness) -> None:
    api.chat_model.error = ProviderOverloadedError("overloaded_error from upstream")

    response = api.client.post(
        "/chat",
        json={"id": "chat_1", "resourceId": SOUP_VIDEO_ID, "messages": [{"role": "user", "content": "hi"}]},
        headers=api.headers,
    )

    assert response.status_code == 503
    assert "overloaded" in response.json()["error"]
    assert "upstream" not in response.json()["error"]


def test_chat_tool_results_are_persisted_and_listed(api: ApiHarness) -> None:
    api.chat_model.rounds = [
        [
            ToolCallRequest("call_t", "generateTitle", {"prompt": "cozy"}),
            ToolCallRequest("call_i", "generateImage", {"prompt": "soup bowl"}),
        ],
        [TextDelta("Done!")],
    ]

    response = api.client.post(
        "/chat",
        json={
            "id": "chat_1",
            "resourceId": SOUP_VIDEO_ID,
            "messages": [{"role": "user", "content": "make a title and a thumbnail"}],
        },
        headers=api.headers,
    )

    events = [event for event in _sse_events(response.text) if isinstance(event, dict)]
    results = [event for event in events if event["type"] == "tool-result"]
    assert [result["toolName"] for result in results] == ["generateTitle", "generateImage"]
    assert all(result["isError"] is False for result in results)

    titles = api.client.get(f"/videos/{SOUP_VIDEO_ID}/titles", headers=api.headers).json()["titles"]
    images = api.client.get(f"/videos/{SOUP_VIDEO_ID}/images", headers=api.headers).json()["images"]
    assert [title["title"] for title in titles] == ["Ten Soups You Must Try"]
    assert images[0]["prompt"] == "soup bowl"
    assert images[0]["imageUrl"].endswith(f"/artifacts/{images[0]['storageId']}")

    artifact = api.client.get(f"/artifacts/{images[0]['storageId']}")
    assert artifact.status_code == 200
    assert artifact.content == PNG_BYTES
    assert artifact.headers["content-type"] == "image/png"


def test_artifact_lookup_misses_are_404(api: ApiHarness) -> None:
    reference = api.services.object_store.upload(PNG_BYTES, content_type="image/png")
    deadline = time.monotonic() + 5
    while api.services.object_store.resolve_url(reference) is None and time.monotonic() < deadline:
        time.sleep(0.01)

    assert api.client.get(f"/artifacts/{reference}").status_code == 200
    missing = api.client.get("/artifacts/obj_does_not_exist")
    assert missing.status_code == 404
    assert missing.json() == {"error": "Artifact not found."}


def test_usage_reports_local_plan(api: ApiHarness) -> None:
    api.client.post("/transcript", json={"resourceId": SOUP_VIDEO_ID}, headers=api.headers)

    response = api.client.get("/usage", headers=api.headers)

    assert response.status_code == 200
    body = response.json()
    assert body["ownerId"] == "owner_1"
    by_feature = {feature["feature"]: feature for feature in body["features"]}
    assert by_feature["transcription"]["usage"] == 1
    assert by_feature["transcription"]["allocation"] == 10
    assert by_feature["transcription"]["remaining"] == 9
    assert by_feature["image-generation"]["enabled"] is True
