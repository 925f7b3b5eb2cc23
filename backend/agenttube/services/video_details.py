from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

LOGGER = logging.getLogger("agenttube.video_details")

YOUTUBE_API_BASE_URL = "https://www.googleapis.com/youtube/v3"
UNKNOWN_VIDEO_TITLE = "the selected video"
UNKNOWN_CHANNEL_TITLE = "Unknown channel"


@dataclass(frozen=True)
class VideoDetails:
    video_id: str
    title: str
    thumbnail_url: str | None
    published_at: str | None
    views: int | None
    likes: int | None
    comments: int | None
    channel_title: str | None
    channel_thumbnail_url: str | None
    channel_subscribers: int | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class VideoDetailsLookup(Protocol):
    def get(self, video_id: str) -> VideoDetails | None:
        ...


class YouTubeVideoDetailsClient:
    """YouTube Data API v3 lookup; every failure degrades to ``None``."""

    def __init__(
        self,
        *,
        api_key: str | None,
        http_timeout_seconds: float = 10.0,
        base_url: str = YOUTUBE_API_BASE_URL,
    ) -> None:
        self._api_key = api_key
        self._http_timeout_seconds = http_timeout_seconds
        self._base_url = base_url.rstrip("/")

    def get(self, video_id: str) -> VideoDetails | None:
        if self._api_key is None:
            return None
        try:
            video_payload = self._fetch_json(
                "videos",
                {"part": "snippet,statistics", "id": video_id},
            )
            items = _items(video_payload)
            if not items:
                LOGGER.info("video details not found video_id=%s", video_id)
                return None
            video = items[0]
            snippet = _as_dict(video.get("snippet"))
            statistics = _as_dict(video.get("statistics"))

            channel: dict[str, Any] = {}
            channel_id = snippet.get("channelId")
            if isinstance(channel_id, str) and channel_id:
                channel_items = _items(
                    self._fetch_json("channels", {"part": "snippet,statistics", "id": channel_id})
                )
                channel = channel_items[0] if channel_items else {}
        except (HTTPError, URLError, TimeoutError, OSError):
            LOGGER.warning("video details lookup failed video_id=%s", video_id, exc_info=True)
            return None

        channel_snippet = _as_dict(channel.get("snippet"))
        channel_statistics = _as_dict(channel.get("statistics"))
        return VideoDetails(
            video_id=video_id,
            title=str(snippet.get("title") or UNKNOWN_VIDEO_TITLE),
            thumbnail_url=_best_thumbnail(snippet.get("thumbnails")),
            published_at=_optional_text(snippet.get("publishedAt")),
            views=_optional_int(statistics.get("viewCount")),
            likes=_optional_int(statistics.get("likeCount")),
            comments=_optional_int(statistics.get("commentCount")),
            channel_title=_optional_text(snippet.get("channelTitle")),
            channel_thumbnail_url=_best_thumbnail(channel_snippet.get("thumbnails")),
            channel_subscribers=_optional_int(channel_statistics.get("subscriberCount")),
        )

    def _fetch_json(self, resource: str, params: dict[str, str]) -> dict[str, Any]:
        query = urlencode({**params, "key": self._api_key or ""})
        request = Request(
            f"{self._base_url}/{resource}?{query}",
            headers={"accept": "application/json", "user-agent": "agenttube/1.0"},
            method="GET",
        )
        with urlopen(request, timeout=self._http_timeout_seconds) as response:
            raw_body = response.read().decode("utf-8", errors="replace")
        try:
            return _as_dict(json.loads(raw_body))
        except json.JSONDecodeError:
            return {}


def _items(payload: dict[str, Any]) -> list[dict[str, Any]]:
    raw_items = payload.get("items")
    if not isinstance(raw_items, list):
        return []
    return [_as_dict(item) for item in cast(list[Any], raw_items)]


def _best_thumbnail(raw_thumbnails: object) -> str | None:
    thumbnails = _as_dict(raw_thumbnails)
    for size in ("maxres", "high", "medium", "default"):
        url = _as_dict(thumbnails.get(size)).get("url")
        if isinstance(url, str) and url:
            return url
    return None


def _optional_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_dict(value: object) -> dict[str, Any]:
    if isinstance(value, dict):
        return {str(key): item for key, item in cast(dict[object, Any], value).items()}
    return {}
