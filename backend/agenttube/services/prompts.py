from __future__ import annotations

import random
import time
from dataclasses import dataclass

from backend.agenttube.services.video_details import (
    UNKNOWN_CHANNEL_TITLE,
    UNKNOWN_VIDEO_TITLE,
    VideoDetails,
)

TITLE_SYSTEM_PROMPT = (
    "You write original YouTube video titles. Each title is SEO-friendly, engaging, "
    "at most 100 characters, and different from titles you have written before. "
    "Reply with the title only."
)


@dataclass(frozen=True)
class VideoContext:
    video_id: str
    title: str
    channel_title: str
    views: str
    published_at: str

    @classmethod
    def from_details(cls, video_id: str, details: VideoDetails | None) -> VideoContext:
        if details is None:
            return cls(
                video_id=video_id,
                title=UNKNOWN_VIDEO_TITLE,
                channel_title=UNKNOWN_CHANNEL_TITLE,
                views="Unknown",
                published_at="Unknown",
            )
        return cls(
            video_id=video_id,
            title=details.title or UNKNOWN_VIDEO_TITLE,
            channel_title=details.channel_title or UNKNOWN_CHANNEL_TITLE,
            views=str(details.views) if details.views is not None else "Unknown",
            published_at=details.published_at or "Unknown",
        )


def transcript_answer_system_prompt(video: VideoContext) -> str:
    return (
        f'You are AgentTube, an upbeat assistant for the video "{video.title}" by '
        f"{video.channel_title}. Answer in Markdown with exactly this structure:\n\n"
        f"## Transcript for **{video.title}**\n"
        "- One upbeat sentence about the video.\n\n"
        "### Transcript Summary\n"
        "- Four to six bullets with the key points, without timestamps.\n\n"
        "### Transcript Segments\n"
        "- [timestamp] exact quotes for at least five consecutive segments "
        "(or every segment if there are fewer).\n\n"
        "Quote faithfully and close by inviting the user to keep exploring the video."
    )


def transcript_answer_user_prompt(latest_user_text: str | None, transcript_lines: str) -> str:
    question = latest_user_text or "Provide the transcript."
    return (
        f'The user asked: "{question}"\n\n'
        "Use the transcript excerpts below for the summary and the segment list.\n\n"
        f"Transcript excerpts:\n{transcript_lines}"
    )


def transcript_unavailable_system_prompt(video: VideoContext) -> str:
    return (
        "You are AgentTube, a supportive assistant for video creators. The transcript for "
        f'"{video.title}" could not be retrieved. Start with the heading "## Hello there!", '
        "explain kindly that captions are not available yet without inventing quotes, "
        "offer two or three next steps (another video, a high-level summary, or upgrading "
        "the plan for guaranteed transcripts) and invite the user to keep exploring."
    )


def transcript_unavailable_user_prompt(latest_user_text: str | None, video: VideoContext) -> str:
    question = latest_user_text or "Please share the transcript."
    return (
        f'The user asked: "{question}" but no transcript is available for "{video.title}" '
        f"(id: {video.video_id}). Explain this and suggest alternatives."
    )


def default_system_prompt(video: VideoContext) -> str:
    return (
        f'You are AgentTube, an upbeat assistant helping with the video "{video.title}" '
        f"by {video.channel_title}.\n\n"
        "Video context you already know:\n"
        f"- Title: {video.title}\n"
        f"- Channel: {video.channel_title}\n"
        f"- Views: {video.views}\n"
        f"- Published: {video.published_at}\n"
        f"- Video ID: {video.video_id}\n\n"
        "Rules:\n"
        "1. Open with the heading `## Hello there!` and mention the video title.\n"
        "2. Never ask for the video ID.\n"
        "3. Call fetchTranscript whenever the user needs exact spoken content.\n"
        "4. Call generateTitle when the user asks for a title, passing their tone as the prompt.\n"
        "5. Call generateImage when the user asks for a thumbnail or image, passing a "
        "descriptive prompt.\n"
        "6. If a tool returns an error, apologise briefly, never expose internal details, "
        "and mention upgrading the plan when the error says so.\n"
        "7. Prefer friendly language and bullet lists for complex answers."
    )


def fallback_title_instruction(video: VideoContext) -> str:
    title = video.title if video.title != UNKNOWN_VIDEO_TITLE else "this video"
    channel = video.channel_title if video.channel_title != UNKNOWN_CHANNEL_TITLE else "this creator"
    return f'Craft an engaging, high-retention YouTube title for "{title}" by {channel}.'


def title_prompt(video: VideoContext, instructions: str) -> str:
    segments = [
        "Generate ONE concise, SEO-friendly YouTube title (100 characters or less).",
        (
            f"Video context: Title: {video.title}. Channel: {video.channel_title}. "
            f"Published: {video.published_at}. Views: {video.views}."
        ),
        f"Variation seed: {int(time.time() * 1000)}-{random.randint(0, 999)}",
        f'Make it different from: "{video.title}"',
    ]
    if instructions.strip():
        segments.append(f"User style preference: {instructions.strip()}")
    return "\n".join(segments)


def fallback_thumbnail_prompt(video: VideoContext) -> str:
    title = video.title if video.title != UNKNOWN_VIDEO_TITLE else "this YouTube video"
    channel = (
        video.channel_title if video.channel_title != UNKNOWN_CHANNEL_TITLE else "the channel owner"
    )
    return " ".join(
        [
            f'Design a cinematic, high-contrast YouTube thumbnail for "{title}".',
            "Feature expressive faces on the left against a soft bokeh background.",
            f"Add bold typography referencing the channel {channel}.",
            "Use vibrant purples and blues with subtle lens flare.",
        ]
    )
