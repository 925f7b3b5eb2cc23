from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from rapidfuzz.distance import OSA

TRANSCRIPT_KEYWORDS: tuple[str, ...] = (
    "transcript",
    "transcripts",
    "script",
    "scripts",
    "caption",
    "captions",
    "subtitle",
    "subtitles",
    "notes",
    "summary",
    "summaries",
    "summarize",
    "summarized",
    "synopsis",
    "recap",
    "overview",
    "detailed summary",
    "full summary",
)
DEFAULT_MAX_EDIT_DISTANCE = 1

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    return _TOKEN_PATTERN.findall(text.lower())


def matches(text: str | None, keywords: Iterable[str], max_edit_distance: int) -> bool:
    """True when ``text`` names any keyword, tolerating small typos.

    Every keyword is tried as a lowercase substring. Single-word keywords also match
    a token within ``max_edit_distance`` edits; multi-word keywords only match as
    substrings. Edits are insertions, deletions, substitutions and adjacent
    transpositions, each costing 1 (optimal string alignment).
    """
    if not text:
        return False
    lowered = text.lower()
    tokens = tokenize(lowered)

    for raw_keyword in keywords:
        keyword = raw_keyword.strip().lower()
        if not keyword:
            continue
        if keyword in lowered:
            return True
        if " " in keyword or max_edit_distance <= 0:
            continue
        for token in tokens:
            if abs(len(token) - len(keyword)) > max_edit_distance:
                continue
            distance = OSA.distance(token, keyword, score_cutoff=max_edit_distance)
            if distance <= max_edit_distance:
                return True
    return False


def latest_user_text(messages: Sequence[Mapping[str, Any]]) -> str | None:
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        text = str(message.get("content") or "").strip()
        if text:
            return text
    return None
