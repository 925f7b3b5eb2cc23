from __future__ import annotations

from backend.agenttube.services.fuzzy_intent import (
    TRANSCRIPT_KEYWORDS,
    latest_user_text,
    matches,
    tokenize,
)


def test_tokenize_lowercases_and_splits_on_punctuation() -> None:
    assert tokenize("Show me the SUB-titles, please!") == ["show", "me", "the", "sub", "titles", "please"]


def test_near_miss_spellings_match_within_one_edit() -> None:
    assert matches("transcirpt", {"transcript"}, 1)
    assert matches("can I get the transcrpt?", {"transcript"}, 1)
    assert matches("captoins please", {"captions"}, 1)


def test_zero_distance_only_allows_substrings() -> None:
    assert not matches("transcirpt", {"transcript"}, 0)
    assert matches("send the manuscript", {"script"}, 0)


def test_unrelated_words_do_not_match() -> None:
    assert not matches("script", {"subtitle"}, 1)
    assert not matches("make me a thumbnail", TRANSCRIPT_KEYWORDS, 1)


def test_multi_word_keyword_only_matches_as_substring() -> None:
    assert matches("give me the full summary", {"full summary"}, 1)
    assert not matches("give me the full sumary", {"full summary"}, 1)
    assert not matches("full", {"full summary"}, 1)


def test_default_keywords_cover_summary_requests() -> None:
    assert matches("Can you summarize this?", TRANSCRIPT_KEYWORDS, 1)
    assert matches("quick recpa?", TRANSCRIPT_KEYWORDS, 1)


def test_empty_text_never_matches() -> None:
    assert not matches(None, TRANSCRIPT_KEYWORDS, 1)
    assert not matches("", TRANSCRIPT_KEYWORDS, 1)


def test_latest_user_text_skips_assistant_and_blank_messages() -> None:
    messages = [
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": "an answer"},
        {"role": "user", "content": "  summarise this please  "},
        {"role": "user", "content": "   "},
        {"role": "assistant", "content": "later answer"},
    ]

    assert latest_user_text(messages) == "summarise this please"
    assert latest_user_text([{"role": "assistant", "content": "hi"}]) is None
