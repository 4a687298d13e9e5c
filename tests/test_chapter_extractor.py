"""Tests for chapter extraction and tolerant JSON recovery."""

import json

from conftest import FakeChatModel

from koushole.ingestion.chapter_extractor import (
    ChapterExtractor,
    find_json_object,
    normalize_chapters,
    parse_chapter_response,
)
from koushole.models import CollectionType, Document
from koushole.utils.errors import LLMError, RateLimitError
from koushole.utils.retry import RetryPolicy

TWO_CHAPTERS = {
    "chapters": [
        {"chapter_number": 1, "title_en": "Numbers", "title_bn": "সংখ্যা", "page_start": 1, "page_end": 10},
        {"chapter_number": 2, "title_en": "Fractions", "title_bn": "ভগ্নাংশ", "page_start": 11, "page_end": 20},
    ]
}


# ── Response parsing ────────────────────────────────────────────────────────


class TestParseResponse:
    def test_plain_json(self):
        chapters = parse_chapter_response(json.dumps(TWO_CHAPTERS))
        assert [c.number for c in chapters] == [1, 2]
        assert chapters[0].title_bn == "সংখ্যা"
        assert chapters[1].page_start == 11

    def test_markdown_fenced_json(self):
        reply = "```json\n" + json.dumps(TWO_CHAPTERS, ensure_ascii=False) + "\n```"
        assert len(parse_chapter_response(reply)) == 2

    def test_json_inside_prose(self):
        reply = "Here is the table of contents you asked for:\n" + json.dumps(TWO_CHAPTERS) + "\nLet me know!"
        assert [c.title_en for c in parse_chapter_response(reply)] == ["Numbers", "Fractions"]

    def test_bare_array(self):
        reply = json.dumps(TWO_CHAPTERS["chapters"])
        assert len(parse_chapter_response(reply)) == 2

    def test_truncated_reply_keeps_complete_entries(self):
        full = json.dumps(TWO_CHAPTERS)
        cut = full[: full.index('"Fractions"') + 5]
        chapters = parse_chapter_response(cut)
        assert [c.number for c in chapters] == [1]

    def test_unparseable_reply_gives_empty_list(self):
        assert parse_chapter_response("I could not find any chapters in this text.") == []
        assert parse_chapter_response("") == []
        assert parse_chapter_response(None) == []

    def test_explicit_empty_list(self):
        assert parse_chapter_response('{"chapters": []}') == []

    def test_braces_inside_strings_do_not_confuse_matching(self):
        reply = 'Note {see below}: {"chapters": [{"number": 1, "title": "Sets {A, B}"}]}'
        chapters = parse_chapter_response(reply)
        assert chapters[0].title_en == "Sets {A, B}"

    def test_find_json_object_returns_first_balanced_object(self):
        assert find_json_object('Sure! {"a": {"b": 1}} Hope that helps.') == '{"a": {"b": 1}}'
        assert find_json_object("no json here") is None


# ── Normalization ───────────────────────────────────────────────────────────


class TestNormalizeChapters:
    def test_fills_missing_language_from_the_other(self):
        chapters = normalize_chapters([{"number": 1, "title_bn": "কোষ"}])
        assert chapters[0].title_en == "কোষ"
        assert chapters[0].title_bn == "কোষ"

    def test_generic_title_key(self):
        chapters = normalize_chapters([{"chapter": "Chapter 4", "title": "Motion"}])
        assert chapters[0].number == 4
        assert chapters[0].title_en == "Motion"

    def test_bangla_digits_in_numbers(self):
        chapters = normalize_chapters([{"chapter_number": "৩", "title_bn": "বল"}])
        assert chapters[0].number == 3

    def test_missing_number_uses_position(self):
        chapters = normalize_chapters([{"title": "One"}, {"title": "Two"}])
        assert [c.number for c in chapters] == [1, 2]

    def test_entries_without_title_are_dropped(self):
        chapters = normalize_chapters([{"number": 1}, {"number": 2, "title": "Kept"}, "junk"])
        assert [c.number for c in chapters] == [2]

    def test_duplicates_keep_first_and_result_is_sorted(self):
        chapters = normalize_chapters([
            {"number": 2, "title": "Second"},
            {"number": 1, "title": "First"},
            {"number": 2, "title": "Duplicate"},
        ])
        assert [(c.number, c.title_en) for c in chapters] == [(1, "First"), (2, "Second")]


# ── Extractor ───────────────────────────────────────────────────────────────


def _extractor(model, pauses=None):
    return ChapterExtractor(
        model,
        retry_policy=RetryPolicy(max_attempts=2, delay_seconds=10.0, sleep=(pauses if pauses is not None else []).append),
    )


class TestChapterExtractor:
    def test_extracts_chapters_from_sample(self):
        model = FakeChatModel()
        result = _extractor(model).extract("Contents\nChapter 1: Sets\nChapter 2: Algebra")
        assert [c.title_en for c in result.chapters] == ["Sets", "Algebra"]
        assert result.error is None

    def test_requests_json_mode_at_low_temperature(self):
        model = FakeChatModel()
        _extractor(model).extract("Chapter 1: Sets")
        assert model.calls[0]["json_mode"] is True
        assert model.calls[0]["temperature"] == 0.1

    def test_prompt_carries_document_context(self):
        model = FakeChatModel()
        document = Document(
            id="b1", collection=CollectionType.OFFICIAL, title="General Science",
            subject="Science", class_level="8",
        )
        _extractor(model).extract("Chapter 1: Sets", document)
        prompt = model.calls[0]["user"]
        assert "General Science" in prompt
        assert "Class: 8" in prompt

    def test_sample_is_truncated(self):
        model = FakeChatModel()
        extractor = ChapterExtractor(model, sample_chars=100)
        extractor.extract("z" * 5000)
        assert "z" * 101 not in model.calls[0]["user"]

    def test_empty_text_skips_the_model(self):
        model = FakeChatModel()
        result = _extractor(model).extract("   ")
        assert result.chapters == []
        assert model.calls == []

    def test_rate_limit_is_retried(self):
        pauses = []
        model = FakeChatModel(replies=[RateLimitError("slow down"), json.dumps(TWO_CHAPTERS)])
        result = _extractor(model, pauses).extract("some sample text")
        assert len(result.chapters) == 2
        assert pauses == [10.0]

    def test_provider_failure_becomes_error_field(self):
        model = FakeChatModel(replies=[RateLimitError("slow down"), RateLimitError("still slow")])
        result = _extractor(model).extract("some sample text")
        assert result.chapters == []
        assert "still slow" in result.error

    def test_rejected_request_is_not_retried(self):
        model = FakeChatModel(replies=[LLMError("bad request")])
        result = _extractor(model).extract("some sample text")
        assert len(model.calls) == 1
        assert result.error
