"""
Chapter Extractor - Asks a language model for a book's table of contents.

The model is told to answer with {"chapters": [...]}, but replies arrive
wrapped in markdown fences, embedded in prose, shaped as a bare array, or
cut off mid-object when the token limit is hit. Parsing is an ordered chain
of small parsers, each returning a chapter list or None; the first hit wins
and an empty list is returned only when every parser misses.

Example:
    extractor = ChapterExtractor(GroqChatModel(api_key))
    result = extractor.extract(sample_text, document)
    for chapter in result.chapters:
        print(chapter.number, chapter.title_en, chapter.title_bn)
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from koushole.config import (
    CHAPTER_MAX_ATTEMPTS,
    CHAPTER_MAX_TOKENS,
    CHAPTER_RETRY_DELAY_SECONDS,
    CHAPTER_SAMPLE_CHARS,
    PROVIDER_TIMEOUT_SECONDS,
)
from koushole.llm import ChatModel
from koushole.models import Chapter, Document
from koushole.utils.errors import DeadlineExceeded, LLMError, ProviderError
from koushole.utils.logging import get_logger
from koushole.utils.retry import Deadline, RetryPolicy

logger = get_logger(__name__)

# ```json ... ``` or ``` ... ```
_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)

_CLOSERS = {"{": "}", "[": "]"}

SYSTEM_PROMPT = (
    "You read textbook tables of contents for Bangladeshi school and college "
    "books. Books may be in Bangla, English or both. Respond with JSON only."
)

USER_PROMPT_TEMPLATE = """Extract the chapter list from the opening pages of this book.

{context}

Return a JSON object of this exact shape:
{{"chapters": [{{"chapter_number": 1, "title_en": "English title", "title_bn": "বাংলা শিরোনাম", "page_start": 1, "page_end": 12}}]}}

Rules:
- One entry per chapter, in book order.
- Give both title_en and title_bn; translate or transliterate the one the book lacks.
- Use null for page numbers you cannot see.
- If there is no recognisable chapter list, return {{"chapters": []}}.

Text:
{sample}"""


# =============================================================================
# JSON RECOVERY
# =============================================================================


def _match_bracket(text: str, open_idx: int) -> int | None:
    """
    Index of the bracket closing the one at open_idx, or None if unbalanced.

    Brackets inside JSON strings (including escaped quotes) are ignored.
    """
    opener = text[open_idx]
    closer = _CLOSERS[opener]
    depth = 0
    in_string = False
    escaped = False
    for i in range(open_idx, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return i
    return None


def find_json_object(text: str, open_char: str = "{") -> str | None:
    """
    Locate the first balanced JSON object (or array) inside free text.

    Example:
        find_json_object('Sure! {"a": {"b": 1}} Hope that helps.')
        # '{"a": {"b": 1}}'
    """
    start = text.find(open_char)
    while start != -1:
        end = _match_bracket(text, start)
        if end is not None:
            return text[start:end + 1]
        start = text.find(open_char, start + 1)
    return None


def loads_or_none(text: str | None) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _chapters_from(parsed: Any) -> Optional[list]:
    """Pull the chapter list out of either documented or array shape."""
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in ("chapters", "Chapters", "table_of_contents", "toc"):
            if isinstance(parsed.get(key), list):
                return parsed[key]
    return None


def _parse_direct(text: str) -> Optional[list]:
    return _chapters_from(loads_or_none(text.strip()))


def _parse_fenced(text: str) -> Optional[list]:
    match = _JSON_FENCE_RE.search(text)
    return _chapters_from(loads_or_none(match.group(1).strip())) if match else None


def _parse_embedded_object(text: str) -> Optional[list]:
    return _chapters_from(loads_or_none(find_json_object(text, "{")))


def _parse_embedded_array(text: str) -> Optional[list]:
    return _chapters_from(loads_or_none(find_json_object(text, "[")))


def _parse_truncated(text: str) -> Optional[list]:
    """Salvage every complete chapter object from a reply cut off mid-list."""
    anchor = text.find('"chapters"')
    list_start = text.find("[", anchor if anchor != -1 else 0)
    if list_start == -1:
        return None

    items = []
    pos = list_start + 1
    while True:
        obj_start = text.find("{", pos)
        if obj_start == -1:
            break
        obj_end = _match_bracket(text, obj_start)
        if obj_end is None:
            break  # the truncated tail
        item = loads_or_none(text[obj_start:obj_end + 1])
        if isinstance(item, dict):
            items.append(item)
        pos = obj_end + 1
    return items or None


CHAPTER_PARSERS: tuple[Callable[[str], Optional[list]], ...] = (
    _parse_direct,
    _parse_fenced,
    _parse_embedded_object,
    _parse_embedded_array,
    _parse_truncated,
)


# =============================================================================
# NORMALIZATION
# =============================================================================


def _as_int(value: Any) -> int | None:
    """Read 3, "3", "Chapter 3" or "৩" as 3."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    match = re.search(r"\d+", str(value))
    return int(match.group()) if match else None


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def normalize_chapters(raw: list) -> list[Chapter]:
    """
    Turn loosely-shaped model output into Chapter records.

    - number from chapter_number / number / chapter, else list position
    - title_en from title_en / title, title_bn from title_bn / title
    - a missing language is filled from the other; entries with no title are dropped
    - duplicate numbers keep the first entry
    """
    chapters: dict[int, Chapter] = {}
    for position, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            continue
        number = None
        for key in ("chapter_number", "number", "chapter"):
            number = _as_int(item.get(key))
            if number is not None:
                break
        if number is None:
            number = position

        generic = _text(item.get("title"))
        title_en = _text(item.get("title_en")) or generic
        title_bn = _text(item.get("title_bn")) or generic
        if not title_en and not title_bn:
            continue
        title_en = title_en or title_bn
        title_bn = title_bn or title_en

        if number in chapters:
            continue
        chapters[number] = Chapter(
            number=number,
            title_en=title_en,
            title_bn=title_bn,
            page_start=_as_int(item.get("page_start", item.get("page"))),
            page_end=_as_int(item.get("page_end")),
        )
    return [chapters[number] for number in sorted(chapters)]


def parse_chapter_response(text: str | None) -> list[Chapter]:
    """Run the parser chain over a model reply; never raises."""
    if not text or not text.strip():
        return []
    for parser in CHAPTER_PARSERS:
        raw = parser(text)
        if raw is not None:
            return normalize_chapters(raw)
    logger.info("chapter_response_unparseable", preview=text[:120])
    return []


# =============================================================================
# EXTRACTOR
# =============================================================================


@dataclass
class ChapterExtraction:
    """
    Outcome of one extraction.

    `error` is set only when the model could not be reached; an empty
    `chapters` list with no error means the book has no discernible TOC.
    """
    chapters: list[Chapter] = field(default_factory=list)
    error: str | None = None
    raw_response: str = ""


class ChapterExtractor:
    """
    Extracts a structured chapter list from a text sample.

    Example:
        extractor = ChapterExtractor(model)
        result = extractor.extract(first_pages_text, document)
    """

    def __init__(
        self,
        model: ChatModel,
        retry_policy: RetryPolicy | None = None,
        sample_chars: int = CHAPTER_SAMPLE_CHARS,
    ):
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=CHAPTER_MAX_ATTEMPTS,
            delay_seconds=CHAPTER_RETRY_DELAY_SECONDS,
        )
        self.sample_chars = sample_chars

    def build_prompt(self, sample: str, document: Document | None = None) -> str:
        context = document.context_line if document else "Title: Unknown"
        return USER_PROMPT_TEMPLATE.format(context=context, sample=sample[:self.sample_chars])

    def extract(
        self,
        text: str,
        document: Document | None = None,
        deadline: Deadline | None = None,
    ) -> ChapterExtraction:
        """
        Ask the model for chapters found in `text`.

        Args:
            text: Sample text; only the first `sample_chars` are sent
            document: Supplies title and curriculum context for the prompt
            deadline: Per-document time budget

        Returns:
            ChapterExtraction (never raises for model or parsing trouble)
        """
        if not text or not text.strip():
            return ChapterExtraction()

        prompt = self.build_prompt(text, document)

        def call() -> str:
            timeout = deadline.clamp(PROVIDER_TIMEOUT_SECONDS) if deadline else PROVIDER_TIMEOUT_SECONDS
            return self.model.complete(
                SYSTEM_PROMPT,
                prompt,
                temperature=0.1,
                max_tokens=CHAPTER_MAX_TOKENS,
                json_mode=True,
                timeout=timeout,
            )

        try:
            raw = self.retry_policy.call(call, deadline=deadline, operation="chapter_extraction")
        except (ProviderError, LLMError, DeadlineExceeded) as exc:
            logger.warning("chapter_extraction_failed", provider=self.model.name, error=str(exc))
            return ChapterExtraction(error=str(exc))

        chapters = parse_chapter_response(raw)
        logger.info("chapters_extracted", provider=self.model.name, chapter_count=len(chapters))
        return ChapterExtraction(chapters=chapters, raw_response=raw)
