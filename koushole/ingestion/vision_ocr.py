"""
Vision OCR Fallback - Reads scanned PDFs with a multimodal model.

Used only when direct extraction fails the quality gate. The whole PDF is
sent inline (so it is size-capped), rate limits are retried with a fixed
pause, and the reply is searched for a JSON object. A reply without JSON is
kept as freeform text for a second chapter-extraction pass.

Two outcomes must stay distinguishable for callers:
- the service answered but found no chapters: chapters == [], error is None
- the service failed: error is set
"""

from dataclasses import dataclass, field
from enum import Enum

from koushole.config import (
    OCR_MAX_ATTEMPTS,
    OCR_MAX_BYTES,
    OCR_RETRY_DELAY_SECONDS,
    PROVIDER_TIMEOUT_SECONDS,
)
from koushole.ingestion.chapter_extractor import find_json_object, loads_or_none, normalize_chapters
from koushole.llm import VisionModel
from koushole.models import Chapter, Document
from koushole.utils.errors import DeadlineExceeded, LLMError, ProviderError
from koushole.utils.logging import get_logger
from koushole.utils.retry import Deadline, RetryPolicy

logger = get_logger(__name__)


class OCRMode(str, Enum):
    """What the vision model is asked for."""

    CHAPTERS = "chapters"  # table of contents plus a sample of body text
    TEXT = "text"          # freeform text of the whole book


CHAPTERS_PROMPT = """This is a scanned textbook. {context}

Read the table of contents and the opening chapters, then reply with JSON only:
{{"chapters": [{{"chapter_number": 1, "title_en": "English title", "title_bn": "বাংলা শিরোনাম", "page_start": 1, "page_end": 12}}],
 "content": "the readable text of the book, in reading order, as much as fits"}}

Give both title_en and title_bn for every chapter, translating or transliterating where the book shows only one.
If there is no chapter list, return an empty "chapters" array and still fill "content"."""

TEXT_PROMPT = """This is a scanned textbook. {context}

Transcribe all readable text in reading order. Keep Bangla in Bangla script.
Reply with the text only, no commentary."""


@dataclass
class OCRResult:
    """
    Outcome of one OCR attempt.

    Attributes:
        text: Body text recovered (from "content" or the freeform reply)
        chapters: Chapters found in a JSON reply
        raw_response: The model's reply as received
        found_json: True if a JSON object was located in the reply
        error: Set when the service failed after all retries
        skipped_reason: Set when OCR was not attempted (e.g. file too large)
    """
    text: str = ""
    chapters: list[Chapter] = field(default_factory=list)
    raw_response: str = ""
    found_json: bool = False
    error: str | None = None
    skipped_reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.skipped_reason is None


class VisionOCRFallback:
    """
    Extracts chapters and/or text from a PDF with a vision model.

    Example:
        ocr = VisionOCRFallback(GeminiVisionModel(api_key))
        result = ocr.extract(pdf_bytes, document)
        if result.error:
            print("OCR service failed:", result.error)
    """

    def __init__(
        self,
        model: VisionModel,
        max_bytes: int = OCR_MAX_BYTES,
        retry_policy: RetryPolicy | None = None,
    ):
        self.model = model
        self.max_bytes = max_bytes
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=OCR_MAX_ATTEMPTS,
            delay_seconds=OCR_RETRY_DELAY_SECONDS,
        )

    def can_process(self, byte_size: int) -> bool:
        return 0 < byte_size <= self.max_bytes

    def extract(
        self,
        pdf_bytes: bytes,
        document: Document | None = None,
        mode: OCRMode = OCRMode.CHAPTERS,
        deadline: Deadline | None = None,
    ) -> OCRResult:
        """
        Run OCR over the PDF.

        Args:
            pdf_bytes: Raw PDF
            document: Supplies title context for the prompt
            mode: CHAPTERS for a JSON TOC + content, TEXT for plain text
            deadline: Per-document time budget

        Returns:
            OCRResult; never raises for provider failures or "no chapters"
        """
        if not self.can_process(len(pdf_bytes)):
            reason = (
                f"PDF is {len(pdf_bytes) / (1024 * 1024):.1f}MB, "
                f"over the {self.max_bytes / (1024 * 1024):.0f}MB OCR limit"
            )
            logger.info("ocr_skipped", reason=reason, byte_size=len(pdf_bytes))
            return OCRResult(skipped_reason=reason)

        context = document.context_line if document else ""
        template = CHAPTERS_PROMPT if mode is OCRMode.CHAPTERS else TEXT_PROMPT
        prompt = template.format(context=context)

        def call() -> str:
            timeout = deadline.clamp(PROVIDER_TIMEOUT_SECONDS) if deadline else PROVIDER_TIMEOUT_SECONDS
            return self.model.read_pdf(pdf_bytes, prompt, timeout=timeout)

        try:
            raw = self.retry_policy.call(call, deadline=deadline, operation=f"vision_ocr_{mode.value}")
        except (ProviderError, LLMError, DeadlineExceeded) as exc:
            logger.warning("ocr_failed", provider=self.model.name, mode=mode.value, error=str(exc))
            return OCRResult(error=str(exc))

        result = self._parse_response(raw) if mode is OCRMode.CHAPTERS else OCRResult(
            text=raw.strip(), raw_response=raw
        )
        logger.info(
            "ocr_completed",
            provider=self.model.name,
            mode=mode.value,
            found_json=result.found_json,
            chapter_count=len(result.chapters),
            characters=len(result.text),
        )
        return result

    @staticmethod
    def _parse_response(raw: str) -> OCRResult:
        parsed = loads_or_none(find_json_object(raw or "", "{"))
        if not isinstance(parsed, dict):
            # No JSON: the reply itself is the extracted text
            return OCRResult(text=(raw or "").strip(), raw_response=raw or "")

        chapters_raw = parsed.get("chapters")
        content = parsed.get("content") or parsed.get("text") or ""
        return OCRResult(
            text=str(content).strip(),
            chapters=normalize_chapters(chapters_raw) if isinstance(chapters_raw, list) else [],
            raw_response=raw,
            found_json=True,
        )
