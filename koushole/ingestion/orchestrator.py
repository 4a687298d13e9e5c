"""
Ingestion Orchestrator - Runs one document through the whole pipeline.

    Fetching -> DirectExtracting -> QualityGate
        sufficient:   ChapterExtraction (direct text sample)
        insufficient: OCRFallback -> (no chapters) SecondPassChapterExtraction
    -> PersistingChapters -> Chunking -> Embedding -> PersistingChunks -> Done

Every stage's failure ends in an IngestionResult rather than an exception,
so one awkward document (scanned pages, odd layout, a huge file) can never
abort a batch run. Only ConfigurationError escapes: missing credentials are
fatal for every document alike.

Terminal states:
- COMPLETED    chapters extracted, chunks embedded
- NO_CHAPTERS  processed, no table of contents found
- IMAGE_BASED  scanned PDF and OCR unavailable, too large, or failing
- FAILED       fetch, embedding or storage failure
"""

from enum import Enum

import structlog

from koushole.config import (
    CHAPTER_SAMPLE_CHARS,
    CONTENT_BLOCK_MAX_CHARS,
    MIN_USABLE_CHARS,
    REQUEST_TIMEOUT_SECONDS,
    TOC_SNIFF_PAGES,
)
from koushole.embeddings.chunk_store import ChunkStore
from koushole.embeddings.embedder import Embedder
from koushole.ingestion.chapter_extractor import ChapterExtractor
from koushole.ingestion.chunker import TextChunker
from koushole.ingestion.fetcher import DocumentFetcher
from koushole.ingestion.pdf_parser import PDFParser
from koushole.ingestion.quality import is_text_sufficient
from koushole.ingestion.vision_ocr import OCRMode, VisionOCRFallback
from koushole.models import (
    Chapter,
    CollectionType,
    ContentBlock,
    Document,
    IngestionResult,
    IngestionStatus,
)
from koushole.storage.documents import DocumentRepository
from koushole.utils.errors import (
    ConfigurationError,
    DocumentFetchError,
    EmbeddingError,
    KousholeError,
    PersistenceError,
)
from koushole.utils.logging import get_logger
from koushole.utils.retry import Deadline

logger = get_logger(__name__)


class Stage(str, Enum):
    FETCHING = "fetching"
    DIRECT_EXTRACTING = "direct_extracting"
    CHAPTER_EXTRACTION = "chapter_extraction"
    OCR_FALLBACK = "ocr_fallback"
    SECOND_PASS_CHAPTER_EXTRACTION = "second_pass_chapter_extraction"
    PERSISTING_CHAPTERS = "persisting_chapters"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    PERSISTING_CHUNKS = "persisting_chunks"
    DONE = "done"


class IngestionOrchestrator:
    """
    Sequences extraction, fallback, chunking, embedding and storage.

    Example:
        orchestrator = build_orchestrator(settings)
        result = orchestrator.process_document(book_id, file_url, "library")
        print(result.status, len(result.chapters), result.chunk_count)
    """

    def __init__(
        self,
        documents: DocumentRepository,
        chunk_store: ChunkStore,
        embedder: Embedder,
        chapter_extractor: ChapterExtractor,
        ocr: VisionOCRFallback | None = None,
        fetcher: DocumentFetcher | None = None,
        parser: PDFParser | None = None,
        chunker: TextChunker | None = None,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.documents = documents
        self.chunk_store = chunk_store
        self.embedder = embedder
        self.chapter_extractor = chapter_extractor
        self.ocr = ocr
        self.fetcher = fetcher or DocumentFetcher()
        self.parser = parser or PDFParser()
        self.chunker = chunker or TextChunker()
        self.timeout_seconds = timeout_seconds

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def process_document(
        self,
        document_id: str,
        file_url: str,
        collection: CollectionType | str = CollectionType.OFFICIAL,
        title: str = "",
        timeout_seconds: float | None = None,
    ) -> IngestionResult:
        """
        Ingest one document.

        Args:
            document_id: Row id in official_resources or library_books
            file_url: Where to fetch the PDF
            collection: "official" or "library"
            title: Used for prompt context when the row has none
            timeout_seconds: Overrides the orchestrator's time budget

        Returns:
            IngestionResult describing the terminal state

        Raises:
            ConfigurationError: Missing credentials or dimension mismatch
        """
        collection = CollectionType.parse(collection)
        deadline = Deadline(timeout_seconds or self.timeout_seconds)

        with structlog.contextvars.bound_contextvars(
            document_id=document_id, collection=collection.value
        ):
            document = self._load_document(document_id, collection, file_url, title)
            try:
                result = self._run(document, deadline)
            except ConfigurationError:
                raise
            except KousholeError as exc:
                logger.error("ingestion_failed_unexpectedly", error=str(exc))
                result = IngestionResult(
                    document_id=document_id,
                    collection=collection,
                    status=IngestionStatus.FAILED,
                    message=str(exc),
                    stage_errors={"pipeline": str(exc)},
                )
            logger.info(
                "ingestion_finished",
                status=result.status.value,
                chapter_count=len(result.chapters),
                chunk_count=result.chunk_count,
            )
            return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _stage(self, stage: Stage, **context) -> None:
        logger.info("ingestion_stage", stage=stage.value, **context)

    def _load_document(
        self,
        document_id: str,
        collection: CollectionType,
        file_url: str,
        title: str,
    ) -> Document:
        try:
            stored = self.documents.get_document(document_id, collection)
        except PersistenceError as exc:
            logger.warning("document_lookup_failed", error=str(exc))
            stored = None
        document = stored or Document(id=document_id, collection=collection, title=title)
        document.file_url = file_url or document.file_url
        document.title = document.title or title
        return document

    def _run(self, document: Document, deadline: Deadline) -> IngestionResult:
        result = IngestionResult(
            document_id=document.id,
            collection=document.collection,
            status=IngestionStatus.FAILED,
            message="",
        )

        # Fetching
        self._stage(Stage.FETCHING, url=document.file_url)
        try:
            pdf_bytes = self.fetcher.fetch(document.file_url, deadline)
        except DocumentFetchError as exc:
            return self._fail(result, Stage.FETCHING, exc)
        document.byte_size = len(pdf_bytes)

        # Direct extraction
        self._stage(Stage.DIRECT_EXTRACTING, byte_size=len(pdf_bytes))
        content = self.parser.parse_bytes(pdf_bytes)
        sample = content.prefix_text(TOC_SNIFF_PAGES)[:CHAPTER_SAMPLE_CHARS]

        if is_text_sufficient(content.full_text):
            result.text_source = "direct"
            body_text = content.full_text
            self._stage(Stage.CHAPTER_EXTRACTION, characters=len(sample))
            extraction = self.chapter_extractor.extract(sample, document, deadline)
            if extraction.error:
                result.stage_errors[Stage.CHAPTER_EXTRACTION.value] = extraction.error
            chapters = extraction.chapters
        else:
            logger.info("direct_extraction_insufficient", characters=len(content.full_text.strip()))
            outcome = self._ocr_fallback(document, pdf_bytes, deadline, result)
            if outcome is None:
                return result
            chapters, body_text = outcome
            result.text_source = "ocr"

        result.chapters = chapters
        result.text_length = len(body_text)

        # Persisting chapters and the content block
        self._stage(Stage.PERSISTING_CHAPTERS, chapter_count=len(chapters))
        try:
            chapter_ids = self.documents.replace_chapters(document.id, document.collection, chapters)
        except PersistenceError as exc:
            return self._fail(result, Stage.PERSISTING_CHAPTERS, exc)
        if body_text.strip():
            try:
                self.documents.replace_content(ContentBlock(
                    document_id=document.id,
                    collection=document.collection,
                    text=body_text[:CONTENT_BLOCK_MAX_CHARS],
                    chapter_id=chapter_ids[0] if chapter_ids else None,
                ))
            except PersistenceError as exc:
                # Content is a quiz fallback only; chunks can still be built
                logger.warning("content_block_not_stored", error=str(exc))
                result.stage_errors["content"] = str(exc)

        # Chunking
        chunks = []
        if len(body_text.strip()) >= MIN_USABLE_CHARS:
            self._stage(Stage.CHUNKING, characters=len(body_text))
            chunks = self.chunker.chunk_text(body_text, metadata={"document_id": document.id})
        if not chunks:
            logger.info("chunking_skipped", characters=len(body_text.strip()))
            # Chunks from an earlier run no longer match the stored chapters
            try:
                self.chunk_store.clear_chunks(document.id, document.collection)
            except PersistenceError as exc:
                return self._fail(result, Stage.PERSISTING_CHUNKS, exc)
            return self._done(result, skipped_chunking=True)

        # Embedding
        self._stage(Stage.EMBEDDING, chunk_count=len(chunks))
        try:
            vectors = self.embedder.embed_documents([chunk.text for chunk in chunks], deadline)
        except EmbeddingError as exc:
            logger.error(
                "embedding_failed",
                missing_count=len(exc.missing_indices),
                first_missing=exc.missing_indices[0] if exc.missing_indices else None,
            )
            return self._fail(result, Stage.EMBEDDING, exc)

        # Persisting chunks
        self._stage(Stage.PERSISTING_CHUNKS, chunk_count=len(chunks))
        try:
            result.chunk_count = self.chunk_store.replace_chunks(
                document.id,
                document.collection,
                [chunk.text for chunk in chunks],
                vectors,
            )
        except PersistenceError as exc:
            return self._fail(result, Stage.PERSISTING_CHUNKS, exc)

        return self._done(result)

    def _ocr_fallback(
        self,
        document: Document,
        pdf_bytes: bytes,
        deadline: Deadline,
        result: IngestionResult,
    ) -> tuple[list[Chapter], str] | None:
        """
        Read a scanned PDF with the vision model.

        Returns (chapters, body_text), or None after writing an IMAGE_BASED
        terminal state into `result`.
        """
        if self.ocr is None:
            return self._image_based(result, "Image-based PDF; OCR fallback is not configured")
        if not self.ocr.can_process(len(pdf_bytes)):
            size_mb = len(pdf_bytes) / (1024 * 1024)
            return self._image_based(
                result, f"Image-based PDF of {size_mb:.1f}MB is too large for OCR"
            )

        self._stage(Stage.OCR_FALLBACK, byte_size=len(pdf_bytes))
        ocr_result = self.ocr.extract(pdf_bytes, document, OCRMode.CHAPTERS, deadline)
        if ocr_result.error:
            result.stage_errors[Stage.OCR_FALLBACK.value] = ocr_result.error
            return self._image_based(result, "Image-based PDF; OCR service failed")

        chapters = ocr_result.chapters
        body_text = ocr_result.text
        second_pass_source = body_text

        # A thin reply: ask for plain text of the whole book
        if len(body_text.strip()) < MIN_USABLE_CHARS:
            text_result = self.ocr.extract(pdf_bytes, document, OCRMode.TEXT, deadline)
            if text_result.error:
                result.stage_errors["ocr_text"] = text_result.error
            elif len(text_result.text.strip()) > len(body_text.strip()):
                body_text = text_result.text
                second_pass_source = body_text

        if not chapters and second_pass_source.strip():
            self._stage(Stage.SECOND_PASS_CHAPTER_EXTRACTION, characters=len(second_pass_source))
            extraction = self.chapter_extractor.extract(second_pass_source, document, deadline)
            if extraction.error:
                result.stage_errors[Stage.SECOND_PASS_CHAPTER_EXTRACTION.value] = extraction.error
            chapters = extraction.chapters

        if not chapters and len(body_text.strip()) < MIN_USABLE_CHARS:
            return self._image_based(result, "Image-based PDF; OCR found no readable text")
        return chapters, body_text

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    @staticmethod
    def _image_based(result: IngestionResult, message: str) -> None:
        result.status = IngestionStatus.IMAGE_BASED
        result.message = message
        result.chapters = []
        logger.info("ingestion_image_based", reason=message)
        return None

    @staticmethod
    def _fail(result: IngestionResult, stage: Stage, exc: KousholeError) -> IngestionResult:
        result.status = IngestionStatus.FAILED
        result.message = f"{stage.value.replace('_', ' ').capitalize()} failed: {exc}"
        result.stage_errors[stage.value] = str(exc)
        logger.error("ingestion_stage_failed", stage=stage.value, error=str(exc))
        return result

    def _done(self, result: IngestionResult, skipped_chunking: bool = False) -> IngestionResult:
        self._stage(Stage.DONE)
        result.status = IngestionStatus.COMPLETED if result.chapters else IngestionStatus.NO_CHAPTERS
        chapter_part = (
            f"Extracted {len(result.chapters)} chapters"
            if result.chapters
            else "No chapters found"
        )
        if skipped_chunking:
            chunk_part = f"text too short to chunk ({result.text_length} characters)"
        else:
            chunk_part = f"stored {result.chunk_count} chunks"
        result.message = f"{chapter_part}; {chunk_part}"
        return result
