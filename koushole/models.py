"""
Data model shared by the ingestion and retrieval pipeline.

A Document (an official curriculum resource or a user-uploaded library book)
owns its Chapters, one ContentBlock and its Chunks. Downstream records point
back to the document through the foreign-key column that matches its
collection.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum


class CollectionType(str, Enum):
    """Which table a document lives in, and which FK its children carry."""

    OFFICIAL = "official"
    LIBRARY = "library"

    @property
    def document_table(self) -> str:
        return "library_books" if self is CollectionType.LIBRARY else "official_resources"

    @property
    def foreign_key(self) -> str:
        return "library_book_id" if self is CollectionType.LIBRARY else "resource_id"

    @property
    def is_library(self) -> bool:
        return self is CollectionType.LIBRARY

    @classmethod
    def parse(cls, value: "str | CollectionType") -> "CollectionType":
        """Accept "official"/"library" in any case."""
        if isinstance(value, CollectionType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown collection type {value!r}; expected 'official' or 'library'"
            ) from None


@dataclass
class Document:
    """
    A PDF registered for ingestion.

    Attributes:
        id: Primary key in the collection's table
        collection: official or library
        file_url: Where the PDF can be fetched from
        title: Human-readable title (used as prompt context)
        byte_size: Size of the PDF if known
        language: Language hint such as "bn" or "en"
        subject / class_level: Curriculum metadata for official resources
    """

    id: str
    collection: CollectionType
    file_url: str = ""
    title: str = ""
    byte_size: int | None = None
    language: str | None = None
    subject: str | None = None
    class_level: str | None = None
    chunks_generated: bool = False
    total_chunks: int = 0

    @property
    def context_line(self) -> str:
        """One line of curriculum context for the chapter prompt."""
        parts = [f"Title: {self.title or 'Unknown'}"]
        if self.subject:
            parts.append(f"Subject: {self.subject}")
        if self.class_level:
            parts.append(f"Class: {self.class_level}")
        parts.append(
            "Collection: user-uploaded library book"
            if self.collection.is_library
            else "Collection: official curriculum textbook"
        )
        return ", ".join(parts)


@dataclass
class Chapter:
    """
    One table-of-contents entry.

    At least one of the titles is set; normalization fills the other.
    """

    number: int
    title_en: str
    title_bn: str
    page_start: int | None = None
    page_end: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ContentBlock:
    """Raw extracted text kept for chunking and as a quiz-context fallback."""

    document_id: str
    collection: CollectionType
    text: str
    chapter_id: str | None = None


@dataclass
class ChunkRecord:
    """A chunk ready to be stored: its ordinal, text and vector."""

    index: int
    text: str
    embedding: list[float]


@dataclass
class ChunkMatch:
    """A chunk returned by a similarity search."""

    index: int
    text: str
    similarity: float


class IngestionStatus(str, Enum):
    """Terminal states of one document's ingestion."""

    COMPLETED = "completed"        # chapters extracted, chunks embedded
    NO_CHAPTERS = "no_chapters"    # processed, but no table of contents found
    IMAGE_BASED = "image_based"    # scanned PDF that could not be read
    FAILED = "failed"              # hard failure (fetch, embedding, storage)


@dataclass
class IngestionResult:
    """
    Structured outcome of process_document.

    `success` is True for every status except FAILED, so batch callers can
    tell "processed but empty" apart from "failed".
    """

    document_id: str
    collection: CollectionType
    status: IngestionStatus
    message: str
    chapters: list[Chapter] = field(default_factory=list)
    chunk_count: int = 0
    text_source: str = "none"
    text_length: int = 0
    stage_errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status is not IngestionStatus.FAILED

    @property
    def is_image_based(self) -> bool:
        return self.status is IngestionStatus.IMAGE_BASED

    @property
    def is_empty(self) -> bool:
        """Succeeded without producing anything searchable."""
        return self.success and self.chunk_count == 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "documentId": self.document_id,
            "sourceType": self.collection.value,
            "status": self.status.value,
            "message": self.message,
            "chapters": [chapter.to_dict() for chapter in self.chapters],
            "chaptersCount": len(self.chapters),
            "chunksCount": self.chunk_count,
            "isImageBased": self.is_image_based,
            "textSource": self.text_source,
            "textLength": self.text_length,
            "stageErrors": dict(self.stage_errors),
        }
