"""Shared fixtures for the Koushole test suite.

Nothing here touches the network: language, vision and embedding models
are deterministic fakes, and storage is in memory. PDFs are generated with
pymupdf so extraction runs for real.
"""

import hashlib
import json
import re

import fitz
import pytest

from koushole.config import Settings
from koushole.embeddings.chunk_store import ChunkStore
from koushole.embeddings.embedder import (
    Embedder,
    EmbeddingProvider,
    EmbeddingPurpose,
    cosine_similarity,
)
from koushole.ingestion.chapter_extractor import ChapterExtractor
from koushole.ingestion.orchestrator import IngestionOrchestrator
from koushole.ingestion.vision_ocr import VisionOCRFallback
from koushole.llm import ChatModel, VisionModel
from koushole.models import ChunkMatch
from koushole.storage.documents import DocumentRepository
from koushole.utils.errors import PersistenceError, ProviderUnavailableError
from koushole.utils.retry import RetryPolicy

EMBEDDING_DIM = 16

# ---------------------------------------------------------------------------
# Sample book text
# ---------------------------------------------------------------------------

TOC_PAGE = """Contents
Chapter 1: The Living Cell
Chapter 2: Photosynthesis in Plants
Chapter 3: Human Digestion"""

BODY_SENTENCES = [
    "A cell is the smallest unit of life and every organism is built from cells.",
    "The nucleus stores genetic material and controls the activity of the cell.",
    "Plants make their own food by photosynthesis using sunlight and chlorophyll.",
    "Carbon dioxide and water combine in the leaf to form glucose and oxygen.",
    "Digestion breaks large food molecules into small ones the body can absorb.",
    "Enzymes in saliva begin to digest starch while food is still in the mouth.",
]


def body_page(sentences: list[str], repeat: int = 6) -> str:
    return "\n".join(sentences * repeat)


# ---------------------------------------------------------------------------
# PDF builder
# ---------------------------------------------------------------------------


def make_pdf(pages: list[str]) -> bytes:
    """
    Build a PDF with one page per string.

    Empty strings give a page with a drawn shape but no text, which is what
    a scanned page looks like to direct extraction.
    """
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            lines = []
            for paragraph in text.split("\n"):
                while len(paragraph) > 80:
                    cut = paragraph.rfind(" ", 0, 80)
                    cut = cut if cut > 0 else 80
                    lines.append(paragraph[:cut])
                    paragraph = paragraph[cut:].lstrip()
                lines.append(paragraph)
            page.insert_text((50, 60), "\n".join(lines), fontsize=9)
        else:
            page.draw_rect(fitz.Rect(50, 50, 300, 300), color=(0, 0, 0), fill=(0.5, 0.5, 0.5))
    data = doc.tobytes()
    doc.close()
    return data


# ---------------------------------------------------------------------------
# Fake models
# ---------------------------------------------------------------------------

_CHAPTER_LINE_RE = re.compile(r"Chapter\s+(\d+)\s*:\s*(.+)")


class FakeChatModel(ChatModel):
    """
    Chat model that reads "Chapter N: Title" lines out of the prompt.

    `replies` (strings or exceptions) are consumed first; after that JSON
    mode answers with the chapters it can see and chat mode with `answer`.
    """

    name = "fake-chat"

    def __init__(self, replies=None, answer: str = "Cells are the building blocks of life."):
        self.replies = list(replies or [])
        self.answer = answer
        self.calls: list[dict] = []

    def complete(self, system, user, temperature=0.1, max_tokens=2048, json_mode=False, timeout=120.0):
        self.calls.append({
            "system": system,
            "user": user,
            "temperature": temperature,
            "json_mode": json_mode,
        })
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        if not json_mode:
            return self.answer
        text = user.split("Text:", 1)[-1]
        chapters = [
            {"chapter_number": int(number), "title_en": title.strip(), "title_bn": ""}
            for number, title in _CHAPTER_LINE_RE.findall(text)
        ]
        return json.dumps({"chapters": chapters})


class FakeVisionModel(VisionModel):
    """Vision model replaying queued responses (strings or exceptions); the last one repeats."""

    name = "fake-vision"

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts: list[str] = []

    def read_pdf(self, pdf_bytes, prompt, timeout=120.0):
        self.prompts.append(prompt)
        if not self.responses:
            raise ProviderUnavailableError("no response queued", provider_name=self.name)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class HashEmbeddingProvider(EmbeddingProvider):
    """
    Bag-of-words vectors: each word is hashed into one of EMBEDDING_DIM
    buckets, so texts sharing words are close in cosine space.
    """

    name = "hash"
    model_name = "hash-bow"

    def __init__(self, dimension: int = EMBEDDING_DIM, fail_on_calls=()):
        self.dimension = dimension
        self.fail_on_calls = set(fail_on_calls)
        self.calls: list[tuple[list[str], EmbeddingPurpose]] = []

    def vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        return vector

    def embed_texts(self, texts, purpose=EmbeddingPurpose.DOCUMENT, timeout=120.0):
        self.calls.append((list(texts), purpose))
        if len(self.calls) in self.fail_on_calls:
            raise ProviderUnavailableError("embedding service down", provider_name=self.name)
        return [self.vector(text) for text in texts]


# ---------------------------------------------------------------------------
# In-memory storage
# ---------------------------------------------------------------------------


class InMemoryDocumentRepository(DocumentRepository):
    def __init__(self, documents=()):
        self.documents = {(doc.collection, doc.id): doc for doc in documents}
        self.chapters: dict = {}
        self.content: dict = {}
        self.status: dict = {}
        self.status_history: list[tuple[str, bool, int]] = []
        self.fail_chapters = False
        self.fail_content = False

    def get_document(self, document_id, collection):
        return self.documents.get((collection, document_id))

    def list_pending(self, collection, limit=None):
        pending = [
            doc for (coll, _), doc in self.documents.items()
            if coll == collection
            and doc.file_url
            and not self.status.get((collection, doc.id), (doc.chunks_generated, 0))[0]
        ]
        return pending[:limit] if limit else pending

    def replace_chapters(self, document_id, collection, chapters):
        if self.fail_chapters:
            raise PersistenceError("chapters table unavailable")
        self.chapters[(collection, document_id)] = list(chapters)
        return [f"{document_id}-ch{chapter.number}" for chapter in chapters]

    def replace_content(self, block):
        if self.fail_content:
            raise PersistenceError("content table unavailable")
        self.content[(block.collection, block.document_id)] = block

    def get_content(self, document_id, collection):
        block = self.content.get((collection, document_id))
        return block.text if block else None

    def set_embedding_status(self, document_id, collection, chunks_generated, total_chunks):
        self.status[(collection, document_id)] = (chunks_generated, total_chunks)
        self.status_history.append((document_id, chunks_generated, total_chunks))


class InMemoryChunkStore(ChunkStore):
    """ChunkStore over a dict; `fail_on_batch` makes the Nth insert fail."""

    def __init__(self, documents, fail_on_batch: int | None = None, **kwargs):
        super().__init__(documents, **kwargs)
        self.rows: dict = {}
        self.fail_on_batch = fail_on_batch
        self.insert_calls = 0

    def _delete_chunks(self, document_id, collection):
        self.rows.pop((collection, document_id), None)

    def _insert_batch(self, document_id, collection, records):
        self.insert_calls += 1
        if self.fail_on_batch is not None and self.insert_calls == self.fail_on_batch:
            raise PersistenceError("insert failed")
        self.rows.setdefault((collection, document_id), []).extend(records)

    def search(self, query_vector, document_id, collection, limit=5):
        self._check_dimension(query_vector)
        scored = [
            ChunkMatch(record.index, record.text, cosine_similarity(query_vector, record.embedding))
            for record in self.rows.get((collection, document_id), [])
        ]
        scored.sort(key=lambda match: match.similarity, reverse=True)
        return scored[:limit]

    def count_chunks(self, document_id, collection):
        return len(self.rows.get((collection, document_id), []))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def no_sleep(_seconds):
    pass


@pytest.fixture()
def fast_retry():
    """RetryPolicy that records pauses instead of sleeping."""
    pauses = []
    policy = RetryPolicy(max_attempts=3, delay_seconds=30.0, sleep=pauses.append)
    policy.pauses = pauses
    return policy


@pytest.fixture()
def documents():
    return InMemoryDocumentRepository()


@pytest.fixture()
def chunk_store(documents):
    return InMemoryChunkStore(documents, dimension=EMBEDDING_DIM)


@pytest.fixture()
def embedding_provider():
    return HashEmbeddingProvider()


@pytest.fixture()
def embedder(embedding_provider):
    return Embedder(
        embedding_provider,
        retry_policy=RetryPolicy(max_attempts=3, delay_seconds=0.0, sleep=no_sleep),
    )


@pytest.fixture()
def chat_model():
    return FakeChatModel()


@pytest.fixture()
def vision_model():
    return FakeVisionModel()


@pytest.fixture()
def make_orchestrator(documents, chunk_store, embedder, chat_model):
    """Factory: orchestrator over the shared fakes, OCR optional."""

    def build(vision: VisionModel | None = None, **kwargs) -> IngestionOrchestrator:
        ocr = None
        if vision is not None:
            ocr = VisionOCRFallback(
                vision,
                retry_policy=RetryPolicy(max_attempts=3, delay_seconds=30.0, sleep=no_sleep),
            )
        return IngestionOrchestrator(
            documents=documents,
            chunk_store=chunk_store,
            embedder=embedder,
            chapter_extractor=ChapterExtractor(
                chat_model,
                retry_policy=RetryPolicy(max_attempts=2, delay_seconds=0.0, sleep=no_sleep),
            ),
            ocr=ocr,
            **kwargs,
        )

    return build


@pytest.fixture()
def text_pdf(tmp_path):
    """A text PDF with a table of contents and three body pages, on disk."""
    path = tmp_path / "science.pdf"
    path.write_bytes(make_pdf([
        TOC_PAGE,
        body_page(BODY_SENTENCES[:2]),
        body_page(BODY_SENTENCES[2:4]),
        body_page(BODY_SENTENCES[4:]),
    ]))
    return path


@pytest.fixture()
def scanned_pdf(tmp_path):
    """A PDF whose pages carry no extractable text."""
    path = tmp_path / "scanned.pdf"
    path.write_bytes(make_pdf(["", "", ""]))
    return path


@pytest.fixture()
def settings():
    return Settings(storage_backend="local", llm_provider="ollama", embedding_provider="local")
