"""
Wiring - Builds pipeline components from Settings.

Interfaces (CLI, HTTP API, batch script) call these instead of
constructing clients themselves, so credential checks happen in one place
and before any provider call.
"""

from dataclasses import dataclass

from supabase import create_client

from koushole.config import REQUEST_TIMEOUT_SECONDS, Settings
from koushole.embeddings.chunk_store import ChromaChunkStore, ChunkStore, SupabaseChunkStore
from koushole.embeddings.embedder import Embedder, get_embedder
from koushole.ingestion.chapter_extractor import ChapterExtractor
from koushole.ingestion.orchestrator import IngestionOrchestrator
from koushole.ingestion.vision_ocr import VisionOCRFallback
from koushole.llm import get_chat_model, get_vision_model
from koushole.rag.generator import TutorChat
from koushole.rag.retriever import Retriever
from koushole.storage.documents import (
    DocumentRepository,
    LocalDocumentRepository,
    SupabaseDocumentRepository,
)
from koushole.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Storage:
    documents: DocumentRepository
    chunk_store: ChunkStore


def build_storage(settings: Settings) -> Storage:
    """Document repository and chunk store for the configured backend."""
    if settings.storage_backend == "local":
        documents = LocalDocumentRepository()
        return Storage(documents, ChromaChunkStore(documents, dimension=settings.embedding_dimension))

    client = create_client(settings.supabase_url, settings.supabase_key)
    documents = SupabaseDocumentRepository(client)
    return Storage(
        documents,
        SupabaseChunkStore(client, documents, dimension=settings.embedding_dimension),
    )


def build_orchestrator(
    settings: Settings,
    storage: Storage | None = None,
    embedder: Embedder | None = None,
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
) -> IngestionOrchestrator:
    """
    Raises:
        ConfigurationError: If a required credential is missing
    """
    settings.validate_for_ingestion()
    storage = storage or build_storage(settings)

    vision_model = get_vision_model(settings)
    if vision_model is None:
        logger.warning("ocr_disabled", reason="GEMINI_API_KEY not set")

    return IngestionOrchestrator(
        documents=storage.documents,
        chunk_store=storage.chunk_store,
        embedder=embedder or get_embedder(settings),
        chapter_extractor=ChapterExtractor(get_chat_model(settings)),
        ocr=VisionOCRFallback(vision_model) if vision_model else None,
        timeout_seconds=timeout_seconds,
    )


def build_retriever(
    settings: Settings,
    storage: Storage | None = None,
    embedder: Embedder | None = None,
) -> Retriever:
    settings.validate_for_retrieval()
    storage = storage or build_storage(settings)
    return Retriever(embedder or get_embedder(settings), storage.chunk_store)


def build_chat(
    settings: Settings,
    storage: Storage | None = None,
    embedder: Embedder | None = None,
) -> TutorChat:
    settings.validate_for_chat()
    storage = storage or build_storage(settings)
    return TutorChat(
        get_chat_model(settings),
        build_retriever(settings, storage, embedder),
        storage.documents,
    )
