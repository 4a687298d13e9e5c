"""
Web App - HTTP surface for ingestion and grounded chat.

Endpoints:
- POST /api/process-book   ingest one PDF (admin upload flow)
- POST /api/retrieve       chunks of one book relevant to a query
- POST /api/rag-chat       tutor reply grounded in a book
- GET  /health             liveness and configured backends

Pipeline components are built from the environment on first use, so a
missing credential shows up as an HTTP 500 naming the variable instead of
a crash at import time. Tests pass pre-built components to create_app().

Run with:
    uvicorn koushole.interfaces.web_app:app --reload
"""

from typing import Callable, TypeVar

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from koushole import __version__
from koushole.config import TOP_K_CHUNKS, Settings
from koushole.factory import build_chat, build_orchestrator, build_retriever, build_storage
from koushole.ingestion.orchestrator import IngestionOrchestrator
from koushole.models import CollectionType
from koushole.rag.generator import TutorChat
from koushole.rag.retriever import Retriever
from koushole.utils.errors import ConfigurationError, KousholeError
from koushole.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SOURCE_TYPE_ERROR = 'sourceType must be "official" or "library"'


# ── Request models ───────────────────────────────────────────────────────────


class ProcessBookRequest(BaseModel):
    resourceId: str = Field(min_length=1)
    fileUrl: str = Field(min_length=1)
    sourceType: str = "official"


class RetrieveRequest(BaseModel):
    query: str = Field(min_length=1)
    documentId: str = Field(min_length=1)
    sourceType: str = "official"
    limit: int = Field(default=TOP_K_CHUNKS, ge=1, le=50)


class RagChatRequest(BaseModel):
    message: str = Field(min_length=1)
    bookId: str | None = None
    sourceType: str = "library"
    weaknesses: list[str] | None = None


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


class Components:
    """Lazily built pipeline pieces shared by all requests."""

    def __init__(
        self,
        settings: Settings | None = None,
        orchestrator: IngestionOrchestrator | None = None,
        retriever: Retriever | None = None,
        chat: TutorChat | None = None,
    ):
        self._settings = settings
        self._storage = None
        self.orchestrator = orchestrator
        self.retriever = retriever
        self.chat = chat

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.from_env()
        return self._settings

    @property
    def storage(self):
        if self._storage is None:
            self._storage = build_storage(self.settings)
        return self._storage

    def get(self, name: str, build: Callable[[], T]) -> T:
        """
        Return the named component, building it on first use.

        Raises:
            ConfigurationError: If credentials for it are missing
        """
        component = getattr(self, name)
        if component is None:
            component = build()
            setattr(self, name, component)
        return component

    def get_orchestrator(self) -> IngestionOrchestrator:
        return self.get(
            "orchestrator", lambda: build_orchestrator(self.settings, storage=self.storage)
        )

    def get_retriever(self) -> Retriever:
        return self.get("retriever", lambda: build_retriever(self.settings, storage=self.storage))

    def get_chat(self) -> TutorChat:
        return self.get("chat", lambda: build_chat(self.settings, storage=self.storage))


def create_app(
    orchestrator: IngestionOrchestrator | None = None,
    retriever: Retriever | None = None,
    chat: TutorChat | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        orchestrator / retriever / chat: Pre-built components (tests);
            anything left as None is built from the environment on first use
        settings: Overrides Settings.from_env()
    """
    app = FastAPI(
        title="Koushole Ingestion API",
        description="Textbook PDF ingestion and retrieval for grounded tutoring",
        version=__version__,
    )

    # The upload and chat pages are served from another origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    components = Components(settings, orchestrator, retriever, chat)
    app.state.components = components

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request, exc: ConfigurationError):
        logger.error("configuration_error", path=request.url.path, error=str(exc))
        return error_response(500, str(exc))

    # ── Health ───────────────────────────────────────────────────────────

    @app.get("/health")
    def health():
        try:
            current = components.settings
        except ConfigurationError as exc:
            return {"status": "degraded", "error": str(exc)}
        return {
            "status": "ok",
            "version": __version__,
            "storage": current.storage_backend,
            "llm": current.llm_provider,
            "embeddings": current.embedding_provider,
            "ocr": current.ocr_enabled,
        }

    # ── Ingestion ────────────────────────────────────────────────────────

    @app.post("/api/process-book")
    def process_book(body: ProcessBookRequest):
        try:
            collection = CollectionType.parse(body.sourceType)
        except ValueError:
            return error_response(400, SOURCE_TYPE_ERROR)

        result = components.get_orchestrator().process_document(
            body.resourceId, body.fileUrl, collection
        )
        if not result.success:
            return error_response(500, result.message, **result.to_dict())
        return result.to_dict()

    # ── Retrieval ────────────────────────────────────────────────────────

    @app.post("/api/retrieve")
    def retrieve(body: RetrieveRequest):
        try:
            collection = CollectionType.parse(body.sourceType)
        except ValueError:
            return error_response(400, SOURCE_TYPE_ERROR)

        try:
            result = components.get_retriever().retrieve(
                body.query, body.documentId, collection, limit=body.limit
            )
        except ConfigurationError:
            raise
        except KousholeError as exc:
            logger.warning("retrieve_failed", document_id=body.documentId, error=str(exc))
            return error_response(502, str(exc))
        return result.to_dict()

    # ── Chat ─────────────────────────────────────────────────────────────

    @app.post("/api/rag-chat")
    def rag_chat(body: RagChatRequest):
        try:
            collection = CollectionType.parse(body.sourceType)
        except ValueError:
            return error_response(400, SOURCE_TYPE_ERROR)

        try:
            reply = components.get_chat().reply(
                body.message,
                document_id=body.bookId,
                collection=collection,
                weaknesses=body.weaknesses,
            )
        except ConfigurationError:
            raise
        except KousholeError as exc:
            logger.error("rag_chat_failed", error=str(exc))
            return error_response(502, str(exc))
        return reply.to_dict()

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("koushole.interfaces.web_app:app", host="0.0.0.0", port=8000)
