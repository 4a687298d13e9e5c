"""
Configuration settings for the Koushole ingestion and retrieval core.

Tunable parameters live here as module constants so they can be adjusted in
one place. Credentials and backend choices come from the environment (or a
.env file) and are captured in an immutable Settings object.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from koushole.utils.errors import ConfigurationError

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Base directory (where this project lives)
BASE_DIR = Path(__file__).parent.parent

# Pick up a .env next to the project root before anything reads os.environ
load_dotenv(BASE_DIR / ".env")

# Data storage directory (local backend only)
DATA_DIR = BASE_DIR / "data"

# ChromaDB storage location for the local backend
CHROMA_DB_DIR = DATA_DIR / "chroma_db"

# JSON manifest holding documents, chapters and content for the local backend
LOCAL_MANIFEST_PATH = DATA_DIR / "library.json"

# =============================================================================
# CHUNKING CONFIGURATION
# =============================================================================

# Chunk size in characters
# Textbook paragraphs (especially Bangla) run long; 2000 keeps a full
# explanation together while staying well inside embedding input limits.
CHUNK_SIZE = 2000

# Overlap between chunks in characters
CHUNK_OVERLAP = 200

# Chunks shorter than this are running headers/footers, not content
MIN_CHUNK_CHARS = 50

# Break markers tried in priority order when cutting a window.
# "। " is the Bangla full stop (dari) followed by a space.
BREAK_MARKERS = (". ", "। ", "\n\n", "\n", " ")

# =============================================================================
# EXTRACTION CONFIGURATION
# =============================================================================

# Direct extraction shorter than this is treated as an image-based PDF.
# Scanned Bangla books often yield a few hundred characters of stray glyphs
# (page numbers, a cover title), so a plain "non-empty" check is not enough.
MIN_EXTRACTED_CHARS = 500

# Below this much text (after every fallback) nothing is chunked
MIN_USABLE_CHARS = 200

# Pages read for the chapter/table-of-contents sample
TOC_SNIFF_PAGES = 10

# Characters of that sample sent to the chapter extractor
CHAPTER_SAMPLE_CHARS = 8000

# Upper bound for the stored raw-content block
CONTENT_BLOCK_MAX_CHARS = 100_000

# =============================================================================
# VISION OCR CONFIGURATION
# =============================================================================

# Inline PDF requests to Gemini are capped at 20MB
OCR_MAX_BYTES = 20 * 1024 * 1024

OCR_MODEL = "gemini-2.0-flash"

# Rate-limit handling: fixed back-off, small bounded retry count
OCR_MAX_ATTEMPTS = 3
OCR_RETRY_DELAY_SECONDS = 30.0

OCR_MAX_OUTPUT_TOKENS = 8192

# =============================================================================
# EMBEDDING CONFIGURATION
# =============================================================================

# Provider -> (model name, dimension). The same provider must be used for
# indexing and querying; the dimension is checked on both paths.
EMBEDDING_MODELS: dict[str, tuple[str, int]] = {
    "huggingface": ("sentence-transformers/all-MiniLM-L6-v2", 384),
    "voyage": ("voyage-multilingual-2", 1024),
    "local": ("all-MiniLM-L6-v2", 384),
}

HF_INFERENCE_URL = "https://router.huggingface.co/hf-inference/pipeline/feature-extraction"
VOYAGE_API_URL = "https://api.voyageai.com/v1/embeddings"

# Voyage truncates inputs past this many characters
VOYAGE_MAX_INPUT_CHARS = 8000

# Texts per embedding request (HF and Voyage both reject very large batches)
EMBED_BATCH_SIZE = 20

EMBED_MAX_ATTEMPTS = 3
EMBED_RETRY_DELAY_SECONDS = 5.0

# =============================================================================
# STORAGE CONFIGURATION
# =============================================================================

# Rows per insert request when writing chunks
INSERT_BATCH_SIZE = 50

CHUNKS_TABLE = "book_chunks"
CHAPTERS_TABLE = "book_chapters"
CONTENT_TABLE = "book_content"
SEARCH_CHUNKS_RPC = "search_book_chunks"

# Prefix for the local Chroma collections (one per collection type)
CHROMA_COLLECTION_PREFIX = "koushole_"

# =============================================================================
# RETRIEVAL CONFIGURATION
# =============================================================================

# Number of chunks to retrieve for context
TOP_K_CHUNKS = 5

# Characters of chunk text shown in a citation preview
PREVIEW_CHARS = 200

# Upper bound for text handed to quiz generation
QUIZ_CONTEXT_MAX_CHARS = 12_000

# =============================================================================
# LLM CONFIGURATION
# =============================================================================

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
GROQ_MODEL = "meta-llama/llama-4-scout-17b-16e-instruct"

# Local alternative (same defaults as a stock Ollama install)
OLLAMA_MODEL = "llama3.2"
OLLAMA_BASE_URL = "http://localhost:11434"

CHAPTER_MAX_TOKENS = 2048
CHAPTER_MAX_ATTEMPTS = 2
CHAPTER_RETRY_DELAY_SECONDS = 10.0

CHAT_MAX_TOKENS = 2048

# =============================================================================
# TIMEOUTS AND BATCHING
# =============================================================================

# Budget for one document in the request-driven path
REQUEST_TIMEOUT_SECONDS = 55.0

# Budget for one document in the offline batch path
BATCH_TIMEOUT_SECONDS = 1800.0

# Upper bound for a single provider request
PROVIDER_TIMEOUT_SECONDS = 120.0

# Pause between documents in a batch run (Gemini free-tier rate limit)
BATCH_DELAY_SECONDS = 35.0


# =============================================================================
# ENVIRONMENT SETTINGS
# =============================================================================


def _env(*names: str, default: str = "") -> str:
    """Return the first non-empty environment variable among names."""
    for name in names:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return default


@dataclass(frozen=True)
class Settings:
    """
    Credentials and backend choices, read from the environment.

    Attributes:
        storage_backend: "supabase" or "local"
        llm_provider: "groq" or "ollama" (chapter extraction and chat)
        embedding_provider: "huggingface", "voyage" or "local"
        embedding_dimension: vector size; derived from the provider unless overridden
    """

    supabase_url: str = ""
    supabase_key: str = ""
    groq_api_key: str = ""
    gemini_api_key: str = ""
    hf_api_key: str = ""
    voyage_api_key: str = ""
    storage_backend: str = "supabase"
    llm_provider: str = "groq"
    embedding_provider: str = "huggingface"
    embedding_dimension: int = 384
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        embedding_provider = _env("KOUSHOLE_EMBEDDINGS", default="huggingface").lower()
        if embedding_provider not in EMBEDDING_MODELS:
            raise ConfigurationError(
                f"Unknown embedding provider {embedding_provider!r}; "
                f"expected one of {sorted(EMBEDDING_MODELS)}"
            )
        dimension_override = _env("EMBEDDING_DIMENSION")
        try:
            dimension = (
                int(dimension_override)
                if dimension_override
                else EMBEDDING_MODELS[embedding_provider][1]
            )
        except ValueError as exc:
            raise ConfigurationError(
                f"EMBEDDING_DIMENSION must be an integer, got {dimension_override!r}"
            ) from exc

        return cls(
            supabase_url=_env("SUPABASE_URL"),
            supabase_key=_env("SUPABASE_SERVICE_KEY", "SUPABASE_ANON_KEY"),
            groq_api_key=_env("GROQ_API_KEY"),
            gemini_api_key=_env("GEMINI_API_KEY", "GOOGLE_API_KEY"),
            hf_api_key=_env("HF_API_KEY"),
            voyage_api_key=_env("VOYAGE_API_KEY"),
            storage_backend=_env("KOUSHOLE_STORAGE", default="supabase").lower(),
            llm_provider=_env("KOUSHOLE_LLM", default="groq").lower(),
            embedding_provider=embedding_provider,
            embedding_dimension=dimension,
            log_level=_env("LOG_LEVEL", default="INFO").upper(),
        )

    @property
    def embedding_model(self) -> str:
        return EMBEDDING_MODELS[self.embedding_provider][0]

    @property
    def ocr_enabled(self) -> bool:
        """OCR fallback runs only when a vision credential is present."""
        return bool(self.gemini_api_key)

    def _missing_storage(self) -> list[str]:
        if self.storage_backend == "local":
            return []
        if self.storage_backend != "supabase":
            return [f"KOUSHOLE_STORAGE (unknown backend {self.storage_backend!r})"]
        missing = []
        if not self.supabase_url:
            missing.append("SUPABASE_URL")
        if not self.supabase_key:
            missing.append("SUPABASE_SERVICE_KEY")
        return missing

    def _missing_embeddings(self) -> list[str]:
        if self.embedding_provider == "huggingface" and not self.hf_api_key:
            return ["HF_API_KEY"]
        if self.embedding_provider == "voyage" and not self.voyage_api_key:
            return ["VOYAGE_API_KEY"]
        return []

    def _missing_llm(self) -> list[str]:
        if self.llm_provider == "groq":
            return [] if self.groq_api_key else ["GROQ_API_KEY"]
        if self.llm_provider == "ollama":
            return []
        return [f"KOUSHOLE_LLM (unknown provider {self.llm_provider!r})"]

    def validate_for_ingestion(self) -> None:
        """
        Fail fast before any provider call.

        Raises:
            ConfigurationError: listing every missing credential
        """
        missing = self._missing_storage() + self._missing_llm() + self._missing_embeddings()
        if missing:
            raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")

    def validate_for_retrieval(self) -> None:
        missing = self._missing_storage() + self._missing_embeddings()
        if missing:
            raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")

    def validate_for_chat(self) -> None:
        missing = self._missing_storage() + self._missing_embeddings() + self._missing_llm()
        if missing:
            raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")
