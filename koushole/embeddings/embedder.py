"""
Embedder - Converts text chunks to vector embeddings.

Three providers share one interface:
- HuggingFace Inference (sentence-transformers/all-MiniLM-L6-v2, 384-d), the default
- Voyage AI (voyage-multilingual-2, 1024-d), better on Bangla
- a local sentence-transformers model, for development without network

Key Concepts:
- The SAME provider must be used for indexing and for querying
- Output order matches input order; ChunkStore zips vectors onto chunks by position
- Some providers tune vectors per purpose, so callers say whether they are
  embedding documents or a query

Example:
    embedder = Embedder(HuggingFaceEmbeddingProvider(api_key))
    vectors = embedder.embed_documents(["chunk one", "chunk two"])
    query_vector = embedder.embed_query("What is photosynthesis?")
"""

from abc import ABC, abstractmethod
from enum import Enum

import httpx
import numpy as np
from sentence_transformers import SentenceTransformer

from koushole.config import (
    EMBED_BATCH_SIZE,
    EMBED_MAX_ATTEMPTS,
    EMBED_RETRY_DELAY_SECONDS,
    EMBEDDING_MODELS,
    HF_INFERENCE_URL,
    PROVIDER_TIMEOUT_SECONDS,
    VOYAGE_API_URL,
    VOYAGE_MAX_INPUT_CHARS,
    Settings,
)
from koushole.utils.errors import (
    ConfigurationError,
    DeadlineExceeded,
    EmbeddingError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitError,
)
from koushole.utils.logging import get_logger
from koushole.utils.retry import Deadline, RetryPolicy

logger = get_logger(__name__)


class EmbeddingPurpose(str, Enum):
    """Indexing-time vs query-time embedding."""

    DOCUMENT = "document"
    QUERY = "query"


# =============================================================================
# PROVIDERS
# =============================================================================


class EmbeddingProvider(ABC):
    """One call to an embedding backend: a list of strings in, vectors out."""

    name: str = "embeddings"
    model_name: str = ""
    dimension: int = 0

    @abstractmethod
    def embed_texts(
        self,
        texts: list[str],
        purpose: EmbeddingPurpose = EmbeddingPurpose.DOCUMENT,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ) -> list[list[float]]:
        """Return one vector per text, in order."""


def _check_response(response: httpx.Response, provider: str) -> None:
    """Map HTTP failures onto the error hierarchy."""
    if response.status_code == 429:
        raise RateLimitError(f"{provider} rate limit (HTTP 429)", provider_name=provider)
    if response.status_code >= 500:
        raise ProviderUnavailableError(
            f"{provider} unavailable (HTTP {response.status_code})", provider_name=provider
        )
    if response.status_code >= 400:
        raise EmbeddingError(
            f"{provider} rejected the request (HTTP {response.status_code}): {response.text[:200]}",
            provider_name=provider,
        )


def _malformed_response(provider: str, response: httpx.Response, exc: Exception) -> EmbeddingError:
    return EmbeddingError(
        f"{provider} returned an unreadable response ({type(exc).__name__}): {response.text[:200]}",
        provider_name=provider,
    )


class HuggingFaceEmbeddingProvider(EmbeddingProvider):
    """Feature extraction through the HuggingFace Inference router."""

    name = "huggingface"

    def __init__(
        self,
        api_key: str,
        model_name: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        if not api_key:
            raise ConfigurationError("HF_API_KEY is not set", provider_name=self.name)
        self.model_name, self.dimension = EMBEDDING_MODELS["huggingface"]
        self.model_name = model_name or self.model_name
        self._api_key = api_key
        self._client = http_client or httpx.Client()

    def embed_texts(self, texts, purpose=EmbeddingPurpose.DOCUMENT, timeout=PROVIDER_TIMEOUT_SECONDS):
        try:
            response = self._client.post(
                f"{HF_INFERENCE_URL}/{self.model_name}",
                headers={"Authorization": f"Bearer {self._api_key}"},
                # Cold models answer 503 unless asked to wait
                json={"inputs": texts, "options": {"wait_for_model": True}},
                timeout=timeout,
            )
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"HuggingFace unreachable: {exc}", provider_name=self.name) from exc
        _check_response(response, self.name)

        try:
            vectors = np.asarray(response.json(), dtype=float)
        except (ValueError, TypeError) as exc:
            # non-JSON body, an error object, or ragged rows
            raise _malformed_response(self.name, response, exc) from exc
        # Some models return token-level features; mean-pool them
        if vectors.ndim == 3:
            vectors = vectors.mean(axis=1)
        if vectors.ndim == 1:
            vectors = vectors.reshape(1, -1)
        if vectors.ndim != 2:
            raise EmbeddingError(
                f"{self.name} returned a {vectors.ndim}-d array", provider_name=self.name
            )
        return vectors.tolist()


class VoyageEmbeddingProvider(EmbeddingProvider):
    """Voyage AI embeddings with document/query input types."""

    name = "voyage"

    def __init__(
        self,
        api_key: str,
        model_name: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        if not api_key:
            raise ConfigurationError("VOYAGE_API_KEY is not set", provider_name=self.name)
        self.model_name, self.dimension = EMBEDDING_MODELS["voyage"]
        self.model_name = model_name or self.model_name
        self._api_key = api_key
        self._client = http_client or httpx.Client()

    def embed_texts(self, texts, purpose=EmbeddingPurpose.DOCUMENT, timeout=PROVIDER_TIMEOUT_SECONDS):
        try:
            response = self._client.post(
                VOYAGE_API_URL,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "input": [text[:VOYAGE_MAX_INPUT_CHARS] for text in texts],
                    "model": self.model_name,
                    "input_type": purpose.value,
                },
                timeout=timeout,
            )
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"Voyage unreachable: {exc}", provider_name=self.name) from exc
        _check_response(response, self.name)

        try:
            data = response.json().get("data", [])
            # Voyage tags each vector with its input index
            data = sorted(data, key=lambda item: item.get("index", 0))
            return [[float(x) for x in item["embedding"]] for item in data]
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise _malformed_response(self.name, response, exc) from exc


class LocalEmbeddingProvider(EmbeddingProvider):
    """
    sentence-transformers running in-process.

    Note:
        First run will download the model (~90MB for MiniLM).
        Subsequent runs use the cached version.
    """

    name = "local"

    def __init__(self, model_name: str | None = None):
        default_model, self.dimension = EMBEDDING_MODELS["local"]
        self.model_name = model_name or default_model
        self._model = None  # Lazy loading

    @property
    def model(self) -> SentenceTransformer:
        if self._model is None:
            logger.info("loading_embedding_model", model=self.model_name)
            self._model = SentenceTransformer(self.model_name)
            self.dimension = self._model.get_sentence_embedding_dimension()
        return self._model

    def embed_texts(self, texts, purpose=EmbeddingPurpose.DOCUMENT, timeout=PROVIDER_TIMEOUT_SECONDS):
        embeddings = self.model.encode(
            texts,
            convert_to_numpy=True,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()


# =============================================================================
# EMBEDDER
# =============================================================================


class Embedder:
    """
    Batches texts through a provider with retry and strict ordering.

    A failed batch is never dropped silently: EmbeddingError reports the
    indices (into the caller's list) that have no vector.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        batch_size: int = EMBED_BATCH_SIZE,
        retry_policy: RetryPolicy | None = None,
        dimension: int | None = None,
    ):
        self.provider = provider
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=EMBED_MAX_ATTEMPTS,
            delay_seconds=EMBED_RETRY_DELAY_SECONDS,
        )
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension or self.provider.dimension

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    def _check_dimensions(self, vectors: list[list[float]]) -> None:
        for vector in vectors:
            if len(vector) != self.dimension:
                raise ConfigurationError(
                    f"{self.provider.name} returned {len(vector)}-d vectors, "
                    f"expected {self.dimension}-d; set EMBEDDING_DIMENSION to match the stored index",
                    provider_name=self.provider.name,
                )

    def _embed_batch(
        self,
        batch: list[str],
        purpose: EmbeddingPurpose,
        deadline: Deadline | None,
    ) -> list[list[float]]:
        def call() -> list[list[float]]:
            timeout = deadline.clamp(PROVIDER_TIMEOUT_SECONDS) if deadline else PROVIDER_TIMEOUT_SECONDS
            return self.provider.embed_texts(batch, purpose, timeout=timeout)

        return self.retry_policy.call(call, deadline=deadline, operation="embedding_batch")

    def embed_documents(
        self,
        texts: list[str],
        deadline: Deadline | None = None,
    ) -> list[list[float]]:
        """
        Embed chunk texts for indexing.

        Args:
            texts: Chunk texts in ordinal order
            deadline: Per-document time budget

        Returns:
            vectors[i] is the embedding of texts[i]

        Raises:
            EmbeddingError: with missing_indices for the failed batch and
                every batch after it
            ConfigurationError: If the provider's dimension does not match
        """
        vectors: list[list[float]] = []
        for batch_start in range(0, len(texts), self.batch_size):
            batch = texts[batch_start:batch_start + self.batch_size]
            try:
                result = self._embed_batch(batch, EmbeddingPurpose.DOCUMENT, deadline)
            except (ProviderError, DeadlineExceeded, EmbeddingError) as exc:
                raise EmbeddingError(
                    f"Embedding batch starting at {batch_start} failed: {exc}",
                    provider_name=self.provider.name,
                    missing_indices=list(range(batch_start, len(texts))),
                ) from exc

            if len(result) != len(batch):
                raise EmbeddingError(
                    f"{self.provider.name} returned {len(result)} vectors for {len(batch)} texts",
                    provider_name=self.provider.name,
                    missing_indices=list(range(batch_start, len(texts))),
                )
            self._check_dimensions(result)
            vectors.extend(result)

            logger.debug(
                "embedding_batch_done",
                provider=self.provider.name,
                embedded=len(vectors),
                total=len(texts),
            )
        return vectors

    def embed_query(self, text: str, deadline: Deadline | None = None) -> list[float]:
        """
        Embed a user question.

        Raises:
            EmbeddingError: If the provider fails after retries
            ConfigurationError: If the dimension does not match
        """
        try:
            result = self._embed_batch([text], EmbeddingPurpose.QUERY, deadline)
        except (ProviderError, DeadlineExceeded) as exc:
            raise EmbeddingError(
                f"Query embedding failed: {exc}", provider_name=self.provider.name, missing_indices=[0]
            ) from exc
        if len(result) != 1:
            raise EmbeddingError(
                f"{self.provider.name} returned {len(result)} vectors for 1 query",
                provider_name=self.provider.name,
                missing_indices=[0],
            )
        self._check_dimensions(result)
        return result[0]


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors (0.0 if either is all zeros)."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def get_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Build the provider named by KOUSHOLE_EMBEDDINGS."""
    if settings.embedding_provider == "huggingface":
        return HuggingFaceEmbeddingProvider(settings.hf_api_key)
    if settings.embedding_provider == "voyage":
        return VoyageEmbeddingProvider(settings.voyage_api_key)
    if settings.embedding_provider == "local":
        return LocalEmbeddingProvider()
    raise ConfigurationError(f"Unknown embedding provider {settings.embedding_provider!r}")


def get_embedder(settings: Settings) -> Embedder:
    return Embedder(get_embedding_provider(settings), dimension=settings.embedding_dimension)


# =============================================================================
# MAIN - For testing
# =============================================================================

if __name__ == "__main__":
    """
    Embed a few texts with the configured provider and compare them.
    Run: python -m koushole.embeddings.embedder
    """
    embedder = get_embedder(Settings.from_env())
    texts = [
        "সালোকসংশ্লেষণ কী?",
        "What is photosynthesis?",
        "The capital of Bangladesh is Dhaka.",
    ]
    vectors = embedder.embed_documents(texts)
    print(f"Provider: {embedder.provider.name} ({embedder.model_name}), dimension {embedder.dimension}")
    for i in range(len(texts)):
        for j in range(i + 1, len(texts)):
            print(f"  {texts[i]!r} <-> {texts[j]!r}: {cosine_similarity(vectors[i], vectors[j]):.4f}")
