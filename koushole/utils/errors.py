"""
Exception hierarchy for the ingestion and retrieval core.

    KousholeError
    +-- ConfigurationError        missing credential / storage endpoint (fatal)
    +-- ProviderError             an outbound provider call failed
    |   +-- RateLimitError        429 / quota exhausted (retried)
    |   +-- ProviderUnavailableError  5xx, connection or timeout (retried)
    +-- LLMError                  text model returned an error
    +-- EmbeddingError            a batch of chunks has no vectors
    +-- PersistenceError          a storage write or query failed
    +-- DocumentFetchError        the PDF could not be downloaded
    +-- DeadlineExceeded          the caller's time budget ran out

Input-quality conditions (short extraction, no chapters, oversized file) are
not exceptions; they are terminal states of an IngestionResult.
"""


class KousholeError(Exception):
    """Base class; carries the name of the provider that failed, if any."""

    def __init__(self, message: str = "Unexpected error", provider_name: str | None = None):
        self.message = message
        self.provider_name = provider_name
        super().__init__(message)

    def __str__(self) -> str:
        if self.provider_name:
            return f"[{self.provider_name}] {self.message}"
        return self.message


class ConfigurationError(KousholeError):
    """A required credential or endpoint is missing."""


class ProviderError(KousholeError):
    """An outbound provider call failed in a way worth retrying."""


class RateLimitError(ProviderError):
    """The provider asked us to slow down."""


class ProviderUnavailableError(ProviderError):
    """The provider is down, unreachable or timed out."""


class LLMError(KousholeError):
    """The text model rejected the request."""


class EmbeddingError(KousholeError):
    """
    Some chunks did not receive vectors.

    Attributes:
        missing_indices: positions (in the input list) that lack a vector
    """

    def __init__(
        self,
        message: str = "Embedding generation failed",
        provider_name: str | None = None,
        missing_indices: list[int] | None = None,
    ):
        super().__init__(message, provider_name)
        self.missing_indices = list(missing_indices or [])


class PersistenceError(KousholeError):
    """A storage read or write failed."""


class DocumentFetchError(KousholeError):
    """The source PDF could not be downloaded or read."""


class DeadlineExceeded(KousholeError):
    """The time budget for this document is spent."""
