"""
Document Fetcher - Loads the raw PDF for a document.

Uploaded books live in Supabase storage and arrive as public URLs; the
local backend and the CLI also accept plain file paths.
"""

from pathlib import Path

import httpx

from koushole.config import PROVIDER_TIMEOUT_SECONDS
from koushole.utils.errors import DocumentFetchError
from koushole.utils.logging import get_logger
from koushole.utils.retry import Deadline

logger = get_logger(__name__)


class DocumentFetcher:
    """
    Fetches PDF bytes from a URL or a local path.

    The httpx client is injected so tests can use a MockTransport.

    Example:
        fetcher = DocumentFetcher()
        pdf_bytes = fetcher.fetch("https://.../book.pdf")
    """

    def __init__(self, http_client: httpx.Client | None = None):
        self._client = http_client or httpx.Client(follow_redirects=True)

    def fetch(self, location: str, deadline: Deadline | None = None) -> bytes:
        """
        Return the bytes at `location`.

        Raises:
            DocumentFetchError: If the file cannot be read or downloaded
        """
        if not location:
            raise DocumentFetchError("No file URL for document")

        if not location.startswith(("http://", "https://")):
            return self._read_local(location)

        timeout = deadline.clamp(PROVIDER_TIMEOUT_SECONDS) if deadline else PROVIDER_TIMEOUT_SECONDS
        try:
            response = self._client.get(location, timeout=timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DocumentFetchError(
                f"Failed to fetch PDF: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DocumentFetchError(f"Failed to fetch PDF: {exc}") from exc

        logger.info("document_fetched", url=location, byte_size=len(response.content))
        return response.content

    @staticmethod
    def _read_local(location: str) -> bytes:
        path = Path(location.removeprefix("file://")).expanduser()
        try:
            return path.read_bytes()
        except OSError as exc:
            raise DocumentFetchError(f"Failed to read PDF {path}: {exc}") from exc
