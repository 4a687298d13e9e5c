"""
Model clients used by the pipeline.

Two roles:
- ChatModel: text in, text out. Used for chapter extraction and tutor chat.
  Groq (through its OpenAI-compatible endpoint) in production, Ollama for
  local development.
- VisionModel: PDF bytes plus an instruction in, text out. Used by the OCR
  fallback. Gemini reads the PDF inline.

Every client translates its SDK's errors into the koushole error hierarchy so
that RetryPolicy can tell rate limits and outages apart from hard failures.
"""

from abc import ABC, abstractmethod
from typing import Callable

import httpx
import ollama
import openai
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from koushole.config import (
    GROQ_BASE_URL,
    GROQ_MODEL,
    OCR_MAX_OUTPUT_TOKENS,
    OCR_MODEL,
    OLLAMA_BASE_URL,
    OLLAMA_MODEL,
    PROVIDER_TIMEOUT_SECONDS,
    Settings,
)
from koushole.utils.errors import (
    ConfigurationError,
    LLMError,
    ProviderUnavailableError,
    RateLimitError,
)
from koushole.utils.logging import get_logger
from koushole.utils.retry import is_rate_limit_error

logger = get_logger(__name__)


# =============================================================================
# TEXT MODELS
# =============================================================================


class ChatModel(ABC):
    """A text completion model."""

    name: str = "chat"

    @abstractmethod
    def complete(
        self,
        system: str,
        user: str,
        temperature: float = 0.1,
        max_tokens: int = 2048,
        json_mode: bool = False,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ) -> str:
        """
        Return the model's reply to one system + user exchange.

        Raises:
            RateLimitError / ProviderUnavailableError: transient failures
            LLMError: the request was rejected or came back empty
        """


class GroqChatModel(ChatModel):
    """
    Groq-hosted Llama via the OpenAI SDK.

    Example:
        model = GroqChatModel(api_key)
        text = model.complete("You are a librarian.", "List the chapters...", json_mode=True)
    """

    name = "groq"

    def __init__(self, api_key: str, model: str = GROQ_MODEL, client: openai.OpenAI | None = None):
        if not api_key and client is None:
            raise ConfigurationError("GROQ_API_KEY is not set", provider_name=self.name)
        self.model = model
        # Retries belong to RetryPolicy, not the SDK
        self._client = client or openai.OpenAI(
            api_key=api_key, base_url=GROQ_BASE_URL, max_retries=0
        )

    def complete(
        self,
        system: str,
        user: str,
        temperature: float = 0.1,
        max_tokens: int = 2048,
        json_mode: bool = False,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ) -> str:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
                **kwargs,
            )
        except openai.RateLimitError as exc:
            raise RateLimitError(f"Groq rate limit: {exc}", provider_name=self.name) from exc
        except (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as exc:
            raise ProviderUnavailableError(f"Groq unavailable: {exc}", provider_name=self.name) from exc
        except openai.APIError as exc:
            raise LLMError(f"Groq API error: {exc}", provider_name=self.name) from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise LLMError("Groq returned an empty response", provider_name=self.name)
        logger.debug(
            "llm_completion",
            provider=self.name,
            model=self.model,
            tokens=response.usage.total_tokens if response.usage else None,
        )
        return content


class OllamaChatModel(ChatModel):
    """
    Local model served by Ollama.

    Example:
        model = OllamaChatModel()
        print(model.complete("You are a tutor.", "What is a fraction?"))
    """

    name = "ollama"

    def __init__(
        self,
        model: str = OLLAMA_MODEL,
        host: str = OLLAMA_BASE_URL,
        client_factory: Callable[..., ollama.Client] = ollama.Client,
    ):
        self.model = model
        self.host = host
        self._client_factory = client_factory
        self._clients: dict[int, ollama.Client] = {}

    def _client(self, timeout: float) -> ollama.Client:
        """
        Client whose request timeout is `timeout`, in whole seconds.

        ollama.Client fixes its timeout at construction, so one client is
        kept per value (at most PROVIDER_TIMEOUT_SECONDS of them).
        """
        seconds = max(1, int(timeout))
        if seconds not in self._clients:
            self._clients[seconds] = self._client_factory(host=self.host, timeout=seconds)
        return self._clients[seconds]

    def complete(
        self,
        system: str,
        user: str,
        temperature: float = 0.1,
        max_tokens: int = 2048,
        json_mode: bool = False,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ) -> str:
        try:
            response = self._client(timeout).chat(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                format="json" if json_mode else None,
                options={"temperature": temperature, "num_predict": max_tokens},
            )
        except ollama.ResponseError as exc:
            if exc.status_code == 429:
                raise RateLimitError(str(exc), provider_name=self.name) from exc
            if exc.status_code >= 500:
                raise ProviderUnavailableError(str(exc), provider_name=self.name) from exc
            raise LLMError(f"Ollama error: {exc}", provider_name=self.name) from exc
        except ConnectionError as exc:
            raise ProviderUnavailableError(
                "Cannot connect to Ollama. Make sure it is running: ollama serve",
                provider_name=self.name,
            ) from exc
        except httpx.TimeoutException as exc:
            raise ProviderUnavailableError(
                f"Ollama timed out after {timeout:.0f}s", provider_name=self.name
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"Ollama unreachable: {exc}", provider_name=self.name) from exc

        content = response["message"]["content"]
        if not content:
            raise LLMError("Ollama returned an empty response", provider_name=self.name)
        return content


# =============================================================================
# VISION MODEL
# =============================================================================


class VisionModel(ABC):
    """A multimodal model that can read a PDF."""

    name: str = "vision"

    @abstractmethod
    def read_pdf(
        self,
        pdf_bytes: bytes,
        prompt: str,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ) -> str:
        """Return the model's text response for the PDF and instruction."""


class GeminiVisionModel(VisionModel):
    """
    Gemini reading a PDF passed inline.

    The SDK base64-encodes inline bytes for the request body, which is why
    the caller caps the file size before getting here.
    """

    name = "gemini"

    def __init__(self, api_key: str, model: str = OCR_MODEL, client: genai.Client | None = None):
        if not api_key and client is None:
            raise ConfigurationError("GEMINI_API_KEY is not set", provider_name=self.name)
        self.model = model
        self._client = client or genai.Client(api_key=api_key)

    def read_pdf(
        self,
        pdf_bytes: bytes,
        prompt: str,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ) -> str:
        config = types.GenerateContentConfig(
            temperature=0.1,
            max_output_tokens=OCR_MAX_OUTPUT_TOKENS,
            # HttpOptions timeout is in milliseconds
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )
        try:
            response = self._client.models.generate_content(
                model=self.model,
                contents=[
                    types.Part.from_bytes(data=pdf_bytes, mime_type="application/pdf"),
                    prompt,
                ],
                config=config,
            )
        except genai_errors.APIError as exc:
            if exc.code == 429 or is_rate_limit_error(exc):
                raise RateLimitError(f"Gemini rate limit: {exc}", provider_name=self.name) from exc
            if exc.code and exc.code >= 500:
                raise ProviderUnavailableError(f"Gemini unavailable: {exc}", provider_name=self.name) from exc
            raise LLMError(f"Gemini API error: {exc}", provider_name=self.name) from exc
        except (httpx.TransportError, TimeoutError) as exc:
            raise ProviderUnavailableError(f"Gemini unreachable: {exc}", provider_name=self.name) from exc

        return response.text or ""


# =============================================================================
# FACTORIES
# =============================================================================


def get_chat_model(settings: Settings) -> ChatModel:
    """Build the configured text model."""
    if settings.llm_provider == "ollama":
        return OllamaChatModel()
    if settings.llm_provider == "groq":
        return GroqChatModel(settings.groq_api_key)
    raise ConfigurationError(f"Unknown LLM provider {settings.llm_provider!r}")


def get_vision_model(settings: Settings) -> VisionModel | None:
    """Build the OCR model, or None when no vision credential is configured."""
    if not settings.ocr_enabled:
        return None
    return GeminiVisionModel(settings.gemini_api_key)
