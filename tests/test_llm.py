"""Tests for model clients: error translation and response handling."""

import json
from unittest.mock import MagicMock

import httpx
import ollama
import openai
import pytest
from google.genai import errors as genai_errors

from koushole.config import Settings
from koushole.llm import (
    GeminiVisionModel,
    GroqChatModel,
    OllamaChatModel,
    get_chat_model,
    get_vision_model,
)
from koushole.utils.errors import (
    ConfigurationError,
    LLMError,
    ProviderUnavailableError,
    RateLimitError,
)


def _groq(handler) -> GroqChatModel:
    client = openai.OpenAI(
        api_key="test-key",
        base_url="https://groq.test/openai/v1",
        max_retries=0,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    return GroqChatModel("test-key", client=client)


def _completion(content):
    return {
        "id": "cmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "llama",
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": "stop",
        }],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


# ── Groq ────────────────────────────────────────────────────────────────────


class TestGroqChatModel:
    def test_json_mode_request(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json=_completion('{"chapters": []}'))

        reply = _groq(handler).complete("system text", "user text", json_mode=True)

        assert reply == '{"chapters": []}'
        assert seen["response_format"] == {"type": "json_object"}
        assert seen["messages"][0] == {"role": "system", "content": "system text"}
        assert seen["temperature"] == 0.1

    def test_rate_limit(self):
        model = _groq(lambda r: httpx.Response(429, json={"error": {"message": "slow down"}}))
        with pytest.raises(RateLimitError):
            model.complete("s", "u")

    def test_server_error_is_unavailable(self):
        model = _groq(lambda r: httpx.Response(503, json={"error": {"message": "overloaded"}}))
        with pytest.raises(ProviderUnavailableError):
            model.complete("s", "u")

    def test_bad_request_is_llm_error(self):
        model = _groq(lambda r: httpx.Response(400, json={"error": {"message": "bad model"}}))
        with pytest.raises(LLMError):
            model.complete("s", "u")

    def test_empty_reply_is_llm_error(self):
        model = _groq(lambda r: httpx.Response(200, json=_completion("")))
        with pytest.raises(LLMError):
            model.complete("s", "u")

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            GroqChatModel("")


# ── Ollama ──────────────────────────────────────────────────────────────────


class FakeOllamaClients:
    """Stands in for ollama.Client; records the timeout of every client built."""

    def __init__(self, reply=None, error=None):
        self.client = MagicMock()
        if error is not None:
            self.client.chat.side_effect = error
        else:
            self.client.chat.return_value = {"message": {"content": reply or "{}"}}
        self.timeouts = []

    def __call__(self, host, timeout):
        self.timeouts.append(timeout)
        return self.client


class TestOllamaChatModel:
    def test_json_format_and_options(self):
        clients = FakeOllamaClients()
        model = OllamaChatModel(client_factory=clients)

        model.complete("s", "u", temperature=0.7, json_mode=True)

        kwargs = clients.client.chat.call_args.kwargs
        assert kwargs["format"] == "json"
        assert kwargs["options"]["temperature"] == 0.7

    def test_per_call_timeout_reaches_the_client(self):
        clients = FakeOllamaClients()
        model = OllamaChatModel(client_factory=clients)

        model.complete("s", "u", timeout=12.7)
        model.complete("s", "u", timeout=12.2)
        model.complete("s", "u", timeout=40)

        # one client per whole-second timeout
        assert clients.timeouts == [12, 40]

    def test_sub_second_timeout_still_gets_a_client(self):
        clients = FakeOllamaClients()
        OllamaChatModel(client_factory=clients).complete("s", "u", timeout=0.3)
        assert clients.timeouts == [1]

    def test_not_running(self):
        model = OllamaChatModel(client_factory=FakeOllamaClients(error=ConnectionError("refused")))
        with pytest.raises(ProviderUnavailableError, match="ollama serve"):
            model.complete("s", "u")

    def test_timeout_is_unavailable(self):
        model = OllamaChatModel(client_factory=FakeOllamaClients(error=httpx.ReadTimeout("timed out")))
        with pytest.raises(ProviderUnavailableError, match="timed out"):
            model.complete("s", "u", timeout=20)

    def test_dropped_connection_is_unavailable(self):
        model = OllamaChatModel(client_factory=FakeOllamaClients(error=httpx.RemoteProtocolError("eof")))
        with pytest.raises(ProviderUnavailableError):
            model.complete("s", "u")

    def test_missing_model_is_llm_error(self):
        model = OllamaChatModel(client_factory=FakeOllamaClients(error=ollama.ResponseError("model not found", 404)))
        with pytest.raises(LLMError):
            model.complete("s", "u")


# ── Gemini ──────────────────────────────────────────────────────────────────


class TestGeminiVisionModel:
    def test_sends_pdf_inline(self):
        client = MagicMock()
        client.models.generate_content.return_value.text = "পরিবেশ"
        model = GeminiVisionModel("key", client=client)

        assert model.read_pdf(b"%PDF-1.7", "Read this book") == "পরিবেশ"
        contents = client.models.generate_content.call_args.kwargs["contents"]
        assert contents[0].inline_data.mime_type == "application/pdf"
        assert contents[1] == "Read this book"

    @pytest.mark.parametrize("code,error", [
        (429, RateLimitError),
        (503, ProviderUnavailableError),
        (400, LLMError),
    ])
    def test_error_translation(self, code, error):
        client = MagicMock()
        client.models.generate_content.side_effect = genai_errors.APIError(
            code, {"error": {"message": "failure", "status": "ERROR"}}
        )
        with pytest.raises(error):
            GeminiVisionModel("key", client=client).read_pdf(b"%PDF", "prompt")

    def test_quota_message_without_429(self):
        client = MagicMock()
        client.models.generate_content.side_effect = genai_errors.APIError(
            400, {"error": {"message": "Quota exceeded for requests", "status": "RESOURCE_EXHAUSTED"}}
        )
        with pytest.raises(RateLimitError):
            GeminiVisionModel("key", client=client).read_pdf(b"%PDF", "prompt")


class TestFactories:
    def test_no_gemini_key_means_no_ocr(self, settings):
        assert get_vision_model(settings) is None

    def test_ollama_chat(self, settings):
        assert isinstance(get_chat_model(settings), OllamaChatModel)

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            get_chat_model(Settings(llm_provider="claude"))
