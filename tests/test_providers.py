"""Tests for inference providers and the provider registry."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from lifelog.errors import InferenceError, RateLimitError
from lifelog.providers.base import ProviderRegistry, extract_response_text, get_registry
from lifelog.providers.llm import (
    GeminiInference,
    OllamaInference,
    WorkersAIInference,
)
from tests.conftest import FakeResponse


class TestExtractResponseText:
    def test_string(self):
        assert extract_response_text("abc") == "abc"

    def test_response_field(self):
        assert extract_response_text({"response": "abc"}) == "abc"

    def test_parsed_response_is_serialized(self):
        assert extract_response_text({"response": {"summary": "s"}}) == '{"summary": "s"}'

    def test_result_envelope(self):
        assert extract_response_text({"result": {"response": "abc"}, "success": True}) == "abc"

    def test_output_text_chunks(self):
        assert extract_response_text({"output_text": ["a", 1, "b"]}) == "a\nb"

    def test_output_content(self):
        result = {"output": [
            {"type": "reasoning", "content": [{"text": "thinking"}]},
            {"type": "message", "content": [{"type": "output_text", "text": "{}"}]},
            {"type": "other"},
        ]}
        assert extract_response_text(result) == "thinking\n{}"

    @pytest.mark.parametrize("result", [None, 42, {}, {"output": "nope"}, ["x"]])
    def test_unrecognized(self, result):
        assert extract_response_text(result) == "{}"


class TestRegistry:
    def test_builtin_providers_registered(self):
        names = get_registry().list_inference_providers()
        assert {"workers-ai", "openai", "ollama", "gemini"} <= set(names)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown inference provider"):
            get_registry().create_inference("nope")

    def test_create_with_params(self):
        registry = ProviderRegistry()
        registry._lazy_loaded = True

        class Echo:
            def __init__(self, model="echo"):
                self.model = model

        registry.register_inference("echo", Echo)

        assert registry.create_inference("echo", {"model": "loud"}).model == "loud"

    def test_missing_credentials_raise(self):
        with pytest.raises(ValueError):
            get_registry().create_inference("workers-ai")


@pytest.fixture
def workers_ai():
    with patch("lifelog.providers.llm.httpx.Client") as MockClient:
        http = MagicMock()
        MockClient.return_value = http
        provider = WorkersAIInference(account_id="acct", api_token="tok")
        yield provider, http


class TestWorkersAI:
    def test_request_shape(self, workers_ai):
        provider, http = workers_ai
        http.post.return_value = FakeResponse(json_data={"result": {"response": "{}"}, "success": True})

        result = provider.generate("hello", schema={"type": "object"})

        url = http.post.call_args.args[0]
        body = http.post.call_args.kwargs["json"]
        assert url.endswith("/accounts/acct/ai/run/@cf/openai/gpt-oss-120b")
        assert body["input"] == "hello"
        assert body["response_format"]["type"] == "json_schema"
        assert body["response_format"]["json_schema"]["schema"] == {"type": "object"}
        assert extract_response_text(result) == "{}"

    def test_error_code_1031_is_rate_limit(self, workers_ai):
        provider, http = workers_ai
        http.post.return_value = FakeResponse(status_code=500, json_data={
            "success": False,
            "errors": [{"code": 1031, "message": "capacity temporarily exceeded"}],
        })

        with pytest.raises(RateLimitError):
            provider.generate("hello")

    def test_http_429_is_rate_limit(self, workers_ai):
        provider, http = workers_ai
        http.post.return_value = FakeResponse(status_code=429, text="slow down")

        with pytest.raises(RateLimitError):
            provider.generate("hello")

    def test_other_errors(self, workers_ai):
        provider, http = workers_ai
        http.post.return_value = FakeResponse(status_code=400, json_data={
            "success": False, "errors": [{"code": 5006, "message": "bad input"}],
        })

        with pytest.raises(InferenceError, match="5006"):
            provider.generate("hello")

    def test_transport_error(self, workers_ai):
        provider, http = workers_ai
        http.post.side_effect = httpx.ConnectError("refused")

        with pytest.raises(InferenceError):
            provider.generate("hello")

    def test_requires_credentials(self):
        with pytest.raises(ValueError, match="CLOUDFLARE"):
            WorkersAIInference()

    def test_credentials_from_env(self, monkeypatch):
        monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "acct")
        monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "tok")
        with patch("lifelog.providers.llm.httpx.Client") as MockClient:
            WorkersAIInference(model="@cf/meta/llama")
            assert MockClient.call_args.kwargs["headers"]["Authorization"] == "Bearer tok"


@pytest.fixture
def gemini():
    with patch("lifelog.providers.llm.httpx.Client") as MockClient:
        http = MagicMock()
        MockClient.return_value = http
        yield GeminiInference(api_key="g-key"), http


class TestGemini:
    def test_returns_candidate_text(self, gemini):
        provider, http = gemini
        http.post.return_value = FakeResponse(json_data={
            "candidates": [{"content": {"parts": [{"text": '{"summary": "s"}'}]}}],
        })

        assert provider.generate("prompt") == '{"summary": "s"}'

        url = http.post.call_args.args[0]
        body = http.post.call_args.kwargs["json"]
        assert url.endswith("/gemini-2.0-flash:generateContent")
        assert http.post.call_args.kwargs["params"] == {"key": "g-key"}
        assert body["generationConfig"]["responseMimeType"] == "application/json"
        assert body["contents"][0]["parts"][0]["text"] == "prompt"

    def test_no_candidates(self, gemini):
        provider, http = gemini
        http.post.return_value = FakeResponse(json_data={"candidates": []})
        assert provider.generate("prompt") == ""

    def test_http_error(self, gemini):
        provider, http = gemini
        http.post.return_value = FakeResponse(status_code=500, text="oops")
        with pytest.raises(InferenceError):
            provider.generate("prompt")

    def test_requires_key(self):
        with pytest.raises(ValueError, match="GEMINI_API_KEY"):
            GeminiInference()


class TestOllama:
    def test_generate_sends_schema_as_format(self):
        provider = OllamaInference(model="llama3.2", base_url="localhost:11434")
        response = MagicMock(ok=True, status_code=200)
        response.json.return_value = {"response": "{}"}

        with patch("requests.post", return_value=response) as mock_post:
            result = provider.generate("hi", schema={"type": "object"})

        assert mock_post.call_args.args[0] == "http://localhost:11434/api/generate"
        body = mock_post.call_args.kwargs["json"]
        assert body["format"] == {"type": "object"}
        assert body["stream"] is False
        assert extract_response_text(result) == "{}"

    def test_http_error(self):
        provider = OllamaInference(base_url="http://ollama:11434")
        response = MagicMock(ok=False, status_code=404, text="model not found")

        with patch("requests.post", return_value=response):
            with pytest.raises(InferenceError, match="404"):
                provider.generate("hi")

    def test_host_from_env(self, monkeypatch):
        monkeypatch.setenv("OLLAMA_HOST", "http://gpu-box:11434/")
        assert OllamaInference().base_url == "http://gpu-box:11434"


class TestOpenAI:
    def test_structured_output_request(self):
        pytest.importorskip("openai")
        from lifelog.providers.llm import OpenAIInference

        with patch("openai.OpenAI") as MockOpenAI:
            client = MagicMock()
            MockOpenAI.return_value = client
            choice = MagicMock()
            choice.message.content = '{"summary": "s"}'
            client.chat.completions.create.return_value = MagicMock(choices=[choice])

            provider = OpenAIInference(api_key="sk-test")
            result = provider.generate("prompt", schema={"type": "object"})

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4.1-mini"
        assert kwargs["response_format"]["json_schema"]["name"] == "lifelog_analysis"
        assert result == '{"summary": "s"}'
