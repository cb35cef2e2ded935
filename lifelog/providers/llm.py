"""LLM inference providers for structured lifelog analysis."""

import logging
import os
from typing import Any

import httpx

from ..errors import InferenceError, RateLimitError
from .base import get_registry

logger = logging.getLogger(__name__)

SCHEMA_NAME = "lifelog_analysis"

# Workers AI error code for "capacity temporarily exceeded"
WORKERS_AI_RATE_LIMIT_CODE = 1031


def _json_schema_format(schema: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {"name": SCHEMA_NAME, "schema": schema},
    }


class WorkersAIInference:
    """
    Inference provider using the Cloudflare Workers AI REST API.

    Requires: CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN environment
    variables (or account_id / api_token params).

    Default model is @cf/openai/gpt-oss-120b.
    """

    API_BASE = "https://api.cloudflare.com/client/v4/accounts"

    def __init__(
        self,
        model: str = "@cf/openai/gpt-oss-120b",
        account_id: str | None = None,
        api_token: str | None = None,
        timeout: float = 120.0,
    ):
        self.model = model
        account = account_id or os.environ.get("CLOUDFLARE_ACCOUNT_ID")
        token = api_token or os.environ.get("CLOUDFLARE_API_TOKEN")
        if not account or not token:
            raise ValueError(
                "Workers AI credentials required. Set CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN"
            )
        self._url = f"{self.API_BASE}/{account}/ai/run/{model}"
        self._client = httpx.Client(
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    def generate(self, prompt: str, *, schema: dict[str, Any] | None = None) -> Any:
        """Run the model; returns the decoded response envelope."""
        body: dict[str, Any] = {"input": prompt}
        if schema is not None:
            body["response_format"] = _json_schema_format(schema)

        try:
            resp = self._client.post(self._url, json=body)
        except httpx.TransportError as e:
            raise InferenceError(f"Workers AI request failed: {e}") from e

        if resp.status_code == 429:
            raise RateLimitError(f"Workers AI rate limited: {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError:
            data = None

        errors = (data or {}).get("errors") if isinstance(data, dict) else None
        if errors:
            codes = {e.get("code") for e in errors if isinstance(e, dict)}
            message = "; ".join(
                f"{e.get('code')}: {e.get('message')}" for e in errors if isinstance(e, dict)
            )
            if WORKERS_AI_RATE_LIMIT_CODE in codes or str(WORKERS_AI_RATE_LIMIT_CODE) in message:
                raise RateLimitError(f"Workers AI rate limited ({message})")
            raise InferenceError(f"Workers AI error ({message})")

        if resp.status_code >= 400 or data is None:
            raise InferenceError(
                f"Workers AI error: HTTP {resp.status_code} {resp.text[:200]}"
            )
        return data

    def close(self) -> None:
        self._client.close()


class OpenAIInference:
    """
    Inference provider using OpenAI's chat API with structured outputs.

    Requires: LIFELOG_OPENAI_API_KEY or OPENAI_API_KEY environment variable.

    Default model is gpt-4.1-mini.
    """

    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        api_key: str | None = None,
        max_tokens: int = 4096,
    ):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAIInference requires 'openai' library")

        self.model = model
        self.max_tokens = max_tokens

        key = api_key or os.environ.get("LIFELOG_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set LIFELOG_OPENAI_API_KEY or OPENAI_API_KEY"
            )

        self._client = OpenAI(api_key=key)

        # GPT-5+ and reasoning models take max_completion_tokens and no temperature
        self._new_api = self.model.startswith(("gpt-5", "o3", "o4"))

    def _completion_kwargs(self) -> dict:
        if self._new_api:
            return {"max_completion_tokens": self.max_tokens}
        return {"max_tokens": self.max_tokens, "temperature": 0.4}

    def generate(self, prompt: str, *, schema: dict[str, Any] | None = None) -> Any:
        """Send the prompt as a single user message; returns the message text."""
        import openai

        kwargs = self._completion_kwargs()
        if schema is not None:
            kwargs["response_format"] = _json_schema_format(schema)

        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                **kwargs,
            )
        except openai.RateLimitError as e:
            raise RateLimitError(f"OpenAI rate limited: {e}") from e
        except openai.OpenAIError as e:
            raise InferenceError(f"OpenAI request failed: {e}") from e

        if response.choices:
            return response.choices[0].message.content or ""
        return ""


class OllamaInference:
    """
    Inference provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str | None = None,
    ):
        self.model = model
        host = base_url or os.environ.get("OLLAMA_HOST", "http://localhost:11434")
        if not host.startswith(("http://", "https://")):
            host = f"http://{host}"
        self.base_url = host.rstrip("/")

    def generate(self, prompt: str, *, schema: dict[str, Any] | None = None) -> Any:
        """POST /api/generate; returns the decoded body (text under "response")."""
        import requests

        body: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
        }
        if schema is not None:
            body["format"] = schema

        try:
            response = requests.post(
                f"{self.base_url}/api/generate",
                json=body,
                timeout=(10, 300),  # (connect, read)
            )
        except requests.RequestException as e:
            raise InferenceError(f"Ollama request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitError(f"Ollama rate limited (model={self.model})")
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise InferenceError(
                f"Ollama generate failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        return response.json()


class GeminiInference:
    """
    Inference provider using the Gemini generateContent REST endpoint.

    Requires: GEMINI_API_KEY or GOOGLE_API_KEY environment variable.

    Used as the secondary fallback when the primary model's output can't
    be parsed. Default model is gemini-2.0-flash.
    """

    API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"

    def __init__(
        self,
        model: str = "gemini-2.0-flash",
        api_key: str | None = None,
        timeout: float = 60.0,
        max_output_tokens: int = 4096,
    ):
        self.model = model
        self.max_output_tokens = max_output_tokens
        key = api_key or os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
        if not key:
            raise ValueError("Gemini API key required. Set GEMINI_API_KEY or GOOGLE_API_KEY")
        self._key = key
        self._client = httpx.Client(timeout=timeout)

    def generate(self, prompt: str, *, schema: dict[str, Any] | None = None) -> Any:
        """Returns the first candidate's text, or "" if there is none."""
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "temperature": 0.4,
                "maxOutputTokens": self.max_output_tokens,
            },
        }
        try:
            resp = self._client.post(
                f"{self.API_BASE}/{self.model}:generateContent",
                params={"key": self._key},
                json=body,
            )
        except httpx.TransportError as e:
            raise InferenceError(f"Gemini request failed: {e}") from e

        if resp.status_code == 429:
            raise RateLimitError("Gemini rate limited")
        if resp.status_code >= 400:
            raise InferenceError(f"Gemini error: HTTP {resp.status_code} {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise InferenceError("Gemini returned non-JSON body") from e

        try:
            return data["candidates"][0]["content"]["parts"][0]["text"] or ""
        except (KeyError, IndexError, TypeError):
            logger.warning("No text in Gemini response")
            return ""

    def close(self) -> None:
        self._client.close()


# Register providers
_registry = get_registry()
_registry.register_inference("workers-ai", WorkersAIInference)
_registry.register_inference("openai", OpenAIInference)
_registry.register_inference("ollama", OllamaInference)
_registry.register_inference("gemini", GeminiInference)
