"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

import json
from typing import Any, Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Structured Inference
# -----------------------------------------------------------------------------

@runtime_checkable
class InferenceProvider(Protocol):
    """
    Runs a prompt against a model and returns its raw response.

    The response shape varies by backend (a bare string, a dict envelope,
    a list of output chunks). Callers pass it through extract_response_text()
    rather than assuming a shape.

    Example implementation:
        class EchoInference:
            model = "echo"

            def generate(self, prompt, *, schema=None):
                return {"response": prompt}
    """

    model: str

    def generate(self, prompt: str, *, schema: dict[str, Any] | None = None) -> Any:
        """
        Send a prompt, optionally constrained to a JSON schema.

        Args:
            prompt: Full prompt text
            schema: JSON schema the response should match, if supported

        Returns:
            The backend's raw response

        Raises:
            RateLimitError: If the backend reports a rate limit
            InferenceError: For other backend failures
        """
        ...


def extract_response_text(result: Any) -> str:
    """
    Pull response text out of the shapes inference backends return.

    Handles, in order:
    - a plain string
    - {"result": {...}} envelopes (unwrapped first)
    - {"response": "..."}
    - {"output_text": ["...", ...]}
    - {"output": [{"content": [{"text": "..."}]}]}

    An already-parsed object under "response" is re-serialized. Anything
    unrecognized becomes "{}", which then fails schema validation.
    """
    if isinstance(result, str):
        return result
    if not isinstance(result, dict):
        return "{}"

    if isinstance(result.get("result"), dict):
        result = result["result"]

    response = result.get("response")
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        return json.dumps(response, ensure_ascii=False)

    output_text = result.get("output_text")
    if isinstance(output_text, list):
        chunks = [t for t in output_text if isinstance(t, str)]
        if chunks:
            return "\n".join(chunks)

    output = result.get("output")
    if isinstance(output, list):
        chunks = []
        for item in output:
            content = item.get("content") if isinstance(item, dict) else None
            if not isinstance(content, list):
                continue
            for part in content:
                text = part.get("text") if isinstance(part, dict) else None
                if isinstance(text, str):
                    chunks.append(text)
        if chunks:
            return "\n".join(chunks)

    return "{}"


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and can be instantiated from configuration.
    This allows the store configuration (TOML) to specify providers by name
    rather than requiring code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_inference("workers-ai", WorkersAIInference)

        # Later, from config:
        provider = registry.create_inference("workers-ai", {"model": "@cf/openai/gpt-oss-120b"})
    """

    def __init__(self):
        self._inference_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load provider modules."""
        if self._lazy_loaded:
            return

        self._lazy_loaded = True

        # Importing registers the classes; nothing is instantiated
        from . import llm  # noqa: F401

    def register_inference(self, name: str, provider_class: type) -> None:
        """Register an inference provider class."""
        self._inference_providers[name] = provider_class

    def create_inference(self, name: str, params: dict | None = None) -> InferenceProvider:
        """Create an inference provider instance."""
        self._ensure_providers_loaded()
        if name not in self._inference_providers:
            available = ", ".join(self._inference_providers.keys()) or "none"
            raise ValueError(
                f"Unknown inference provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return self._inference_providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create inference provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e

    def list_inference_providers(self) -> list[str]:
        """List registered inference provider names."""
        self._ensure_providers_loaded()
        return list(self._inference_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
