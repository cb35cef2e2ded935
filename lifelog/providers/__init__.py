"""Inference providers for lifelog analysis."""

from .base import InferenceProvider, ProviderRegistry, extract_response_text, get_registry

__all__ = ["InferenceProvider", "ProviderRegistry", "extract_response_text", "get_registry"]
