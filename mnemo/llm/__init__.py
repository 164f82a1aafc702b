"""Model provider gateway: one interface, a local and a hosted implementation."""

from mnemo.llm.anthropic_provider import AnthropicProvider
from mnemo.llm.base import Classification, ModelProvider, RelationCandidate
from mnemo.llm.factory import create_provider
from mnemo.llm.ollama_provider import OllamaProvider

__all__ = [
    "AnthropicProvider",
    "Classification",
    "ModelProvider",
    "OllamaProvider",
    "RelationCandidate",
    "create_provider",
]
