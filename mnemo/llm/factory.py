"""Build the configured model provider."""

import structlog

from mnemo.config.settings import Settings
from mnemo.core.exceptions import ConfigurationError
from mnemo.llm.anthropic_provider import AnthropicProvider
from mnemo.llm.base import ModelProvider
from mnemo.llm.ollama_provider import OllamaProvider

logger = structlog.get_logger(__name__)


def create_provider(settings: Settings) -> ModelProvider:
    """
    Create the provider named by ``settings.llm_provider``.

    Switching providers is a configuration change and a restart; there is no
    runtime fallback from one provider to the other.

    Raises:
        ConfigurationError: If the hosted provider has no API key.
    """
    if settings.llm_provider == "anthropic":
        if not settings.anthropic_api_key or not settings.anthropic_api_key.get_secret_value():
            raise ConfigurationError(
                "ANTHROPIC_API_KEY is required when llm_provider is 'anthropic'",
                config_key="anthropic_api_key",
            )
        provider: ModelProvider = AnthropicProvider(
            api_key=settings.anthropic_api_key.get_secret_value(),
            model=settings.anthropic_model,
            timeout=settings.provider_timeout_seconds,
            max_input_chars=settings.provider_max_input_chars,
        )
    else:
        provider = OllamaProvider(
            base_url=settings.ollama_base_url,
            model=settings.ollama_model,
            timeout=settings.provider_timeout_seconds,
            max_input_chars=settings.provider_max_input_chars,
        )

    logger.info("provider_created", provider=provider.name, model=provider.model)
    return provider
