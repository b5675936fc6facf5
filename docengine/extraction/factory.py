"""Extraction provider selection.

Settings name the provider (extraction_provider) and the ordered model list
(ai_models). The registry maps provider names to classes so deployments can
plug in another backend without touching the router.
"""

import logging

from docengine.extraction.base import ExtractionProvider
from docengine.extraction.ollama_provider import OllamaExtractionProvider
from docengine.extraction.openai_provider import OpenAIExtractionProvider
from docengine.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Provider name -> ExtractionProvider subclass."""

    _providers: dict[str, type[ExtractionProvider]] = {
        "openai": OpenAIExtractionProvider,
        "ollama": OllamaExtractionProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[ExtractionProvider]) -> None:
        cls._providers[name] = provider_class
        logger.info(f"Registered extraction provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[ExtractionProvider]:
        """Look up a provider class.

        Raises:
            ValueError: If no provider is registered under name
        """
        try:
            return cls._providers[name]
        except KeyError:
            available = ", ".join(cls._providers)
            raise ValueError(
                f"Unknown extraction provider: '{name}'. Available providers: {available}"
            ) from None

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers)


def create_extraction_service(settings: Settings) -> ExtractionProvider:
    """Create the configured extraction provider.

    An unavailable provider (missing API key, no server URL) is still
    returned: its calls fail and the router reports AI exhaustion.

    Args:
        settings: Application settings

    Returns:
        Configured extraction provider instance

    Raises:
        ValueError: If the provider is unknown or has no model to try
    """
    name = settings.extraction_provider
    provider = ProviderRegistry.get_provider_class(name)(settings)

    models = provider.models()
    if not models:
        raise ValueError(f"Extraction provider '{name}' has no models; set APP_AI_MODELS")

    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{name}' is not fully available. "
            f"Check configuration (e.g., API keys, server URL)."
        )

    logger.info(
        f"Created extraction provider: {name} (models: {', '.join(models)}, "
        f"files: {provider.supports_files})"
    )
    return provider
