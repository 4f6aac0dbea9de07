"""Provider selection for the extraction adapter.

The registry maps the configured provider name to its implementation so that
self-hosted or test providers can be plugged in without touching the engine.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging

from services.extraction.adapter import ExtractionAdapter
from services.extraction.base import ExtractionProvider
from services.extraction.ollama_provider import OllamaExtractionProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Name -> provider class mapping, extensible at runtime."""

    _providers: dict[str, type[ExtractionProvider]] = {
        "openai": OpenAIExtractionProvider,
        "ollama": OllamaExtractionProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[ExtractionProvider]) -> None:
        cls._providers[name] = provider_class
        logger.info(f"Registered extraction provider: {name}")

    @classmethod
    def unregister(cls, name: str) -> None:
        cls._providers.pop(name, None)

    @classmethod
    def get_provider_class(cls, name: str) -> type[ExtractionProvider]:
        """Look up a provider class.

        Raises:
            ValueError: If no provider is registered under this name
        """
        try:
            return cls._providers[name]
        except KeyError:
            available = ", ".join(sorted(cls._providers))
            raise ValueError(
                f"Unknown extraction provider: '{name}'. Available providers: {available}"
            ) from None

    @classmethod
    def list_providers(cls) -> list[str]:
        return sorted(cls._providers)


def create_extraction_provider(settings: Settings) -> ExtractionProvider:
    """Create the provider named by settings.extraction_provider.

    An unavailable provider (missing API key, model server down) is still
    returned; its failures surface per document as parked drafts.

    Raises:
        ValueError: If the configured provider is unknown
    """
    provider_name = settings.extraction_provider
    provider = ProviderRegistry.get_provider_class(provider_name)(settings)

    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{provider_name}' is not fully available. "
            f"Submitted documents will be parked as drafts until it is configured."
        )

    logger.info(f"Created extraction provider: {provider_name}")
    return provider


def create_extraction_adapter(settings: Settings) -> ExtractionAdapter:
    """Configured provider wrapped in the caching, retrying adapter."""
    return ExtractionAdapter(create_extraction_provider(settings), settings)
