"""Unit tests for extraction provider selection.

Tests cover:
- Registry lookups and runtime registration
- Configuration-based provider and adapter creation
- Error handling for unknown providers
"""

import logging

import pytest
from conftest import ScriptedProvider
from pydantic import ValidationError

from services.extraction.adapter import ExtractionAdapter
from services.extraction.factory import (
    ProviderRegistry,
    create_extraction_adapter,
    create_extraction_provider,
)
from services.extraction.ollama_provider import OllamaExtractionProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings


class TestProviderRegistry:
    def test_default_providers(self) -> None:
        assert ProviderRegistry.list_providers() == ["ollama", "openai"]
        assert ProviderRegistry.get_provider_class("openai") is OpenAIExtractionProvider

    def test_unknown_provider_lists_available(self) -> None:
        with pytest.raises(ValueError, match="Available providers: ollama, openai"):
            ProviderRegistry.get_provider_class("nonexistent")

    def test_register_new_provider(self) -> None:
        ProviderRegistry.register("scripted", ScriptedProvider)
        try:
            assert "scripted" in ProviderRegistry.list_providers()
            assert ProviderRegistry.get_provider_class("scripted") is ScriptedProvider
        finally:
            ProviderRegistry.unregister("scripted")

        assert "scripted" not in ProviderRegistry.list_providers()


class TestCreateProvider:
    def test_openai_by_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("APP_EXTRACTION_PROVIDER", raising=False)

        provider = create_extraction_provider(Settings(_env_file=None))

        assert isinstance(provider, OpenAIExtractionProvider)

    def test_ollama_from_settings(self) -> None:
        settings = Settings(_env_file=None, extraction_provider="ollama")

        assert isinstance(create_extraction_provider(settings), OllamaExtractionProvider)

    def test_warns_when_unavailable(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with caplog.at_level(logging.INFO):
            create_extraction_provider(Settings(_env_file=None, extraction_provider="openai"))

        assert "not fully available" in caplog.text
        assert "Created extraction provider: openai" in caplog.text

    def test_adapter_wraps_configured_provider(self) -> None:
        adapter = create_extraction_adapter(Settings(_env_file=None, extraction_provider="openai"))

        assert isinstance(adapter, ExtractionAdapter)
        assert isinstance(adapter.provider, OpenAIExtractionProvider)

    def test_invalid_provider_rejected_by_settings(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, extraction_provider="invalid")  # type: ignore[arg-type]
