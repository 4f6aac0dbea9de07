"""Unit tests for extraction base classes and interfaces.

Tests cover:
- Abstract base class enforcement
- ExtractionResult model validation
- Cache keys of extraction requests
"""

from typing import Any

import pytest

from services.extraction.base import ExtractionProvider, ExtractionResult
from services.extraction.schema import ExtractionRequest, InvoiceData
from services.shared.config import Settings
from services.shared.errors import ExtractionErrorKind


def test_extraction_result_with_success() -> None:
    """Test ExtractionResult with successful extraction."""
    invoice_data = InvoiceData(document_ref="INV-001", currency="USD")

    result = ExtractionResult(invoice_data=invoice_data, success=True, provider="test")

    assert result.success is True
    assert result.invoice_data is not None
    assert result.invoice_data.document_ref == "INV-001"
    assert result.cached is False
    assert result.low_confidence is False


def test_extraction_result_with_failure() -> None:
    """Test ExtractionResult with failed extraction."""
    result = ExtractionResult(
        invoice_data=None,
        success=False,
        error="Test error",
        error_kind=ExtractionErrorKind.UNREADABLE,
        provider="test",
    )

    assert result.success is False
    assert result.invoice_data is None
    assert result.error_kind == ExtractionErrorKind.UNREADABLE


def test_extraction_provider_is_abstract() -> None:
    """Test that ExtractionProvider cannot be instantiated directly."""
    with pytest.raises(TypeError, match="Can't instantiate abstract class"):
        ExtractionProvider(Settings())  # type: ignore[abstract]


def test_extraction_provider_requires_implementation() -> None:
    """Test that concrete providers must implement all abstract methods."""

    class IncompleteProvider(ExtractionProvider):
        def extract_document(self, request: ExtractionRequest) -> dict[str, Any]:
            return {}

        def is_available(self) -> bool:
            return True

        # Missing: provider_name property

    with pytest.raises(TypeError, match="Can't instantiate abstract class"):
        IncompleteProvider(Settings())  # type: ignore[abstract]


def test_cache_key_covers_content_and_hints() -> None:
    """Identical bytes and hints share a key; different hints do not."""

    def request(hints: dict[str, str]) -> ExtractionRequest:
        return ExtractionRequest(
            document_bytes=b"doc", mime_type="image/png", content_hash="abc", hints=hints
        )

    assert request({"a": "1", "b": "2"}).cache_key == request({"b": "2", "a": "1"}).cache_key
    assert request({}).cache_key != request({"language": "es"}).cache_key
