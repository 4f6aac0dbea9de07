"""Unit tests for OllamaExtractionProvider.

Tests the Ollama-based extraction provider with mocked HTTP calls.
"""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from services.extraction.ollama_provider import OllamaExtractionProvider
from services.extraction.schema import ExtractionRequest
from services.shared.config import Settings
from services.shared.errors import ExtractionError, ExtractionErrorKind


@pytest.fixture
def settings() -> Settings:
    """Create test settings with Ollama provider."""
    return Settings(
        extraction_provider="ollama",
        ollama_base_url="http://localhost:11434",
        ollama_model="qwen2.5vl:7b",
    )


@pytest.fixture
def provider(settings: Settings) -> OllamaExtractionProvider:
    """Create Ollama provider instance."""
    return OllamaExtractionProvider(settings)


def image_request(mime_type: str = "image/png") -> ExtractionRequest:
    return ExtractionRequest(
        document_bytes=b"\x89PNG fake", mime_type=mime_type, content_hash="abc"
    )


def ollama_response(status_code: int = 200, body: object = None) -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = body
    mock_response.text = json.dumps(body)
    return mock_response


class TestOllamaExtractionProviderProperties:
    """Test provider properties and availability."""

    def test_provider_name(self, provider: OllamaExtractionProvider) -> None:
        """Provider name should be 'ollama'."""
        assert provider.provider_name == "ollama"

    def test_is_available_when_server_running(self, provider: OllamaExtractionProvider) -> None:
        """Should return True when Ollama server responds with model."""
        response = ollama_response(body={"models": [{"name": "qwen2.5vl:7b"}]})

        with patch.object(provider._client, "get", return_value=response):
            assert provider.is_available() is True

    def test_is_available_when_server_down(self, provider: OllamaExtractionProvider) -> None:
        """Should return False when Ollama server is unreachable."""
        with patch.object(
            provider._client, "get", side_effect=httpx.ConnectError("Connection refused")
        ):
            assert provider.is_available() is False

    def test_is_available_when_model_not_found(self, provider: OllamaExtractionProvider) -> None:
        """Should return False when configured model is not available."""
        response = ollama_response(body={"models": [{"name": "llama3.1:8b"}]})

        with patch.object(provider._client, "get", return_value=response):
            assert provider.is_available() is False


class TestOllamaExtraction:
    """Test document extraction and error mapping."""

    def test_extract_successful_response(self, provider: OllamaExtractionProvider) -> None:
        """Should return the model's JSON payload."""
        payload = {"folio": "12345", "supplier_name": "Test Supplier", "total": 110.0}
        response = ollama_response(body={"response": json.dumps(payload)})

        with patch.object(provider._client, "post", return_value=response) as mock_post:
            result = provider.extract_document(image_request())

        assert result == payload
        sent = mock_post.call_args.kwargs["json"]
        assert sent["model"] == "qwen2.5vl:7b"
        assert sent["format"] == "json"
        assert len(sent["images"]) == 1

    def test_extract_json_in_markdown_block(self, provider: OllamaExtractionProvider) -> None:
        """Should parse JSON wrapped in markdown code block."""
        response = ollama_response(body={"response": '```json\n{"folio": "67890"}\n```'})

        with patch.object(provider._client, "post", return_value=response):
            result = provider.extract_document(image_request())

        assert result == {"folio": "67890"}

    def test_pdf_is_unreadable(self, provider: OllamaExtractionProvider) -> None:
        """Ollama vision models only accept images."""
        with patch.object(provider._client, "post") as mock_post:
            with pytest.raises(ExtractionError) as exc_info:
                provider.extract_document(image_request("application/pdf"))

        assert exc_info.value.kind == ExtractionErrorKind.UNREADABLE
        mock_post.assert_not_called()

    @pytest.mark.parametrize(
        ("side_effect", "kind"),
        [
            (httpx.ReadTimeout("timed out"), ExtractionErrorKind.TIMEOUT),
            (httpx.ConnectError("Connection refused"), ExtractionErrorKind.TIMEOUT),
        ],
    )
    def test_transport_errors(
        self,
        provider: OllamaExtractionProvider,
        side_effect: Exception,
        kind: ExtractionErrorKind,
    ) -> None:
        with patch.object(provider._client, "post", side_effect=side_effect):
            with pytest.raises(ExtractionError) as exc_info:
                provider.extract_document(image_request())

        assert exc_info.value.kind == kind

    @pytest.mark.parametrize(
        ("status_code", "kind"),
        [
            (429, ExtractionErrorKind.RATE_LIMITED),
            (503, ExtractionErrorKind.RATE_LIMITED),
            (400, ExtractionErrorKind.UNREADABLE),
        ],
    )
    def test_http_status_errors(
        self, provider: OllamaExtractionProvider, status_code: int, kind: ExtractionErrorKind
    ) -> None:
        response = ollama_response(status_code, {"error": "failed"})

        with patch.object(provider._client, "post", return_value=response):
            with pytest.raises(ExtractionError) as exc_info:
                provider.extract_document(image_request())

        assert exc_info.value.kind == kind

    def test_invalid_json_is_malformed(self, provider: OllamaExtractionProvider) -> None:
        """Should raise Malformed when the model returns prose."""
        response = ollama_response(body={"response": "This is not valid JSON"})

        with patch.object(provider._client, "post", return_value=response):
            with pytest.raises(ExtractionError) as exc_info:
                provider.extract_document(image_request())

        assert exc_info.value.kind == ExtractionErrorKind.MALFORMED

    def test_invalid_envelope_is_malformed(self, provider: OllamaExtractionProvider) -> None:
        response = ollama_response()
        response.json.side_effect = ValueError("not json")

        with patch.object(provider._client, "post", return_value=response):
            with pytest.raises(ExtractionError) as exc_info:
                provider.extract_document(image_request())

        assert exc_info.value.kind == ExtractionErrorKind.MALFORMED

    def test_non_object_envelope_is_malformed(self, provider: OllamaExtractionProvider) -> None:
        response = ollama_response(body=[{"response": "{}"}])

        with patch.object(provider._client, "post", return_value=response):
            with pytest.raises(ExtractionError) as exc_info:
                provider.extract_document(image_request())

        assert exc_info.value.kind == ExtractionErrorKind.MALFORMED
        assert "expected an object" in str(exc_info.value)
