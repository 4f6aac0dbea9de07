"""Ollama-based extraction provider for self-hosted vision models.

Uses a local Ollama server for document understanding. Supports data
sovereignty requirements by running entirely on-premises. Ollama accepts
images only; PDFs are reported as Unreadable.

Requires Ollama server running on localhost:11434.
See: https://ollama.ai/
"""

import base64
import logging
from typing import Any

import httpx

from services.extraction.base import ExtractionProvider
from services.extraction.prompt import build_extraction_prompt, parse_json_response
from services.extraction.schema import ExtractionRequest
from services.shared.config import Settings
from services.shared.errors import ExtractionError, ExtractionErrorKind

logger = logging.getLogger(__name__)

_RATE_LIMIT_STATUSES = {429, 502, 503, 504}


class OllamaExtractionProvider(ExtractionProvider):
    """Ollama-based extraction provider for self-hosted vision LLMs (Qwen2.5-VL, LLaVA)."""

    def __init__(self, settings: Settings) -> None:
        """Initialize Ollama extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url
        self._model = settings.ollama_model
        self._client = httpx.Client(timeout=settings.extraction_timeout_seconds)

    @property
    def provider_name(self) -> str:
        return "ollama"

    def is_available(self) -> bool:
        """Check if Ollama server is running and model is available.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = self._client.get(f"{self._base_url}/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except httpx.HTTPError:
            return False

    def extract_document(self, request: ExtractionRequest) -> dict[str, Any]:
        """Extract raw invoice fields from a document image using Ollama.

        Args:
            request: Document bytes, mime type and hints

        Returns:
            Parsed JSON payload from the model

        Raises:
            ExtractionError: Mapped from HTTP and parsing failures
        """
        if not request.mime_type.startswith("image/"):
            raise ExtractionError(
                ExtractionErrorKind.UNREADABLE,
                f"Ollama provider accepts images only, got {request.mime_type}",
            )

        try:
            response = self._client.post(
                f"{self._base_url}/api/generate",
                json={
                    "model": self._model,
                    "prompt": build_extraction_prompt(request),
                    "images": [base64.b64encode(request.document_bytes).decode("ascii")],
                    "format": "json",
                    "stream": False,
                    "options": {
                        "temperature": 0,  # Deterministic output
                        "num_predict": 2048,
                    },
                },
            )
        except httpx.TimeoutException as e:
            raise ExtractionError(ExtractionErrorKind.TIMEOUT, f"Ollama timed out: {e}") from e
        except httpx.TransportError as e:
            raise ExtractionError(ExtractionErrorKind.TIMEOUT, f"Ollama unreachable: {e}") from e

        if response.status_code in _RATE_LIMIT_STATUSES:
            raise ExtractionError(
                ExtractionErrorKind.RATE_LIMITED, f"Ollama busy (HTTP {response.status_code})"
            )
        if response.status_code >= 400:
            raise ExtractionError(
                ExtractionErrorKind.UNREADABLE,
                f"Ollama rejected document (HTTP {response.status_code}): {response.text[:200]}",
            )

        try:
            envelope = response.json()
        except ValueError as e:
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED, f"Invalid Ollama envelope: {e}"
            ) from e
        if not isinstance(envelope, dict):
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED,
                f"Invalid Ollama envelope: expected an object, got {type(envelope).__name__}",
            )
        response_text = envelope.get("response", "")
        return parse_json_response(response_text)
