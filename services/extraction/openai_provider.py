"""OpenAI-based extraction provider for invoice documents.

Sends the document itself (image or PDF) to a multimodal chat model and asks
for a JSON object. API failures are translated into ExtractionError kinds so
the adapter can decide what to retry.

This provider uses the cloud OpenAI API. For self-hosted inference use
OllamaExtractionProvider instead.
"""

import base64
import logging
import os
from typing import Any

from openai import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    BadRequestError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)

from services.extraction.base import ExtractionProvider
from services.extraction.prompt import build_extraction_prompt, parse_json_response
from services.extraction.schema import ExtractionRequest
from services.shared.config import Settings
from services.shared.errors import ExtractionError, ExtractionErrorKind

logger = logging.getLogger(__name__)


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI-based extraction provider.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def extract_document(self, request: ExtractionRequest) -> dict[str, Any]:
        """Extract raw invoice fields from a document using OpenAI.

        Args:
            request: Document bytes, mime type and hints

        Returns:
            Parsed JSON payload from the model

        Raises:
            ExtractionError: Mapped from API and parsing failures
        """
        api_key = os.getenv("OPENAI_API_KEY")
        if api_key is None:
            raise ExtractionError(
                ExtractionErrorKind.UNREADABLE, "OPENAI_API_KEY environment variable not set"
            )
        # Client-side retries are disabled; the adapter owns the retry policy
        if self._client is None or self._client.api_key != api_key:
            self._client = OpenAI(api_key=api_key, max_retries=0)

        try:
            response = self._client.chat.completions.create(
                model=self.settings.openai_model,
                messages=[
                    {
                        "role": "system",
                        "content": "You are an invoice data extraction assistant.",
                    },
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": build_extraction_prompt(request)},
                            self._document_part(request),
                        ],
                    },
                ],
                response_format={"type": "json_object"},
                temperature=0,  # Deterministic output
                timeout=self.settings.extraction_timeout_seconds,
            )
        except APITimeoutError as e:
            raise ExtractionError(ExtractionErrorKind.TIMEOUT, str(e)) from e
        except APIConnectionError as e:
            raise ExtractionError(ExtractionErrorKind.TIMEOUT, f"Connection failed: {e}") from e
        except (RateLimitError, InternalServerError) as e:
            raise ExtractionError(ExtractionErrorKind.RATE_LIMITED, str(e)) from e
        except BadRequestError as e:
            raise ExtractionError(ExtractionErrorKind.UNREADABLE, str(e)) from e
        except APIError as e:
            raise ExtractionError(ExtractionErrorKind.UNREADABLE, f"OpenAI error: {e}") from e

        choice = response.choices[0]
        content = choice.message.content
        if choice.finish_reason == "length" or not content:
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED,
                f"Incomplete model response (finish_reason={choice.finish_reason})",
            )
        return parse_json_response(content)

    @staticmethod
    def _document_part(request: ExtractionRequest) -> dict[str, Any]:
        """Build the message part carrying the document as base64 data."""
        encoded = base64.b64encode(request.document_bytes).decode("ascii")
        data_url = f"data:{request.mime_type};base64,{encoded}"
        if request.mime_type == "application/pdf":
            return {
                "type": "file",
                "file": {"filename": request.filename or "document.pdf", "file_data": data_url},
            }
        return {"type": "image_url", "image_url": {"url": data_url}}
