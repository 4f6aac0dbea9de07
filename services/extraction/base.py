"""Abstract base class for extraction providers.

Enables switching between document-understanding providers (OpenAI, Ollama)
while the adapter keeps a single normalization boundary.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from services.extraction.schema import ExtractionRequest, InvoiceData
from services.shared.config import Settings
from services.shared.errors import ExtractionErrorKind


class ExtractionResult(BaseModel):
    """Result of an adapter extraction.

    Attributes:
        invoice_data: Canonical data, or None if extraction failed
        success: Whether extraction succeeded
        error: Error message if extraction failed
        error_kind: Failure kind if extraction failed
        provider: Name of provider that performed extraction
        cached: Whether the result was served from the content-hash cache
        low_confidence: Confidence was missing or below the configured threshold
    """

    invoice_data: InvoiceData | None
    success: bool
    error: str | None = None
    error_kind: ExtractionErrorKind | None = None
    provider: str
    cached: bool = False
    low_confidence: bool = False


class ExtractionProvider(ABC):
    """Abstract base class for document extraction providers.

    Providers return the raw JSON-like payload of the external capability and
    raise ExtractionError with the matching kind on failure. Mapping into the
    canonical schema is the adapter's job.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def extract_document(self, request: ExtractionRequest) -> dict[str, Any]:
        """Extract raw structured fields from a document.

        Args:
            request: Document bytes, mime type and hints

        Returns:
            Provider payload (provider-specific field names)

        Raises:
            ExtractionError: Unreadable, Timeout, RateLimited or Malformed
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured.

        Returns:
            True if provider can be used, False otherwise
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier (e.g., 'openai', 'ollama')
        """
        pass
