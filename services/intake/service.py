"""Document intake: local validation, tracking id and content hash.

Runs before any external call, so rejected documents never reach the
extraction provider.
"""

import hashlib
import logging
import mimetypes
import uuid

from pydantic import BaseModel, Field

from services.shared.config import Settings
from services.shared.errors import IntakeValidationError

logger = logging.getLogger(__name__)


class IncomingDocument(BaseModel):
    """Raw upload as received from a caller."""

    content: bytes
    mime_type: str
    filename: str | None = None
    hints: dict[str, str] = Field(default_factory=dict)


class IntakeDocument(BaseModel):
    """Accepted document ready for extraction.

    Attributes:
        tracking_id: Identifier for logs until an invoice id exists
        content_hash: SHA-256 hex digest of the raw bytes
        content: Raw document bytes
        mime_type: Normalized mime type
        filename: Original file name, if known
        hints: Optional provider hints (language, document type)
    """

    tracking_id: str
    content_hash: str
    content: bytes
    mime_type: str
    filename: str | None = None
    hints: dict[str, str] = Field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        return mimetypes.guess_extension(self.mime_type) or ".bin"


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class DocumentIntake:
    """Validates uploads against the configured type and size limits."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._allowed = {m.lower() for m in settings.intake_allowed_mime_types}

    def accept(self, document: IncomingDocument) -> IntakeDocument:
        """Validate a document and assign its tracking id and content hash.

        Raises:
            IntakeValidationError: If the document is empty, oversize or of an
                unsupported type
        """
        mime_type = document.mime_type.split(";")[0].strip().lower()
        if mime_type not in self._allowed:
            raise IntakeValidationError(
                f"Unsupported document type: {document.mime_type}. "
                f"Supported: {', '.join(sorted(self._allowed))}",
                reason="unsupported_type",
            )
        if not document.content:
            raise IntakeValidationError("Empty document", reason="empty")
        if len(document.content) > self.settings.intake_max_bytes:
            raise IntakeValidationError(
                f"Document too large: {len(document.content)} bytes "
                f"(max {self.settings.intake_max_bytes})",
                reason="too_large",
            )

        accepted = IntakeDocument(
            tracking_id=str(uuid.uuid4()),
            content_hash=content_hash(document.content),
            content=document.content,
            mime_type=mime_type,
            filename=document.filename,
            hints=document.hints,
        )
        logger.debug(
            f"Accepted document {accepted.tracking_id} "
            f"({accepted.mime_type}, {accepted.size} bytes, hash {accepted.content_hash[:12]})"
        )
        return accepted
