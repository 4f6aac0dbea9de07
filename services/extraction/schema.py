"""Extraction request and canonical extraction models.

InvoiceData is the single canonical shape every provider payload is mapped
into before it reaches validation.
"""

import hashlib
import json
from datetime import date
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from services.domain.models import LineItem


class ExtractionRequest(BaseModel):
    """Request sent to an extraction provider.

    Attributes:
        document_bytes: Raw document content
        mime_type: Document mime type (application/pdf, image/png, ...)
        content_hash: SHA-256 of document_bytes, computed at intake
        filename: Original file name, passed to the provider as context
        hints: Optional hints such as expected document type or language
    """

    document_bytes: bytes
    mime_type: str
    content_hash: str
    filename: str | None = None
    hints: dict[str, str] = Field(default_factory=dict)

    @property
    def cache_key(self) -> str:
        """Identical bytes plus identical hints share one cached result."""
        encoded_hints = json.dumps(self.hints, sort_keys=True)
        return hashlib.sha256(f"{self.content_hash}:{encoded_hints}".encode()).hexdigest()


class InvoiceData(BaseModel):
    """Canonical structured data extracted from an invoice or delivery document."""

    document_type: Literal["invoice", "remission"] = Field(
        "invoice", description="Invoice (CFDI) or delivery note (remission)"
    )

    # Supplier information
    supplier_name: str | None = Field(None, description="Supplier name as printed")
    supplier_tax_id: str | None = Field(None, description="Supplier tax id (RFC, VAT id)")

    # Document identity
    issue_date: date | None = Field(None, description="Date the document was issued")
    document_ref: str | None = Field(None, description="Series + folio / invoice number")
    fiscal_uuid: str | None = Field(None, description="Fiscal folio (CFDI UUID)")

    line_items: list[LineItem] = Field(default_factory=list)

    # Financial details
    subtotal: Decimal | None = Field(None, description="Subtotal before tax")
    tax_amount: Decimal | None = Field(None, description="Tax amount")
    total_amount: Decimal | None = Field(None, description="Total amount including tax")
    currency: str | None = Field(None, description="Currency code (ISO 4217)")

    # Confidence tracking
    confidence_score: float | None = Field(
        None, description="Overall extraction confidence (0-1)", ge=0, le=1
    )

    warnings: list[str] = Field(
        default_factory=list, description="Fields dropped or left unparsed during mapping"
    )
