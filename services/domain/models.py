"""Canonical domain models for invoices, suppliers, prices and remissions.

Every provider output is normalized into these models at the extraction
boundary. Money and quantities use Decimal, consistent with the extraction
schema.
"""

import re
import unicodedata
import uuid
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from services.shared.errors import ExtractionErrorKind

CENT = Decimal("0.01")


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_description(text: str) -> str:
    """Case-fold, strip accents and punctuation, collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = re.sub(r"[^\w\s]", " ", stripped.casefold())
    return " ".join(cleaned.split())


def derive_item_key(sku: str | None, description: str) -> str:
    """Item key used to track prices: the SKU when present, else the normalized description."""
    if sku and sku.strip():
        return f"sku:{sku.strip().upper()}"
    return f"desc:{normalize_description(description)}"


class InvoiceStatus(StrEnum):
    DRAFT = "Draft"
    PENDING_REVIEW = "PendingReview"
    VALIDATED = "Validated"
    FINALIZED = "Finalized"
    DELETED = "Deleted"


class PriceDeviation(StrEnum):
    NONE = "None"
    MINOR = "Minor"
    MAJOR = "Major"
    UNKNOWN = "Unknown"


class ReconciliationStatus(StrEnum):
    MATCHED = "Matched"
    QUANTITY_MISMATCH = "QuantityMismatch"
    UNMATCHED = "Unmatched"


class LineItem(BaseModel):
    """Single billed line.

    line_total is always derived from quantity and unit_price; a provider
    supplied amount is kept in declared_total for the consistency check.
    """

    description: str = ""
    sku: str | None = None
    unit: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    declared_total: Decimal | None = None
    price_deviation: PriceDeviation | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def item_key(self) -> str:
        return derive_item_key(self.sku, self.description)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def line_total(self) -> Decimal | None:
        if self.quantity is None or self.unit_price is None:
            return None
        return (self.quantity * self.unit_price).quantize(CENT, rounding=ROUND_HALF_UP)


class SupplierSuggestion(BaseModel):
    """Fuzzy supplier match awaiting explicit confirmation."""

    supplier_id: str
    legal_name: str
    score: float


class Invoice(BaseModel):
    """Canonical invoice record, mutated in place by each pipeline stage."""

    id: str = Field(default_factory=new_id)
    content_hash: str
    mime_type: str
    filename: str | None = None
    storage_path: str | None = None

    # Supplier identity as declared on the document, and its resolution
    supplier_name_raw: str | None = None
    supplier_tax_id: str | None = None
    supplier_ref: str | None = None
    supplier_suggestion: SupplierSuggestion | None = None

    # Document identity
    issue_date: date | None = None
    document_ref: str | None = None
    fiscal_uuid: str | None = None

    line_items: list[LineItem] = Field(default_factory=list)
    subtotal: Decimal | None = None
    tax_amount: Decimal | None = None
    total: Decimal | None = None
    currency: str | None = None

    # Review state
    status: InvoiceStatus = InvoiceStatus.DRAFT
    missing_fields: set[str] = Field(default_factory=set)
    validation_warnings: list[str] = Field(default_factory=list)
    extraction_warnings: list[str] = Field(default_factory=list)
    extraction_confidence: float | None = None
    low_confidence: bool = False
    extraction_error: ExtractionErrorKind | None = None
    possible_duplicate_of: str | None = None
    deletion_reason: str | None = None

    # Remission reconciliation
    remission_ref: str | None = None
    reconciliation_status: ReconciliationStatus | None = None

    # Audit
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_modified_by: str | None = None
    finalized_at: datetime | None = None

    @property
    def supplier_resolved(self) -> bool:
        return self.supplier_ref is not None

    @property
    def has_major_deviation(self) -> bool:
        return any(item.price_deviation == PriceDeviation.MAJOR for item in self.line_items)

    def billed_total(self) -> Decimal:
        """Declared total, falling back to the sum of line totals."""
        if self.total is not None:
            return self.total
        return sum((item.line_total or Decimal("0") for item in self.line_items), Decimal("0"))


class Supplier(BaseModel):
    id: str = Field(default_factory=new_id)
    legal_name: str
    normalized_name_key: str
    tax_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class PriceObservation(BaseModel):
    """Immutable price-at-time-of-invoice record."""

    model_config = ConfigDict(frozen=True)

    supplier_id: str
    item_key: str
    price: Decimal
    observed_at: datetime = Field(default_factory=utc_now)
    source_invoice_id: str | None = None


class PriceAlert(BaseModel):
    """Blocking alert raised for a Major price deviation."""

    id: str = Field(default_factory=new_id)
    invoice_id: str
    supplier_id: str
    item_key: str
    description: str
    baseline_price: Decimal
    new_price: Decimal
    deviation_pct: float
    severity: PriceDeviation = PriceDeviation.MAJOR
    baseline_observed_at: datetime
    raised_at: datetime = Field(default_factory=utc_now)
    retired_at: datetime | None = None


class RemissionItem(BaseModel):
    description: str
    sku: str | None = None
    quantity: Decimal
    unit: str | None = None
    unit_price: Decimal | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def item_key(self) -> str:
        return derive_item_key(self.sku, self.description)


class QuantityDiscrepancy(BaseModel):
    item_key: str
    billed: Decimal
    delivered: Decimal


class RemissionRecord(BaseModel):
    """Delivery/receipt record reconciled against finalized invoices."""

    id: str = Field(default_factory=new_id)
    supplier_ref: str | None = None
    supplier_name_raw: str | None = None
    document_ref: str | None = None
    delivered_on: date | None = None
    delivered_items: list[RemissionItem] = Field(default_factory=list)
    total_amount: Decimal | None = None
    matched_invoice_ref: str | None = None
    reconciliation_status: ReconciliationStatus = ReconciliationStatus.UNMATCHED
    quantity_discrepancies: list[QuantityDiscrepancy] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    def delivered_total(self) -> Decimal | None:
        if self.total_amount is not None:
            return self.total_amount
        if self.delivered_items and all(i.unit_price is not None for i in self.delivered_items):
            return sum(
                (i.quantity * i.unit_price for i in self.delivered_items),  # type: ignore[operator]
                Decimal("0"),
            )
        return None


class DeletionRecord(BaseModel):
    """Append-only deletion history entry."""

    model_config = ConfigDict(frozen=True)

    invoice_id: str
    prior_status: InvoiceStatus
    reason: str
    deleted_by: str
    deleted_at: datetime = Field(default_factory=utc_now)
    snapshot: dict[str, Any]
