"""Shared fixtures: zero-backoff settings, in-memory store and a scripted provider."""

import uuid
from decimal import Decimal
from typing import Any

import pytest

from services.domain.models import Invoice, InvoiceStatus, LineItem
from services.extraction.adapter import ExtractionAdapter
from services.extraction.base import ExtractionProvider
from services.extraction.schema import ExtractionRequest
from services.intake.service import IncomingDocument
from services.pipeline.service import InvoiceEngine
from services.shared.config import Settings
from services.shared.errors import ExtractionError, ExtractionErrorKind
from services.shared.identity import Caller
from services.store.memory import InMemoryStore


class ScriptedProvider(ExtractionProvider):
    """Provider returning canned payloads keyed by document bytes.

    A list value is consumed one outcome per call; exceptions in it are raised.
    """

    def __init__(self, settings: Settings, payloads: dict[bytes, Any] | None = None) -> None:
        super().__init__(settings)
        self.payloads: dict[bytes, Any] = payloads or {}
        self.calls: list[bytes] = []

    @property
    def provider_name(self) -> str:
        return "scripted"

    def is_available(self) -> bool:
        return True

    def extract_document(self, request: ExtractionRequest) -> dict[str, Any]:
        self.calls.append(request.document_bytes)
        outcome = self.payloads.get(request.document_bytes)
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if outcome is None:
            raise ExtractionError(ExtractionErrorKind.UNREADABLE, "No payload scripted")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def invoice_payload(
    supplier: str | None = "ACME Corp.",
    tax_id: str | None = "ACM010101AB1",
    ref: str | None = "A-100",
    issue_date: str | None = "2024-03-01",
    lines: list[dict[str, Any]] | None = None,
    confidence: float | None = 0.95,
    **extra: Any,
) -> dict[str, Any]:
    """Provider payload for a consistent invoice (subtotal and total match the lines)."""
    if lines is None:
        lines = [{"sku": "BOLT-1", "description": "Steel bolt", "quantity": 10, "unit_price": 100}]
    subtotal = sum(
        (Decimal(str(line["quantity"])) * Decimal(str(line["unit_price"])) for line in lines),
        Decimal("0"),
    )
    payload: dict[str, Any] = {
        "type": "invoice",
        "supplier_name": supplier,
        "supplier_tax_id": tax_id,
        "folio": ref,
        "issue_date": issue_date,
        "line_items": lines,
        "subtotal": str(subtotal),
        "tax": "0",
        "total": str(subtotal),
        "currency": "MXN",
        "confidence": confidence,
    }
    payload.update(extra)
    return payload


def make_invoice(**fields: Any) -> Invoice:
    """Complete, validated invoice record for lifecycle and reconciliation tests."""
    defaults: dict[str, Any] = {
        "content_hash": fields.pop("content_hash", None) or uuid.uuid4().hex,
        "mime_type": "application/pdf",
        "supplier_name_raw": "ACME Corp.",
        "supplier_ref": "supplier-1",
        "issue_date": "2024-03-01",
        "document_ref": "A-100",
        "line_items": [
            LineItem(
                sku="BOLT-1",
                description="Steel bolt",
                quantity=Decimal("10"),
                unit_price=Decimal("100"),
            )
        ],
        "subtotal": Decimal("1000"),
        "tax_amount": Decimal("0"),
        "total": Decimal("1000"),
        "status": InvoiceStatus.VALIDATED,
    }
    defaults.update(fields)
    return Invoice(**defaults)


def pdf(content: bytes) -> IncomingDocument:
    return IncomingDocument(content=content, mime_type="application/pdf", filename="invoice.pdf")


@pytest.fixture
def settings() -> Settings:
    """Settings with retry backoff disabled."""
    return Settings(
        retry_backoff_initial=0,
        retry_backoff_max=0,
        retry_backoff_jitter=0,
        extraction_timeout_seconds=5,
        store_timeout_seconds=5,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def provider(settings: Settings) -> ScriptedProvider:
    return ScriptedProvider(settings)


@pytest.fixture
def adapter(provider: ScriptedProvider, settings: Settings) -> ExtractionAdapter:
    return ExtractionAdapter(provider, settings)


@pytest.fixture
def engine(settings: Settings, store: InMemoryStore, adapter: ExtractionAdapter) -> InvoiceEngine:
    """Engine wired to the in-memory store and the scripted provider."""
    return InvoiceEngine(settings, store, adapter)


@pytest.fixture
def editor() -> Caller:
    return Caller(user_id="alice", role="editor")


@pytest.fixture
def viewer() -> Caller:
    return Caller(user_id="victor", role="viewer")
