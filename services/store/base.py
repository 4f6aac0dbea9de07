"""Persistent store collaborator interfaces.

The engine depends on these protocols only; components receive a store by
reference. Implementations must return copies, so callers can only change
stored state through the update methods.
"""

from datetime import datetime
from typing import Protocol

from services.domain.models import (
    DeletionRecord,
    Invoice,
    InvoiceStatus,
    PriceAlert,
    PriceObservation,
    RemissionRecord,
    Supplier,
)


class InvoiceStore(Protocol):
    """CRUD with version-checked updates for invoices."""

    async def get_invoice(self, invoice_id: str) -> Invoice:
        """Raises InvoiceNotFoundError."""
        ...

    async def find_invoice_by_hash(self, content_hash: str) -> Invoice | None: ...

    async def list_invoices(
        self,
        supplier_id: str | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]: ...

    async def insert_invoice(self, invoice: Invoice) -> Invoice:
        """Insert a new invoice at version 1. Raises DuplicateKeyError on content hash."""
        ...

    async def update_invoice(self, invoice: Invoice, expected_version: int) -> Invoice:
        """Replace the stored invoice and bump its version. Raises ConflictError."""
        ...

    async def soft_delete_invoice(
        self, invoice: Invoice, expected_version: int, record: DeletionRecord
    ) -> Invoice:
        """Version-checked update plus deletion-history append as one step."""
        ...

    async def list_deletions(self) -> list[DeletionRecord]: ...


class SupplierStore(Protocol):
    """CRUD and unique-key lookup for suppliers."""

    async def get_supplier(self, supplier_id: str) -> Supplier:
        """Raises SupplierNotFoundError."""
        ...

    async def find_supplier_by_key(self, normalized_name_key: str) -> Supplier | None: ...

    async def find_supplier_by_tax_id(self, tax_id: str) -> Supplier | None: ...

    async def list_suppliers(self) -> list[Supplier]: ...

    async def insert_supplier(self, supplier: Supplier) -> Supplier:
        """Raises DuplicateKeyError when the name key or tax id is taken."""
        ...


class PriceStore(Protocol):
    """Append-only price observations and the alerts raised from them."""

    async def append_observation(self, observation: PriceObservation) -> None: ...

    async def latest_observation(
        self, supplier_id: str, item_key: str
    ) -> PriceObservation | None: ...

    async def list_observations(
        self,
        supplier_id: str,
        item_key: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[PriceObservation]: ...

    async def append_alert(self, alert: PriceAlert) -> None: ...

    async def retire_alert(self, alert_id: str) -> None:
        """Mark an alert as no longer applying. Alerts are never removed."""
        ...

    async def list_alerts(self, supplier_id: str | None = None) -> list[PriceAlert]: ...


class RemissionStore(Protocol):
    """CRUD for delivery records."""

    async def get_remission(self, remission_id: str) -> RemissionRecord:
        """Raises RemissionNotFoundError."""
        ...

    async def insert_remission(self, remission: RemissionRecord) -> RemissionRecord: ...

    async def update_remission(self, remission: RemissionRecord) -> RemissionRecord: ...

    async def list_remissions(
        self,
        supplier_id: str | None = None,
        unmatched_only: bool = False,
    ) -> list[RemissionRecord]: ...


class Store(InvoiceStore, SupplierStore, PriceStore, RemissionStore, Protocol):
    """Full persistent store collaborator."""
