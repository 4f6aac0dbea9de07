"""In-memory implementation of the persistent store collaborator.

Enforces the same constraints a database-backed store would: unique content
hash per invoice, unique supplier name key and tax id, version-checked invoice
updates, and append-only price and deletion logs. All writes are serialized by
a single asyncio lock; reads and writes hand out deep copies.
"""

import asyncio
import logging
from datetime import datetime

from services.domain.models import (
    DeletionRecord,
    Invoice,
    InvoiceStatus,
    PriceAlert,
    PriceObservation,
    RemissionRecord,
    Supplier,
    utc_now,
)
from services.shared.errors import (
    ConflictError,
    DuplicateKeyError,
    InvoiceNotFoundError,
    RemissionNotFoundError,
    SupplierNotFoundError,
)

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Process-local store, suitable for tests and single-process deployments."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._invoices: dict[str, Invoice] = {}
        self._invoice_by_hash: dict[str, str] = {}
        self._deletions: list[DeletionRecord] = []
        self._suppliers: dict[str, Supplier] = {}
        self._supplier_by_key: dict[str, str] = {}
        self._supplier_by_tax_id: dict[str, str] = {}
        self._observations: list[PriceObservation] = []
        self._alerts: list[PriceAlert] = []
        self._remissions: dict[str, RemissionRecord] = {}

    # Invoices

    async def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self._invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice.model_copy(deep=True)

    async def find_invoice_by_hash(self, content_hash: str) -> Invoice | None:
        invoice_id = self._invoice_by_hash.get(content_hash)
        if invoice_id is None:
            return None
        return self._invoices[invoice_id].model_copy(deep=True)

    async def list_invoices(
        self,
        supplier_id: str | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        return [
            invoice.model_copy(deep=True)
            for invoice in self._invoices.values()
            if (supplier_id is None or invoice.supplier_ref == supplier_id)
            and (status is None or invoice.status == status)
        ]

    async def insert_invoice(self, invoice: Invoice) -> Invoice:
        async with self._lock:
            existing_id = self._invoice_by_hash.get(invoice.content_hash)
            if existing_id is not None:
                raise DuplicateKeyError(f"content_hash={invoice.content_hash}", existing_id)
            if invoice.id in self._invoices:
                raise DuplicateKeyError(f"id={invoice.id}", invoice.id)
            stored = invoice.model_copy(deep=True, update={"version": 1, "updated_at": utc_now()})
            self._invoices[stored.id] = stored
            self._invoice_by_hash[stored.content_hash] = stored.id
            return stored.model_copy(deep=True)

    async def update_invoice(self, invoice: Invoice, expected_version: int) -> Invoice:
        async with self._lock:
            return self._replace_invoice(invoice, expected_version)

    async def soft_delete_invoice(
        self, invoice: Invoice, expected_version: int, record: DeletionRecord
    ) -> Invoice:
        async with self._lock:
            stored = self._replace_invoice(invoice, expected_version)
            self._deletions.append(record)
            return stored

    def _replace_invoice(self, invoice: Invoice, expected_version: int) -> Invoice:
        current = self._invoices.get(invoice.id)
        if current is None:
            raise InvoiceNotFoundError(invoice.id)
        if current.version != expected_version:
            raise ConflictError(invoice.id, expected_version, current.version)
        stored = invoice.model_copy(
            deep=True,
            update={"version": current.version + 1, "updated_at": utc_now()},
        )
        self._invoices[stored.id] = stored
        return stored.model_copy(deep=True)

    async def list_deletions(self) -> list[DeletionRecord]:
        return list(self._deletions)

    # Suppliers

    async def get_supplier(self, supplier_id: str) -> Supplier:
        supplier = self._suppliers.get(supplier_id)
        if supplier is None:
            raise SupplierNotFoundError(supplier_id)
        return supplier.model_copy()

    async def find_supplier_by_key(self, normalized_name_key: str) -> Supplier | None:
        supplier_id = self._supplier_by_key.get(normalized_name_key)
        return self._suppliers[supplier_id].model_copy() if supplier_id else None

    async def find_supplier_by_tax_id(self, tax_id: str) -> Supplier | None:
        supplier_id = self._supplier_by_tax_id.get(tax_id)
        return self._suppliers[supplier_id].model_copy() if supplier_id else None

    async def list_suppliers(self) -> list[Supplier]:
        return [supplier.model_copy() for supplier in self._suppliers.values()]

    async def insert_supplier(self, supplier: Supplier) -> Supplier:
        async with self._lock:
            existing_id = self._supplier_by_key.get(supplier.normalized_name_key)
            if existing_id is not None:
                raise DuplicateKeyError(f"name_key={supplier.normalized_name_key}", existing_id)
            if supplier.tax_id:
                existing_id = self._supplier_by_tax_id.get(supplier.tax_id)
                if existing_id is not None:
                    raise DuplicateKeyError(f"tax_id={supplier.tax_id}", existing_id)
            self._suppliers[supplier.id] = supplier.model_copy()
            self._supplier_by_key[supplier.normalized_name_key] = supplier.id
            if supplier.tax_id:
                self._supplier_by_tax_id[supplier.tax_id] = supplier.id
            logger.info(f"Created supplier {supplier.id} ({supplier.legal_name})")
            return supplier.model_copy()

    # Prices

    async def append_observation(self, observation: PriceObservation) -> None:
        async with self._lock:
            self._observations.append(observation)

    async def latest_observation(self, supplier_id: str, item_key: str) -> PriceObservation | None:
        latest: PriceObservation | None = None
        for observation in self._observations:
            if observation.supplier_id != supplier_id or observation.item_key != item_key:
                continue
            # Later appends win ties on observed_at
            if latest is None or observation.observed_at >= latest.observed_at:
                latest = observation
        return latest

    async def list_observations(
        self,
        supplier_id: str,
        item_key: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[PriceObservation]:
        matches = [
            o
            for o in self._observations
            if o.supplier_id == supplier_id
            and (item_key is None or o.item_key == item_key)
            and (since is None or o.observed_at >= since)
            and (until is None or o.observed_at <= until)
        ]
        return sorted(matches, key=lambda o: o.observed_at)

    async def append_alert(self, alert: PriceAlert) -> None:
        async with self._lock:
            self._alerts.append(alert)

    async def retire_alert(self, alert_id: str) -> None:
        async with self._lock:
            for index, alert in enumerate(self._alerts):
                if alert.id == alert_id and alert.retired_at is None:
                    self._alerts[index] = alert.model_copy(update={"retired_at": utc_now()})

    async def list_alerts(self, supplier_id: str | None = None) -> list[PriceAlert]:
        return [
            a.model_copy()
            for a in self._alerts
            if supplier_id is None or a.supplier_id == supplier_id
        ]

    # Remissions

    async def get_remission(self, remission_id: str) -> RemissionRecord:
        remission = self._remissions.get(remission_id)
        if remission is None:
            raise RemissionNotFoundError(remission_id)
        return remission.model_copy(deep=True)

    async def insert_remission(self, remission: RemissionRecord) -> RemissionRecord:
        async with self._lock:
            if remission.id in self._remissions:
                raise DuplicateKeyError(f"id={remission.id}", remission.id)
            self._remissions[remission.id] = remission.model_copy(deep=True)
            return remission.model_copy(deep=True)

    async def update_remission(self, remission: RemissionRecord) -> RemissionRecord:
        async with self._lock:
            if remission.id not in self._remissions:
                raise RemissionNotFoundError(remission.id)
            self._remissions[remission.id] = remission.model_copy(deep=True)
            return remission.model_copy(deep=True)

    async def list_remissions(
        self,
        supplier_id: str | None = None,
        unmatched_only: bool = False,
    ) -> list[RemissionRecord]:
        return [
            r.model_copy(deep=True)
            for r in self._remissions.values()
            if (supplier_id is None or r.supplier_ref == supplier_id)
            and (not unmatched_only or r.matched_invoice_ref is None)
        ]
