"""Remission (delivery note) reconciliation against finalized invoices.

A finalized invoice is matched to an unmatched remission of the same
supplier, first by document reference, then by proximity: delivery date
within the configured window and amount within the configured tolerance.
The closest date wins. Matched pairs reference each other; billed and
delivered quantities are compared per item key.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Protocol

from prometheus_client import Counter

from services.domain.models import (
    Invoice,
    InvoiceStatus,
    QuantityDiscrepancy,
    ReconciliationStatus,
    RemissionRecord,
)
from services.shared.config import Settings
from services.shared.errors import ConflictError
from services.store.base import InvoiceStore, RemissionStore

logger = logging.getLogger(__name__)


remission_reconciliations_total = Counter(
    "remission_reconciliations_total",
    "Remission reconciliation outcomes",
    ["status"],  # Matched, QuantityMismatch, Unmatched
)

_MAX_LINK_ATTEMPTS = 3


class ReconciliationStore(InvoiceStore, RemissionStore, Protocol):
    """Store surface the reconciler needs."""


def _normalize_ref(ref: str | None) -> str:
    return "".join(ch for ch in (ref or "").casefold() if ch.isalnum())


def quantity_discrepancies(
    invoice: Invoice, remission: RemissionRecord
) -> list[QuantityDiscrepancy]:
    """Per item key differences between billed and delivered quantities."""
    billed: dict[str, Decimal] = defaultdict(Decimal)
    for item in invoice.line_items:
        if item.quantity is not None:
            billed[item.item_key] += item.quantity
    delivered: dict[str, Decimal] = defaultdict(Decimal)
    for item in remission.delivered_items:
        delivered[item.item_key] += item.quantity

    return [
        QuantityDiscrepancy(item_key=key, billed=billed[key], delivered=delivered[key])
        for key in sorted(set(billed) | set(delivered))
        if billed[key] != delivered[key]
    ]


class RemissionReconciler:
    """Links finalized invoices and delivery records."""

    def __init__(self, store: ReconciliationStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _proximity(
        self, invoice: Invoice, remission: RemissionRecord
    ) -> tuple[int, Decimal] | None:
        """(days apart, relative amount difference), or None when outside the tolerances."""
        if invoice.issue_date is None or remission.delivered_on is None:
            return None
        days = abs((invoice.issue_date - remission.delivered_on).days)
        if days > self.settings.remission_date_window_days:
            return None

        billed = invoice.billed_total()
        delivered = remission.delivered_total()
        if delivered is None or billed <= 0:
            return None
        difference = abs(billed - delivered) / billed
        if difference > Decimal(str(self.settings.remission_amount_tolerance_pct)):
            return None
        return days, difference

    def _best_pair(
        self, pairs: list[tuple[Invoice, RemissionRecord]]
    ) -> tuple[Invoice, RemissionRecord] | None:
        """Same document reference first, then the closest date within tolerances."""
        for invoice, remission in pairs:
            ref = _normalize_ref(invoice.document_ref)
            if ref and ref == _normalize_ref(remission.document_ref):
                return invoice, remission

        scored = [
            (proximity, pair)
            for pair in pairs
            if (proximity := self._proximity(*pair)) is not None
        ]
        if not scored:
            return None
        return min(scored, key=lambda entry: entry[0])[1]

    def select_remission(
        self, invoice: Invoice, remissions: list[RemissionRecord]
    ) -> RemissionRecord | None:
        best = self._best_pair([(invoice, remission) for remission in remissions])
        return best[1] if best else None

    def select_invoice(self, remission: RemissionRecord, invoices: list[Invoice]) -> Invoice | None:
        best = self._best_pair([(invoice, remission) for invoice in invoices])
        return best[0] if best else None

    async def reconcile_invoice(self, invoice: Invoice) -> RemissionRecord | None:
        """Match a finalized invoice against its supplier's unmatched remissions.

        Returns:
            The matched remission, or None (invoice marked Unmatched)
        """
        if invoice.status != InvoiceStatus.FINALIZED or invoice.supplier_ref is None:
            return None
        if invoice.remission_ref is not None:
            return await self.store.get_remission(invoice.remission_ref)

        candidates = await self.store.list_remissions(
            supplier_id=invoice.supplier_ref, unmatched_only=True
        )
        remission = self.select_remission(invoice, candidates)
        if remission is None:
            await self._update_invoice(invoice.id, None, ReconciliationStatus.UNMATCHED)
            remission_reconciliations_total.labels(
                status=ReconciliationStatus.UNMATCHED.value
            ).inc()
            logger.info(f"Invoice {invoice.id} has no matching remission")
            return None
        return await self._link(invoice, remission)

    async def register_remission(self, remission: RemissionRecord) -> RemissionRecord:
        """Store a delivery record and try to match it to an unmatched finalized invoice."""
        stored = await self.store.insert_remission(remission)
        if stored.supplier_ref is None:
            logger.info(f"Remission {stored.id} has no resolved supplier; left unmatched")
            return stored

        invoices = [
            invoice
            for invoice in await self.store.list_invoices(
                supplier_id=stored.supplier_ref, status=InvoiceStatus.FINALIZED
            )
            if invoice.remission_ref is None
        ]
        invoice = self.select_invoice(stored, invoices)
        if invoice is None:
            return stored
        return await self._link(invoice, stored)

    async def _link(self, invoice: Invoice, remission: RemissionRecord) -> RemissionRecord:
        discrepancies = quantity_discrepancies(invoice, remission)
        status = (
            ReconciliationStatus.QUANTITY_MISMATCH
            if discrepancies
            else ReconciliationStatus.MATCHED
        )
        remission.matched_invoice_ref = invoice.id
        remission.reconciliation_status = status
        remission.quantity_discrepancies = discrepancies
        stored = await self.store.update_remission(remission)
        await self._update_invoice(invoice.id, remission.id, status)

        remission_reconciliations_total.labels(status=status.value).inc()
        if discrepancies:
            logger.warning(
                f"Invoice {invoice.id} and remission {remission.id} differ on "
                f"{len(discrepancies)} item(s)"
            )
        else:
            logger.info(f"Invoice {invoice.id} matched remission {remission.id}")
        return stored

    async def _update_invoice(
        self, invoice_id: str, remission_id: str | None, status: ReconciliationStatus
    ) -> Invoice:
        # Reconciliation fields only; re-read on conflict so concurrent edits survive
        attempt = 1
        while True:
            invoice = await self.store.get_invoice(invoice_id)
            invoice.remission_ref = remission_id
            invoice.reconciliation_status = status
            try:
                return await self.store.update_invoice(invoice, invoice.version)
            except ConflictError:
                if attempt >= _MAX_LINK_ATTEMPTS:
                    raise
                attempt += 1
                logger.warning(f"Conflict linking invoice {invoice_id}; re-reading")
