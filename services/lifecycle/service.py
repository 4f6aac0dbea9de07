"""Invoice lifecycle: routing between review states, finalize and soft delete.

States and allowed transitions:

    Draft         -> PendingReview, Validated, Deleted
    PendingReview -> Validated, Deleted
    Validated     -> PendingReview, Finalized, Deleted
    Finalized     -> Deleted
    Deleted       (terminal)

Every persisted transition is version-checked by the store; a stale version
raises ConflictError and nothing is overwritten.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from prometheus_client import Counter
from pydantic import BaseModel

from services.domain.models import DeletionRecord, Invoice, InvoiceStatus, utc_now
from services.shared.config import Settings
from services.shared.errors import (
    ConflictError,
    DeletionReasonRequiredError,
    EngineError,
    InvalidTransitionError,
)
from services.shared.identity import Caller
from services.store.base import InvoiceStore

logger = logging.getLogger(__name__)


invoice_transitions_total = Counter(
    "invoice_transitions_total",
    "Invoice status transitions",
    ["from_status", "to_status"],
)

invoice_conflicts_total = Counter(
    "invoice_conflicts_total",
    "Rejected invoice writes due to a stale version",
)

ALLOWED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset(
        {InvoiceStatus.PENDING_REVIEW, InvoiceStatus.VALIDATED, InvoiceStatus.DELETED}
    ),
    InvoiceStatus.PENDING_REVIEW: frozenset({InvoiceStatus.VALIDATED, InvoiceStatus.DELETED}),
    InvoiceStatus.VALIDATED: frozenset(
        {InvoiceStatus.PENDING_REVIEW, InvoiceStatus.FINALIZED, InvoiceStatus.DELETED}
    ),
    InvoiceStatus.FINALIZED: frozenset({InvoiceStatus.DELETED}),
    InvoiceStatus.DELETED: frozenset(),
}

FinalizedHook = Callable[[Invoice], Awaitable[object]]


class BulkItemResult(BaseModel):
    """Per-invoice outcome of a bulk operation."""

    invoice_id: str
    success: bool
    status: InvoiceStatus | None = None
    version: int | None = None
    error: str | None = None
    error_type: str | None = None


def review_reasons(invoice: Invoice) -> list[str]:
    """Why an invoice cannot be validated yet; empty when it can."""
    reasons = [f"missing:{path}" for path in sorted(invoice.missing_fields)]
    if invoice.supplier_suggestion is not None:
        reasons.append("supplier_suggestion_pending")
    elif not invoice.supplier_resolved:
        reasons.append("supplier_unresolved")
    if invoice.low_confidence:
        reasons.append("low_confidence")
    if invoice.possible_duplicate_of:
        reasons.append(f"possible_duplicate_of:{invoice.possible_duplicate_of}")
    return reasons


class InvoiceLifecycleManager:
    """Owns invoice status changes."""

    def __init__(
        self,
        store: InvoiceStore,
        settings: Settings,
        on_finalized: FinalizedHook | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.on_finalized = on_finalized

    @staticmethod
    def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[current]

    def _transition(self, invoice: Invoice, target: InvoiceStatus, detail: str = "") -> None:
        current = invoice.status
        if current == target:
            return
        if not self.can_transition(current, target):
            raise InvalidTransitionError(invoice.id, current.value, target.value, detail)
        invoice.status = target
        invoice_transitions_total.labels(from_status=current.value, to_status=target.value).inc()
        logger.info(f"Invoice {invoice.id}: {current.value} -> {target.value}")

    def evaluate(self, invoice: Invoice) -> InvoiceStatus:
        """Status an editable invoice should be in given its current data."""
        if invoice.extraction_error is not None:
            return InvoiceStatus.DRAFT
        if review_reasons(invoice):
            return InvoiceStatus.PENDING_REVIEW
        return InvoiceStatus.VALIDATED

    def apply_routing(self, invoice: Invoice) -> InvoiceStatus:
        """Move an editable invoice to the status its data calls for (in memory only)."""
        if invoice.status in (InvoiceStatus.FINALIZED, InvoiceStatus.DELETED):
            return invoice.status
        target = self.evaluate(invoice)
        # A parked draft stays a draft until extraction succeeds
        if target == InvoiceStatus.DRAFT:
            return invoice.status
        self._transition(invoice, target)
        return invoice.status

    def maybe_auto_finalize(self, invoice: Invoice, actor: str) -> bool:
        """Finalize a Validated invoice in memory when auto-finalize allows it.

        A Major price deviation blocks auto-finalize only; an explicit
        finalize is still possible.
        """
        if not self.settings.auto_finalize or invoice.status != InvoiceStatus.VALIDATED:
            return False
        if invoice.has_major_deviation:
            logger.info(f"Invoice {invoice.id} not auto-finalized: Major price deviation")
            return False
        self._finalize_in_memory(invoice, actor)
        return True

    def _finalize_in_memory(self, invoice: Invoice, actor: str) -> None:
        if invoice.status != InvoiceStatus.VALIDATED:
            raise InvalidTransitionError(
                invoice.id,
                invoice.status.value,
                InvoiceStatus.FINALIZED.value,
                "; ".join(review_reasons(invoice)) or "only Validated invoices can be finalized",
            )
        if invoice.missing_fields or not invoice.supplier_resolved:
            raise InvalidTransitionError(
                invoice.id,
                invoice.status.value,
                InvoiceStatus.FINALIZED.value,
                "; ".join(review_reasons(invoice)),
            )
        self._transition(invoice, InvoiceStatus.FINALIZED)
        invoice.finalized_at = utc_now()
        invoice.last_modified_by = actor

    async def save(self, invoice: Invoice, expected_version: int) -> Invoice:
        """Version-checked update, counting conflicts."""
        try:
            return await self.store.update_invoice(invoice, expected_version)
        except ConflictError as e:
            invoice_conflicts_total.inc()
            logger.warning(str(e))
            raise

    async def run_finalized_hook(self, invoice: Invoice) -> None:
        if self.on_finalized is None:
            return
        try:
            await self.on_finalized(invoice)
        except EngineError as e:
            # The invoice stays finalized; reconciliation can be retried by registering
            # the remission again
            logger.error(f"Post-finalize reconciliation failed for invoice {invoice.id}: {e}")

    async def finalize(self, invoice_id: str, expected_version: int, caller: Caller) -> Invoice:
        """Finalize a Validated invoice.

        Raises:
            InvoiceNotFoundError: Unknown invoice
            ConflictError: expected_version is stale
            InvalidTransitionError: Invoice is not Validated or not complete
        """
        invoice = await self.store.get_invoice(invoice_id)
        if invoice.version != expected_version:
            invoice_conflicts_total.inc()
            raise ConflictError(invoice_id, expected_version, invoice.version)
        self._finalize_in_memory(invoice, caller.user_id)
        stored = await self.save(invoice, expected_version)
        await self.run_finalized_hook(stored)
        return await self.store.get_invoice(invoice_id)

    async def delete(
        self, invoice_id: str, reason: str | None, expected_version: int, caller: Caller
    ) -> Invoice:
        """Soft delete: record prior state, actor and snapshot; the invoice is kept.

        Raises:
            DeletionReasonRequiredError: Empty reason (raised before any lookup)
            InvoiceNotFoundError: Unknown invoice
            ConflictError: expected_version is stale
            InvalidTransitionError: Invoice is already Deleted
        """
        if not reason or not reason.strip():
            raise DeletionReasonRequiredError()
        reason = reason.strip()

        invoice = await self.store.get_invoice(invoice_id)
        if invoice.version != expected_version:
            invoice_conflicts_total.inc()
            raise ConflictError(invoice_id, expected_version, invoice.version)
        if invoice.status == InvoiceStatus.DELETED:
            raise InvalidTransitionError(
                invoice.id, invoice.status.value, InvoiceStatus.DELETED.value, "already deleted"
            )

        record = DeletionRecord(
            invoice_id=invoice.id,
            prior_status=invoice.status,
            reason=reason,
            deleted_by=caller.user_id,
            snapshot=invoice.model_dump(mode="json"),
        )
        self._transition(invoice, InvoiceStatus.DELETED)
        invoice.deletion_reason = reason
        invoice.last_modified_by = caller.user_id
        try:
            stored = await self.store.soft_delete_invoice(invoice, expected_version, record)
        except ConflictError:
            invoice_conflicts_total.inc()
            raise
        logger.info(f"Invoice {invoice_id} deleted by {caller.user_id}: {reason}")
        return stored

    async def _bulk_item(
        self, invoice_id: str, operation: Callable[[Invoice], Awaitable[Invoice]]
    ) -> BulkItemResult:
        try:
            current = await self.store.get_invoice(invoice_id)
            stored = await operation(current)
        except EngineError as e:
            return BulkItemResult(
                invoice_id=invoice_id,
                success=False,
                error=str(e),
                error_type=type(e).__name__,
            )
        return BulkItemResult(
            invoice_id=invoice_id, success=True, status=stored.status, version=stored.version
        )

    async def bulk_finalize(
        self,
        invoice_ids: list[str],
        caller: Caller,
        expected_versions: dict[str, int] | None = None,
    ) -> list[BulkItemResult]:
        """Finalize each invoice independently; one failure never aborts the others.

        Without an explicit expected version, the version read just before the
        write is used, so a concurrent change still surfaces as a conflict.
        """
        versions = expected_versions or {}

        async def finalize_one(current: Invoice) -> Invoice:
            return await self.finalize(
                current.id, versions.get(current.id, current.version), caller
            )

        return list(
            await asyncio.gather(*(self._bulk_item(i, finalize_one) for i in invoice_ids))
        )

    async def bulk_delete(
        self,
        invoice_ids: list[str],
        reason: str | None,
        caller: Caller,
        expected_versions: dict[str, int] | None = None,
    ) -> list[BulkItemResult]:
        """Soft delete each invoice independently with a shared reason.

        Raises:
            DeletionReasonRequiredError: Empty reason, before any invoice is touched
        """
        if not reason or not reason.strip():
            raise DeletionReasonRequiredError()
        versions = expected_versions or {}

        async def delete_one(current: Invoice) -> Invoice:
            return await self.delete(
                current.id, reason, versions.get(current.id, current.version), caller
            )

        return list(await asyncio.gather(*(self._bulk_item(i, delete_one) for i in invoice_ids)))
