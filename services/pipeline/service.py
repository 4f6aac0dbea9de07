"""Invoice engine: the operation surface tying the pipeline components together.

Per document:

    Intake -> Extraction Adapter -> Supplier Matcher -> Field Validator
           -> Price Reconciliation (assess) -> Lifecycle routing
           -> single insert of the processed invoice -> price commit

Remission reconciliation runs after an invoice is finalized. Components are
injected by reference; the engine holds no global state.
"""

import asyncio
import logging
import time
import uuid
import weakref
from datetime import date
from decimal import Decimal
from typing import Any

from prometheus_client import Counter, Gauge
from pydantic import BaseModel, Field

from services.domain.models import (
    DeletionRecord,
    Invoice,
    InvoiceStatus,
    PriceAlert,
    ReconciliationStatus,
    RemissionItem,
    RemissionRecord,
    Supplier,
    SupplierSuggestion,
)
from services.extraction.adapter import ExtractionAdapter
from services.extraction.base import ExtractionResult
from services.extraction.schema import ExtractionRequest, InvoiceData
from services.intake.service import DocumentIntake, IncomingDocument, IntakeDocument
from services.lifecycle.service import BulkItemResult, InvoiceLifecycleManager, review_reasons
from services.pipeline.corrections import apply_corrections
from services.pricing.service import PriceAssessment, PriceReconciliationEngine
from services.remission.service import RemissionReconciler
from services.shared.config import Settings
from services.shared.errors import (
    TRANSIENT_EXTRACTION_ERRORS,
    ConflictError,
    DocumentNotArchivedError,
    DuplicateKeyError,
    EngineError,
    ExtractionError,
    ExtractionErrorKind,
    InvalidTransitionError,
)
from services.shared.identity import Action, Authorizer, Caller, RoleAuthorizer, require
from services.storage.service import DocumentArchive
from services.store.base import Store
from services.suppliers.service import SupplierMatcher
from services.validation.service import FieldValidator

logger = logging.getLogger(__name__)

# Invoices typed in by a reviewer have no source document
MANUAL_ENTRY_MIME_TYPE = "application/x-manual-entry"


invoice_submissions_total = Counter(
    "invoice_submissions_total",
    "Document submissions by outcome",
    ["outcome"],  # resulting status, parked, duplicate, rejected, manual
)

batch_documents_in_flight = Gauge(
    "batch_documents_in_flight",
    "Batch documents currently being processed",
)


class SubmissionResult(BaseModel):
    """Per-document outcome of a batch submission."""

    index: int
    invoice_id: str | None = None
    status: InvoiceStatus | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def success(self) -> bool:
        return self.invoice_id is not None


class MissingFieldsView(BaseModel):
    """What a reviewer has to resolve on an invoice."""

    invoice_id: str
    status: InvoiceStatus
    version: int
    missing_fields: list[str]
    review_reasons: list[str]
    supplier_suggestion: SupplierSuggestion | None = None
    extraction_error: ExtractionErrorKind | None = None


class StatementEntry(BaseModel):
    invoice_id: str
    issue_date: date | None
    document_ref: str | None
    status: InvoiceStatus
    total: Decimal
    balance: Decimal
    reconciliation_status: ReconciliationStatus | None = None


class SupplierStatement(BaseModel):
    """Billed amounts for one supplier over a date range, oldest first."""

    supplier_id: str
    legal_name: str
    date_from: date | None = None
    date_to: date | None = None
    entries: list[StatementEntry] = Field(default_factory=list)
    invoice_count: int = 0
    total_billed: Decimal = Decimal("0")
    finalized_total: Decimal = Decimal("0")
    pending_total: Decimal = Decimal("0")
    price_alert_count: int = 0
    unmatched_remission_count: int = 0


class BatchJob:
    """Handle on a running batch submission.

    Cancelling stops dispatch of documents not yet started; documents
    already in progress run to completion.
    """

    def __init__(self, total: int) -> None:
        self.id = str(uuid.uuid4())
        self.total = total
        self.results: list[SubmissionResult | None] = [None] * total
        self._cancelled = False
        self.task: asyncio.Task[None] | None = None
        self.finished_at: float | None = None  # time.monotonic()

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    @property
    def completed(self) -> int:
        return sum(1 for result in self.results if result is not None)

    async def wait(self) -> list[SubmissionResult]:
        """Wait for every dispatched document and return results in input order."""
        if self.task is not None:
            await self.task
        return [result for result in self.results if result is not None]


class BatchRegistry:
    """Batch handles available for polling, dropped a retention period after finishing."""

    def __init__(self, retention_seconds: float) -> None:
        self.retention_seconds = retention_seconds
        self._jobs: dict[str, BatchJob] = {}

    def add(self, job: BatchJob) -> None:
        self.prune()
        self._jobs[job.id] = job

    def get(self, batch_id: str) -> BatchJob | None:
        self.prune()
        return self._jobs.get(batch_id)

    def prune(self, now: float | None = None) -> int:
        """Drop expired batches; returns how many were dropped."""
        now = time.monotonic() if now is None else now
        expired = [
            batch_id
            for batch_id, job in self._jobs.items()
            if job.finished_at is not None and now - job.finished_at >= self.retention_seconds
        ]
        for batch_id in expired:
            del self._jobs[batch_id]
        if expired:
            logger.debug(f"Dropped {len(expired)} expired batch(es)")
        return len(expired)

    def __len__(self) -> int:
        return len(self._jobs)


class InvoiceEngine:
    """Operation surface of the invoice ingestion and reconciliation engine."""

    def __init__(
        self,
        settings: Settings,
        store: Store,
        adapter: ExtractionAdapter,
        authorizer: Authorizer | None = None,
        archive: DocumentArchive | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.adapter = adapter
        self.authorizer = authorizer or RoleAuthorizer()
        self.archive = archive

        self.intake = DocumentIntake(settings)
        self.validator = FieldValidator(settings)
        self.suppliers = SupplierMatcher(store, settings)
        self.pricing = PriceReconciliationEngine(store, settings)
        self.remissions = RemissionReconciler(store, settings)
        self.lifecycle = InvoiceLifecycleManager(
            store, settings, on_finalized=self.remissions.reconcile_invoice
        )

        # Entries disappear once no submission holds or waits on the lock
        self._intake_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # Submission

    def _intake_lock(self, content_hash: str) -> asyncio.Lock:
        lock = self._intake_locks.get(content_hash)
        if lock is None:
            lock = self._intake_locks[content_hash] = asyncio.Lock()
        return lock

    async def submit_document(self, document: IncomingDocument, caller: Caller) -> str:
        """Submit one document; returns the invoice id.

        Identical bytes always map to the same invoice. A draft parked by a
        transient extraction failure is re-extracted on resubmission.

        Raises:
            PermissionDeniedError: Caller may not submit
            IntakeValidationError: Unsupported type, empty or oversize payload
        """
        require(self.authorizer, caller, Action.SUBMIT)
        try:
            accepted = self.intake.accept(document)
        except EngineError:
            invoice_submissions_total.labels(outcome="rejected").inc()
            raise

        async with self._intake_lock(accepted.content_hash):
            existing = await self.store.find_invoice_by_hash(accepted.content_hash)
            if existing is not None:
                if (
                    existing.status == InvoiceStatus.DRAFT
                    and existing.extraction_error in TRANSIENT_EXTRACTION_ERRORS
                ):
                    logger.info(f"Retrying extraction for parked draft {existing.id}")
                    invoice = await self._process(accepted, caller, existing)
                    return invoice.id
                invoice_submissions_total.labels(outcome="duplicate").inc()
                logger.info(
                    f"Document {accepted.content_hash[:12]} already ingested as {existing.id}"
                )
                return existing.id

            try:
                invoice = await self._process(accepted, caller)
            except DuplicateKeyError as e:
                # Inserted concurrently by another process sharing the store
                invoice_submissions_total.labels(outcome="duplicate").inc()
                return e.existing_id
            return invoice.id

    async def _archive(self, accepted: IntakeDocument) -> str | None:
        if self.archive is None or not self.archive.is_available():
            return None
        result = await asyncio.to_thread(self.archive.archive, accepted)
        return result.storage_path

    async def _extract(self, accepted: IntakeDocument) -> ExtractionResult:
        return await self.adapter.extract(
            ExtractionRequest(
                document_bytes=accepted.content,
                mime_type=accepted.mime_type,
                content_hash=accepted.content_hash,
                filename=accepted.filename,
                hints=accepted.hints,
            )
        )

    async def _process(
        self, accepted: IntakeDocument, caller: Caller, existing: Invoice | None = None
    ) -> Invoice:
        storage_path = await self._archive(accepted)
        result = await self._extract(accepted)

        invoice = existing.model_copy(deep=True) if existing else Invoice(
            content_hash=accepted.content_hash,
            mime_type=accepted.mime_type,
            filename=accepted.filename,
        )
        invoice.storage_path = storage_path or invoice.storage_path
        invoice.last_modified_by = caller.user_id

        if not result.success or result.invoice_data is None:
            invoice.extraction_error = result.error_kind
            invoice.extraction_warnings = [result.error or "Extraction failed"]
            logger.error(
                f"Invoice {invoice.id} parked as Draft after {result.error_kind} extraction failure"
            )
            stored = await self._persist(invoice, existing)
            invoice_submissions_total.labels(outcome="parked").inc()
            return stored

        self._apply_extraction(invoice, result)
        await self.suppliers.resolve_invoice(invoice)
        stored = await self._route_and_store(invoice, caller, existing)
        invoice_submissions_total.labels(outcome=stored.status.value).inc()
        logger.info(f"Invoice {stored.id} ingested as {stored.status.value}")
        return stored

    async def _route_and_store(
        self, invoice: Invoice, caller: Caller, existing: Invoice | None
    ) -> Invoice:
        """Validate, price and route a freshly built invoice, then persist it."""
        self.validator.validate(invoice)
        invoice.possible_duplicate_of = await self._find_duplicate(invoice)
        assessment = await self.pricing.assess(invoice)
        self.lifecycle.apply_routing(invoice)
        finalized = self.lifecycle.maybe_auto_finalize(invoice, caller.user_id)

        stored = await self._persist(invoice, existing)
        await self._after_save(stored, assessment, finalized)
        return await self.store.get_invoice(stored.id) if finalized else stored

    async def create_manual_invoice(self, values: dict[str, Any], caller: Caller) -> Invoice:
        """Create an invoice typed in by a reviewer, without a source document.

        values uses the same field paths as resolve_fields; "line_items"
        takes a list of line objects. The invoice then goes through the same
        matching, validation, pricing and routing as an extracted one.

        Raises:
            PermissionDeniedError: Caller may not submit
            InvalidFieldError: Unknown path or unusable value
            SupplierNotFoundError: supplier_ref names an unknown supplier
        """
        require(self.authorizer, caller, Action.SUBMIT)
        invoice_id = str(uuid.uuid4())
        invoice = Invoice(
            id=invoice_id,
            content_hash=f"manual:{invoice_id}",
            mime_type=MANUAL_ENTRY_MIME_TYPE,
            last_modified_by=caller.user_id,
        )
        apply_corrections(invoice, values)
        if values.get("supplier_ref"):
            await self.suppliers.confirm(invoice, str(values["supplier_ref"]))
        else:
            await self.suppliers.resolve_invoice(invoice)

        stored = await self._route_and_store(invoice, caller, None)
        invoice_submissions_total.labels(outcome="manual").inc()
        logger.info(
            f"Invoice {stored.id} entered manually by {caller.user_id} as {stored.status.value}"
        )
        return stored

    async def _persist(self, invoice: Invoice, existing: Invoice | None) -> Invoice:
        if existing is None:
            return await self.store.insert_invoice(invoice)
        return await self.lifecycle.save(invoice, existing.version)

    async def _after_save(
        self, stored: Invoice, assessment: PriceAssessment | None, finalized: bool
    ) -> None:
        if assessment is not None:
            await self.pricing.commit(assessment)
        if finalized:
            await self.lifecycle.run_finalized_hook(stored)

    @staticmethod
    def _apply_extraction(invoice: Invoice, result: ExtractionResult) -> None:
        data: InvoiceData = result.invoice_data  # type: ignore[assignment]
        invoice.supplier_name_raw = data.supplier_name
        invoice.supplier_tax_id = data.supplier_tax_id
        invoice.issue_date = data.issue_date
        invoice.document_ref = data.document_ref
        invoice.fiscal_uuid = data.fiscal_uuid
        invoice.line_items = data.line_items
        invoice.subtotal = data.subtotal
        invoice.tax_amount = data.tax_amount
        invoice.total = data.total_amount
        invoice.currency = data.currency
        invoice.extraction_confidence = data.confidence_score
        invoice.low_confidence = result.low_confidence
        invoice.extraction_error = None
        invoice.extraction_warnings = list(data.warnings)
        if data.document_type == "remission":
            invoice.extraction_warnings.append(
                "Document looks like a remission; submit it as a remission if so"
            )

    async def _find_duplicate(self, invoice: Invoice) -> str | None:
        """Id of another live invoice that looks like the same document.

        Checked in order: fiscal UUID, tax id + document reference, then
        supplier + total + issue date.
        """
        others = [
            other
            for other in await self.store.list_invoices()
            if other.id != invoice.id and other.status != InvoiceStatus.DELETED
        ]

        if invoice.fiscal_uuid:
            for other in others:
                if other.fiscal_uuid == invoice.fiscal_uuid:
                    return other.id

        if invoice.document_ref and (invoice.supplier_tax_id or invoice.supplier_ref):
            ref = invoice.document_ref.casefold()
            for other in others:
                if (other.document_ref or "").casefold() != ref:
                    continue
                if invoice.supplier_tax_id and other.supplier_tax_id == invoice.supplier_tax_id:
                    return other.id
                if invoice.supplier_ref and other.supplier_ref == invoice.supplier_ref:
                    return other.id

        if invoice.supplier_ref and invoice.total is not None and invoice.issue_date:
            for other in others:
                if (
                    other.supplier_ref == invoice.supplier_ref
                    and other.total == invoice.total
                    and other.issue_date == invoice.issue_date
                ):
                    return other.id
        return None

    async def bulk_submit(
        self, documents: list[IncomingDocument], caller: Caller
    ) -> list[SubmissionResult]:
        """Submit many documents on the bounded worker pool; results keep input order."""
        job = await self.start_batch(documents, caller)
        return await job.wait()

    async def start_batch(self, documents: list[IncomingDocument], caller: Caller) -> BatchJob:
        """Start a cancellable batch submission and return its handle immediately."""
        require(self.authorizer, caller, Action.SUBMIT)
        job = BatchJob(len(documents))
        job.task = asyncio.create_task(self._run_batch(job, documents, caller))
        logger.info(f"Started batch {job.id} with {job.total} document(s)")
        return job

    async def _run_batch(
        self, job: BatchJob, documents: list[IncomingDocument], caller: Caller
    ) -> None:
        semaphore = asyncio.Semaphore(self.settings.batch_concurrency)
        tasks = []
        try:
            for index, document in enumerate(documents):
                await semaphore.acquire()
                if job.cancelled:
                    semaphore.release()
                    job.results[index] = SubmissionResult(
                        index=index, error="Batch cancelled before dispatch", error_type="Cancelled"
                    )
                    continue
                tasks.append(
                    asyncio.create_task(self._submit_one(job, index, document, caller, semaphore))
                )
            await asyncio.gather(*tasks)
        finally:
            job.finished_at = time.monotonic()
        logger.info(
            f"Batch {job.id} finished: {sum(1 for r in job.results if r and r.success)}"
            f"/{job.total} submitted"
        )

    async def _submit_one(
        self,
        job: BatchJob,
        index: int,
        document: IncomingDocument,
        caller: Caller,
        semaphore: asyncio.Semaphore,
    ) -> None:
        batch_documents_in_flight.inc()
        try:
            invoice_id = await self.submit_document(document, caller)
            invoice = await self.store.get_invoice(invoice_id)
            job.results[index] = SubmissionResult(
                index=index, invoice_id=invoice_id, status=invoice.status
            )
        except EngineError as e:
            logger.warning(f"Batch {job.id} document {index} failed: {e}")
            job.results[index] = SubmissionResult(
                index=index, error=str(e), error_type=type(e).__name__
            )
        except Exception as e:
            logger.exception(f"Batch {job.id} document {index} crashed: {e}")
            job.results[index] = SubmissionResult(
                index=index, error=str(e), error_type=type(e).__name__
            )
        finally:
            batch_documents_in_flight.dec()
            semaphore.release()

    # Review

    async def get_invoice(self, invoice_id: str) -> Invoice:
        return await self.store.get_invoice(invoice_id)

    async def list_invoices(
        self, supplier_id: str | None = None, status: InvoiceStatus | None = None
    ) -> list[Invoice]:
        invoices = await self.store.list_invoices(supplier_id=supplier_id, status=status)
        return sorted(invoices, key=lambda invoice: invoice.created_at)

    async def get_missing_fields(self, invoice_id: str) -> MissingFieldsView:
        invoice = await self.store.get_invoice(invoice_id)
        return MissingFieldsView(
            invoice_id=invoice.id,
            status=invoice.status,
            version=invoice.version,
            missing_fields=sorted(invoice.missing_fields),
            review_reasons=review_reasons(invoice),
            supplier_suggestion=invoice.supplier_suggestion,
            extraction_error=invoice.extraction_error,
        )

    async def _load_editable(self, invoice_id: str, expected_version: int) -> Invoice:
        invoice = await self.store.get_invoice(invoice_id)
        if invoice.status in (InvoiceStatus.FINALIZED, InvoiceStatus.DELETED):
            raise InvalidTransitionError(
                invoice.id,
                invoice.status.value,
                invoice.status.value,
                f"{invoice.status.value} invoices cannot be edited",
            )
        if invoice.version != expected_version:
            raise ConflictError(invoice_id, expected_version, invoice.version)
        return invoice

    async def _complete_edit(
        self, invoice: Invoice, expected_version: int, changed: set[str], full: bool, actor: str
    ) -> Invoice:
        if full:
            self.validator.validate(invoice)
        else:
            self.validator.revalidate(invoice, changed)
        assessment = await self.pricing.assess(invoice)
        self.lifecycle.apply_routing(invoice)
        finalized = self.lifecycle.maybe_auto_finalize(invoice, actor)
        stored = await self.lifecycle.save(invoice, expected_version)
        await self._after_save(stored, assessment, finalized)
        return await self.store.get_invoice(invoice.id) if finalized else stored

    async def resolve_fields(
        self,
        invoice_id: str,
        values: dict[str, Any],
        expected_version: int,
        caller: Caller,
    ) -> Invoice:
        """Apply reviewer corrections and re-validate.

        A correction counts as human review: low-confidence and duplicate
        flags are cleared. On a draft parked by an extraction failure the
        values are taken as manual entry and the whole invoice is validated.

        Raises:
            ConflictError: expected_version is stale
            InvalidFieldError: Unknown path or unusable value
            InvalidTransitionError: Invoice is Finalized or Deleted
            SupplierNotFoundError: supplier_ref names an unknown supplier
        """
        require(self.authorizer, caller, Action.RESOLVE)
        invoice = await self._load_editable(invoice_id, expected_version)
        manual_entry = invoice.extraction_error is not None

        changed = apply_corrections(invoice, values)
        if values.get("supplier_ref"):
            await self.suppliers.confirm(invoice, str(values["supplier_ref"]))
        elif "supplier_ref" in changed:
            await self.suppliers.resolve_invoice(invoice)

        invoice.low_confidence = False
        invoice.possible_duplicate_of = None
        invoice.extraction_error = None
        invoice.last_modified_by = caller.user_id

        stored = await self._complete_edit(
            invoice, expected_version, changed, manual_entry, caller.user_id
        )
        logger.info(f"Invoice {invoice_id} corrected by {caller.user_id}: {sorted(changed)}")
        return stored

    async def confirm_supplier_match(
        self, invoice_id: str, supplier_id: str, expected_version: int, caller: Caller
    ) -> Invoice:
        """Resolve the invoice's supplier to an explicitly chosen record.

        Raises:
            SupplierNotFoundError: Unknown supplier
            ConflictError: expected_version is stale
        """
        require(self.authorizer, caller, Action.CONFIRM_SUPPLIER)
        invoice = await self._load_editable(invoice_id, expected_version)
        await self.suppliers.confirm(invoice, supplier_id)
        invoice.last_modified_by = caller.user_id
        return await self._complete_edit(
            invoice, expected_version, {"supplier_ref"}, False, caller.user_id
        )

    async def create_supplier(
        self,
        invoice_id: str,
        legal_name: str,
        tax_id: str | None,
        expected_version: int,
        caller: Caller,
    ) -> Invoice:
        """Reject any pending suggestion and resolve the invoice to a new supplier.

        When the name key or tax id already belongs to a supplier, the invoice
        is resolved to that record instead.

        Raises:
            InvalidFieldError: legal_name is blank
            ConflictError: expected_version is stale
        """
        require(self.authorizer, caller, Action.CONFIRM_SUPPLIER)
        invoice = await self._load_editable(invoice_id, expected_version)
        rejected = invoice.supplier_suggestion
        supplier = await self.suppliers.create_for(invoice, legal_name, tax_id)
        invoice.last_modified_by = caller.user_id
        if rejected is not None:
            logger.info(
                f"Suggestion {rejected.legal_name} rejected on invoice {invoice_id}; "
                f"resolved to {supplier.id} by {caller.user_id}"
            )
        return await self._complete_edit(
            invoice, expected_version, {"supplier_ref"}, False, caller.user_id
        )

    # Documents

    def _archived_object(self, invoice: Invoice) -> tuple[DocumentArchive, str]:
        archive = self.archive
        if archive is None or not archive.is_available() or not invoice.storage_path:
            raise DocumentNotArchivedError(invoice.id)
        # storage_path is "<bucket>/<object name>"
        return archive, invoice.storage_path.split("/", 1)[1]

    async def get_document(self, invoice_id: str) -> tuple[bytes, Invoice]:
        """Original document bytes of an invoice, with the invoice they belong to.

        Raises:
            DocumentNotArchivedError: Manual entry, or archiving was disabled
        """
        invoice = await self.store.get_invoice(invoice_id)
        archive, object_name = self._archived_object(invoice)
        content = await asyncio.to_thread(archive.fetch, object_name)
        return content, invoice

    async def get_document_url(self, invoice_id: str) -> str:
        """Presigned preview URL for the original document of an invoice.

        Raises:
            DocumentNotArchivedError: Manual entry, or archiving was disabled
        """
        invoice = await self.store.get_invoice(invoice_id)
        archive, object_name = self._archived_object(invoice)
        return await asyncio.to_thread(
            archive.get_presigned_url, object_name, self.settings.storage_url_expiry_seconds
        )

    # Lifecycle

    async def finalize(self, invoice_id: str, expected_version: int, caller: Caller) -> Invoice:
        require(self.authorizer, caller, Action.FINALIZE)
        return await self.lifecycle.finalize(invoice_id, expected_version, caller)

    async def delete(
        self, invoice_id: str, reason: str | None, expected_version: int, caller: Caller
    ) -> Invoice:
        require(self.authorizer, caller, Action.DELETE)
        return await self.lifecycle.delete(invoice_id, reason, expected_version, caller)

    async def bulk_finalize(
        self,
        invoice_ids: list[str],
        caller: Caller,
        expected_versions: dict[str, int] | None = None,
    ) -> list[BulkItemResult]:
        require(self.authorizer, caller, Action.FINALIZE)
        return await self.lifecycle.bulk_finalize(invoice_ids, caller, expected_versions)

    async def bulk_delete(
        self,
        invoice_ids: list[str],
        reason: str | None,
        caller: Caller,
        expected_versions: dict[str, int] | None = None,
    ) -> list[BulkItemResult]:
        require(self.authorizer, caller, Action.DELETE)
        return await self.lifecycle.bulk_delete(invoice_ids, reason, caller, expected_versions)

    async def list_deleted_invoices(
        self,
        supplier_id: str | None = None,
        document_ref: str | None = None,
        reason_contains: str | None = None,
    ) -> list[DeletionRecord]:
        """Deletion history, newest first, optionally filtered."""
        records = await self.store.list_deletions()
        ref = document_ref.casefold() if document_ref else None
        reason = reason_contains.casefold() if reason_contains else None
        matches = [
            record
            for record in records
            if (supplier_id is None or record.snapshot.get("supplier_ref") == supplier_id)
            and (ref is None or ref in (record.snapshot.get("document_ref") or "").casefold())
            and (reason is None or reason in record.reason.casefold())
        ]
        return sorted(matches, key=lambda record: record.deleted_at, reverse=True)

    async def list_suppliers(self) -> list[Supplier]:
        suppliers = await self.store.list_suppliers()
        return sorted(suppliers, key=lambda supplier: supplier.legal_name.casefold())

    # Prices

    async def list_price_alerts(self, supplier_id: str | None = None) -> list[PriceAlert]:
        alerts = await self.pricing.list_alerts(supplier_id)
        return sorted(alerts, key=lambda alert: alert.raised_at, reverse=True)

    # Remissions

    async def register_remission(
        self, remission: RemissionRecord, caller: Caller
    ) -> RemissionRecord:
        """Record a delivery and reconcile it against finalized invoices."""
        require(self.authorizer, caller, Action.REGISTER_REMISSION)
        if remission.supplier_ref is None and remission.supplier_name_raw:
            match = await self.suppliers.match(remission.supplier_name_raw, None)
            remission.supplier_ref = match.supplier_id
        elif remission.supplier_ref is not None:
            await self.store.get_supplier(remission.supplier_ref)
        return await self.remissions.register_remission(remission)

    async def submit_remission_document(
        self, document: IncomingDocument, caller: Caller
    ) -> RemissionRecord:
        """Extract a delivery note and register it as a remission.

        Raises:
            ExtractionError: The document could not be extracted
        """
        require(self.authorizer, caller, Action.REGISTER_REMISSION)
        accepted = self.intake.accept(document)
        result = await self._extract(accepted)
        if not result.success or result.invoice_data is None:
            raise ExtractionError(
                result.error_kind or ExtractionErrorKind.UNREADABLE, result.error or ""
            )
        data = result.invoice_data

        supplier_ref = None
        if data.supplier_name or data.supplier_tax_id:
            match = await self.suppliers.match(data.supplier_name, data.supplier_tax_id)
            supplier_ref = match.supplier_id

        remission = RemissionRecord(
            supplier_ref=supplier_ref,
            supplier_name_raw=data.supplier_name,
            document_ref=data.document_ref,
            delivered_on=data.issue_date,
            delivered_items=[
                RemissionItem(
                    description=item.description,
                    sku=item.sku,
                    quantity=item.quantity,
                    unit=item.unit,
                    unit_price=item.unit_price,
                )
                for item in data.line_items
                if item.quantity is not None
            ],
            total_amount=data.total_amount,
        )
        return await self.remissions.register_remission(remission)

    async def list_remissions(
        self, supplier_id: str | None = None, unmatched_only: bool = False
    ) -> list[RemissionRecord]:
        return await self.store.list_remissions(supplier_id, unmatched_only)

    # Reporting

    async def supplier_statement(
        self,
        supplier_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> SupplierStatement:
        """Running billed balance for a supplier's live invoices in a date range.

        Raises:
            SupplierNotFoundError: Unknown supplier
        """
        supplier = await self.store.get_supplier(supplier_id)
        invoices = [
            invoice
            for invoice in await self.store.list_invoices(supplier_id=supplier_id)
            if invoice.status != InvoiceStatus.DELETED
            and (date_from is None or (invoice.issue_date and invoice.issue_date >= date_from))
            and (date_to is None or (invoice.issue_date and invoice.issue_date <= date_to))
        ]
        invoices.sort(key=lambda invoice: (invoice.issue_date or date.min, invoice.created_at))

        statement = SupplierStatement(
            supplier_id=supplier.id,
            legal_name=supplier.legal_name,
            date_from=date_from,
            date_to=date_to,
        )
        balance = Decimal("0")
        for invoice in invoices:
            total = invoice.billed_total()
            balance += total
            statement.entries.append(
                StatementEntry(
                    invoice_id=invoice.id,
                    issue_date=invoice.issue_date,
                    document_ref=invoice.document_ref,
                    status=invoice.status,
                    total=total,
                    balance=balance,
                    reconciliation_status=invoice.reconciliation_status,
                )
            )
            if invoice.status == InvoiceStatus.FINALIZED:
                statement.finalized_total += total
            else:
                statement.pending_total += total

        invoice_ids = {invoice.id for invoice in invoices}
        statement.invoice_count = len(invoices)
        statement.total_billed = balance
        statement.price_alert_count = sum(
            1
            for alert in await self.pricing.list_alerts(supplier_id)
            if alert.invoice_id in invoice_ids
        )
        statement.unmatched_remission_count = len(
            await self.store.list_remissions(supplier_id, unmatched_only=True)
        )
        return statement
