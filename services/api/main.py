"""FastAPI application exposing the invoice reconciliation engine.

Provides:
- Health, readiness and Prometheus metrics endpoints
- Invoice submission (single, bulk and cancellable batches)
- Manual invoice entry and original document preview
- Review operations: missing fields, corrections, supplier confirmation or creation
- Lifecycle operations: finalize, soft delete (single and bulk)
- Price alerts, remissions, deletion history and supplier statements

Caller identity is taken from the X-User-Id / X-User-Role headers set by
the authenticating gateway in front of this service.

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import logging
import time
from datetime import date
from decimal import Decimal
from typing import Any

from fastapi import (
    Body,
    Depends,
    FastAPI,
    File,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from services.api import metrics
from services.domain.models import (
    DeletionRecord,
    Invoice,
    InvoiceStatus,
    PriceAlert,
    RemissionItem,
    RemissionRecord,
    Supplier,
)
from services.extraction.factory import create_extraction_adapter
from services.intake.service import IncomingDocument
from services.lifecycle.service import BulkItemResult
from services.pipeline.service import (
    BatchJob,
    BatchRegistry,
    InvoiceEngine,
    MissingFieldsView,
    SubmissionResult,
    SupplierStatement,
)
from services.shared.config import get_settings
from services.shared.errors import (
    ConflictError,
    DeletionReasonRequiredError,
    DocumentNotArchivedError,
    DuplicateKeyError,
    EngineError,
    ExtractionError,
    IntakeValidationError,
    InvalidFieldError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    PermissionDeniedError,
    RemissionNotFoundError,
    StoreUnavailableError,
    SupplierNotFoundError,
)
from services.shared.identity import Caller, Role
from services.storage.service import DocumentArchive
from services.store.memory import InMemoryStore
from services.store.resilient import ResilientStore, store_policy

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoice Reconciliation Engine",
    description="Supplier invoice ingestion, extraction, price reconciliation and review",
    version=settings.service_version,
)

store = ResilientStore(InMemoryStore(), store_policy(settings))
archive = DocumentArchive(settings)
engine = InvoiceEngine(
    settings,
    store,
    create_extraction_adapter(settings),
    archive=archive,
)
batch_jobs = BatchRegistry(settings.batch_retention_seconds)


def get_engine() -> InvoiceEngine:
    return engine


def get_caller(
    user_id: str = Header(..., alias="X-User-Id", min_length=1),
    role: Role = Header("viewer", alias="X-User-Role"),
) -> Caller:
    return Caller(user_id=user_id, role=role)


_ERROR_STATUS: list[tuple[type[EngineError], int]] = [
    (InvoiceNotFoundError, status.HTTP_404_NOT_FOUND),
    (SupplierNotFoundError, status.HTTP_404_NOT_FOUND),
    (RemissionNotFoundError, status.HTTP_404_NOT_FOUND),
    (DocumentNotArchivedError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (DuplicateKeyError, status.HTTP_409_CONFLICT),
    (DeletionReasonRequiredError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidFieldError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (ExtractionError, status.HTTP_502_BAD_GATEWAY),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]

_INTAKE_STATUS = {
    "unsupported_type": status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    "too_large": status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
}


def status_for(exc: EngineError) -> int:
    if isinstance(exc, IntakeValidationError):
        return _INTAKE_STATUS.get(exc.reason, status.HTTP_400_BAD_REQUEST)
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Map engine errors to HTTP responses with a structured body."""
    code = status_for(exc)
    metrics.api_errors_total.labels(error_type=type(exc).__name__, status=code).inc()
    body: dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, ConflictError):
        body["current_version"] = exc.actual_version
    return JSONResponse(status_code=code, content=body)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, route template, and status
    - Request duration by method and route template
    """
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route templates keep invoice ids out of the label set
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()
    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    extraction_provider: str
    storage_enabled: bool


class SubmitResponse(BaseModel):
    invoice_id: str
    status: InvoiceStatus
    version: int


class BatchResponse(BaseModel):
    batch_id: str
    total: int
    completed: int
    done: bool
    cancelled: bool
    results: list[SubmissionResult] = Field(default_factory=list)


class VersionedRequest(BaseModel):
    expected_version: int


class ResolveFieldsRequest(VersionedRequest):
    values: dict[str, Any]


class ConfirmSupplierRequest(VersionedRequest):
    supplier_id: str


class NewSupplierRequest(VersionedRequest):
    legal_name: str = Field(..., min_length=1)
    tax_id: str | None = None


class ManualInvoiceRequest(BaseModel):
    values: dict[str, Any]


class DocumentLinkResponse(BaseModel):
    invoice_id: str
    url: str
    expires_in: int


class DeleteRequest(VersionedRequest):
    reason: str | None = None


class BulkFinalizeRequest(BaseModel):
    invoice_ids: list[str]
    expected_versions: dict[str, int] | None = None


class BulkDeleteRequest(BulkFinalizeRequest):
    reason: str | None = None


class RemissionRequest(BaseModel):
    supplier_ref: str | None = None
    supplier_name_raw: str | None = None
    document_ref: str | None = None
    delivered_on: date | None = None
    delivered_items: list[RemissionItem] = Field(default_factory=list)
    total_amount: Decimal | None = None


async def _read_upload(file: UploadFile, kind: str) -> IncomingDocument:
    content = await file.read()
    metrics.document_upload_size_bytes.observe(len(content))
    metrics.documents_uploaded_total.labels(kind=kind, status="received").inc()
    return IncomingDocument(
        content=content,
        mime_type=file.content_type or "application/octet-stream",
        filename=file.filename,
    )


def _batch_response(job: BatchJob) -> BatchResponse:
    return BatchResponse(
        batch_id=job.id,
        total=job.total,
        completed=job.completed,
        done=job.done,
        cancelled=job.cancelled,
        results=[result for result in job.results if result is not None],
    )


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Liveness check endpoint."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes."""
    storage_enabled = archive.is_available()
    ready = archive.health_check() if storage_enabled else True
    return ReadinessResponse(
        ready=ready,
        extraction_provider=settings.extraction_provider,
        storage_enabled=storage_enabled,
    )


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint."""
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


# Invoices


@app.post(
    "/api/v1/invoices",
    response_model=SubmitResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Invoices"],
)
async def submit_invoice(
    file: UploadFile = File(..., description="Invoice document (PDF or image)"),  # noqa: B008
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> SubmitResponse:
    """Submit one invoice document.

    Identical bytes return the existing invoice id. The response carries the
    status the invoice was routed to: Draft (extraction failed), PendingReview,
    Validated or Finalized.

    ## Usage

    ```bash
    curl -X POST "http://localhost:8000/api/v1/invoices" \\
      -H "X-User-Id: alice" -H "X-User-Role: editor" \\
      -F "file=@invoice.pdf"
    ```
    """
    document = await _read_upload(file, "invoice")
    invoice_id = await engine.submit_document(document, caller)
    invoice = await engine.get_invoice(invoice_id)
    return SubmitResponse(invoice_id=invoice.id, status=invoice.status, version=invoice.version)


@app.post("/api/v1/invoices/bulk", response_model=list[SubmissionResult], tags=["Invoices"])
async def bulk_submit_invoices(
    files: list[UploadFile] = File(..., description="Invoice documents"),  # noqa: B008
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> list[SubmissionResult]:
    """Submit many documents and wait for all of them; one failure never aborts others."""
    documents = [await _read_upload(file, "invoice") for file in files]
    return await engine.bulk_submit(documents, caller)


@app.post(
    "/api/v1/invoices/manual",
    response_model=Invoice,
    status_code=status.HTTP_201_CREATED,
    tags=["Invoices"],
)
async def create_manual_invoice(
    request: ManualInvoiceRequest,
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> Invoice:
    """Enter an invoice by hand, e.g. for a paper invoice that could not be scanned.

    Field paths are the same as for corrections; "line_items" takes a list of
    {"description", "sku", "quantity", "unit_price", "unit"} objects.
    """
    return await engine.create_manual_invoice(request.values, caller)


@app.get("/api/v1/invoices", response_model=list[Invoice], tags=["Invoices"])
async def list_invoices(
    supplier_id: str | None = Query(None),
    invoice_status: InvoiceStatus | None = Query(None, alias="status"),
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> list[Invoice]:
    return await engine.list_invoices(supplier_id=supplier_id, status=invoice_status)


@app.get("/api/v1/invoices/{invoice_id}", response_model=Invoice, tags=["Invoices"])
async def get_invoice(
    invoice_id: str, engine: InvoiceEngine = Depends(get_engine)  # noqa: B008
) -> Invoice:
    return await engine.get_invoice(invoice_id)


@app.get("/api/v1/invoices/{invoice_id}/document", tags=["Invoices"])
async def get_invoice_document(
    invoice_id: str, engine: InvoiceEngine = Depends(get_engine)  # noqa: B008
) -> Response:
    """Original document bytes as submitted."""
    content, invoice = await engine.get_document(invoice_id)
    filename = invoice.filename or invoice.content_hash
    return Response(
        content=content,
        media_type=invoice.mime_type,
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


@app.get(
    "/api/v1/invoices/{invoice_id}/document-url",
    response_model=DocumentLinkResponse,
    tags=["Invoices"],
)
async def get_invoice_document_url(
    invoice_id: str, engine: InvoiceEngine = Depends(get_engine)  # noqa: B008
) -> DocumentLinkResponse:
    """Short-lived presigned URL for previewing the original document."""
    url = await engine.get_document_url(invoice_id)
    return DocumentLinkResponse(
        invoice_id=invoice_id, url=url, expires_in=engine.settings.storage_url_expiry_seconds
    )


@app.get(
    "/api/v1/invoices/{invoice_id}/missing-fields",
    response_model=MissingFieldsView,
    tags=["Review"],
)
async def get_missing_fields(
    invoice_id: str, engine: InvoiceEngine = Depends(get_engine)  # noqa: B008
) -> MissingFieldsView:
    return await engine.get_missing_fields(invoice_id)


@app.patch("/api/v1/invoices/{invoice_id}/fields", response_model=Invoice, tags=["Review"])
async def resolve_fields(
    invoice_id: str,
    request: ResolveFieldsRequest,
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> Invoice:
    """Correct fields by path, e.g. {"values": {"line_items[0].quantity": 3}}."""
    return await engine.resolve_fields(
        invoice_id, request.values, request.expected_version, caller
    )


@app.post("/api/v1/invoices/{invoice_id}/supplier", response_model=Invoice, tags=["Review"])
async def confirm_supplier_match(
    invoice_id: str,
    request: ConfirmSupplierRequest,
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> Invoice:
    return await engine.confirm_supplier_match(
        invoice_id, request.supplier_id, request.expected_version, caller
    )


@app.post(
    "/api/v1/invoices/{invoice_id}/supplier/new", response_model=Invoice, tags=["Review"]
)
async def create_supplier_for_invoice(
    invoice_id: str,
    request: NewSupplierRequest,
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> Invoice:
    """Reject the suggested supplier and resolve the invoice to a new one."""
    return await engine.create_supplier(
        invoice_id, request.legal_name, request.tax_id, request.expected_version, caller
    )


@app.post("/api/v1/invoices/{invoice_id}/finalize", response_model=Invoice, tags=["Lifecycle"])
async def finalize_invoice(
    invoice_id: str,
    request: VersionedRequest,
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> Invoice:
    return await engine.finalize(invoice_id, request.expected_version, caller)


@app.post("/api/v1/invoices/{invoice_id}/delete", response_model=Invoice, tags=["Lifecycle"])
async def delete_invoice(
    invoice_id: str,
    request: DeleteRequest,
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> Invoice:
    """Soft delete an invoice. A non-empty reason is required."""
    return await engine.delete(invoice_id, request.reason, request.expected_version, caller)


@app.post(
    "/api/v1/invoices/bulk-finalize", response_model=list[BulkItemResult], tags=["Lifecycle"]
)
async def bulk_finalize(
    request: BulkFinalizeRequest,
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> list[BulkItemResult]:
    return await engine.bulk_finalize(request.invoice_ids, caller, request.expected_versions)


@app.post("/api/v1/invoices/bulk-delete", response_model=list[BulkItemResult], tags=["Lifecycle"])
async def bulk_delete(
    request: BulkDeleteRequest,
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> list[BulkItemResult]:
    return await engine.bulk_delete(
        request.invoice_ids, request.reason, caller, request.expected_versions
    )


@app.get("/api/v1/deleted-invoices", response_model=list[DeletionRecord], tags=["Lifecycle"])
async def list_deleted_invoices(
    supplier_id: str | None = Query(None),
    document_ref: str | None = Query(None),
    reason: str | None = Query(None, description="Substring of the deletion reason"),
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> list[DeletionRecord]:
    return await engine.list_deleted_invoices(supplier_id, document_ref, reason)


# Batches


@app.post(
    "/api/v1/batches",
    response_model=BatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Batches"],
)
async def start_batch(
    files: list[UploadFile] = File(..., description="Invoice documents"),  # noqa: B008
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> BatchResponse:
    """Start a batch in the background; poll GET /api/v1/batches/{batch_id}."""
    documents = [await _read_upload(file, "invoice") for file in files]
    job = await engine.start_batch(documents, caller)
    batch_jobs.add(job)
    return _batch_response(job)


def _get_job(batch_id: str) -> BatchJob:
    job = batch_jobs.get(batch_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return job


@app.get("/api/v1/batches/{batch_id}", response_model=BatchResponse, tags=["Batches"])
async def get_batch(batch_id: str) -> BatchResponse:
    return _batch_response(_get_job(batch_id))


@app.post("/api/v1/batches/{batch_id}/cancel", response_model=BatchResponse, tags=["Batches"])
async def cancel_batch(
    batch_id: str, caller: Caller = Depends(get_caller)  # noqa: B008
) -> BatchResponse:
    job = _get_job(batch_id)
    job.cancel()
    logger.info(f"Batch {batch_id} cancelled by {caller.user_id}")
    return _batch_response(job)


# Suppliers and prices


@app.get("/api/v1/suppliers", response_model=list[Supplier], tags=["Suppliers"])
async def list_suppliers(
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> list[Supplier]:
    return await engine.list_suppliers()


@app.get(
    "/api/v1/suppliers/{supplier_id}/statement",
    response_model=SupplierStatement,
    tags=["Suppliers"],
)
async def supplier_statement(
    supplier_id: str,
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> SupplierStatement:
    return await engine.supplier_statement(supplier_id, date_from, date_to)


@app.get("/api/v1/price-alerts", response_model=list[PriceAlert], tags=["Prices"])
async def list_price_alerts(
    supplier_id: str | None = Query(None),
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> list[PriceAlert]:
    return await engine.list_price_alerts(supplier_id)


# Remissions


@app.post(
    "/api/v1/remissions",
    response_model=RemissionRecord,
    status_code=status.HTTP_201_CREATED,
    tags=["Remissions"],
)
async def register_remission(
    request: RemissionRequest = Body(...),  # noqa: B008
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> RemissionRecord:
    return await engine.register_remission(RemissionRecord(**request.model_dump()), caller)


@app.post(
    "/api/v1/remissions/upload",
    response_model=RemissionRecord,
    status_code=status.HTTP_201_CREATED,
    tags=["Remissions"],
)
async def upload_remission(
    file: UploadFile = File(..., description="Delivery note (PDF or image)"),  # noqa: B008
    caller: Caller = Depends(get_caller),  # noqa: B008
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> RemissionRecord:
    document = await _read_upload(file, "remission")
    return await engine.submit_remission_document(document, caller)


@app.get("/api/v1/remissions", response_model=list[RemissionRecord], tags=["Remissions"])
async def list_remissions(
    supplier_id: str | None = Query(None),
    unmatched_only: bool = Query(False),
    engine: InvoiceEngine = Depends(get_engine),  # noqa: B008
) -> list[RemissionRecord]:
    return await engine.list_remissions(supplier_id, unmatched_only)
