"""Error types raised by the reconciliation engine.

Missing fields, ambiguous suppliers and price deviations are routed states on
the invoice, not exceptions. The classes below cover the conditions a caller
has to react to.
"""

from enum import StrEnum


class EngineError(Exception):
    """Base class for all engine errors."""


class IntakeValidationError(EngineError):
    """Document rejected locally before any external call."""

    def __init__(self, message: str, reason: str = "invalid") -> None:
        super().__init__(message)
        self.reason = reason  # unsupported_type, too_large, empty


class ExtractionErrorKind(StrEnum):
    """Failure kinds reported by the extraction capability."""

    UNREADABLE = "Unreadable"
    TIMEOUT = "Timeout"
    RATE_LIMITED = "RateLimited"
    MALFORMED = "Malformed"


TRANSIENT_EXTRACTION_ERRORS = frozenset(
    {ExtractionErrorKind.TIMEOUT, ExtractionErrorKind.RATE_LIMITED}
)


class ExtractionError(EngineError):
    """Extraction provider failure."""

    def __init__(self, kind: ExtractionErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_EXTRACTION_ERRORS


class InvoiceNotFoundError(EngineError):
    def __init__(self, invoice_id: str) -> None:
        super().__init__(f"Invoice not found: {invoice_id}")
        self.invoice_id = invoice_id


class SupplierNotFoundError(EngineError):
    def __init__(self, supplier_id: str) -> None:
        super().__init__(f"Supplier not found: {supplier_id}")
        self.supplier_id = supplier_id


class RemissionNotFoundError(EngineError):
    def __init__(self, remission_id: str) -> None:
        super().__init__(f"Remission not found: {remission_id}")
        self.remission_id = remission_id


class ConflictError(EngineError):
    """Supplied version does not match the stored version; reload and retry."""

    def __init__(self, invoice_id: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Version conflict on invoice {invoice_id}: "
            f"expected {expected_version}, stored {actual_version}"
        )
        self.invoice_id = invoice_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidTransitionError(EngineError):
    def __init__(self, invoice_id: str, current: str, target: str, detail: str = "") -> None:
        message = f"Invoice {invoice_id} cannot move from {current} to {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.invoice_id = invoice_id
        self.current = current
        self.target = target


class DeletionReasonRequiredError(EngineError):
    """Delete requested without a non-empty reason."""

    def __init__(self) -> None:
        super().__init__("A non-empty deletion reason is required")


class InvalidFieldError(EngineError):
    """A submitted correction names an unknown field or carries an unusable value."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"Invalid value for '{path}': {detail}")
        self.path = path


class PermissionDeniedError(EngineError):
    def __init__(self, user_id: str, action: str) -> None:
        super().__init__(f"User {user_id} is not allowed to {action}")
        self.user_id = user_id
        self.action = action


class DuplicateKeyError(EngineError):
    """Unique constraint violated in the store; carries the id of the existing record."""

    def __init__(self, key: str, existing_id: str) -> None:
        super().__init__(f"Duplicate key {key} (existing record {existing_id})")
        self.key = key
        self.existing_id = existing_id


class StoreUnavailableError(EngineError):
    """Transient persistent-store failure (retried by the store wrapper)."""


class DocumentNotArchivedError(EngineError):
    """The invoice has no archived original (manual entry or archive disabled)."""

    def __init__(self, invoice_id: str) -> None:
        super().__init__(f"No archived document for invoice {invoice_id}")
        self.invoice_id = invoice_id
