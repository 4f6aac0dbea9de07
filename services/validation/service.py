"""Field validation for canonical invoices.

Required-field gaps and per-line inconsistencies are reported as field paths
in Invoice.missing_fields and force PendingReview. Totals and tax checks are
business-rule warnings only and never block an invoice.
"""

import logging
from decimal import Decimal

from pydantic import BaseModel, Field

from services.domain.models import Invoice
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ValidationReport(BaseModel):
    """Outcome of validating one invoice.

    Attributes:
        missing_fields: Field paths that must be resolved before validation passes
        warnings: Non-blocking business-rule findings
    """

    missing_fields: set[str] = Field(default_factory=set)
    warnings: list[str] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields


def path_affected(path: str, changed: str) -> bool:
    """True when a correction at `changed` can affect the check at `path`.

    Replacing the whole line_items list touches every line path; editing a
    single line touches that line's paths only.
    """
    if path == changed:
        return True
    return path.startswith(f"{changed}[") or path.startswith(f"{changed}.")


class FieldValidator:
    """Checks required fields and line consistency on a canonical invoice."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def check(self, invoice: Invoice) -> ValidationReport:
        """Run every check against the invoice as it stands."""
        report = ValidationReport()

        if not (invoice.supplier_ref or invoice.supplier_name_raw or invoice.supplier_tax_id):
            report.missing_fields.add("supplier_ref")
        if invoice.issue_date is None:
            report.missing_fields.add("issue_date")
        if not invoice.document_ref:
            report.missing_fields.add("document_ref")

        if not invoice.line_items:
            report.missing_fields.add("line_items")
        for index, item in enumerate(invoice.line_items):
            path = f"line_items[{index}]"
            if item.quantity is None or item.quantity <= 0:
                report.missing_fields.add(f"{path}.quantity")
            if item.unit_price is None or item.unit_price < 0:
                report.missing_fields.add(f"{path}.unit_price")
            line_total = item.line_total
            if item.declared_total is not None and line_total is not None:
                if abs(item.declared_total - line_total) > self.settings.line_total_tolerance:
                    report.missing_fields.add(f"{path}.line_total")

        report.warnings.extend(self._business_rule_warnings(invoice))
        return report

    def _business_rule_warnings(self, invoice: Invoice) -> list[str]:
        warnings: list[str] = []
        tolerance = self.settings.totals_tolerance

        # Rule 1: subtotal + tax should equal the total
        if invoice.subtotal is not None and invoice.total is not None:
            expected_total = invoice.subtotal + (invoice.tax_amount or Decimal("0"))
            if abs(expected_total - invoice.total) > tolerance:
                warnings.append(
                    f"Subtotal plus tax ({expected_total}) differs from total ({invoice.total})"
                )

        # Rule 2: line totals should add up to the subtotal
        line_totals = [item.line_total for item in invoice.line_items]
        if invoice.subtotal is not None and line_totals and None not in line_totals:
            lines_sum = sum(line_totals, Decimal("0"))  # type: ignore[arg-type]
            if abs(lines_sum - invoice.subtotal) > tolerance:
                warnings.append(
                    f"Line items total ({lines_sum}) differs from subtotal ({invoice.subtotal})"
                )

        # Rule 3: tax rate, when one is configured
        rate = self.settings.expected_tax_rate
        if rate is not None and invoice.subtotal is not None and invoice.tax_amount is not None:
            expected_tax = invoice.subtotal * rate
            if abs(expected_tax - invoice.tax_amount) > tolerance:
                warnings.append(
                    f"Tax ({invoice.tax_amount}) differs from {rate:%} "
                    f"of subtotal ({expected_tax:.2f})"
                )

        return warnings

    def validate(self, invoice: Invoice) -> ValidationReport:
        """Validate a freshly extracted invoice and record the result on it."""
        report = self.check(invoice)
        invoice.missing_fields = set(report.missing_fields)
        invoice.validation_warnings = list(report.warnings)
        if report.missing_fields:
            logger.info(
                f"Invoice {invoice.id} has {len(report.missing_fields)} missing field(s): "
                f"{sorted(report.missing_fields)}"
            )
        return report

    def revalidate(self, invoice: Invoice, changed_paths: set[str]) -> ValidationReport:
        """Re-validate after corrections, clearing only fields that were actually fixed.

        An outstanding path stays outstanding until it passes its check. A
        new gap is only added when it lies under one of the changed paths.

        Args:
            invoice: Invoice with the corrections already applied
            changed_paths: Field paths the caller supplied values for

        Returns:
            Report whose missing_fields is now recorded on the invoice
        """
        report = self.check(invoice)
        outstanding = invoice.missing_fields & report.missing_fields
        introduced = {
            path
            for path in report.missing_fields
            if any(path_affected(path, changed) for changed in changed_paths)
        }
        fixed = invoice.missing_fields - report.missing_fields
        if fixed:
            logger.info(f"Invoice {invoice.id} resolved field(s): {sorted(fixed)}")

        invoice.missing_fields = outstanding | introduced
        invoice.validation_warnings = list(report.warnings)
        return ValidationReport(
            missing_fields=set(invoice.missing_fields), warnings=report.warnings
        )
