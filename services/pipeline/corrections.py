"""Applies caller-supplied field corrections to an invoice.

Corrections are addressed by the same field paths the validator reports,
e.g. "issue_date" or "line_items[2].unit_price". Each applied path is
returned together with the validation paths it can affect.
"""

import re
from typing import Any

from pydantic import ValidationError

from services.domain.models import Invoice, LineItem
from services.extraction.normalizer import parse_date, parse_decimal
from services.shared.errors import InvalidFieldError

TEXT_FIELDS = {
    "supplier_name_raw",
    "supplier_tax_id",
    "document_ref",
    "fiscal_uuid",
    "currency",
}
AMOUNT_FIELDS = {"subtotal", "tax_amount", "total"}
LINE_TEXT_FIELDS = {"description", "sku", "unit"}
LINE_AMOUNT_FIELDS = {"quantity", "unit_price", "declared_total"}

_LINE_PATH = re.compile(r"^line_items\[(\d+)\]\.(\w+)$")


def _text(path: str, value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str | int):
        raise InvalidFieldError(path, "expected a string")
    text = " ".join(str(value).split())
    return text or None


def _amount(path: str, value: Any) -> Any:
    if value is None:
        return None
    parsed = parse_decimal(value)
    if parsed is None:
        raise InvalidFieldError(path, f"not a number: {value!r}")
    return parsed


def _apply_line(invoice: Invoice, index: int, field: str, path: str, value: Any) -> set[str]:
    if index >= len(invoice.line_items):
        raise InvalidFieldError(path, f"invoice has {len(invoice.line_items)} line item(s)")
    item = invoice.line_items[index]
    if field in LINE_TEXT_FIELDS:
        setattr(item, field, _text(path, value) or ("" if field == "description" else None))
        return {path}
    if field in LINE_AMOUNT_FIELDS:
        setattr(item, field, _amount(path, value))
        # Line total consistency depends on every amount of the line
        return {path, f"line_items[{index}].line_total"}
    raise InvalidFieldError(path, "unknown line item field")


def _replace_lines(invoice: Invoice, value: Any) -> set[str]:
    if not isinstance(value, list):
        raise InvalidFieldError("line_items", "expected a list of line items")
    items = []
    for index, raw in enumerate(value):
        try:
            item = raw.model_copy() if isinstance(raw, LineItem) else LineItem.model_validate(raw)
        except ValidationError as e:
            raise InvalidFieldError(f"line_items[{index}]", str(e)) from e
        # Classification is derived by price reconciliation, never supplied
        item.price_deviation = None
        items.append(item)
    invoice.line_items = items
    return {"line_items"}


def apply_corrections(invoice: Invoice, values: dict[str, Any]) -> set[str]:
    """Apply corrections in place.

    Args:
        invoice: Invoice to modify
        values: Field path to new value

    Returns:
        Field paths whose checks must be re-run

    Raises:
        InvalidFieldError: Unknown path or unusable value; the invoice may be
            partially modified, so callers must discard it
    """
    if not values:
        raise InvalidFieldError("*", "no corrections supplied")

    changed: set[str] = set()
    for path, value in values.items():
        if path == "supplier_ref":
            # Resolved by the engine against the supplier store
            changed.add(path)
        elif path in TEXT_FIELDS:
            setattr(invoice, path, _text(path, value))
            changed.add(path)
            if path in ("supplier_name_raw", "supplier_tax_id"):
                changed.add("supplier_ref")
        elif path in AMOUNT_FIELDS:
            setattr(invoice, path, _amount(path, value))
            changed.add(path)
        elif path == "issue_date":
            parsed = parse_date(value)
            if value is not None and parsed is None:
                raise InvalidFieldError(path, f"not a date: {value!r}")
            invoice.issue_date = parsed
            changed.add(path)
        elif path == "line_items":
            changed |= _replace_lines(invoice, value)
        elif match := _LINE_PATH.match(path):
            changed |= _apply_line(invoice, int(match.group(1)), match.group(2), path, value)
        else:
            raise InvalidFieldError(path, "unknown field")
    return changed
