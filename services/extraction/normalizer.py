"""Maps heterogeneous provider payloads into the canonical InvoiceData schema.

Providers name fields differently (English keys, Spanish CFDI keys, camelCase).
Known aliases are mapped; anything else is dropped with a recorded warning.
Values that cannot be parsed are left missing with a warning rather than
being coerced to a default.
"""

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from services.domain.models import LineItem
from services.extraction.schema import InvoiceData

logger = logging.getLogger(__name__)

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "document_type": ("type", "document_type", "tipo"),
    "supplier_name": (
        "supplier_name",
        "supplierNameRaw",
        "supplier_name_raw",
        "vendor",
        "vendor_name",
        "seller",
        "nombre_emisor",
        "proveedor",
    ),
    "supplier_tax_id": ("supplier_tax_id", "tax_id", "vat_id", "rfc_emisor", "rfc"),
    "issue_date": ("issue_date", "issueDate", "invoice_date", "date", "fecha_emision", "fecha"),
    "document_ref": ("document_ref", "documentRef", "invoice_number", "folio", "number"),
    "series": ("series", "serie"),
    "fiscal_uuid": ("fiscal_uuid", "uuid", "folio_fiscal"),
    "line_items": ("line_items", "lineItems", "items", "conceptos"),
    "subtotal": ("subtotal", "net_amount", "amount_net"),
    "tax_amount": ("tax_amount", "tax", "vat", "iva"),
    "total_amount": ("total_amount", "total", "grand_total"),
    "currency": ("currency", "moneda"),
    "confidence_score": ("confidence", "confidence_score"),
}

LINE_ALIASES: dict[str, tuple[str, ...]] = {
    "description": ("description", "descripcion", "concept", "name"),
    "sku": ("sku", "code", "codigo", "item_code", "product_code", "no_identificacion"),
    "quantity": ("quantity", "qty", "cantidad"),
    "unit": ("unit", "unidad", "uom"),
    "unit_price": ("unit_price", "unitPrice", "price", "valor_unitario", "precio_unitario"),
    "declared_total": ("amount", "total", "line_total", "lineTotal", "importe"),
}

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%Y/%m/%d",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d/%m/%y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)

_REMISSION_TYPES = {"remission", "remision", "remisión", "delivery_note", "nota_de_venta"}


def _reverse(aliases: dict[str, tuple[str, ...]]) -> dict[str, str]:
    return {alias.casefold(): canonical for canonical, names in aliases.items() for alias in names}


_FIELD_LOOKUP = _reverse(FIELD_ALIASES)
_LINE_LOOKUP = _reverse(LINE_ALIASES)


def parse_decimal(value: Any) -> Decimal | None:
    """Parse a provider amount; returns None when the value is not numeric.

    Accepts numbers and strings with currency symbols, thousands separators
    and decimal commas ("$1,234.50", "1.234,50").
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int | float):
        return Decimal(str(value))
    if not isinstance(value, str):
        return None

    cleaned = re.sub(r"[^\d,.\-]", "", value.strip())
    if not cleaned or not re.search(r"\d", cleaned):
        return None
    if "," in cleaned and "." in cleaned:
        # The right-most separator is the decimal one
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        if len(tail) in (1, 2):
            cleaned = f"{head.replace(',', '')}.{tail}"
        else:
            cleaned = cleaned.replace(",", "")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def parse_date(value: Any) -> date | None:
    """Parse a provider date; returns None when no known format matches."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    # Timestamps such as 2024-01-15T10:22:00
    if re.match(r"^\d{4}-\d{2}-\d{2}T", text):
        text = text[:10]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def _map_keys(
    raw: dict[str, Any], lookup: dict[str, str], warnings: list[str], prefix: str
) -> dict[str, Any]:
    mapped: dict[str, Any] = {}
    for key, value in raw.items():
        canonical = lookup.get(str(key).casefold())
        if canonical is None:
            if value not in (None, "", [], {}):
                warnings.append(f"Dropped unmapped field '{prefix}{key}'")
            continue
        if canonical in mapped and mapped[canonical] not in (None, ""):
            # First non-empty alias wins
            if value not in (None, "") and value != mapped[canonical]:
                warnings.append(f"Ignored duplicate alias '{prefix}{key}' for '{canonical}'")
            continue
        mapped[canonical] = value
    return mapped


def _normalize_line(raw: Any, index: int, warnings: list[str]) -> LineItem | None:
    path = f"line_items[{index}]"
    if not isinstance(raw, dict):
        warnings.append(f"Dropped {path}: expected an object, got {type(raw).__name__}")
        return None
    fields = _map_keys(raw, _LINE_LOOKUP, warnings, f"{path}.")

    numbers: dict[str, Decimal | None] = {}
    for name in ("quantity", "unit_price", "declared_total"):
        value = fields.get(name)
        numbers[name] = parse_decimal(value)
        if value not in (None, "") and numbers[name] is None:
            warnings.append(f"Unparseable {path}.{name}: {value!r}")

    return LineItem(
        description=_clean_text(fields.get("description")) or "",
        sku=_clean_text(fields.get("sku")),
        unit=_clean_text(fields.get("unit")),
        quantity=numbers["quantity"],
        unit_price=numbers["unit_price"],
        declared_total=numbers["declared_total"],
    )


def normalize_payload(payload: dict[str, Any]) -> InvoiceData:
    """Map a raw provider payload into canonical InvoiceData.

    Args:
        payload: Provider-specific JSON object

    Returns:
        InvoiceData with mapping warnings attached
    """
    warnings: list[str] = []
    fields = _map_keys(payload, _FIELD_LOOKUP, warnings, "")

    issue_date = parse_date(fields.get("issue_date"))
    if fields.get("issue_date") not in (None, "") and issue_date is None:
        warnings.append(f"Unparseable issue_date: {fields['issue_date']!r}")

    amounts: dict[str, Decimal | None] = {}
    for name in ("subtotal", "tax_amount", "total_amount"):
        value = fields.get(name)
        amounts[name] = parse_decimal(value)
        if value not in (None, "") and amounts[name] is None:
            warnings.append(f"Unparseable {name}: {value!r}")

    confidence: float | None = None
    raw_confidence = parse_decimal(fields.get("confidence_score"))
    if raw_confidence is not None:
        if Decimal("0") <= raw_confidence <= Decimal("1"):
            confidence = float(raw_confidence)
        else:
            warnings.append(f"Confidence out of range: {raw_confidence}")

    series = _clean_text(fields.get("series"))
    folio = _clean_text(fields.get("document_ref"))
    document_ref = f"{series}{folio}" if series and folio else folio

    raw_lines = fields.get("line_items") or []
    if not isinstance(raw_lines, list):
        warnings.append("Dropped line_items: expected a list")
        raw_lines = []
    line_items = [
        line
        for index, raw in enumerate(raw_lines)
        if (line := _normalize_line(raw, index, warnings)) is not None
    ]

    raw_type = str(fields.get("document_type") or "invoice").strip().casefold()
    document_type = "remission" if raw_type in _REMISSION_TYPES else "invoice"

    currency = _clean_text(fields.get("currency"))
    tax_id = _clean_text(fields.get("supplier_tax_id"))
    fiscal_uuid = _clean_text(fields.get("fiscal_uuid"))

    data = InvoiceData(
        document_type=document_type,
        supplier_name=_clean_text(fields.get("supplier_name")),
        supplier_tax_id=tax_id.upper().replace(" ", "") if tax_id else None,
        issue_date=issue_date,
        document_ref=document_ref,
        fiscal_uuid=fiscal_uuid.lower() if fiscal_uuid else None,
        line_items=line_items,
        subtotal=amounts["subtotal"],
        tax_amount=amounts["tax_amount"],
        total_amount=amounts["total_amount"],
        currency=currency.upper() if currency else None,
        confidence_score=confidence,
        warnings=warnings,
    )
    for warning in warnings:
        logger.warning(f"Extraction mapping: {warning}")
    return data
