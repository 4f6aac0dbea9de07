"""Prompt and response parsing shared by the LLM-backed providers."""

import json
import re
from typing import Any

from services.extraction.schema import ExtractionRequest
from services.shared.errors import ExtractionError, ExtractionErrorKind

RESPONSE_SCHEMA = (
    '{"type": "invoice"|"remission", "supplier_name": string|null, '
    '"supplier_tax_id": string|null, "series": string|null, "folio": string|null, '
    '"fiscal_uuid": string|null, "issue_date": "YYYY-MM-DD"|null, '
    '"line_items": [{"sku": string|null, "description": string, "quantity": number, '
    '"unit": string|null, "unit_price": number, "amount": number|null}], '
    '"subtotal": number|null, "tax": number|null, "total": number|null, '
    '"currency": string|null, "confidence": number (0-1)}'
)


def build_extraction_prompt(request: ExtractionRequest) -> str:
    """Build the instruction text sent alongside the document.

    Args:
        request: Extraction request (filename and hints are passed as context)

    Returns:
        Prompt string
    """
    hints = "\n".join(f"- {key}: {value}" for key, value in sorted(request.hints.items()))
    return f"""You are an accounts-payable assistant. Analyze the attached supplier \
document and return ONLY a JSON object with this schema (null for missing values):

{RESPONSE_SCHEMA}

INSTRUCTIONS:
- "type" is "invoice" for a tax invoice (has tax and a fiscal folio), "remission" for a \
delivery note or receipt without tax
- supplier_name is the ISSUER (seller), never the customer
- List every line item in document order; quantity and unit_price are numbers
- "amount" is the line total printed on the document, if any
- Convert dates to YYYY-MM-DD (documents use DD/MM/YYYY unless clearly otherwise)
- Convert decimal commas: 1.234,56 -> 1234.56
- "confidence" is your overall confidence that every returned value is correct
- Return ONLY JSON, no explanation

File name: {request.filename or "unknown"}
{("Hints:" + chr(10) + hints) if hints else ""}"""


def parse_json_response(response_text: str) -> dict[str, Any]:
    """Extract and parse a JSON object from an LLM response.

    Handles common LLM quirks like markdown code blocks.

    Raises:
        ExtractionError: Malformed, if no JSON object can be parsed
    """
    candidates = []
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", response_text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    braces = re.search(r"\{[\s\S]*\}", response_text)
    if braces:
        candidates.append(braces.group(0))
    candidates.append(response_text.strip())

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ExtractionError(
        ExtractionErrorKind.MALFORMED,
        f"No JSON object in provider response: {response_text[:80]!r}",
    )
