"""Integration tests for document extraction against the OpenAI API.

These tests require:
- OPENAI_API_KEY environment variable set
- Internet connection to OpenAI API

Tests are skipped if OPENAI_API_KEY is not available.
"""

import hashlib
import os

import pytest

from services.extraction.adapter import ExtractionAdapter
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.extraction.schema import ExtractionRequest
from services.shared.config import Settings

# Skip all tests in this module if no API key available
pytestmark = pytest.mark.skipif(
    not os.getenv("OPENAI_API_KEY"),
    reason="OPENAI_API_KEY not set - skipping integration tests",
)

INVOICE_LINES = [
    "FACTURA  Serie A  Folio 1234",
    "Emisor: Aceros del Norte S.A. de C.V.   RFC: ANO010101AB1",
    "Fecha: 15/01/2024",
    "10 pza  TORN-3/8  Tornillo 3/8   $12.50   $125.00",
    "Subtotal $125.00   IVA $20.00   Total $145.00",
]


def text_pdf(lines: list[str]) -> bytes:
    """Build a one-page PDF that prints the given lines."""
    stream = "BT /F1 11 Tf 50 780 Td 16 TL " + " ".join(f"({line}) '" for line in lines) + " ET"
    objects = [
        "<< /Type /Catalog /Pages 2 0 R >>",
        "<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 595 842] "
        "/Resources << /Font << /F1 5 0 R >> >> /Contents 4 0 R >>",
        f"<< /Length {len(stream)} >>\nstream\n{stream}\nendstream",
        "<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    body = "%PDF-1.4\n"
    offsets = []
    for number, obj in enumerate(objects, start=1):
        offsets.append(len(body))
        body += f"{number} 0 obj\n{obj}\nendobj\n"
    xref_at = len(body)
    body += f"xref\n0 {len(objects) + 1}\n0000000000 65535 f \n"
    body += "".join(f"{offset:010d} 00000 n \n" for offset in offsets)
    body += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n"
    return body.encode("latin-1")


@pytest.fixture
def adapter() -> ExtractionAdapter:
    settings = Settings()
    return ExtractionAdapter(OpenAIExtractionProvider(settings), settings)


@pytest.mark.asyncio
async def test_extract_invoice_from_pdf(adapter: ExtractionAdapter) -> None:
    """A clean single-line invoice should be extracted completely."""
    content = text_pdf(INVOICE_LINES)
    request = ExtractionRequest(
        document_bytes=content,
        mime_type="application/pdf",
        content_hash=hashlib.sha256(content).hexdigest(),
        filename="factura.pdf",
    )

    result = await adapter.extract(request)

    assert result.success is True, result.error
    data = result.invoice_data
    assert data is not None
    assert data.supplier_tax_id == "ANO010101AB1"
    assert data.issue_date is not None and data.issue_date.isoformat() == "2024-01-15"
    assert len(data.line_items) == 1
    assert data.line_items[0].quantity == 10
    assert data.total_amount is not None and float(data.total_amount) == 145.0
