"""Unit tests for the reconciliation API.

Tests cover:
- Health, readiness and metrics endpoints
- Caller identity headers and permission errors
- Submission, review and lifecycle endpoints
- Engine error to HTTP status mapping
- Batch polling and cancellation
"""

import time
from collections.abc import Iterator

import pytest
from conftest import ScriptedProvider, invoice_payload
from fastapi import status
from fastapi.testclient import TestClient

from services.api.main import app, get_engine
from services.pipeline.service import InvoiceEngine

EDITOR = {"X-User-Id": "alice", "X-User-Role": "editor"}
ADMIN = {"X-User-Id": "root", "X-User-Role": "admin"}
VIEWER = {"X-User-Id": "victor", "X-User-Role": "viewer"}


@pytest.fixture
def client(engine: InvoiceEngine) -> Iterator[TestClient]:
    """Test client whose routes use the scripted engine."""
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def upload(content: bytes, mime_type: str = "application/pdf") -> dict[str, tuple]:
    return {"file": ("invoice.pdf", content, mime_type)}


def submit(client: TestClient, content: bytes) -> dict:
    response = client.post("/api/v1/invoices", files=upload(content), headers=EDITOR)
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


def test_health_check(client: TestClient) -> None:
    """Test health check endpoint."""
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "invoice-reconciliation-engine"


def test_readiness_check(client: TestClient) -> None:
    """Readiness does not depend on the archive when it is disabled."""
    response = client.get("/ready")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["ready"] is True
    assert data["storage_enabled"] is False


def test_metrics_endpoint(client: TestClient) -> None:
    """Test Prometheus metrics endpoint."""
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == status.HTTP_200_OK
    assert "http_requests_total" in response.text
    assert "invoice_submissions_total" in response.text


class TestSubmission:
    def test_submit_and_fetch(self, client: TestClient, provider: ScriptedProvider) -> None:
        provider.payloads[b"inv-1"] = invoice_payload()

        created = submit(client, b"inv-1")
        response = client.get(f"/api/v1/invoices/{created['invoice_id']}")

        assert created["status"] == "Validated"
        assert created["version"] == 1
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["document_ref"] == "A-100"

    def test_resubmission_returns_same_id(
        self, client: TestClient, provider: ScriptedProvider
    ) -> None:
        provider.payloads[b"inv-1"] = invoice_payload()

        first = submit(client, b"inv-1")
        second = submit(client, b"inv-1")

        assert first["invoice_id"] == second["invoice_id"]

    def test_missing_identity_header(self, client: TestClient) -> None:
        response = client.post("/api/v1/invoices", files=upload(b"inv-1"))

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_viewer_cannot_submit(self, client: TestClient) -> None:
        response = client.post("/api/v1/invoices", files=upload(b"inv-1"), headers=VIEWER)

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["error"] == "PermissionDeniedError"

    def test_unsupported_type(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/invoices", files=upload(b"hello", "text/plain"), headers=EDITOR
        )

        assert response.status_code == status.HTTP_415_UNSUPPORTED_MEDIA_TYPE

    def test_empty_file(self, client: TestClient) -> None:
        response = client.post("/api/v1/invoices", files=upload(b""), headers=EDITOR)

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_unknown_invoice(self, client: TestClient) -> None:
        response = client.get("/api/v1/invoices/missing")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "InvoiceNotFoundError"

    def test_bulk_submit_keeps_order(self, client: TestClient, provider: ScriptedProvider) -> None:
        provider.payloads[b"inv-1"] = invoice_payload(ref="A-1")
        provider.payloads[b"inv-2"] = invoice_payload(ref="A-2", issue_date=None)
        files = [
            ("files", ("a.pdf", b"inv-1", "application/pdf")),
            ("files", ("b.pdf", b"inv-2", "application/pdf")),
        ]

        response = client.post("/api/v1/invoices/bulk", files=files, headers=EDITOR)

        assert response.status_code == status.HTTP_200_OK
        results = response.json()
        assert [result["index"] for result in results] == [0, 1]
        assert [result["status"] for result in results] == ["Validated", "PendingReview"]


class TestReview:
    def test_missing_fields_and_resolution(
        self, client: TestClient, provider: ScriptedProvider
    ) -> None:
        provider.payloads[b"inv-1"] = invoice_payload(issue_date=None)
        created = submit(client, b"inv-1")
        invoice_id = created["invoice_id"]

        view = client.get(f"/api/v1/invoices/{invoice_id}/missing-fields").json()
        response = client.patch(
            f"/api/v1/invoices/{invoice_id}/fields",
            json={"values": {"issue_date": "2024-03-02"}, "expected_version": view["version"]},
            headers=EDITOR,
        )

        assert view["missing_fields"] == ["issue_date"]
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "Validated"

    def test_stale_version_conflict(self, client: TestClient, provider: ScriptedProvider) -> None:
        provider.payloads[b"inv-1"] = invoice_payload(issue_date=None)
        invoice_id = submit(client, b"inv-1")["invoice_id"]

        response = client.patch(
            f"/api/v1/invoices/{invoice_id}/fields",
            json={"values": {"issue_date": "2024-03-02"}, "expected_version": 7},
            headers=EDITOR,
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["current_version"] == 1

    def test_invalid_field(self, client: TestClient, provider: ScriptedProvider) -> None:
        provider.payloads[b"inv-1"] = invoice_payload(issue_date=None)
        invoice_id = submit(client, b"inv-1")["invoice_id"]

        response = client.patch(
            f"/api/v1/invoices/{invoice_id}/fields",
            json={"values": {"issue_date": "someday"}, "expected_version": 1},
            headers=EDITOR,
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["error"] == "InvalidFieldError"
    def test_create_supplier_for_invoice(
        self, client: TestClient, provider: ScriptedProvider
    ) -> None:
        provider.payloads[b"inv-1"] = invoice_payload()
        created = submit(client, b"inv-1")

        response = client.post(
            f"/api/v1/invoices/{created['invoice_id']}/supplier/new",
            json={"legal_name": "Acme de Occidente", "tax_id": None, "expected_version": 1},
            headers=EDITOR,
        )
        suppliers = client.get("/api/v1/suppliers").json()

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["version"] == 2
        assert response.json()["supplier_ref"] in {supplier["id"] for supplier in suppliers}
        assert len(suppliers) == 2

    def test_manual_invoice_entry(self, client: TestClient) -> None:
        values = {
            "supplier_name_raw": "ACME Corp.",
            "document_ref": "M-1",
            "issue_date": "2024-03-01",
            "line_items": [{"description": "Steel bolt", "quantity": 10, "unit_price": 100}],
            "subtotal": "1000",
            "total": "1000",
        }

        response = client.post("/api/v1/invoices/manual", json={"values": values}, headers=EDITOR)
        forbidden = client.post(
            "/api/v1/invoices/manual", json={"values": values}, headers=VIEWER
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["status"] == "Validated"
        assert response.json()["mime_type"] == "application/x-manual-entry"
        assert forbidden.status_code == status.HTTP_403_FORBIDDEN

    def test_document_requires_archive(
        self, client: TestClient, provider: ScriptedProvider
    ) -> None:
        provider.payloads[b"inv-1"] = invoice_payload()
        invoice_id = submit(client, b"inv-1")["invoice_id"]

        document = client.get(f"/api/v1/invoices/{invoice_id}/document")
        link = client.get(f"/api/v1/invoices/{invoice_id}/document-url")

        assert document.status_code == status.HTTP_404_NOT_FOUND
        assert document.json()["error"] == "DocumentNotArchivedError"
        assert link.status_code == status.HTTP_404_NOT_FOUND


class TestLifecycle:
    def test_finalize_then_delete(self, client: TestClient, provider: ScriptedProvider) -> None:
        provider.payloads[b"inv-1"] = invoice_payload()
        invoice_id = submit(client, b"inv-1")["invoice_id"]

        finalized = client.post(
            f"/api/v1/invoices/{invoice_id}/finalize",
            json={"expected_version": 1},
            headers=EDITOR,
        )
        no_reason = client.post(
            f"/api/v1/invoices/{invoice_id}/delete",
            json={"expected_version": 2, "reason": "  "},
            headers=ADMIN,
        )
        deleted = client.post(
            f"/api/v1/invoices/{invoice_id}/delete",
            json={"expected_version": 2, "reason": "Duplicate of A-99"},
            headers=ADMIN,
        )
        history = client.get("/api/v1/deleted-invoices", params={"reason": "duplicate"})

        assert finalized.json()["status"] == "Finalized"
        assert no_reason.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert deleted.json()["status"] == "Deleted"
        assert [record["invoice_id"] for record in history.json()] == [invoice_id]

    def test_finalize_pending_invoice_is_rejected(
        self, client: TestClient, provider: ScriptedProvider
    ) -> None:
        provider.payloads[b"inv-1"] = invoice_payload(issue_date=None)
        invoice_id = submit(client, b"inv-1")["invoice_id"]

        response = client.post(
            f"/api/v1/invoices/{invoice_id}/finalize",
            json={"expected_version": 1},
            headers=EDITOR,
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error"] == "InvalidTransitionError"

    def test_bulk_finalize_reports_each_invoice(
        self, client: TestClient, provider: ScriptedProvider
    ) -> None:
        provider.payloads[b"inv-1"] = invoice_payload()
        invoice_id = submit(client, b"inv-1")["invoice_id"]

        response = client.post(
            "/api/v1/invoices/bulk-finalize",
            json={"invoice_ids": [invoice_id, "missing"]},
            headers=EDITOR,
        )

        results = response.json()
        assert response.status_code == status.HTTP_200_OK
        assert results[0]["success"] is True
        assert results[1]["success"] is False


class TestBatches:
    def test_batch_can_be_polled_to_completion(
        self, client: TestClient, provider: ScriptedProvider
    ) -> None:
        files = []
        for i in range(4):
            content = f"inv-{i}".encode()
            provider.payloads[content] = invoice_payload(ref=f"A-{i}")
            files.append(("files", (f"{i}.pdf", content, "application/pdf")))

        started = client.post("/api/v1/batches", files=files, headers=EDITOR)
        batch_id = started.json()["batch_id"]
        batch = started.json()
        for _ in range(100):
            batch = client.get(f"/api/v1/batches/{batch_id}").json()
            if batch["done"]:
                break
            time.sleep(0.01)

        assert started.status_code == status.HTTP_202_ACCEPTED
        assert batch["done"] is True
        assert batch["completed"] == 4
        assert all(result["status"] == "Validated" for result in batch["results"])

    def test_unknown_batch(self, client: TestClient) -> None:
        response = client.get("/api/v1/batches/missing")

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestRemissions:
    def test_register_and_list_remission(
        self, client: TestClient, provider: ScriptedProvider
    ) -> None:
        provider.payloads[b"inv-1"] = invoice_payload()
        submit(client, b"inv-1")
        supplier_id = client.get("/api/v1/suppliers").json()[0]["id"]

        response = client.post(
            "/api/v1/remissions",
            json={
                "supplier_ref": supplier_id,
                "document_ref": "R-1",
                "delivered_on": "2024-02-28",
                "delivered_items": [
                    {"sku": "BOLT-1", "description": "Steel bolt", "quantity": "10"}
                ],
            },
            headers=EDITOR,
        )
        listed = client.get("/api/v1/remissions", params={"supplier_id": supplier_id})

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["supplier_ref"] == supplier_id
        assert [record["document_ref"] for record in listed.json()] == ["R-1"]

    def test_statement_for_unknown_supplier(self, client: TestClient) -> None:
        response = client.get("/api/v1/suppliers/missing/statement")

        assert response.status_code == status.HTTP_404_NOT_FOUND
