from __future__ import annotations

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from rentbilling.config import settings
from rentbilling.main import create_app

OPS = {"X-Org-Slug": "acme", "X-User-Email": "landlord@acme.local"}


def _tenant_headers(tenant_id, email="resident@acme.local"):
    return {
        "X-Org-Slug": "acme",
        "X-User-Email": email,
        "X-User-Role": "tenant",
        "X-Tenant-Id": str(tenant_id),
    }


@pytest.fixture
def client():
    with TestClient(create_app()) as c:
        yield c


@pytest.fixture
def march(client, make_tenant):
    a = make_tenant(rent="5000", due_day=5, unit_number="C1")
    b = make_tenant(rent="7000", due_day=5, unit_number="C2")
    r = client.post("/api/invoices/generate", json={"year": 2026, "month": 3, "as_of": "2026-03-01"}, headers=OPS)
    assert r.status_code == 200, r.text
    return a, b, r.json()


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.headers.get("X-Request-ID")

    echoed = client.get("/api/health", headers={"X-Request-ID": "req-abc"})
    assert echoed.headers["X-Request-ID"] == "req-abc"


def test_generate_and_fetch(client, march):
    a, _, summary = march
    assert summary["created"] == 2
    assert summary["failed"] == 0

    again = client.post("/api/invoices/generate", json={"year": 2026, "month": 3, "as_of": "2026-03-01"}, headers=OPS)
    assert again.json()["created"] == 0
    assert again.json()["skipped"] == 2

    inv_id = summary["invoice_ids"][0]
    r = client.get(f"/api/invoices/{inv_id}", headers=OPS)
    assert r.status_code == 200
    body = r.json()
    assert body["tenant_id"] == a.id
    assert body["due_date"] == "2026-03-05"
    assert Decimal(body["balance"]) == Decimal("5000")
    assert [l["line_type"] for l in body["line_items"]] == ["rent"]


def test_generate_requires_operator(client, march):
    a, _, _ = march
    r = client.post(
        "/api/invoices/generate", json={"year": 2026, "month": 4}, headers=_tenant_headers(a.id, "t-gen@acme.local")
    )
    assert r.status_code == 403


def test_tenant_visibility(client, march):
    a, b, summary = march
    mine, theirs = summary["invoice_ids"]

    assert client.get(f"/api/invoices/{mine}", headers=_tenant_headers(a.id)).status_code == 200

    r = client.get(f"/api/invoices/{theirs}", headers=_tenant_headers(a.id))
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"

    listed = client.get("/api/invoices", headers=_tenant_headers(a.id)).json()
    assert [i["tenant_id"] for i in listed] == [a.id]


def test_tenant_login_without_lease_is_rejected(client, march):
    headers = {"X-Org-Slug": "acme", "X-User-Email": "nolease@acme.local", "X-User-Role": "tenant"}
    assert client.get("/api/invoices", headers=headers).status_code == 403


def test_other_org_gets_not_found(client, march):
    _, _, summary = march
    r = client.get(
        f"/api/invoices/{summary['invoice_ids'][0]}",
        headers={"X-Org-Slug": "elsewhere", "X-User-Email": "boss@elsewhere.local"},
    )
    assert r.status_code == 404
    assert r.json() == {"detail": "invoice not found", "error": "not_found"}


def test_missing_org_header_is_unauthorized(client):
    assert client.get("/api/invoices").status_code == 401


def test_org_header_name_comes_from_settings(client, monkeypatch):
    monkeypatch.setattr(settings, "dev_header_org_slug", "X-Workspace")

    renamed = {"X-Workspace": "acme", "X-User-Email": "landlord@acme.local"}
    assert client.get("/api/invoices", headers=renamed).status_code == 200
    assert client.get("/api/invoices", headers=OPS).status_code == 401


def test_record_payment_and_balance(client, march):
    a, _, summary = march
    r = client.post(
        "/api/payments",
        json={"tenant_id": a.id, "amount": "6000", "transaction_reference": "BANK-1", "method": "bank_transfer"},
        headers=OPS,
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["created"] is True
    assert [x["invoice_id"] for x in body["allocation"]["allocations"]] == [summary["invoice_ids"][0]]
    assert Decimal(body["allocation"]["unallocated"]) == Decimal("1000")

    bal = client.get(f"/api/tenants/{a.id}/balance", headers=_tenant_headers(a.id)).json()
    assert Decimal(bal["credit"]) == Decimal("1000")
    assert Decimal(bal["outstanding"]) == Decimal("0")

    dup = client.post(
        "/api/payments",
        json={"tenant_id": a.id, "amount": "6000", "transaction_reference": "BANK-1", "method": "bank_transfer"},
        headers=OPS,
    )
    assert dup.json()["created"] is False
    assert dup.json()["payment"]["id"] == body["payment"]["id"]


def test_invalid_payment_error_shape(client, march):
    a, _, _ = march
    r = client.post("/api/payments", json={"tenant_id": a.id, "amount": "-5"}, headers=OPS)
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_argument"


def test_reference_conflict_is_retryable(client, march):
    a, _, _ = march
    client.post("/api/payments", json={"tenant_id": a.id, "amount": "100", "transaction_reference": "R-1"}, headers=OPS)
    r = client.post("/api/payments", json={"tenant_id": a.id, "amount": "200", "transaction_reference": "R-1"}, headers=OPS)
    assert r.status_code == 409
    assert r.json()["error"] == "conflict"
    assert r.json()["retryable"] is True


def test_webhook_payment(client, march):
    _, b, summary = march
    payload = {"account_reference": "c2", "amount": "7000", "transaction_reference": "MP-123"}

    r = client.post("/api/payments/webhook", json=payload, headers=OPS)
    assert r.status_code == 200, r.text
    assert r.json()["payment"]["tenant_id"] == b.id

    inv = client.get(f"/api/invoices/{summary['invoice_ids'][1]}", headers=OPS).json()
    assert inv["status"] == "paid"

    assert client.post("/api/payments/webhook", json=payload, headers=OPS).json()["created"] is False


def test_recalculate_and_void(client, march):
    a, _, summary = march
    inv_id = summary["invoice_ids"][0]

    r = client.post(f"/api/invoices/{inv_id}/recalculate", headers=OPS)
    assert r.status_code == 200
    assert "changed" in r.json()

    operator = {"X-Org-Slug": "acme", "X-User-Email": "clerk@acme.local", "X-User-Role": "operator"}
    assert client.post(f"/api/invoices/{inv_id}/void", json={"reason": "duplicate"}, headers=operator).status_code == 403

    r = client.post(f"/api/invoices/{inv_id}/void", json={"reason": "duplicate"}, headers=OPS)
    assert r.status_code == 200
    assert r.json()["status"] == "void"


def test_metrics_endpoint(client, march):
    r = client.get("/api/metrics")
    assert r.status_code == 200
    assert "rentbilling_invoices_created_total" in r.text
    assert "rentbilling_http_responses_2xx_total" in r.text
