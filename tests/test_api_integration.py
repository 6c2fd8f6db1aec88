"""
Integration tests for the Voucher Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from voucher_ledger.api_modular import app
from voucher_ledger.api_modular.dependencies import LedgerSystem, get_ledger_system
from voucher_ledger.config import LedgerConfig


@pytest.fixture
def system():
    """In-memory ledger system for one test"""
    return LedgerSystem(use_sqlite=False, config=LedgerConfig())


@pytest.fixture
def client(system):
    """Create a test client wired to the in-memory ledger system"""
    app.dependency_overrides[get_ledger_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_budget_line(client, account_id="OFFICE-001", allocated="10000.00", spent="2000.00"):
    r = client.post("/accounts", json={
        "name": "Office Supplies",
        "kind": "budget_line",
        "currency": "GHS",
        "allocated_amount": allocated,
        "total_spend_to_date": spent,
        "account_id": account_id
    })
    assert r.status_code == 201
    return r.json()["account_id"]


def stage_payment(client, vendor="Acme", amount="500.00", budget_line="OFFICE-001", **extra):
    payload = {
        "vendor": vendor,
        "invoice_no": "INV-1",
        "description": "Stationery",
        "pre_tax_amount": amount,
        "currency": "GHS",
        "budget_line": budget_line
    }
    payload.update(extra)
    r = client.post("/payments", json=payload)
    assert r.status_code == 201
    return r.json()["id"]


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        """Test health endpoint"""
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        """Test root endpoint"""
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert "endpoints" in data
        assert data["name"] == "Voucher Ledger API"


class TestAccountFlow:
    """End-to-end account management tests"""

    def test_create_and_get_account(self, client):
        """Test creating and reading a budget line"""
        create_budget_line(client)

        r = client.get("/accounts/OFFICE-001")
        assert r.status_code == 200
        data = r.json()
        assert data["kind"] == "budget_line"
        assert data["current_balance"] == {"amount": "8000.00", "currency": "GHS"}
        assert data["version"] == 0

    def test_create_account_validation(self, client):
        """Test rejected account input"""
        r = client.post("/accounts", json={
            "name": "Bad", "kind": "piggy_bank", "currency": "GHS", "allocated_amount": "1"
        })
        assert r.status_code == 400

        r = client.post("/accounts", json={
            "name": "Bad", "kind": "bank", "currency": "XYZ", "allocated_amount": "1"
        })
        assert r.status_code == 400

        create_budget_line(client)
        r = client.post("/accounts", json={
            "name": "Again", "kind": "budget_line", "currency": "GHS",
            "allocated_amount": "1", "account_id": "OFFICE-001"
        })
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "VALIDATION_ERROR"

    def test_get_missing_account(self, client):
        """Test 404 for unknown accounts"""
        assert client.get("/accounts/NOPE").status_code == 404
        assert client.get("/accounts/NOPE/ledger").status_code == 404

    def test_list_and_resolve(self, client):
        """Test listing by kind and resolving display strings"""
        create_budget_line(client)
        client.post("/accounts", json={
            "name": "GCB Main", "kind": "bank", "currency": "GHS",
            "allocated_amount": "5000", "account_id": "BANK-GCB"
        })

        r = client.get("/accounts", params={"kind": "bank"})
        assert [a["id"] for a in r.json()["accounts"]] == ["BANK-GCB"]

        r = client.get("/accounts/resolve", params={"reference": "Office Supplies - 4010 - ADMIN"})
        assert r.status_code == 200
        assert r.json()["account_id"] == "OFFICE-001"

        r = client.get("/accounts/resolve", params={"reference": "Catering"})
        assert r.status_code == 404

        r = client.get("/accounts/banks/summary")
        assert r.json()["active_banks"] == 1

    def test_manual_transactions(self, client):
        """Test recording manual outflows and reading the ledger"""
        create_budget_line(client)

        r = client.post("/accounts/OFFICE-001/transactions", json={
            "direction": "outflow", "amount": "250.00", "category": "Bank Charges"
        })
        assert r.status_code == 201
        assert r.json()["new_balance"] == "7750.00"

        r = client.post("/accounts/OFFICE-001/transactions", json={
            "direction": "sideways", "amount": "1"
        })
        assert r.status_code == 400

        r = client.post("/accounts/OFFICE-001/transactions", json={
            "direction": "OUTFLOW", "amount": "abc"
        })
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "VALIDATION_ERROR"

        r = client.post("/accounts/NOPE/transactions", json={
            "direction": "INFLOW", "amount": "1"
        })
        assert r.status_code == 404

        r = client.get("/accounts/OFFICE-001/ledger")
        data = r.json()
        assert len(data["entries"]) == 1
        assert data["entries"][0]["source"] == "MANUAL_ENTRY"
        assert data["conservation"]["valid"]


class TestPaymentFlow:
    """End-to-end payment staging tests"""

    def test_stage_and_get(self, client):
        """Test staging a payment and reading it back"""
        payment_id = stage_payment(client, vat_decision="YES")

        r = client.get(f"/payments/{payment_id}")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "staged"
        assert data["vat_amount"] == "75.00"
        assert data["net_payable"] == "575.00"

        r = client.get("/payments", params={"status": "staged"})
        assert len(r.json()["payments"]) == 1
        assert client.get("/payments", params={"status": "lost"}).status_code == 400
        assert client.get("/payments/nope").status_code == 404

    def test_stage_validation(self, client):
        """Test rejected staging input"""
        r = client.post("/payments", json={
            "vendor": " ", "pre_tax_amount": "10", "currency": "GHS", "budget_line": "X"
        })
        assert r.status_code == 400

        r = client.post("/payments", json={
            "vendor": "Acme", "pre_tax_amount": "10", "currency": "XYZ", "budget_line": "X"
        })
        assert r.status_code == 400

        r = client.post("/payments", json={
            "vendor": "Acme", "pre_tax_amount": "1e30", "currency": "GHS", "budget_line": "X"
        })
        assert r.status_code == 400
        assert "too large" in r.json()["detail"]["message"]


class TestFinalizationFlow:
    """End-to-end finalization and undo tests"""

    def test_finalize_and_undo(self, client):
        """Test the full batch lifecycle over HTTP"""
        create_budget_line(client)
        first = stage_payment(client, vendor="Acme", amount="500.00")
        second = stage_payment(client, vendor="Beta", amount="300.00")

        r = client.post("/finalizations", json={
            "payment_ids": [first, second], "actor_id": "clerk", "voucher_reference": "PV-7"
        })
        assert r.status_code == 200
        result = r.json()
        assert result["success"] is True
        assert result["step"] == "COMPLETED"
        assert result["master_log_count"] == 2
        batch_id = result["batch_id"]

        r = client.get(f"/finalizations/{batch_id}")
        assert r.status_code == 200
        assert r.json()["step"] == "COMPLETED"
        assert r.json()["voucher_reference"] == "PV-7"

        account = client.get("/accounts/OFFICE-001").json()
        assert account["current_balance"]["amount"] == "7200.00"
        assert client.get(f"/payments/{first}").json()["status"] == "finalized"

        r = client.get("/undo")
        assert r.json()["snapshots"][0]["can_undo"] is True

        r = client.post(f"/undo/{batch_id}", json={"actor_id": "supervisor", "reason": "duplicate"})
        assert r.status_code == 200
        assert r.json()["status"] == "undone"
        assert r.json()["accounts"][0]["matches_snapshot"] is True

        account = client.get("/accounts/OFFICE-001").json()
        assert account["current_balance"]["amount"] == "8000.00"

        r = client.post(f"/undo/{batch_id}")
        assert r.status_code == 409
        assert r.json()["detail"]["code"] == "UNDO_ERROR"

        r = client.get("/undo/statistics")
        assert r.json()["by_status"]["undone"] == 1

    def test_finalize_validation_errors(self, client):
        """Test 400 and 404 rejections with no side effects"""
        create_budget_line(client)

        r = client.post("/finalizations", json={"payment_ids": []})
        assert r.status_code == 400

        lost = stage_payment(client, budget_line="Catering - 9999")
        r = client.post("/finalizations", json={"payment_ids": [lost]})
        assert r.status_code == 404
        detail = r.json()["detail"]
        assert detail["code"] == "ACCOUNT_NOT_FOUND"
        assert len(detail["errors"]) == 1

        assert client.get("/accounts/OFFICE-001").json()["version"] == 0
        assert client.get("/finalizations/BATCH-NOPE").status_code == 404
        assert client.post("/undo/BATCH-NOPE").status_code == 409

    def test_failed_batch_is_reported(self, client, system):
        """Test that a failed batch returns 500 and is listed"""
        def explode(*args, **kwargs):
            raise RuntimeError("tax service unavailable")

        system.pipeline.tax_return_log.file_batch_returns = explode
        create_budget_line(client)
        payment = stage_payment(client)

        r = client.post("/finalizations", json={"payment_ids": [payment]})
        assert r.status_code == 500
        data = r.json()
        assert data["success"] is False
        assert data["failed_step"] == "WHT_PROCESSING"

        failures = client.get("/finalizations/failures").json()["failures"]
        assert failures[0]["batch_id"] == data["batch_id"]
