"""
Integration tests for the Yield Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from yield_ledger.api import create_app
from yield_ledger.api.deps import get_ledger_system
from yield_ledger.config import YieldLedgerConfig
from yield_ledger.storage import InMemoryStorage
from yield_ledger.system import LedgerSystem


@pytest.fixture
def system():
    """In-memory ledger system for one test"""
    return LedgerSystem(InMemoryStorage(), YieldLedgerConfig(database_url="memory://"))


@pytest.fixture
def client(system):
    """Create a test client serving the in-memory system"""
    app = create_app()
    app.dependency_overrides[get_ledger_system] = lambda: system
    return TestClient(app)


def open_account(client, owner_id=1, principal="1000.00"):
    r = client.post("/accounts", json={"owner_id": owner_id, "principal_amount": principal})
    assert r.status_code == 201
    return r.json()["account_id"]


def create_deposit(client, principal, start_date="2024-01-15", owner_id=1):
    r = client.post("/yield-deposits", json={
        "owner_id": owner_id,
        "principal_amount": principal,
        "annual_yield_rate": "0.12",
        "start_date": start_date
    })
    assert r.status_code == 201
    return r.json()["deposit"]


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "Yield Ledger API"
        assert "yield-deposits" in data["endpoints"]


class TestAccountFlow:
    """Loan account endpoints"""

    def test_open_and_get_account(self, client):
        account_id = open_account(client, principal="10000.00")

        r = client.get(f"/accounts/{account_id}")
        assert r.status_code == 200
        data = r.json()
        assert data["current_balance"] == "10000.00"
        assert data["monthly_rate"] == "0.0100"
        assert data["account_number"] == f"LN{account_id:08d}"

    def test_duplicate_account_conflicts(self, client):
        open_account(client)
        r = client.post("/accounts", json={"owner_id": 1, "principal_amount": "5.00"})
        assert r.status_code == 409

    def test_missing_account(self, client):
        assert client.get("/accounts/999").status_code == 404

    def test_post_and_list_transactions(self, client):
        account_id = open_account(client)

        r = client.post(f"/accounts/{account_id}/transactions", json={
            "amount": "25.00",
            "transaction_type": "bonus",
            "description": "Loyalty bonus",
            "effective_date": "2025-01-31",
            "bonus_percentage": "0.025"
        })
        assert r.status_code == 201
        assert r.json()["new_balance"] == "1025.00"

        r = client.get(f"/accounts/{account_id}/transactions", params={"transaction_type": "bonus"})
        assert r.status_code == 200
        transactions = r.json()["transactions"]
        assert len(transactions) == 1
        assert transactions[0]["amount"] == "25.00"
        assert transactions[0]["bonus_percentage"] == "0.0250"

    def test_invalid_transaction_is_rejected(self, client):
        account_id = open_account(client)

        r = client.post(f"/accounts/{account_id}/transactions", json={
            "amount": "25.00",
            "transaction_type": "gift",
            "description": "Unknown",
            "effective_date": "2025-01-31"
        })
        assert r.status_code == 422

        r = client.post(f"/accounts/{account_id}/transactions", json={
            "amount": "25.00",
            "transaction_type": "withdrawal",
            "description": "Wrong sign",
            "effective_date": "2025-01-31"
        })
        assert r.status_code == 422

    def test_monthly_summary_and_reconcile(self, client):
        account_id = open_account(client)
        create_deposit(client, "500.00", start_date="2025-01-10")

        r = client.get(f"/accounts/{account_id}/monthly-summary")
        assert r.status_code == 200
        months = r.json()["months"]
        assert months[0]["month_end_date"] == "2025-01-31"
        assert months[0]["deposits"] == "500.00"
        assert months[0]["ending_balance"] == "1500.00"

        r = client.get(f"/accounts/{account_id}/reconcile")
        assert r.status_code == 200
        assert r.json()["consistent"] is True


class TestDepositFlow:
    """Yield deposit and payout endpoints"""

    def test_create_and_get_deposit(self, client):
        open_account(client)
        deposit = create_deposit(client, "10000.00")

        assert deposit["annual_payout"] == "1200.00"
        assert deposit["status"] == "active"

        r = client.get(f"/yield-deposits/{deposit['id']}")
        assert r.status_code == 200
        assert r.json()["payouts"] == []

    def test_deposit_requires_account(self, client):
        r = client.post("/yield-deposits", json={
            "owner_id": 5, "principal_amount": "100.00", "start_date": "2024-01-01"
        })
        assert r.status_code == 404

    def test_list_and_update_deposits(self, client):
        open_account(client)
        first = create_deposit(client, "100.00", start_date="2023-01-01")
        second = create_deposit(client, "200.00", start_date="2024-01-01")

        r = client.patch(f"/yield-deposits/{first['id']}", json={"status": "inactive"})
        assert r.status_code == 200
        assert r.json()["deposit"]["status"] == "inactive"

        r = client.get("/yield-deposits", params={"status": "active"})
        assert [d["id"] for d in r.json()["deposits"]] == [second["id"]]

        assert client.get("/yield-deposits", params={"status": "bogus"}).status_code == 422
        assert client.patch(f"/yield-deposits/{second['id']}", json={}).status_code == 422

    def test_process_payout_once(self, client):
        open_account(client)
        deposit = create_deposit(client, "10000.00")

        r = client.post(f"/yield-deposits/{deposit['id']}/payouts", json={"payout_date": "2025-01-15"})
        assert r.status_code == 201
        assert r.json()["amount"] == "1200.00"

        r = client.post(f"/yield-deposits/{deposit['id']}/payouts", json={"payout_date": "2025-01-15"})
        assert r.status_code == 409

        r = client.get(f"/yield-deposits/{deposit['id']}")
        assert len(r.json()["payouts"]) == 1

    def test_run_payouts_and_status(self, client):
        open_account(client)
        deposit = create_deposit(client, "10000.00")

        r = client.get("/yield-deposits/payout-status", params={"on_date": "2025-01-15"})
        assert r.json()["pending_count"] == 1
        assert r.json()["pending_amount"] == "1200.00"

        r = client.post("/yield-deposits/payouts/run", json={"as_of": "2025-01-15", "dry_run": True})
        assert r.status_code == 200
        data = r.json()
        assert data["processed"] == 1
        assert data["details"][0]["status"] == "would_process"
        assert data["details"][0]["amount"] == "1200.00"

        r = client.post("/yield-deposits/payouts/run", json={"as_of": "2025-01-15"})
        assert r.json()["processed"] == 1

        r = client.get("/yield-deposits/payout-status", params={"on_date": "2025-01-15"})
        assert r.json()["payments_count"] == 1
        assert r.json()["pending_count"] == 0
        assert client.get(f"/yield-deposits/{deposit['id']}").json()["deposit"]["last_payout_date"] == "2025-01-15"


class TestWithdrawalFlow:
    """Withdrawal request endpoints"""

    def test_withdrawal_lifecycle(self, client):
        account_id = open_account(client)
        older = create_deposit(client, "5000.00", start_date="2024-01-01")
        newest = create_deposit(client, "4000.00", start_date="2024-06-01")

        r = client.post("/withdrawal-requests", json={
            "owner_id": 1, "amount": "6000.00", "reason": "Tuition", "urgency": "high"
        })
        assert r.status_code == 201
        request_id = r.json()["request"]["id"]
        assert r.json()["request"]["status"] == "pending"

        r = client.post(f"/withdrawal-requests/{request_id}/approve", json={"actor_id": 2})
        assert r.status_code == 200
        assert r.json()["request"]["status"] == "approved"

        r = client.post(f"/withdrawal-requests/{request_id}/complete",
                        json={"actor_id": 2, "admin_notes": "Wired"})
        assert r.status_code == 200
        data = r.json()
        assert data["new_balance"] == "4000.00"
        assert data["shortfall"] == "0.00"
        assert [(d["deposit_id"], d["new_amount"]) for d in data["deposit_reductions"]] == [
            (newest["id"], "0.00"), (older["id"], "3000.00")
        ]

        assert client.get(f"/accounts/{account_id}").json()["current_balance"] == "4000.00"
        assert client.get(f"/withdrawal-requests/{request_id}").json()["status"] == "processed"

        r = client.post(f"/withdrawal-requests/{request_id}/complete", json={"actor_id": 2})
        assert r.status_code == 409

    def test_reject_request(self, client):
        open_account(client)
        r = client.post("/withdrawal-requests", json={"owner_id": 1, "amount": "10.00", "reason": "Test"})
        request_id = r.json()["request"]["id"]

        r = client.post(f"/withdrawal-requests/{request_id}/reject",
                        json={"actor_id": 2, "admin_notes": "Not eligible"})
        assert r.status_code == 200
        assert r.json()["request"]["admin_notes"] == "Not eligible"

        r = client.post(f"/withdrawal-requests/{request_id}/approve", json={"actor_id": 2})
        assert r.status_code == 409

        r = client.get("/withdrawal-requests", params={"status": "rejected"})
        assert [req["id"] for req in r.json()["requests"]] == [request_id]

    def test_request_errors(self, client):
        open_account(client)

        r = client.post("/withdrawal-requests", json={"owner_id": 1, "amount": "5000.00", "reason": "Too much"})
        assert r.status_code == 400

        r = client.post("/withdrawal-requests", json={"owner_id": 1, "amount": "10.00", "reason": "Test",
                                                      "urgency": "whenever"})
        assert r.status_code == 422

        r = client.post("/withdrawal-requests", json={"owner_id": 1, "reason": "Missing amount"})
        assert r.status_code == 422

        assert client.get("/withdrawal-requests/999").status_code == 404
