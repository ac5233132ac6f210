"""
Integration tests for the SFD Lending API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from sfd_lending.api import create_app
from sfd_lending.api.system import LendingSystem
from sfd_lending.config import LendingConfig


OFFICER = {"X-Actor-Id": "officer-1"}
MEREF = {"X-Actor-Id": "meref-admin"}


@pytest.fixture
def client():
    """Create a test client over an in-memory lending system"""
    system = LendingSystem(config=LendingConfig(database_url="memory", retry_backoff_seconds=0))
    yield TestClient(create_app(system))
    system.close()


def create_loan(client, **overrides):
    body = {
        "client_id": "client-1",
        "sfd_id": "sfd-1",
        "amount": "120000",
        "duration_months": 12,
        "interest_rate": "0",
        "purpose": "Stock de riz",
    }
    body.update(overrides)
    r = client.post("/loans", json=body)
    assert r.status_code == 201
    return r.json()


def active_loan(client, **overrides):
    loan = create_loan(client, **overrides)
    assert client.post(f"/loans/{loan['id']}/approve", headers=OFFICER).status_code == 200
    r = client.post(f"/loans/{loan['id']}/disburse", json={}, headers=OFFICER)
    assert r.status_code == 200
    return r.json()


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"
        assert r.json()["service"] == "sfd_lending_api"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "loans" in r.json()["endpoints"]


class TestCalculateSchedule:
    """Test the schedule calculation function"""

    def test_calculate_schedule(self, client):
        r = client.post("/functions/calculate-loan-schedule", json={
            "principal": "120000",
            "interestRate": "0",
            "durationMonths": 12,
            "startDate": "2024-01-15",
        })
        assert r.status_code == 200
        data = r.json()
        assert data["monthlyPayment"] == "10000"
        assert data["totalInterest"] == "0"
        assert len(data["schedule"]) == 12
        assert data["schedule"][0]["due_date"] == "2024-02-15"

    def test_snake_case_fields_accepted(self, client):
        r = client.post("/functions/calculate-loan-schedule", json={
            "principal": "1000000",
            "interest_rate": "12",
            "duration_months": 6,
            "start_date": "2024-01-15",
        })
        assert r.status_code == 200
        assert r.json()["monthlyPayment"] == "172548"

    def test_invalid_principal(self, client):
        r = client.post("/functions/calculate-loan-schedule", json={
            "principal": "0",
            "interestRate": "12",
            "durationMonths": 6,
            "startDate": "2024-01-15",
        })
        assert r.status_code == 422
        assert r.json()["error"] == "validation_error"


class TestLoanFlow:
    """End-to-end loan lifecycle"""

    def test_application_to_repayment(self, client):
        loan = active_loan(client)
        assert loan["status"] == "active"
        assert loan["monthly_payment"] == "10000"

        r = client.get(f"/loans/{loan['id']}/schedule")
        assert r.status_code == 200
        assert len(r.json()["installments"]) == 12

        r = client.post("/functions/apply-loan-payment", json={
            "loanId": loan["id"],
            "amount": "15000",
            "method": "mobile_money",
            "transactionId": "momo-001",
        })
        assert r.status_code == 200
        data = r.json()
        assert [row["status"] for row in data["updatedInstallments"]] == ["paid", "partially_paid"]
        assert data["payment"]["payment_method"] == "mobile_money"
        assert data["loanStatus"] == "active"
        assert data["replayed"] is False

        r = client.get(f"/loans/{loan['id']}/summary")
        assert r.json()["paidCount"] == 1
        assert r.json()["totalPaid"] == "15000"

        r = client.get(f"/loans/{loan['id']}/payments")
        assert [p["transaction_id"] for p in r.json()["payments"]] == ["momo-001"]

    def test_replayed_payment(self, client):
        loan = active_loan(client)
        body = {"loanId": loan["id"], "amount": "10000", "transactionId": "cash-42"}

        first = client.post("/functions/apply-loan-payment", json=body).json()
        second = client.post("/functions/apply-loan-payment", json=body).json()

        assert second["replayed"] is True
        assert second["payment"]["id"] == first["payment"]["id"]
        r = client.get(f"/loans/{loan['id']}/summary")
        assert r.json()["totalPaid"] == "10000"

    def test_overpayment_rejected(self, client):
        loan = active_loan(client)

        r = client.post("/functions/apply-loan-payment", json={"loanId": loan["id"], "amount": "130000"})

        assert r.status_code == 409
        assert r.json()["error"] == "overpayment"
        assert r.json()["excess"] == "10000"

    def test_unknown_payment_method(self, client):
        loan = active_loan(client)
        r = client.post("/functions/apply-loan-payment", json={
            "loanId": loan["id"], "amount": "1000", "method": "cheque"
        })
        assert r.status_code == 422

    def test_approve_requires_actor(self, client):
        loan = create_loan(client)
        r = client.post(f"/loans/{loan['id']}/approve")
        assert r.status_code == 422
        assert client.get(f"/loans/{loan['id']}").json()["status"] == "pending"

    def test_rejected_loan_cannot_be_approved(self, client):
        loan = create_loan(client)
        r = client.post(f"/loans/{loan['id']}/reject", json={"notes": "no guarantor"}, headers=OFFICER)
        assert r.status_code == 200
        assert r.json()["status"] == "rejected"

        r = client.post(f"/loans/{loan['id']}/approve", headers=OFFICER)
        assert r.status_code == 409
        assert r.json()["error"] == "invalid_transition"

    def test_unknown_loan(self, client):
        r = client.get("/loans/missing")
        assert r.status_code == 404
        assert r.json()["error"] == "not_found"

    def test_invalid_application(self, client):
        r = client.post("/loans", json={
            "client_id": "client-1", "sfd_id": "sfd-1", "amount": "-5",
            "duration_months": 12, "interest_rate": "0",
        })
        assert r.status_code == 422

    def test_listing_and_sweep(self, client):
        active_loan(client)
        create_loan(client, client_id="client-2")

        assert len(client.get("/loans/client/client-1").json()["loans"]) == 1
        assert len(client.get("/loans/sfd/sfd-1").json()["loans"]) == 2
        assert len(client.get("/loans/sfd/sfd-1", params={"status": "pending"}).json()["loans"]) == 1

        r = client.post("/loans/process-overdue")
        assert r.status_code == 200
        assert r.json()["loans_processed"] == 1
        assert r.json()["late"] == 0

        r = client.get("/loans/upcoming-installments", params={"within_days": 45})
        assert len(r.json()["installments"]) == 1


class TestSubsidyFlow:
    """End-to-end subsidy grant workflows"""

    def _grant(self, client, amount="1000000"):
        r = client.post("/subsidies", json={"sfd_id": "sfd-1", "amount": amount}, headers=MEREF)
        assert r.status_code == 201
        return r.json()

    def test_allocate_requires_actor(self, client):
        r = client.post("/subsidies", json={"sfd_id": "sfd-1", "amount": "1000"})
        assert r.status_code == 422

    def test_disbursement_consumes_grant(self, client):
        grant = self._grant(client)

        loan = active_loan(client, subsidy_amount="20000")

        assert loan["subsidy_id"] == grant["id"]
        r = client.get(f"/subsidies/{grant['id']}")
        assert r.json()["used_amount"] == "20000"
        assert r.json()["remaining_amount"] == "980000"
        usage = client.get(f"/subsidies/{grant['id']}/usage").json()["usage"]
        assert [entry["loan_id"] for entry in usage] == [loan["id"]]

    def test_available_funds(self, client):
        grant = self._grant(client, "50000")

        r = client.get(f"/subsidies/{grant['id']}/available", params={"amount": "50000"})
        assert r.json()["available"] is True
        r = client.get(f"/subsidies/{grant['id']}/available", params={"amount": "50001"})
        assert r.json()["available"] is False

    def test_insufficient_grant_blocks_disbursement(self, client):
        self._grant(client, "10000")
        loan = create_loan(client, subsidy_amount="20000")
        client.post(f"/loans/{loan['id']}/approve", headers=OFFICER)

        r = client.post(f"/loans/{loan['id']}/disburse", json={}, headers=OFFICER)

        assert r.status_code == 409
        assert r.json()["error"] == "insufficient_funds"
        assert client.get(f"/loans/{loan['id']}").json()["status"] == "approved"

    def test_revoked_grant(self, client):
        grant = self._grant(client)
        r = client.post(f"/subsidies/{grant['id']}/revoke", headers=MEREF)
        assert r.status_code == 200
        assert r.json()["status"] == "revoked"

        loan = create_loan(client, subsidy_amount="20000")
        client.post(f"/loans/{loan['id']}/approve", headers=OFFICER)
        r = client.post(f"/loans/{loan['id']}/disburse", json={"subsidy_id": grant["id"]}, headers=OFFICER)

        assert r.status_code == 409
        assert r.json()["error"] == "grant_inactive"
        assert client.get("/subsidies/sfd/sfd-1", params={"status": "revoked"}).json()["grants"][0]["id"] == grant["id"]

    def test_grant_of_another_sfd_rejected(self, client):
        r = client.post("/subsidies", json={"sfd_id": "sfd-2", "amount": "500000"}, headers=MEREF)
        foreign = r.json()
        loan = create_loan(client, subsidy_amount="50000")
        client.post(f"/loans/{loan['id']}/approve", headers=OFFICER)

        r = client.post(f"/loans/{loan['id']}/disburse", json={"subsidy_id": foreign["id"]}, headers=OFFICER)

        assert r.status_code == 422
        assert r.json()["error"] == "validation_error"
        assert r.json()["field"] == "subsidy_id"
        assert client.get(f"/loans/{loan['id']}").json()["status"] == "approved"
        assert client.get(f"/subsidies/{foreign['id']}").json()["used_amount"] == "0"
