"""
Integration tests for the Gold Lending API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from gold_lending.api import create_app
from conftest import MutableClock, make_system, gold_chain, utc


@pytest.fixture
def clock():
    return MutableClock(utc(2024, 1, 17))


@pytest.fixture
def lending_system(clock):
    system = make_system(clock)
    yield system
    system.shutdown()


@pytest.fixture
def client(lending_system):
    """Test client without lifespan so the overdue scheduler never starts"""
    return TestClient(create_app(lending_system))


def create_loan(client, customer_id="CUST001", **overrides):
    payload = {
        "customer_id": customer_id,
        "principal_amount": "100000",
        "interest_rate": "12",
        "tenure_months": 12,
        "gold_items": [gold_chain()],
        "created_by": "officer1",
    }
    payload.update(overrides)
    r = client.post("/loans", json=payload)
    assert r.status_code == 201
    return r.json()["loan"]


def disbursed_loan(client, customer_id="CUST001"):
    loan = create_loan(client, customer_id=customer_id)
    r = client.post(f"/loans/{loan['id']}/disburse", json={"disbursed_by": "officer1"})
    assert r.status_code == 200
    return r.json()["loan"]


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["overdue_scheduler_running"] is False

    def test_root(self, client):
        data = client.get("/").json()
        assert data["name"] == "Gold Lending API"
        assert data["endpoints"]["loans"] == "/loans"


class TestLoanFlow:
    """End-to-end loan lifecycle tests"""

    def test_create_loan(self, client):
        loan = create_loan(client)

        assert loan["status"] == "PENDING"
        assert loan["emi_amount"] == "8884.88"
        assert loan["ltv_ratio"] == "80.00"
        assert loan["loan_number"] == "GL240117000001"

    def test_get_loan_includes_gold_items(self, client):
        loan = create_loan(client)

        data = client.get(f"/loans/{loan['id']}").json()
        assert data["loan"]["id"] == loan["id"]
        assert len(data["gold_items"]) == 1
        assert data["gold_items"][0]["purity"] == "22K"

    def test_invalid_principal(self, client):
        r = client.post("/loans", json={
            "customer_id": "CUST001",
            "principal_amount": "500",
            "interest_rate": "12",
            "tenure_months": 12
        })
        assert r.status_code == 400
        assert r.json()["success"] is False
        assert "at least" in r.json()["detail"]

    def test_missing_field(self, client):
        r = client.post("/loans", json={"customer_id": "CUST001"})
        assert r.status_code == 422

    def test_missing_loan(self, client):
        r = client.get("/loans/does-not-exist")
        assert r.status_code == 404
        assert r.json()["success"] is False

    def test_approve_twice(self, client):
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/approve", json={"approved_by": "manager1"})
        assert r.status_code == 200
        assert r.json()["loan"]["status"] == "APPROVED"

        r = client.post(f"/loans/{loan['id']}/approve", json={"approved_by": "manager1"})
        assert r.status_code == 409

    def test_reject_needs_remarks(self, client):
        loan = create_loan(client)

        assert client.post(f"/loans/{loan['id']}/reject", json={}).status_code == 422

        r = client.post(f"/loans/{loan['id']}/reject", json={"remarks": "Purity not verified"})
        assert r.status_code == 200
        assert r.json()["loan"]["status"] == "REJECTED"

    def test_disburse(self, client):
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/disburse", json={})
        assert r.status_code == 200
        data = r.json()
        assert data["loan"]["status"] == "ACTIVE"
        assert data["payment"]["payment_type"] == "DISBURSEMENT"
        assert data["payment"]["amount"] == "100000.00"
        assert data["payment"]["payment_method"] == "BANK_TRANSFER"

    def test_list_loans_by_status(self, client):
        disbursed_loan(client)
        create_loan(client, customer_id="CUST002")

        data = client.get("/loans", params={"status": "active"}).json()
        assert data["total"] == 1
        assert client.get("/loans", params={"customer_id": "CUST002"}).json()["total"] == 1

        assert client.get("/loans", params={"status": "SETTLED"}).status_code == 400

    def test_schedule(self, client):
        loan = disbursed_loan(client)

        data = client.get(f"/loans/{loan['id']}/schedule").json()
        assert data["emi_amount"] == "8884.88"
        assert len(data["schedule"]) == 12
        assert data["schedule"][0]["closing_balance"] == "92115.12"
        assert data["schedule"][0]["status"] == "PENDING"

    def test_schedule_before_disbursement(self, client):
        loan = create_loan(client)
        assert client.get(f"/loans/{loan['id']}/schedule").status_code == 409


class TestPaymentFlow:
    """End-to-end repayment tests"""

    def test_record_payment(self, client, clock):
        loan = disbursed_loan(client)
        clock.set(2024, 2, 17)

        r = client.post("/payments", json={
            "loan_id": loan["id"],
            "amount": "8884.88",
            "payment_type": "EMI"
        })
        assert r.status_code == 201
        data = r.json()
        assert data["loan"]["outstanding_balance"] == "91115.12"
        assert data["loan"]["next_due_date"] == "2024-03-17T00:00:00+00:00"
        assert data["payment"]["receipt_number"].startswith("RCP")

    def test_bad_payment_type(self, client):
        loan = disbursed_loan(client)

        r = client.post("/payments", json={
            "loan_id": loan["id"], "amount": "100", "payment_type": "BONUS"
        })
        assert r.status_code == 400
        assert "PaymentType" in r.json()["detail"]

    def test_payment_on_pending_loan(self, client):
        loan = create_loan(client)

        r = client.post("/payments", json={
            "loan_id": loan["id"], "amount": "100", "payment_type": "EMI"
        })
        assert r.status_code == 409

    def test_payment_queries(self, client, clock):
        loan = disbursed_loan(client)
        clock.set(2024, 2, 17)
        payment = client.post("/payments", json={
            "loan_id": loan["id"], "amount": "8884.88", "payment_type": "emi"
        }).json()["payment"]

        history = client.get(f"/payments/loan/{loan['id']}").json()
        assert [p["payment_type"] for p in history["payments"]] == ["DISBURSEMENT", "EMI"]

        emis = client.get("/payments", params={"payment_type": "EMI"}).json()
        assert emis["total"] == 1

        in_february = client.get("/payments", params={
            "start_date": "2024-02-01", "end_date": "2024-02-29"
        }).json()
        assert in_february["total"] == 1

        assert client.get(f"/payments/{payment['id']}").json()["payment"]["amount"] == "8884.88"
        assert client.get("/payments/unknown").status_code == 404

    def test_completed_payment_status_is_final(self, client):
        loan = disbursed_loan(client)
        payment = client.get(f"/payments/loan/{loan['id']}").json()["payments"][0]

        r = client.put(f"/payments/{payment['id']}/status", json={"status": "CANCELLED"})
        assert r.status_code == 409

    def test_reconciliation(self, client, clock):
        loan = disbursed_loan(client)
        clock.set(2024, 2, 17)
        client.post("/payments", json={"loan_id": loan["id"], "amount": "8884.88", "payment_type": "EMI"})

        report = client.get(f"/loans/{loan['id']}/reconciliation").json()
        assert report["has_drift"] is False
        assert report["expected_outstanding"] == "91115.12"

        data = client.post(f"/loans/{loan['id']}/reconcile").json()
        assert data["loan"]["outstanding_balance"] == "91115.12"

        result = client.post("/reports/reconciliation/run-all").json()
        assert result["total_checked"] == 1
        assert result["repaired_count"] == 0


class TestGoldItemEndpoints:
    """Collateral management tests"""

    def test_add_gold_item(self, client):
        loan = create_loan(client)

        r = client.post("/gold-items", json={"loan_id": loan["id"], **gold_chain()})
        assert r.status_code == 201
        assert r.json()["loan"]["ltv_ratio"] == "40.00"

        summary = client.get(f"/gold-items/loan/{loan['id']}/summary").json()
        assert summary["total_items"] == 2
        assert summary["pledged_items"] == 2

    def test_bad_purity(self, client):
        loan = create_loan(client)
        item = dict(gold_chain(), purity="9K")

        r = client.post("/gold-items", json={"loan_id": loan["id"], **item})
        assert r.status_code == 400

    def test_release_before_completion(self, client):
        loan = disbursed_loan(client)
        item = client.get(f"/gold-items/loan/{loan['id']}").json()["gold_items"][0]

        r = client.put(f"/gold-items/{item['id']}/release")
        assert r.status_code == 409
        assert client.put(f"/gold-items/loan/{loan['id']}/release-all").status_code == 409

    def test_release_after_closure(self, client, clock):
        loan = disbursed_loan(client)
        clock.set(2024, 1, 30)
        client.post("/payments", json={"loan_id": loan["id"], "amount": "100000", "payment_type": "CLOSURE"})

        r = client.put(f"/gold-items/loan/{loan['id']}/release-all")
        assert r.status_code == 200
        assert r.json()["gold_items"][0]["status"] == "RELEASED"

    def test_remove_from_pending_loan(self, client):
        loan = create_loan(client)
        item = client.get(f"/gold-items/loan/{loan['id']}").json()["gold_items"][0]

        assert client.delete(f"/gold-items/{item['id']}").status_code == 200
        assert client.get(f"/gold-items/{item['id']}").status_code == 404


class TestOverdueEndpoints:
    """Overdue monitoring tests"""

    def setup_loan(self, client, clock):
        loan = disbursed_loan(client)
        clock.set(2024, 2, 27)   # 10 days past the 17 Feb installment
        return loan

    def test_update_all_and_list(self, client, clock):
        loan = self.setup_loan(client, clock)

        r = client.post("/overdue/update-all")
        assert r.status_code == 200
        assert r.json()["result"]["total_processed"] == 1
        assert r.json()["result"]["new_overdue_count"] == 1

        data = client.get("/overdue/loans", params={"min_days_overdue": 5}).json()
        assert data["total"] == 1
        assert data["loans"][0]["id"] == loan["id"]
        assert data["loans"][0]["days_overdue"] == 10
        assert data["loans"][0]["penalty_amount"] == "58.42"

        assert client.get("/overdue/loans", params={"min_days_overdue": 11}).json()["total"] == 0
        assert client.get("/overdue/loans", params={"min_days_overdue": -1}).status_code == 422

    def test_bad_min_amount(self, client):
        r = client.get("/overdue/loans", params={"min_amount": "abc"})
        assert r.status_code == 400
        assert r.json()["success"] is False

    def test_statistics(self, client, clock):
        self.setup_loan(client, clock)
        client.post("/overdue/update-all")

        stats = client.get("/overdue/statistics").json()
        assert stats["total_overdue_loans"] == 1
        assert stats["total_overdue_amount"] == "8884.88"

    def test_update_single_loan(self, client, clock):
        loan = self.setup_loan(client, clock)

        data = client.post(f"/overdue/update/{loan['id']}").json()
        assert data["loan"]["is_overdue"] is True
        assert data["loan"]["overdue_amount"] == "8884.88"

    def test_check_default(self, client, clock):
        loan = self.setup_loan(client, clock)
        client.post(f"/overdue/update/{loan['id']}")

        data = client.post(f"/overdue/check-default/{loan['id']}").json()
        assert data["defaulted"] is False

        data = client.post(f"/overdue/check-default/{loan['id']}", params={"threshold_days": 7}).json()
        assert data["defaulted"] is True
        assert data["loan"]["status"] == "DEFAULTED"


class TestReportEndpoints:
    """Report endpoint tests"""

    def test_portfolio(self, client):
        disbursed_loan(client)

        data = client.get("/reports/portfolio").json()
        assert data["report_id"] == "portfolio_summary"
        assert data["totals"]["total_outstanding"] == "100000.00"

    def test_collection_period(self, client):
        r = client.get("/reports/collection", params={
            "start_date": "2024-01-01", "end_date": "2024-01-31"
        })
        assert r.status_code == 200
        assert r.json()["totals"]["payment_count"] == 0

        r = client.get("/reports/collection", params={
            "start_date": "2024-02-01", "end_date": "2024-01-01"
        })
        assert r.status_code == 400

        assert client.get("/reports/collection", params={"start_date": "yesterday"}).status_code == 400

    def test_other_reports(self, client):
        disbursed_loan(client)

        assert client.get("/reports/overdue").status_code == 200
        assert client.get("/reports/loan-performance").json()["totals"]["new_loans"] == 1
        assert len(client.get("/reports/monthly-trends", params={"months": 3}).json()["data"]) == 3

    def test_monthly_trends_bounds(self, client):
        assert client.get("/reports/monthly-trends", params={"months": 0}).status_code == 422
        assert client.get("/reports/monthly-trends", params={"months": 25}).status_code == 422


class TestUnhandledErrors:
    """Unexpected failures become 500 responses"""

    def _break_portfolio(self, monkeypatch, system):
        def broken():
            raise RuntimeError("ledger offline")
        monkeypatch.setattr(system.reporting_engine, "portfolio_summary", broken)

    def test_details_hidden_in_production(self, monkeypatch, lending_system):
        self._break_portfolio(monkeypatch, lending_system)
        client = TestClient(create_app(lending_system), raise_server_exceptions=False)

        r = client.get("/reports/portfolio")
        assert r.status_code == 500
        assert r.json()["detail"] == "Internal server error"

    def test_details_shown_in_development(self, monkeypatch, clock):
        system = make_system(clock, environment="development")
        self._break_portfolio(monkeypatch, system)
        client = TestClient(create_app(system), raise_server_exceptions=False)

        r = client.get("/reports/portfolio")
        assert r.status_code == 500
        assert r.json()["detail"] == "ledger offline"
