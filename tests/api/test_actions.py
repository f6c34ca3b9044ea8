"""Tests for POST /api/actions unified mutation endpoint."""

from datetime import date

import pytest


def action(client, action_name, data, domain="payment"):
    return client.post("/api/actions", json={"domain": domain, "action": action_name, "data": data})


@pytest.fixture
def invoices(make_invoice):
    make_invoice("INV-A", "100", invoice_date=date(2025, 1, 2))
    make_invoice("INV-B", "100", invoice_date=date(2025, 1, 3))


# =============================================================================
# VALIDATION
# =============================================================================


class TestActionsValidation:

    def test_missing_domain_returns_422(self, client):
        response = client.post("/api/actions", json={"action": "record", "data": {}})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unknown_domain_returns_400(self, client):
        response = action(client, "create", {}, domain="ticket")

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "INVALID_REQUEST"
        assert "Unknown domain" in body["error"]["message"]

    def test_unknown_action_returns_400(self, client):
        response = action(client, "refund", {})

        assert response.status_code == 400
        assert "not allowed" in response.json()["error"]["message"]

    def test_bad_payment_data_returns_400(self, client, customer):
        response = action(client, "record", {
            "customer_id": customer["id"], "payment_date": "2025-02-01", "amount": "-5",
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_REQUEST"

    @pytest.mark.parametrize("amount", ["abc", "1e30"])
    def test_malformed_payment_amount_returns_400(self, client, customer, amount):
        response = action(client, "record", {
            "customer_id": customer["id"], "payment_date": "2025-02-01", "amount": amount,
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_REQUEST"

    def test_malformed_allocation_amount_returns_400(self, client, make_payment):
        payment = make_payment("50")

        response = action(client, "allocate", {
            "payment_id": payment["id"],
            "allocations": [{"invoice_id": "INV-A", "amount": "ten"}],
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_REQUEST"


# =============================================================================
# PAYMENT DOMAIN
# =============================================================================


class TestRecord:

    def test_record_and_allocate(self, client, customer, invoices, store):
        response = action(client, "record", {
            "customer_id": customer["id"],
            "payment_date": "2025-02-01",
            "amount": "150",
            "allocations": [
                {"invoice_id": "INV-A", "amount": "100"},
                {"invoice_id": "INV-B", "amount": "50"},
            ],
        })

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["total_allocated"] == "150.00"
        assert body["data"]["payments"][0]["unallocated_amount"] == "0.00"
        statuses = {i["id"]: i["status"] for i in body["data"]["invoices"]}
        assert statuses == {"INV-A": "Paid", "INV-B": "Partial"}

    def test_auto_allocate(self, client, customer, invoices):
        response = action(client, "record", {
            "customer_id": customer["id"],
            "payment_date": "2025-02-01",
            "amount": "120",
            "auto_allocate": True,
        })

        allocations = response.json()["data"]["allocations"]
        assert [(a["invoice_id"], a["amount"]) for a in allocations] == [("INV-A", "100.00"), ("INV-B", "20.00")]

    def test_unknown_customer_returns_404(self, client):
        response = action(client, "record", {
            "customer_id": "ghost", "payment_date": "2025-02-01", "amount": "10",
        })

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"


class TestAllocate:

    def test_allocate_existing_payment(self, client, invoices, make_payment):
        payment = make_payment("80")

        response = action(client, "allocate", {
            "payment_id": payment["id"],
            "allocations": [{"invoice_id": "INV-A", "amount": "80"}],
        })

        assert response.status_code == 200
        assert response.json()["data"]["invoices"][0]["paid_amount"] == "80.00"

    def test_over_allocation_returns_409(self, client, invoices, make_payment, store):
        payment = make_payment("50")
        before = store.snapshot()

        response = action(client, "allocate", {
            "payment_id": payment["id"],
            "allocations": [{"invoice_id": "INV-A", "amount": "60"}],
        })

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ALLOCATION_REJECTED"
        assert store.tables == before

    def test_unknown_payment_returns_404(self, client, invoices):
        response = action(client, "allocate", {
            "payment_id": "nope",
            "allocations": [{"invoice_id": "INV-A", "amount": "1"}],
        })

        assert response.status_code == 404

    def test_missing_payment_id_returns_400(self, client):
        response = action(client, "allocate", {"allocations": [{"invoice_id": "INV-A", "amount": "1"}]})

        assert response.status_code == 400
        assert "payment_id" in response.json()["error"]["message"]


class TestDelete:

    def test_delete_reverses(self, client, invoices, make_payment, store):
        payment = make_payment("100")
        action(client, "allocate", {
            "payment_id": payment["id"],
            "allocations": [{"invoice_id": "INV-A", "amount": "100"}],
        })

        response = action(client, "delete", {"id": payment["id"]})

        assert response.json()["data"] == {"deleted": True}
        assert store.row("invoices", "INV-A")["status"] == "Unpaid"

    def test_delete_absent_is_noop(self, client):
        response = action(client, "delete", {"id": "already-gone"})

        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": False}

    def test_delete_without_id_returns_400(self, client):
        response = action(client, "delete", {})

        assert response.status_code == 400


class TestCreditMemo:

    def test_credit_memo_created(self, client, customer):
        response = action(client, "credit_memo", {
            "customer_id": customer["id"],
            "memo_date": "2025-02-10",
            "items": [{"description": "Damaged carton", "quantity": 2, "unit_price": "12.50", "unit": "CTN"}],
        })

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["invoice"]["id"] == "CR-00001"
        assert data["invoice"]["total_amount"] == "-25.00"
        assert data["payment"]["kind"] == "credit_memo"
        assert data["items"][0]["unit"] == "CTN"

    def test_credit_memo_needs_items(self, client, customer):
        response = action(client, "credit_memo", {
            "customer_id": customer["id"], "memo_date": "2025-02-10", "items": [],
        })

        assert response.status_code == 400


class TestRequestId:

    def test_meta_matches_header(self, client):
        response = action(client, "delete", {"id": "x"})
        assert response.json()["meta"]["request_id"] == response.headers["X-Request-ID"]

    def test_error_meta_matches_header(self, client):
        response = action(client, "refund", {})
        assert response.json()["meta"]["request_id"] == response.headers["X-Request-ID"]
