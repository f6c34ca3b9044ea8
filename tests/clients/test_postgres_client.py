"""Tests for PostgresClient against a real database.

Set LEDGER_TEST_DATABASE_URL to a scratch database to run these. The schema
in sql/schema.sql is applied once and every table is truncated per test.
"""

import os
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from clients.filters import eq, gt, in_, lt
from clients.postgres_client import PostgresClient
from core.audit import AuditLogger
from core.config import LedgerConfig
from core.models import AllocationTarget
from core.services.allocation_service import AllocationService
from core.services.invoice_service import InvoiceService
from core.services.payment_service import PaymentService

DATABASE_URL = os.environ.get("LEDGER_TEST_DATABASE_URL")
SCHEMA = Path(__file__).parent.parent.parent / "sql" / "schema.sql"

pytestmark = pytest.mark.skipif(
    not DATABASE_URL, reason="LEDGER_TEST_DATABASE_URL not set"
)


@pytest.fixture(scope="module")
def schema_db():
    client = PostgresClient(DATABASE_URL)
    client.execute(SCHEMA.read_text())
    yield client
    client.close()


@pytest.fixture
def db(schema_db):
    schema_db.execute(
        "TRUNCATE payment_allocations, payments, invoice_items, invoices, "
        "customers, company_settings, audit_log RESTART IDENTITY CASCADE"
    )
    schema_db.insert_rows("customers", [{"id": "cust-1", "name": "Harbour Foods Pty Ltd"}])
    return schema_db


def add_invoice(db, invoice_id, total):
    return db.insert_rows("invoices", [{
        "id": invoice_id,
        "customer_id": "cust-1",
        "invoice_date": date(2025, 1, 10),
        "due_date": date(2025, 2, 9),
        "total_amount": Decimal(total),
        "paid_amount": Decimal("0"),
        "status": "Unpaid",
    }])[0]


class TestExecuteMethods:
    """Raw SQL execution."""

    def test_execute_returns_list_of_dicts(self, db):
        """execute() returns list of row dicts."""
        assert db.execute("SELECT 1 as num, 'hello' as word") == [{"num": 1, "word": "hello"}]

    def test_execute_empty_returns_empty_list(self, db):
        """No matching rows returns [], not None."""
        assert db.execute("SELECT 1 WHERE false") == []

    def test_execute_single(self, db):
        assert db.execute_single("SELECT 42 as answer") == {"answer": 42}
        assert db.execute_single("SELECT 1 WHERE false") is None

    def test_execute_scalar(self, db):
        assert db.execute_scalar("SELECT 'x'") == "x"

    def test_statement_without_result_set(self, db):
        """DDL and plain updates return an empty list."""
        assert db.execute("UPDATE customers SET name = name WHERE id = %s", ("cust-1",)) == []


class TestTableGateway:
    """fetch/insert/update/delete with filters."""

    def test_insert_returns_stored_rows(self, db):
        row = add_invoice(db, "INV-1", "100")
        assert row["total_amount"] == Decimal("100.00")
        assert row["created_at"] is not None

    def test_insert_requires_matching_columns(self, db):
        with pytest.raises(ValueError, match="same columns"):
            db.insert_rows("customers", [{"id": "a", "name": "A"}, {"id": "b"}])

    def test_insert_serial_id(self, db):
        add_invoice(db, "INV-1", "100")
        [item] = db.insert_rows("invoice_items", [{
            "invoice_id": "INV-1", "description": "Carton", "quantity": 1,
            "unit_price": Decimal("100"), "amount": Decimal("100"),
        }])
        assert item["id"] == 1

    def test_fetch_filters_and_order(self, db):
        add_invoice(db, "INV-2", "50")
        add_invoice(db, "INV-1", "150")
        add_invoice(db, "INV-3", "250")

        rows = db.fetch_rows(
            "invoices", [gt("total_amount", 60), lt("total_amount", 300)], order_by=["-total_amount"]
        )

        assert [r["id"] for r in rows] == ["INV-3", "INV-1"]

    def test_fetch_in_filter(self, db):
        add_invoice(db, "INV-1", "10")
        add_invoice(db, "INV-2", "20")

        rows = db.fetch_rows("invoices", [in_("id", ["INV-2", "INV-9"])])

        assert [r["id"] for r in rows] == ["INV-2"]

    def test_empty_in_matches_nothing(self, db):
        add_invoice(db, "INV-1", "10")
        assert db.fetch_rows("invoices", [in_("id", [])]) == []

    def test_update_and_delete_counts(self, db):
        add_invoice(db, "INV-1", "10")
        add_invoice(db, "INV-2", "20")

        assert db.update_rows("invoices", {"memo": "checked"}, [eq("customer_id", "cust-1")]) == 2
        assert db.delete_rows("invoices", [eq("id", "INV-1")]) == 1
        assert [r["memo"] for r in db.fetch_rows("invoices")] == ["checked"]

    def test_refuses_unfiltered_writes(self, db):
        with pytest.raises(ValueError):
            db.update_rows("invoices", {"memo": "x"}, [])
        with pytest.raises(ValueError):
            db.delete_rows("invoices", [])

    def test_dict_values_stored_as_json(self, db):
        db.insert_rows("audit_log", [{
            "id": "a1", "entity_type": "invoice", "entity_id": "INV-1",
            "action": "update", "changes": {"paid_amount": {"old": "0.00", "new": "5.00"}},
        }])
        [row] = db.fetch_rows("audit_log", [eq("id", "a1")])
        assert row["changes"]["paid_amount"]["new"] == "5.00"


class TestTransaction:
    """transaction() commits or rolls back as one unit."""

    def test_commits_on_clean_exit(self, db):
        with db.transaction() as tx:
            add_invoice(tx, "INV-1", "10")
            tx.update_rows("invoices", {"paid_amount": Decimal("10"), "status": "Paid"}, [eq("id", "INV-1")])

        [row] = db.fetch_rows("invoices", [eq("id", "INV-1")])
        assert row["status"] == "Paid"

    def test_rolls_back_on_error(self, db):
        with pytest.raises(RuntimeError, match="abort"):
            with db.transaction() as tx:
                add_invoice(tx, "INV-1", "10")
                raise RuntimeError("abort")

        assert db.fetch_rows("invoices") == []

    def test_for_update_inside_transaction(self, db):
        add_invoice(db, "INV-1", "10")
        with db.transaction() as tx:
            [row] = tx.fetch_rows("invoices", [eq("id", "INV-1")], for_update=True)
        assert row["id"] == "INV-1"


class TestLedgerRoundTrip:
    """Services running on the real gateway."""

    def test_allocate_then_delete(self, db):
        config = LedgerConfig(retry_backoff_seconds=0)
        audit = AuditLogger(db)
        invoices = InvoiceService(db, audit)
        allocation = AllocationService(db, audit, invoices, config)
        payments = PaymentService(db, audit, invoices, config)

        add_invoice(db, "INV-A", "100")
        add_invoice(db, "INV-B", "100")
        db.insert_rows("payments", [{
            "id": "pay-1", "customer_id": "cust-1", "payment_date": date(2025, 1, 15),
            "amount": Decimal("150"), "unallocated_amount": Decimal("150"), "kind": "normal",
        }])

        allocation.allocate("pay-1", [
            AllocationTarget(invoice_id="INV-A", amount=Decimal("100")),
            AllocationTarget(invoice_id="INV-B", amount=Decimal("50")),
        ])

        statuses = {r["id"]: r["status"] for r in db.fetch_rows("invoices")}
        assert statuses == {"INV-A": "Paid", "INV-B": "Partial"}
        assert db.execute_scalar("SELECT unallocated_amount FROM payments WHERE id = 'pay-1'") == Decimal("0.00")

        assert payments.delete("pay-1") is True

        statuses = {r["id"]: (r["status"], r["paid_amount"]) for r in db.fetch_rows("invoices")}
        assert statuses == {
            "INV-A": ("Unpaid", Decimal("0.00")),
            "INV-B": ("Unpaid", Decimal("0.00")),
        }
        assert db.fetch_rows("payment_allocations") == []
