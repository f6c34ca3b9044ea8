"""Shared test fixtures for the ledger test suite."""

import copy
import itertools
import operator
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
# override=True ensures .env takes precedence over shell env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from clients.postgres_client import TableGateway
from core.audit import AuditLogger
from core.config import LedgerConfig
from core.models import InvoiceStatus, PaymentKind, derive_status
from core.money import round_money
from core.services.allocation_service import AllocationService
from core.services.invoice_service import InvoiceService
from core.services.payment_service import PaymentService
from core.services.statement_service import StatementService
from utils.timezone import now_utc


TABLES = (
    "customers",
    "company_settings",
    "invoices",
    "invoice_items",
    "payments",
    "payment_allocations",
    "audit_log",
)

_COMPARE = {
    "lt": operator.lt,
    "lte": operator.le,
    "gt": operator.gt,
    "gte": operator.ge,
}


def _matches(row: dict, f) -> bool:
    value = row.get(f.column)
    if f.op == "in":
        return value in f.value
    if f.op == "eq":
        return value is None if f.value is None else value == f.value
    if f.op == "neq":
        return value is not None if f.value is None else (value is not None and value != f.value)
    if value is None:
        return False
    return _COMPARE[f.op](value, f.value)


# =============================================================================
# IN-MEMORY TABLE GATEWAY
# =============================================================================


class InjectedFailure(Exception):
    """Raised by MemoryStore when a test asks a write to fail."""


class MemoryStore(TableGateway):
    """
    Dict-backed stand-in for PostgresClient.

    Implements the table gateway methods the services use. transaction()
    snapshots every table and restores the snapshot if the block raises,
    so rollback behaves like the real thing. Row locks are a no-op.
    """

    def __init__(self):
        self.tables = {name: [] for name in TABLES}
        self.transactions_started = 0
        self._serial = itertools.count(1)
        self._failures = []

    # Failure injection -------------------------------------------------------

    def fail_on(self, action: str, table: str, after: int = 0, error: Exception | None = None):
        """Make the (after+1)-th `action` ("insert", "update", "delete") on table raise."""
        self._failures.append({"action": action, "table": table, "remaining": after, "error": error})

    def _maybe_fail(self, action: str, table: str):
        for failure in self._failures:
            if failure["action"] == action and failure["table"] == table:
                if failure["remaining"] == 0:
                    self._failures.remove(failure)
                    raise failure["error"] or InjectedFailure(f"{action} on {table} failed")
                failure["remaining"] -= 1

    # Gateway -----------------------------------------------------------------

    def fetch_rows(self, table, filters=(), order_by=None, for_update=False):
        filters = list(filters)
        rows = [dict(r) for r in self.tables[table] if all(_matches(r, f) for f in filters)]

        for column in reversed(order_by or []):
            descending = column.startswith("-")
            name = column.lstrip("-")
            rows.sort(
                key=lambda r: (r.get(name) is None, r.get(name) if r.get(name) is not None else 0),
                reverse=descending,
            )

        return rows

    def insert_rows(self, table, rows):
        self._maybe_fail("insert", table)
        inserted = []
        for row in rows:
            stored = dict(row)
            if stored.get("id") is None:
                stored["id"] = next(self._serial)
            if any(r["id"] == stored["id"] for r in self.tables[table]):
                raise ValueError(f"duplicate key {stored['id']} in {table}")
            self.tables[table].append(stored)
            inserted.append(dict(stored))
        return inserted

    def update_rows(self, table, patch, filters):
        if not patch or not filters:
            raise ValueError("update_rows requires a patch and at least one filter")
        self._maybe_fail("update", table)
        count = 0
        for row in self.tables[table]:
            if all(_matches(row, f) for f in filters):
                row.update(patch)
                count += 1
        return count

    def delete_rows(self, table, filters):
        filters = list(filters)
        if not filters:
            raise ValueError("delete_rows requires at least one filter")
        self._maybe_fail("delete", table)
        keep = [r for r in self.tables[table] if not all(_matches(r, f) for f in filters)]
        count = len(self.tables[table]) - len(keep)
        self.tables[table] = keep
        return count

    @contextmanager
    def transaction(self):
        self.transactions_started += 1
        snapshot = copy.deepcopy(self.tables)
        try:
            yield self
        except BaseException:
            self.tables = snapshot
            raise

    # Helpers -----------------------------------------------------------------

    def row(self, table, row_id):
        for r in self.tables[table]:
            if r["id"] == row_id:
                return r
        return None

    def snapshot(self):
        return copy.deepcopy(self.tables)


# =============================================================================
# STORE AND SERVICE FIXTURES
# =============================================================================


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def config():
    return LedgerConfig(retry_backoff_seconds=0)


@pytest.fixture
def audit(store):
    return AuditLogger(store)


@pytest.fixture
def invoice_service(store, audit):
    return InvoiceService(store, audit)


@pytest.fixture
def allocation_service(store, audit, invoice_service, config):
    return AllocationService(store, audit, invoice_service, config)


@pytest.fixture
def payment_service(store, audit, invoice_service, config):
    return PaymentService(store, audit, invoice_service, config)


@pytest.fixture
def statement_service(store, config):
    return StatementService(store, config)


# =============================================================================
# SEED DATA
# =============================================================================


@pytest.fixture
def customer(store):
    row = {
        "id": "cust-1",
        "name": "Harbour Foods Pty Ltd",
        "email": "accounts@harbourfoods.test",
        "mobile": "0400 000 001",
        "address": "12 Wharf St",
        "suburb": "Pyrmont",
        "state": "NSW",
        "postcode": "2009",
    }
    store.insert_rows("customers", [row])
    return row


@pytest.fixture
def other_customer(store):
    row = {"id": "cust-2", "name": "Northside Grocer"}
    store.insert_rows("customers", [row])
    return row


@pytest.fixture
def make_invoice(store, customer):
    """Insert a sales invoice; paid_amount defaults to zero."""

    def _make(invoice_id, total, invoice_date=date(2025, 1, 10), due_date=None,
              paid="0", customer_id=None):
        total = round_money(total)
        paid = round_money(paid)
        row = {
            "id": invoice_id,
            "customer_id": customer_id or customer["id"],
            "invoice_to": None,
            "invoice_date": invoice_date,
            "due_date": due_date or invoice_date,
            "subtotal": total,
            "gst_total": Decimal("0.00"),
            "total_amount": total,
            "paid_amount": paid,
            "status": derive_status(total, paid).value,
            "memo": None,
            "created_at": now_utc(),
            "updated_at": now_utc(),
        }
        store.insert_rows("invoices", [row])
        return row

    return _make


@pytest.fixture
def make_payment(store, customer):
    """Insert a payment with no allocations; unallocated defaults to the full amount."""

    def _make(amount, payment_date=date(2025, 1, 15), unallocated=None,
              kind=PaymentKind.NORMAL, customer_id=None, payment_id=None,
              credit_memo_invoice_id=None):
        amount = round_money(amount)
        row = {
            "id": payment_id or str(uuid4()),
            "customer_id": customer_id or customer["id"],
            "payment_date": payment_date,
            "amount": amount,
            "unallocated_amount": amount if unallocated is None else round_money(unallocated),
            "kind": kind.value,
            "category": "Bank Transfer",
            "reason": None,
            "note": None,
            "credit_memo_invoice_id": credit_memo_invoice_id,
            "created_at": now_utc(),
        }
        store.insert_rows("payments", [row])
        return row

    return _make


@pytest.fixture
def company_settings(store):
    row = {
        "id": 1,
        "company_name": "Golden Wattle Wholesale",
        "address_line1": "5 Market Rd",
        "suburb": "Flemington",
        "state": "NSW",
        "postcode": "2140",
        "email": "office@goldenwattle.test",
        "phone": "02 9000 0000",
        "bank_name": "Commonwealth Bank",
        "bsb_number": "062-000",
        "account_number": "1234 5678",
        "bank_payid": "pay@goldenwattle.test",
        "statement_info": "Payment due within 30 days.",
    }
    store.insert_rows("company_settings", [row])
    return row


def allocation_sum(store, column, value):
    return round_money(sum(
        (a["amount"] for a in store.tables["payment_allocations"] if a[column] == value),
        Decimal("0"),
    ))


@pytest.fixture
def ledger_consistent(store):
    """Check that paid and unallocated amounts agree with the allocation rows."""

    def _check():
        for inv in store.tables["invoices"]:
            if inv["status"] == InvoiceStatus.CREDIT.value:
                continue
            assert round_money(inv["paid_amount"]) == allocation_sum(store, "invoice_id", inv["id"])
            assert inv["status"] == derive_status(inv["total_amount"], inv["paid_amount"]).value
        for p in store.tables["payments"]:
            allocated = allocation_sum(store, "payment_id", p["id"])
            assert round_money(p["amount"]) - round_money(p["unallocated_amount"]) == allocated
            assert Decimal("0") <= round_money(p["unallocated_amount"]) <= round_money(p["amount"])

    return _check
