"""
Invoice service: lookups and the paid-amount write shared by allocation
and reversal.

Invoices are raised by the order screens. This service never creates sales
invoices; it only reads them and moves paid_amount/status as payments are
applied or withdrawn.
"""

import logging
from decimal import Decimal

from clients.filters import eq, in_, neq
from clients.postgres_client import PostgresClient, TableGateway
from core.audit import AuditLogger, AuditAction, compute_changes
from core.exceptions import NotFoundError
from core.models import Invoice, InvoiceStatus, PaymentAllocation, derive_status
from core.money import CENT, clamp_paid
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

# Columns a payment or reversal can change
_PAYMENT_FIELDS = {"paid_amount", "status"}


class InvoiceService:
    """Service for invoice reads and paid-amount updates."""

    def __init__(self, postgres: PostgresClient, audit: AuditLogger):
        self.postgres = postgres
        self.audit = audit

    def get_by_id(self, invoice_id: str) -> Invoice | None:
        """
        Get invoice by ID.

        Returns:
            Invoice if found, None otherwise.
        """
        rows = self.postgres.fetch_rows("invoices", [eq("id", invoice_id)])
        if not rows:
            return None
        return Invoice.model_validate(rows[0])

    def list_for_customer(self, customer_id: str) -> list[Invoice]:
        """All of a customer's invoices, oldest first."""
        rows = self.postgres.fetch_rows(
            "invoices",
            [eq("customer_id", customer_id)],
            order_by=["invoice_date", "id"],
        )
        return [Invoice.model_validate(row) for row in rows]

    def list_open_for_customer(self, customer_id: str) -> list[Invoice]:
        """
        Invoices with a balance still owing, oldest first.

        Credit memo placeholders are never open.
        """
        rows = self.postgres.fetch_rows(
            "invoices",
            [eq("customer_id", customer_id), neq("status", InvoiceStatus.CREDIT.value)],
            order_by=["invoice_date", "id"],
        )
        invoices = [Invoice.model_validate(row) for row in rows]
        return [inv for inv in invoices if inv.balance_due >= CENT]

    def list_allocations(self, invoice_id: str) -> list[PaymentAllocation]:
        """Payments applied to an invoice, in the order they were applied."""
        rows = self.postgres.fetch_rows(
            "payment_allocations",
            [eq("invoice_id", invoice_id)],
            order_by=["created_at", "id"],
        )
        return [PaymentAllocation.model_validate(row) for row in rows]

    def lock_many(self, db: TableGateway, invoice_ids: list[str]) -> dict[str, Invoice]:
        """
        Lock invoices for update inside a transaction.

        Rows are locked in id order so concurrent requests touching the same
        invoices queue instead of deadlocking.

        Raises:
            NotFoundError: If any invoice does not exist
        """
        wanted = sorted(set(invoice_ids))
        rows = db.fetch_rows("invoices", [in_("id", wanted)], order_by=["id"], for_update=True)
        found = {row["id"]: Invoice.model_validate(row) for row in rows}

        for invoice_id in wanted:
            if invoice_id not in found:
                raise NotFoundError("invoice", invoice_id)

        return found

    def set_paid_amount(self, invoice: Invoice, paid_amount: Decimal, db: TableGateway) -> Invoice:
        """
        Persist a new paid amount and the status it implies.

        The amount is clamped into [0, total_amount] before it is written.

        Args:
            invoice: Invoice as currently stored (already locked by the caller)
            paid_amount: New paid amount
            db: Transaction to write through

        Returns:
            Updated invoice
        """
        new_paid = clamp_paid(invoice.total_amount, paid_amount)
        new_status = derive_status(invoice.total_amount, new_paid)
        now = now_utc()

        db.update_rows(
            "invoices",
            {"paid_amount": new_paid, "status": new_status.value, "updated_at": now},
            [eq("id", invoice.id)],
        )

        updated = invoice.model_copy(
            update={"paid_amount": new_paid, "status": new_status, "updated_at": now}
        )

        self.audit.log_change(
            entity_type="invoice",
            entity_id=invoice.id,
            action=AuditAction.UPDATE,
            changes=compute_changes(
                invoice.model_dump(mode="json", include=_PAYMENT_FIELDS),
                updated.model_dump(mode="json", include=_PAYMENT_FIELDS),
            ),
            db=db,
        )

        return updated
