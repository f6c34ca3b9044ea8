"""
Payment service: payment lookups, deletion with reversal, and credit memos.

Deleting a payment undoes everything it did. Each invoice it paid gets the
allocated amount back off its paid_amount (never below zero) and its status
re-derived. If the payment is a credit memo, the placeholder invoice it was
raised from goes too. Then the allocation rows and the payment itself are
removed. All of it happens in one transaction.
"""

import logging
from uuid import uuid4

from psycopg2 import errors as pg_errors

from clients.filters import eq
from clients.postgres_client import PostgresClient, TableGateway
from core.audit import AuditLogger, AuditAction
from core.concurrency import RETRYABLE_ERRORS, run_with_retry
from core.config import LedgerConfig
from core.exceptions import NotFoundError, ValidationError
from core.models import (
    CreditMemo,
    CreditMemoCreate,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Payment,
    PaymentAllocation,
    PaymentKind,
)
from core.money import round_money
from core.services.invoice_service import InvoiceService
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

CREDIT_MEMO_CATEGORY = "Credit Memo"


class PaymentService:
    """Service for payment reads, deletion and credit memo creation."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        invoices: InvoiceService,
        config: LedgerConfig | None = None,
    ):
        self.postgres = postgres
        self.audit = audit
        self.invoices = invoices
        self.config = config or LedgerConfig()

    def get_by_id(self, payment_id: str) -> Payment | None:
        """
        Get payment by ID.

        Returns:
            Payment if found, None otherwise.
        """
        rows = self.postgres.fetch_rows("payments", [eq("id", payment_id)])
        if not rows:
            return None
        return Payment.model_validate(rows[0])

    def list_for_customer(self, customer_id: str) -> list[Payment]:
        """All of a customer's payments, oldest first."""
        rows = self.postgres.fetch_rows(
            "payments",
            [eq("customer_id", customer_id)],
            order_by=["payment_date", "id"],
        )
        return [Payment.model_validate(row) for row in rows]

    def list_allocations(self, payment_id: str) -> list[PaymentAllocation]:
        """Invoices a payment has been applied to."""
        rows = self.postgres.fetch_rows(
            "payment_allocations",
            [eq("payment_id", payment_id)],
            order_by=["created_at", "id"],
        )
        return [PaymentAllocation.model_validate(row) for row in rows]

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, payment_id: str) -> bool:
        """
        Delete a payment and reverse every allocation it made.

        Args:
            payment_id: Payment to delete

        Returns:
            True if deleted, False if the payment did not exist

        Raises:
            ValidationError: If payment_id is empty
            NotFoundError: If an allocated invoice has gone missing; nothing
                is changed in that case
        """
        if not payment_id:
            raise ValidationError("payment_id is required")

        return run_with_retry(
            lambda: self._delete_once(payment_id),
            attempts=self.config.retry_attempts,
            backoff_seconds=self.config.retry_backoff_seconds,
        )

    def _delete_once(self, payment_id: str) -> bool:
        with self.postgres.transaction() as tx:
            rows = tx.fetch_rows("payments", [eq("id", payment_id)], for_update=True)
            if not rows:
                logger.info("Payment %s already absent, nothing to delete", payment_id)
                return False

            payment = Payment.model_validate(rows[0])

            allocation_rows = tx.fetch_rows(
                "payment_allocations",
                [eq("payment_id", payment_id)],
                order_by=["created_at", "id"],
            )
            allocations = [PaymentAllocation.model_validate(row) for row in allocation_rows]

            if allocations:
                invoices = self.invoices.lock_many(tx, [a.invoice_id for a in allocations])
                for allocation in allocations:
                    invoice = invoices[allocation.invoice_id]
                    invoices[invoice.id] = self.invoices.set_paid_amount(
                        invoice, invoice.paid_amount - allocation.amount, tx
                    )

            tx.delete_rows("payment_allocations", [eq("payment_id", payment_id)])
            tx.delete_rows("payments", [eq("id", payment_id)])

            self.audit.log_change(
                entity_type="payment",
                entity_id=payment_id,
                action=AuditAction.DELETE,
                changes={
                    "deleted": payment.model_dump(mode="json"),
                    "allocations": [a.model_dump(mode="json") for a in allocations],
                },
                db=tx,
            )

            if payment.kind == PaymentKind.CREDIT_MEMO and payment.credit_memo_invoice_id:
                self._delete_credit_memo_invoice(tx, payment.credit_memo_invoice_id)

        logger.info(
            "Deleted payment %s, reversed %d allocation(s) totalling %s",
            payment_id, len(allocations), payment.allocated_amount,
        )
        return True

    def _delete_credit_memo_invoice(self, tx: TableGateway, invoice_id: str) -> None:
        rows = tx.fetch_rows("invoices", [eq("id", invoice_id)], for_update=True)
        if not rows:
            logger.warning("Credit memo invoice %s already removed", invoice_id)
            return

        invoice = Invoice.model_validate(rows[0])

        tx.delete_rows("invoice_items", [eq("invoice_id", invoice_id)])
        tx.delete_rows("invoices", [eq("id", invoice_id)])

        self.audit.log_change(
            entity_type="invoice",
            entity_id=invoice_id,
            action=AuditAction.DELETE,
            changes={"deleted": invoice.model_dump(mode="json")},
            db=tx,
        )

    # -------------------------------------------------------------------------
    # Credit memos
    # -------------------------------------------------------------------------

    def next_credit_memo_id(self, db: TableGateway | None = None) -> str:
        """
        Document number one above the highest existing credit memo.

        Ids that carry the prefix but no numeric suffix are ignored.
        """
        source = db if db is not None else self.postgres
        prefix = self.config.credit_memo_prefix

        rows = source.fetch_rows("invoices", [eq("status", InvoiceStatus.CREDIT.value)])

        highest = 0
        for row in rows:
            invoice_id = row["id"]
            if not invoice_id.startswith(prefix):
                continue
            suffix = invoice_id[len(prefix):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))

        return f"{prefix}{highest + 1:0{self.config.credit_memo_id_width}d}"

    def create_credit_memo(self, data: CreditMemoCreate) -> CreditMemo:
        """
        Raise a credit memo for a customer.

        Creates a Credit-status placeholder invoice with a negative total, its
        lines, and a credit_memo payment holding the credit as unallocated
        money the customer can spend later.

        Raises:
            NotFoundError: If the customer does not exist
            ValidationError: If the memo is worth nothing
        """
        if data.credit_amount <= 0:
            raise ValidationError("Credit memo total must be positive")

        return run_with_retry(
            lambda: self._create_credit_memo_once(data),
            attempts=self.config.retry_attempts,
            backoff_seconds=self.config.retry_backoff_seconds,
            retry_on=RETRYABLE_ERRORS + (pg_errors.UniqueViolation,),
        )

    def _create_credit_memo_once(self, data: CreditMemoCreate) -> CreditMemo:
        credit = data.credit_amount
        now = now_utc()

        with self.postgres.transaction() as tx:
            if not tx.fetch_rows("customers", [eq("id", data.customer_id)]):
                raise NotFoundError("customer", data.customer_id)

            memo_id = self.next_credit_memo_id(tx)

            invoice_row = tx.insert_rows("invoices", [{
                "id": memo_id,
                "customer_id": data.customer_id,
                "invoice_to": data.invoice_to,
                "invoice_date": data.memo_date,
                "due_date": data.memo_date,
                "subtotal": -data.subtotal,
                "gst_total": -data.gst_total,
                "total_amount": -credit,
                "paid_amount": -credit,
                "status": InvoiceStatus.CREDIT.value,
                "memo": data.memo,
                "created_at": now,
                "updated_at": now,
            }])[0]
            invoice = Invoice.model_validate(invoice_row)

            item_rows = tx.insert_rows("invoice_items", [
                {
                    "invoice_id": memo_id,
                    "product_id": item.product_id,
                    "description": item.description,
                    "quantity": item.quantity,
                    "unit": item.unit.value,
                    "base_price": round_money(item.base_price) if item.base_price is not None else None,
                    "discount": item.discount,
                    "unit_price": round_money(item.unit_price),
                    "amount": item.amount,
                }
                for item in data.items
            ])
            items = [InvoiceItem.model_validate(row) for row in item_rows]

            payment_row = tx.insert_rows("payments", [{
                "id": str(uuid4()),
                "customer_id": data.customer_id,
                "payment_date": data.memo_date,
                "amount": credit,
                "unallocated_amount": credit,
                "kind": PaymentKind.CREDIT_MEMO.value,
                "category": CREDIT_MEMO_CATEGORY,
                "reason": f"Generated from {memo_id}",
                "note": data.memo,
                "credit_memo_invoice_id": memo_id,
                "created_at": now,
            }])[0]
            payment = Payment.model_validate(payment_row)

            self.audit.log_change(
                entity_type="invoice",
                entity_id=memo_id,
                action=AuditAction.CREATE,
                changes={"created": invoice.model_dump(mode="json")},
                db=tx,
            )
            self.audit.log_change(
                entity_type="payment",
                entity_id=payment.id,
                action=AuditAction.CREATE,
                changes={"created": payment.model_dump(mode="json")},
                db=tx,
            )

        logger.info(
            "Created credit memo %s for customer %s worth %s",
            memo_id, data.customer_id, credit,
        )

        return CreditMemo(invoice=invoice, items=items, payment=payment)

