"""
Allocation service: applying payments and banked credit to invoices.

Every allocation moves the same amount in three places at once:

    invoice.paid_amount          += amount   (status re-derived)
    payment.unallocated_amount   -= amount
    payment_allocations          += one row (payment, invoice, amount)

All three writes for a request happen in one transaction with the payment
and invoice rows locked, so a failure part way leaves nothing behind and
two concurrent requests cannot both spend the same credit.

Over-allocation is rejected outright rather than clamped: a payment cannot
give away more than its unallocated amount, and an invoice cannot take
more than its outstanding balance.
"""

import logging
from decimal import Decimal
from typing import Iterable
from uuid import uuid4

from clients.filters import eq, gt
from clients.postgres_client import PostgresClient, TableGateway
from core.audit import AuditLogger, AuditAction
from core.concurrency import run_with_retry
from core.config import LedgerConfig
from core.exceptions import AllocationError, NotFoundError, ValidationError
from core.models import (
    AllocationResult,
    AllocationTarget,
    Invoice,
    Payment,
    PaymentAllocation,
    PaymentCreate,
    PaymentKind,
)
from core.money import CENT, ZERO, money_sum, round_money
from core.services.invoice_service import InvoiceService
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


def merge_targets(targets: Iterable[AllocationTarget]) -> dict[str, Decimal]:
    """
    Collapse targets naming the same invoice into one amount per invoice.

    Raises:
        ValidationError: If an invoice id is missing or an amount is not positive
    """
    merged: dict[str, Decimal] = {}
    for target in targets:
        if not target.invoice_id:
            raise ValidationError("Allocation target is missing an invoice id")
        if target.amount < CENT:
            raise ValidationError(
                f"Allocation to invoice {target.invoice_id} must be positive, got {target.amount}"
            )
        merged[target.invoice_id] = round_money(merged.get(target.invoice_id, ZERO) + target.amount)
    return merged


def plan_auto_allocation(open_invoices: Iterable[Invoice], funds: Decimal) -> list[AllocationTarget]:
    """
    Spread funds across invoices, oldest first.

    Each invoice takes up to its outstanding balance until the funds run
    out. Invoices with nothing owing are skipped.
    """
    remaining = round_money(funds)
    plan = []

    for invoice in sorted(open_invoices, key=lambda inv: (inv.invoice_date, inv.id)):
        if remaining < CENT:
            break
        if invoice.is_credit_memo:
            continue

        take = round_money(min(remaining, invoice.balance_due))
        if take < CENT:
            continue

        plan.append(AllocationTarget(invoice_id=invoice.id, amount=take))
        remaining = round_money(remaining - take)

    return plan


class AllocationService:
    """Service for allocating payments to invoices."""

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

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_credits(self, customer_id: str | None = None) -> list[Payment]:
        """
        Payments with unallocated credit, oldest first.

        Args:
            customer_id: Limit to one customer (all customers when None)
        """
        filters = [gt("unallocated_amount", 0)]
        if customer_id is not None:
            filters.append(eq("customer_id", customer_id))

        rows = self.postgres.fetch_rows("payments", filters, order_by=["payment_date", "id"])
        return [Payment.model_validate(row) for row in rows]

    def available_credit(self, customer_id: str) -> Decimal:
        """Total banked credit a customer can spend."""
        return money_sum(p.unallocated_amount for p in self.list_credits(customer_id))

    # -------------------------------------------------------------------------
    # Allocate an existing payment
    # -------------------------------------------------------------------------

    def allocate(self, payment_id: str, targets: list[AllocationTarget]) -> AllocationResult:
        """
        Apply part of an existing payment's unallocated amount to invoices.

        Args:
            payment_id: Payment to draw from
            targets: Invoice and amount pairs

        Returns:
            The payment and invoices after the change, and the allocation rows

        Raises:
            ValidationError: Missing payment id, no targets, non-positive amounts
            NotFoundError: Payment or an invoice does not exist
            AllocationError: Over-allocation, another customer's invoice,
                or a credit memo placeholder as target
        """
        if not payment_id:
            raise ValidationError("payment_id is required")
        if not targets:
            raise ValidationError("At least one allocation target is required")

        merged = merge_targets(targets)

        return run_with_retry(
            lambda: self._allocate_once(payment_id, merged),
            attempts=self.config.retry_attempts,
            backoff_seconds=self.config.retry_backoff_seconds,
        )

    def _allocate_once(self, payment_id: str, merged: dict[str, Decimal]) -> AllocationResult:
        with self.postgres.transaction() as tx:
            payment = self._lock_payment(tx, payment_id)

            requested = money_sum(merged.values())
            if requested > payment.unallocated_amount:
                raise AllocationError(
                    f"Payment {payment_id} has {payment.unallocated_amount} unallocated, "
                    f"cannot allocate {requested}"
                )

            invoices = self._lock_targets(tx, payment.customer_id, merged)

            allocations = []
            for invoice_id in sorted(merged):
                amount = merged[invoice_id]
                allocations.append(self._insert_allocation(tx, payment.id, invoice_id, amount))
                invoices[invoice_id] = self.invoices.set_paid_amount(
                    invoices[invoice_id], invoices[invoice_id].paid_amount + amount, tx
                )

            payment = self._set_unallocated(tx, payment, payment.unallocated_amount - requested)

        logger.info(
            "Allocated %s from payment %s across %d invoice(s)",
            requested, payment.id, len(allocations),
        )

        return AllocationResult(
            payments=[payment],
            invoices=[invoices[i] for i in sorted(invoices)],
            allocations=allocations,
        )

    # -------------------------------------------------------------------------
    # Record a new payment (optionally spending banked credit)
    # -------------------------------------------------------------------------

    def record_payment(self, data: PaymentCreate) -> AllocationResult:
        """
        Record money received and apply it, with banked credit, to invoices.

        Funding order: when data.use_credit is set, the customer's earlier
        payments with unallocated credit are drawn first (oldest payment
        date first), then the new payment. Whatever is not allocated stays
        on the new payment as credit.

        With data.auto_allocate the requested allocations are ignored and
        the funds are spread over the customer's open invoices oldest first.

        Returns:
            Every payment touched (funding sources, then the new payment),
            the invoices paid, and the allocation rows

        Raises:
            NotFoundError: Customer or an invoice does not exist
            ValidationError: Nothing to apply, or credit-only with no allocations
            AllocationError: Allocations exceed the funds available
        """
        return run_with_retry(
            lambda: self._record_payment_once(data),
            attempts=self.config.retry_attempts,
            backoff_seconds=self.config.retry_backoff_seconds,
        )

    def _record_payment_once(self, data: PaymentCreate) -> AllocationResult:
        with self.postgres.transaction() as tx:
            if not tx.fetch_rows("customers", [eq("id", data.customer_id)]):
                raise NotFoundError("customer", data.customer_id)

            credits: list[Payment] = []
            if data.use_credit:
                rows = tx.fetch_rows(
                    "payments",
                    [eq("customer_id", data.customer_id), gt("unallocated_amount", 0)],
                    order_by=["payment_date", "id"],
                    for_update=True,
                )
                credits = [Payment.model_validate(row) for row in rows]

            funds = round_money(data.amount + money_sum(p.unallocated_amount for p in credits))
            if funds < CENT:
                raise ValidationError(
                    "Nothing to apply: payment amount is zero and no credit is available"
                )

            if data.auto_allocate:
                open_invoices = self._lock_open_invoices(tx, data.customer_id)
                merged = merge_targets(plan_auto_allocation(open_invoices, funds))
            else:
                merged = merge_targets(data.allocations)

            requested = money_sum(merged.values())
            if data.amount < CENT and requested < CENT:
                raise ValidationError("No invoices selected to apply credit to")
            if requested > funds:
                raise AllocationError(
                    f"Allocated {requested} but only {funds} is available"
                )

            invoices = self._lock_targets(tx, data.customer_id, merged) if merged else {}

            sources = list(credits)
            if data.amount >= CENT:
                sources.append(self._insert_payment(tx, data))

            balances = {p.id: p.unallocated_amount for p in sources}
            allocations = []

            for invoice_id in sorted(merged):
                to_cover = merged[invoice_id]
                for source in sources:
                    if to_cover < CENT:
                        break
                    take = round_money(min(to_cover, balances[source.id]))
                    if take < CENT:
                        continue
                    allocations.append(self._insert_allocation(tx, source.id, invoice_id, take))
                    balances[source.id] = round_money(balances[source.id] - take)
                    to_cover = round_money(to_cover - take)

                invoices[invoice_id] = self.invoices.set_paid_amount(
                    invoices[invoice_id], invoices[invoice_id].paid_amount + merged[invoice_id], tx
                )

            payments = []
            for source in sources:
                if balances[source.id] != source.unallocated_amount:
                    source = self._set_unallocated(tx, source, balances[source.id])
                payments.append(source)

        logger.info(
            "Recorded payment of %s for customer %s, allocated %s to %d invoice(s)",
            data.amount, data.customer_id, requested, len(merged),
        )

        return AllocationResult(
            payments=payments,
            invoices=[invoices[i] for i in sorted(invoices)],
            allocations=allocations,
        )

    # -------------------------------------------------------------------------
    # Helpers (all run inside the caller's transaction)
    # -------------------------------------------------------------------------

    def _lock_payment(self, tx: TableGateway, payment_id: str) -> Payment:
        rows = tx.fetch_rows("payments", [eq("id", payment_id)], for_update=True)
        if not rows:
            raise NotFoundError("payment", payment_id)
        return Payment.model_validate(rows[0])

    def _lock_open_invoices(self, tx: TableGateway, customer_id: str) -> list[Invoice]:
        rows = tx.fetch_rows(
            "invoices",
            [eq("customer_id", customer_id)],
            order_by=["id"],
            for_update=True,
        )
        invoices = [Invoice.model_validate(row) for row in rows]
        return [inv for inv in invoices if not inv.is_credit_memo and inv.balance_due >= CENT]

    def _lock_targets(
        self, tx: TableGateway, customer_id: str, merged: dict[str, Decimal]
    ) -> dict[str, Invoice]:
        """Lock target invoices and check each can take its amount."""
        invoices = self.invoices.lock_many(tx, list(merged))

        for invoice_id, amount in merged.items():
            invoice = invoices[invoice_id]
            if invoice.customer_id != customer_id:
                raise AllocationError(
                    f"Invoice {invoice_id} belongs to another customer"
                )
            if invoice.is_credit_memo:
                raise AllocationError(
                    f"Invoice {invoice_id} is a credit memo and cannot be paid"
                )
            if amount > invoice.balance_due:
                raise AllocationError(
                    f"Invoice {invoice_id} has {invoice.balance_due} outstanding, "
                    f"cannot allocate {amount}"
                )

        return invoices

    def _insert_payment(self, tx: TableGateway, data: PaymentCreate) -> Payment:
        row = tx.insert_rows("payments", [{
            "id": str(uuid4()),
            "customer_id": data.customer_id,
            "payment_date": data.payment_date,
            "amount": data.amount,
            "unallocated_amount": data.amount,
            "kind": PaymentKind.NORMAL.value,
            "category": data.category,
            "reason": data.reason,
            "note": None,
            "credit_memo_invoice_id": None,
            "created_at": now_utc(),
        }])[0]

        payment = Payment.model_validate(row)

        self.audit.log_change(
            entity_type="payment",
            entity_id=payment.id,
            action=AuditAction.CREATE,
            changes={"created": payment.model_dump(mode="json")},
            db=tx,
        )

        return payment

    def _insert_allocation(
        self, tx: TableGateway, payment_id: str, invoice_id: str, amount: Decimal
    ) -> PaymentAllocation:
        row = tx.insert_rows("payment_allocations", [{
            "id": str(uuid4()),
            "payment_id": payment_id,
            "invoice_id": invoice_id,
            "amount": round_money(amount),
            "created_at": now_utc(),
        }])[0]

        allocation = PaymentAllocation.model_validate(row)

        self.audit.log_change(
            entity_type="payment_allocation",
            entity_id=allocation.id,
            action=AuditAction.CREATE,
            changes={"created": allocation.model_dump(mode="json")},
            db=tx,
        )

        return allocation

    def _set_unallocated(self, tx: TableGateway, payment: Payment, unallocated: Decimal) -> Payment:
        new_unallocated = round_money(unallocated)
        if new_unallocated < ZERO or new_unallocated > payment.amount:
            raise AllocationError(
                f"Payment {payment.id} unallocated amount would become {new_unallocated}"
            )

        tx.update_rows(
            "payments",
            {"unallocated_amount": new_unallocated},
            [eq("id", payment.id)],
        )

        self.audit.log_change(
            entity_type="payment",
            entity_id=payment.id,
            action=AuditAction.UPDATE,
            changes={
                "unallocated_amount": {
                    "old": str(payment.unallocated_amount),
                    "new": str(new_unallocated),
                }
            },
            db=tx,
        )

        return payment.model_copy(update={"unallocated_amount": new_unallocated})
