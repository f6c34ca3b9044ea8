"""
Statement service: customer statements built from invoices and payments.

A statement is a read-only view over a date window:

    opening balance   everything invoiced before the window minus everything paid
    transactions      invoices, credits and payments inside the window, each
                      carrying the running balance after it
    overdue total     what is past due today, across all time
    ageing            what is still owing, bucketed by invoice age

Credit memo payments never appear. The credit is shown once, as the Credit
line for the credit memo's placeholder invoice.
"""

import datetime
import logging
from decimal import Decimal

from clients.filters import eq, gte, lt, lte
from clients.postgres_client import PostgresClient
from core.config import LedgerConfig
from core.exceptions import NotFoundError, ValidationError
from core.models import (
    Ageing,
    CompanySettings,
    Customer,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentKind,
    Remittance,
    StatementData,
    StatementLine,
    StatementLineStatus,
    StatementLineType,
)
from core.money import CENT, ZERO, money_sum, round_money
from utils.timezone import today_in

logger = logging.getLogger(__name__)

# Same-day ordering: invoices and credits before payments
_TYPE_ORDER = {
    StatementLineType.INVOICE: 0,
    StatementLineType.CREDIT: 0,
    StatementLineType.PAYMENT: 1,
}


def line_status(invoice: Invoice, today: datetime.date) -> StatementLineStatus:
    """Label for an invoice line, relative to today."""
    if invoice.is_credit_memo:
        return StatementLineStatus.CREDIT
    if invoice.status == InvoiceStatus.PAID:
        return StatementLineStatus.PAID
    if invoice.due_date is not None and invoice.due_date < today:
        return StatementLineStatus.OVERDUE
    return StatementLineStatus.OPEN


def invoice_line(invoice: Invoice, today: datetime.date) -> StatementLine:
    if invoice.is_credit_memo:
        return StatementLine(
            id=invoice.id,
            date=invoice.invoice_date,
            type=StatementLineType.CREDIT,
            reference=invoice.id,
            amount=ZERO,
            credit=abs(invoice.total_amount),
            due_date=invoice.due_date,
            status=StatementLineStatus.CREDIT,
        )

    return StatementLine(
        id=invoice.id,
        date=invoice.invoice_date,
        type=StatementLineType.INVOICE,
        reference=invoice.id,
        amount=invoice.total_amount,
        credit=ZERO,
        due_date=invoice.due_date,
        status=line_status(invoice, today),
    )


def payment_line(payment: Payment) -> StatementLine:
    """Credit line for a payment, referenced by the first eight characters of its id."""
    return StatementLine(
        id=payment.id,
        date=payment.payment_date,
        type=StatementLineType.PAYMENT,
        reference=payment.id[:8].upper(),
        amount=ZERO,
        credit=payment.amount,
    )


def with_running_balance(lines: list[StatementLine], opening: Decimal) -> list[StatementLine]:
    """
    Sort lines and fill in the balance after each one.

    Order is date, then invoices and credits before payments, then reference
    and id so the output is stable.
    """
    ordered = sorted(
        lines,
        key=lambda line: (line.date, _TYPE_ORDER[line.type], line.reference, line.id),
    )

    balance = round_money(opening)
    result = []
    for line in ordered:
        balance = round_money(balance + line.amount - line.credit)
        result.append(line.model_copy(update={"balance": balance}))
    return result


def overdue_total(invoices: list[Invoice], today: datetime.date) -> Decimal:
    """Outstanding balance on unpaid invoices whose due date has passed."""
    return money_sum(
        inv.balance_due
        for inv in invoices
        if not inv.is_credit_memo
        and inv.status != InvoiceStatus.PAID
        and inv.due_date is not None
        and inv.due_date < today
    )


def ageing_analysis(invoices: list[Invoice], today: datetime.date, bucket_days: int = 30) -> Ageing:
    """
    Bucket outstanding balances by days since invoice date.

    With 30-day buckets: up to 30 days is current, then 31-60, 61-90,
    91-120, and anything older.
    """
    buckets = {"current": ZERO, "days_30": ZERO, "days_60": ZERO, "days_90": ZERO, "over_90": ZERO}
    names = list(buckets)

    for inv in invoices:
        if inv.is_credit_memo or inv.status == InvoiceStatus.PAID:
            continue
        balance = inv.balance_due
        if balance < CENT:
            continue

        age = (today - inv.invoice_date).days
        index = 0 if age <= bucket_days else min((age - 1) // bucket_days, len(names) - 1)
        buckets[names[index]] = round_money(buckets[names[index]] + balance)

    return Ageing(**buckets)


class StatementService:
    """Service for building customer statements."""

    def __init__(self, postgres: PostgresClient, config: LedgerConfig | None = None):
        self.postgres = postgres
        self.config = config or LedgerConfig()

    def build(
        self,
        customer_id: str,
        start_date: datetime.date,
        end_date: datetime.date,
        today: datetime.date | None = None,
    ) -> StatementData:
        """
        Build a statement for one customer over [start_date, end_date].

        Args:
            customer_id: Customer to report on
            start_date: First day of the window (inclusive)
            end_date: Last day of the window (inclusive)
            today: Day the statement is generated; defaults to today in the
                business timezone. Decides Overdue labels, overdue total
                and ageing.

        Raises:
            ValidationError: If the window is empty or reversed
            NotFoundError: If the customer does not exist
        """
        if not customer_id:
            raise ValidationError("customer_id is required")
        if start_date > end_date:
            raise ValidationError(
                f"Statement start {start_date} is after end {end_date}"
            )

        if today is None:
            today = today_in(self.config.business_timezone)

        customer = self._get_customer(customer_id)
        settings = self._get_company_settings()

        opening = self.opening_balance(customer_id, start_date)

        window_invoices = self._invoices(
            customer_id, [gte("invoice_date", start_date), lte("invoice_date", end_date)]
        )
        window_payments = self._payments(
            customer_id, [gte("payment_date", start_date), lte("payment_date", end_date)]
        )

        lines = [invoice_line(inv, today) for inv in window_invoices]
        lines += [payment_line(p) for p in window_payments]
        transactions = with_running_balance(lines, opening)

        closing = transactions[-1].balance if transactions else opening

        all_invoices = self._invoices(customer_id, [])

        statement = StatementData(
            customer_id=customer.id,
            customer_name=customer.name,
            customer_address=customer.postal_address,
            start_date=start_date,
            end_date=end_date,
            generated_on=today,
            opening_balance=opening,
            transactions=transactions,
            closing_balance=closing,
            overdue_total=overdue_total(all_invoices, today),
            ageing=ageing_analysis(all_invoices, today, self.config.ageing_bucket_days),
            remittance=Remittance(
                bank_name=settings.bank_name,
                bsb=settings.bsb_number,
                account_number=settings.account_number,
                pay_id=settings.bank_payid,
            ),
            company_name=settings.company_name,
            company_address=settings.company_address or None,
            company_email=settings.email,
            company_phone=settings.phone,
            footer_note=settings.statement_info,
        )

        logger.debug(
            "Built statement for customer %s %s..%s: %d line(s), closing %s",
            customer_id, start_date, end_date, len(transactions), closing,
        )

        return statement

    def opening_balance(self, customer_id: str, start_date: datetime.date) -> Decimal:
        """Invoiced minus paid before start_date. Credit memos count through their invoice."""
        invoiced = money_sum(
            inv.total_amount
            for inv in self._invoices(customer_id, [lt("invoice_date", start_date)])
        )
        paid = money_sum(
            p.amount
            for p in self._payments(customer_id, [lt("payment_date", start_date)])
        )
        return round_money(invoiced - paid)

    def _invoices(self, customer_id: str, date_filters: list) -> list[Invoice]:
        rows = self.postgres.fetch_rows(
            "invoices",
            [eq("customer_id", customer_id), *date_filters],
            order_by=["invoice_date", "id"],
        )
        return [Invoice.model_validate(row) for row in rows]

    def _payments(self, customer_id: str, date_filters: list) -> list[Payment]:
        """Normal payments only. Credit memo payments are represented by their invoice."""
        rows = self.postgres.fetch_rows(
            "payments",
            [eq("customer_id", customer_id), eq("kind", PaymentKind.NORMAL.value), *date_filters],
            order_by=["payment_date", "id"],
        )
        return [Payment.model_validate(row) for row in rows]

    def _get_customer(self, customer_id: str) -> Customer:
        rows = self.postgres.fetch_rows("customers", [eq("id", customer_id)])
        if not rows:
            raise NotFoundError("customer", customer_id)
        return Customer.model_validate(rows[0])

    def _get_company_settings(self) -> CompanySettings:
        rows = self.postgres.fetch_rows("company_settings")
        if not rows:
            return CompanySettings()
        return CompanySettings.model_validate(rows[0])
