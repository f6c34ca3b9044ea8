"""Invoice domain models.

Amounts are Decimal dollars rounded to cents (see core.money).
A sales invoice moves Unpaid -> Partial -> Paid as payments are allocated
to it, and back again when a payment is deleted. Credit memos are stored
as invoices too: negative total, status Credit, never allocated to.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from core.money import CENT, ZERO, Numeric, round_money


class InvoiceStatus(str, Enum):
    """Invoice payment status as stored."""

    UNPAID = "Unpaid"
    PARTIAL = "Partial"
    PAID = "Paid"
    CREDIT = "Credit"


class ItemUnit(str, Enum):
    """Unit an invoice line is sold in."""

    CTN = "CTN"
    PACK = "PACK"
    EA = "EA"


def derive_status(total_amount: Numeric, paid_amount: Numeric) -> InvoiceStatus:
    """
    Payment status from totals.

    Paid when paid is within a cent of total, Unpaid when nothing has been
    paid, Partial otherwise. Both values are rounded to cents first.
    """
    total = round_money(total_amount)
    paid = round_money(paid_amount)

    if abs(total - paid) < CENT:
        return InvoiceStatus.PAID
    if paid < CENT:
        return InvoiceStatus.UNPAID
    return InvoiceStatus.PARTIAL


class InvoiceItem(BaseModel):
    """A line on an invoice."""

    id: int | str | None = None
    invoice_id: str
    product_id: str | None = None
    description: str | None = None
    quantity: int
    unit: ItemUnit = ItemUnit.EA
    base_price: Decimal | None = None
    discount: Decimal | None = None
    unit_price: Decimal
    amount: Decimal

    model_config = {"from_attributes": True}


class InvoiceItemCreate(BaseModel):
    """Line data supplied when raising a credit memo."""

    product_id: str | None = None
    description: str | None = Field(None, max_length=500)
    quantity: int = Field(..., ge=1)
    unit: ItemUnit = ItemUnit.EA
    base_price: Decimal | None = None
    discount: Decimal | None = Field(None, ge=0, le=100)
    unit_price: Decimal

    @property
    def amount(self) -> Decimal:
        return round_money(self.quantity * self.unit_price)


class Invoice(BaseModel):
    """Full invoice entity as stored."""

    id: str
    customer_id: str
    invoice_to: str | None = None
    invoice_date: date
    due_date: date | None = None
    subtotal: Decimal = ZERO
    gst_total: Decimal = ZERO
    total_amount: Decimal
    paid_amount: Decimal = ZERO
    status: InvoiceStatus
    memo: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("subtotal", "gst_total", "total_amount", "paid_amount", mode="before")
    @classmethod
    def to_cents(cls, value):
        return round_money(value)

    @property
    def balance_due(self) -> Decimal:
        """Remaining amount to be paid."""
        return round_money(self.total_amount - self.paid_amount)

    @property
    def is_credit_memo(self) -> bool:
        return self.status == InvoiceStatus.CREDIT

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID
