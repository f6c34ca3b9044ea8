"""Payment, allocation and credit memo models.

A payment's unallocated_amount is its banked credit: money received but not
yet applied to any invoice. Allocations move money from a payment onto an
invoice; the sums always balance:

    payment.amount - payment.unallocated_amount == sum(allocations for payment)
    invoice.paid_amount == sum(allocations for invoice)
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from core.models.invoice import Invoice, InvoiceItem, InvoiceItemCreate
from core.money import ZERO, round_money


class PaymentKind(str, Enum):
    """What a payment record represents."""

    NORMAL = "normal"
    CREDIT_MEMO = "credit_memo"


class Payment(BaseModel):
    """Full payment entity as stored."""

    id: str
    customer_id: str
    payment_date: date
    amount: Decimal
    unallocated_amount: Decimal
    kind: PaymentKind = PaymentKind.NORMAL
    category: str | None = None
    reason: str | None = None
    note: str | None = None
    credit_memo_invoice_id: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("amount", "unallocated_amount", mode="before")
    @classmethod
    def to_cents(cls, value):
        return round_money(value)

    @property
    def allocated_amount(self) -> Decimal:
        return round_money(self.amount - self.unallocated_amount)

    @property
    def is_credit_memo(self) -> bool:
        return self.kind == PaymentKind.CREDIT_MEMO


class PaymentAllocation(BaseModel):
    """Part of a payment applied to one invoice."""

    id: str
    payment_id: str
    invoice_id: str
    amount: Decimal
    created_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("amount", mode="before")
    @classmethod
    def to_cents(cls, value):
        return round_money(value)


class AllocationTarget(BaseModel):
    """Amount of a payment to apply to one invoice."""

    invoice_id: str = Field(..., min_length=1)
    amount: Decimal

    @field_validator("amount", mode="before")
    @classmethod
    def to_cents(cls, value):
        return round_money(value)


class PaymentCreate(BaseModel):
    """
    A payment received from a customer, with how to apply it.

    amount may be zero when the caller is only spending banked credit.
    """

    customer_id: str = Field(..., min_length=1)
    payment_date: date
    amount: Decimal = ZERO
    category: str | None = Field(None, max_length=100)
    reason: str | None = Field(None, max_length=2000)
    use_credit: bool = False
    auto_allocate: bool = False
    allocations: list[AllocationTarget] = Field(default_factory=list)

    @field_validator("amount", mode="before")
    @classmethod
    def to_cents(cls, value):
        return round_money(value)

    @model_validator(mode="after")
    def check_amount(self) -> "PaymentCreate":
        if self.amount < ZERO:
            raise ValueError("Payment amount cannot be negative")
        return self


class CreditMemoCreate(BaseModel):
    """Data required to raise a credit memo against a customer."""

    customer_id: str = Field(..., min_length=1)
    memo_date: date
    invoice_to: str | None = Field(None, max_length=255)
    items: list[InvoiceItemCreate] = Field(..., min_length=1)
    gst_rate: Decimal = Field(Decimal("0"), ge=0, le=1)
    memo: str | None = Field(None, max_length=2000)

    @property
    def subtotal(self) -> Decimal:
        return round_money(sum((item.amount for item in self.items), ZERO))

    @property
    def gst_total(self) -> Decimal:
        return round_money(self.subtotal * self.gst_rate)

    @property
    def credit_amount(self) -> Decimal:
        """Positive value of the credit granted."""
        return round_money(self.subtotal + self.gst_total)


class AllocationResult(BaseModel):
    """Outcome of applying one or more payments to invoices."""

    payments: list[Payment]
    invoices: list[Invoice]
    allocations: list[PaymentAllocation]

    @property
    def total_allocated(self) -> Decimal:
        return round_money(sum((a.amount for a in self.allocations), ZERO))


class CreditMemo(BaseModel):
    """A credit memo as created: the placeholder invoice, its lines and the credit payment."""

    invoice: Invoice
    items: list[InvoiceItem]
    payment: Payment
