"""Customer statement models. Derived on every request, never stored."""

import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, computed_field

from core.money import ZERO


class StatementLineType(str, Enum):
    INVOICE = "Invoice"
    CREDIT = "Credit"
    PAYMENT = "Payment"


class StatementLineStatus(str, Enum):
    """Label shown against a statement line. Overdue is relative to generation day."""

    PAID = "Paid"
    OPEN = "Open"
    OVERDUE = "Overdue"
    CREDIT = "Credit"


class StatementLine(BaseModel):
    """One ledger row: amount is the debit, credit the credit."""

    id: str
    date: datetime.date
    type: StatementLineType
    reference: str
    amount: Decimal = ZERO
    credit: Decimal = ZERO
    balance: Decimal = ZERO
    due_date: datetime.date | None = None
    status: StatementLineStatus | None = None


class Ageing(BaseModel):
    """Outstanding balance bucketed by days since invoice date."""

    current: Decimal = ZERO
    days_30: Decimal = ZERO
    days_60: Decimal = ZERO
    days_90: Decimal = ZERO
    over_90: Decimal = ZERO

    @computed_field
    @property
    def total(self) -> Decimal:
        return self.current + self.days_30 + self.days_60 + self.days_90 + self.over_90


class Remittance(BaseModel):
    """How the customer should pay."""

    bank_name: str | None = None
    bsb: str | None = None
    account_number: str | None = None
    pay_id: str | None = None


class StatementData(BaseModel):
    """Everything a statement document needs."""

    customer_id: str
    customer_name: str
    customer_address: str
    start_date: datetime.date
    end_date: datetime.date
    generated_on: datetime.date
    opening_balance: Decimal
    transactions: list[StatementLine]
    closing_balance: Decimal
    overdue_total: Decimal
    ageing: Ageing
    remittance: Remittance
    company_name: str | None = None
    company_address: str | None = None
    company_email: str | None = None
    company_phone: str | None = None
    footer_note: str | None = None
