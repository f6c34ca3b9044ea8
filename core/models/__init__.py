"""Core domain models."""

from core.models.invoice import (
    Invoice, InvoiceItem, InvoiceItemCreate, InvoiceStatus, ItemUnit, derive_status,
)
from core.models.payment import (
    Payment, PaymentKind, PaymentAllocation, PaymentCreate,
    AllocationTarget, AllocationResult, CreditMemo, CreditMemoCreate,
)
from core.models.customer import Customer, CompanySettings
from core.models.statement import (
    StatementData, StatementLine, StatementLineType, StatementLineStatus,
    Ageing, Remittance,
)

__all__ = [
    # Invoice
    "Invoice", "InvoiceItem", "InvoiceItemCreate", "InvoiceStatus", "ItemUnit", "derive_status",
    # Payment
    "Payment", "PaymentKind", "PaymentAllocation", "PaymentCreate",
    "AllocationTarget", "AllocationResult", "CreditMemo", "CreditMemoCreate",
    # Customer
    "Customer", "CompanySettings",
    # Statement
    "StatementData", "StatementLine", "StatementLineType", "StatementLineStatus",
    "Ageing", "Remittance",
]
