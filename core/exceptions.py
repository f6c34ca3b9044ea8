"""Typed exceptions for ledger operations.

Every ledger error is also a ValueError, so callers that only know the
ValueError convention (and the API error handlers) keep working.
"""


class LedgerError(Exception):
    """Base class for reconciliation errors."""


class NotFoundError(LedgerError, ValueError):
    """Referenced payment, invoice or customer does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} {entity_id} not found")


class ValidationError(LedgerError, ValueError):
    """Input rejected before any write was attempted."""


class AllocationError(LedgerError, ValueError):
    """
    Allocation would break a ledger invariant.

    Raised for over-allocation of a payment or an invoice, allocation
    across customers, and allocation to a credit memo placeholder.
    """
