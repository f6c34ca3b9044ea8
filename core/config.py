"""Ledger configuration."""

from pydantic import BaseModel, Field, field_validator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class LedgerConfig(BaseModel):
    """
    Tunables for reconciliation and statements.

    Defaults match an Australian wholesale business: GST invoicing,
    BSB/PayID remittance, and statements dated in Sydney time.
    """

    # Statements
    business_timezone: str = Field(
        default="Australia/Sydney",
        description="IANA timezone that decides what 'today' is for overdue checks",
    )
    ageing_bucket_days: int = Field(
        default=30,
        description="Width of each ageing bucket in days",
        ge=1,
        le=90,
    )

    # Credit memos
    credit_memo_prefix: str = Field(
        default="CR-",
        description="Prefix of credit memo document numbers",
        min_length=1,
        max_length=10,
    )
    credit_memo_id_width: int = Field(
        default=5,
        description="Zero-padded width of the credit memo sequence number",
        ge=1,
        le=12,
    )

    # Concurrency
    retry_attempts: int = Field(
        default=3,
        description="Attempts for a unit of work that hits a deadlock or serialization failure",
        ge=1,
        le=10,
    )
    retry_backoff_seconds: float = Field(
        default=0.1,
        description="Base delay between retries, doubled on each attempt",
        ge=0,
        le=5,
    )

    @field_validator("business_timezone")
    @classmethod
    def must_be_known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value
