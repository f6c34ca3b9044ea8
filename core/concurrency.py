"""
Retry for units of work that lose a row-lock race.

Ledger mutations lock the invoice and payment rows they touch with
SELECT ... FOR UPDATE. Two requests locking the same rows in different
orders can deadlock, and PostgreSQL aborts one of them. The aborted
transaction has already rolled back, so the whole unit of work can run
again from the top.
"""

import logging
import time
from typing import Callable, TypeVar

from psycopg2 import errors as pg_errors
from psycopg2.extensions import TransactionRollbackError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Deadlock and serialization failures are TransactionRollbackError subclasses
RETRYABLE_ERRORS = (TransactionRollbackError, pg_errors.LockNotAvailable)


def run_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.1,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_ERRORS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call func, retrying on transient lock conflicts.

    Args:
        func: Zero-argument unit of work. Must open its own transaction.
        attempts: Total attempts including the first
        backoff_seconds: Base delay, doubled after each failed attempt
        retry_on: Exception types worth another attempt
        sleep: Injected for tests

    Returns:
        Whatever func returns.

    Raises:
        The last retryable error once attempts are exhausted. Any other
        exception propagates immediately.
    """
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            if attempt >= attempts - 1:
                raise
            delay = backoff_seconds * (2 ** attempt)
            logger.warning(
                "Lock conflict on attempt %d/%d (%s), retrying in %.2fs",
                attempt + 1,
                attempts,
                exc.__class__.__name__,
                delay,
            )
            sleep(delay)

    raise ValueError("attempts must be at least 1")
