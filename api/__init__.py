"""HTTP interface for the receivables ledger."""

from api.base import (
    APIError,
    APIMeta,
    APIResponse,
    success_response,
    error_response,
    ErrorCodes,
)
