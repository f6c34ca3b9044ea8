"""FastAPI application assembly."""

import logging

from fastapi import FastAPI

from api.actions import create_actions_router
from api.data import create_data_router
from api.errors import register_error_handlers
from api.middleware import RequestIDMiddleware
from clients.postgres_client import PostgresClient
from clients.vault_client import get_database_url
from core.audit import AuditLogger
from core.config import LedgerConfig
from core.services.allocation_service import AllocationService
from core.services.invoice_service import InvoiceService
from core.services.payment_service import PaymentService
from core.services.statement_service import StatementService

logger = logging.getLogger(__name__)


def build_services(postgres: PostgresClient, config: LedgerConfig | None = None) -> dict:
    """Wire the ledger services over one database client."""
    config = config or LedgerConfig()
    audit = AuditLogger(postgres)
    invoices = InvoiceService(postgres, audit)

    return {
        "invoice": invoices,
        "payment": PaymentService(postgres, audit, invoices, config),
        "allocation": AllocationService(postgres, audit, invoices, config),
        "statement": StatementService(postgres, config),
    }


def create_app(services: dict) -> FastAPI:
    """FastAPI app with error handlers and the data/actions routes under /api."""
    app = FastAPI(title="Receivables Ledger")
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)

    app.include_router(create_data_router(services), prefix="/api")
    app.include_router(create_actions_router(services), prefix="/api")

    logger.info("Ledger API ready with services: %s", ", ".join(sorted(services)))
    return app


def create_default_app(config: LedgerConfig | None = None) -> FastAPI:
    """App over the database named by LEDGER_DATABASE_URL or Vault."""
    postgres = PostgresClient(get_database_url())
    return create_app(build_services(postgres, config))
