"""API test fixtures: TestClient over the in-memory ledger."""

import pytest
from starlette.testclient import TestClient

from api.app import create_app


# =============================================================================
# SERVICES DICT
# =============================================================================


@pytest.fixture
def services(invoice_service, payment_service, allocation_service, statement_service):
    return {
        "invoice": invoice_service,
        "payment": payment_service,
        "allocation": allocation_service,
        "statement": statement_service,
    }


# =============================================================================
# APP & CLIENT FIXTURES
# =============================================================================


@pytest.fixture
def app(services):
    """FastAPI app with error handlers and data/actions routes."""
    return create_app(services)


@pytest.fixture
def client(app):
    return TestClient(app, raise_server_exceptions=False)
