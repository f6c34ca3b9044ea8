"""GET /api/data: unified read endpoint."""

from datetime import date

from fastapi import APIRouter, Query, Request

from api.base import success_response
from core.exceptions import NotFoundError
from core.money import money_sum


VALID_TYPES = {"statement", "credits", "invoices", "payments"}


def create_data_router(services: dict) -> APIRouter:
    router = APIRouter()

    invoice_svc = services["invoice"]
    payment_svc = services["payment"]
    allocation_svc = services["allocation"]
    statement_svc = services["statement"]

    @router.get("/data")
    async def get_data(
        request: Request,
        type: str | None = Query(None),
        id: str | None = Query(None),
        customer_id: str | None = Query(None),
        include: str | None = Query(None),
        filter: str | None = Query(None),
        start: date | None = Query(None),
        end: date | None = Query(None),
        as_of: date | None = Query(None),
    ):
        if type is None:
            raise ValueError("'type' query parameter is required")

        if type not in VALID_TYPES:
            raise ValueError(f"Unknown type '{type}'. Valid types: {', '.join(sorted(VALID_TYPES))}")

        includes = set(include.split(",")) if include else set()

        if type == "statement":
            data = _handle_statement(statement_svc, customer_id, start, end, as_of)
        elif type == "credits":
            data = _handle_credits(allocation_svc, customer_id)
        elif type == "invoices":
            data = _handle_invoices(invoice_svc, customer_id, id, includes, filter)
        else:
            data = _handle_payments(payment_svc, customer_id, id, includes)

        return success_response(data, getattr(request.state, "request_id", None)).model_dump(mode="json")

    return router


def _handle_statement(statement_svc, customer_id, start, end, as_of):
    if not customer_id or start is None or end is None:
        raise ValueError("'statement' type requires 'customer_id', 'start' and 'end' parameters")

    statement = statement_svc.build(customer_id, start, end, today=as_of)
    return statement.model_dump(mode="json")


def _handle_credits(allocation_svc, customer_id):
    credits = allocation_svc.list_credits(customer_id)
    return {
        "total": str(money_sum(p.unallocated_amount for p in credits)),
        "payments": [p.model_dump(mode="json") for p in credits],
    }


def _handle_invoices(invoice_svc, customer_id, id, includes, filter):
    if id:
        invoice = invoice_svc.get_by_id(id)
        if invoice is None:
            raise NotFoundError("invoice", id)

        data = invoice.model_dump(mode="json")
        if "allocations" in includes:
            allocations = invoice_svc.list_allocations(invoice.id)
            data["allocations"] = [a.model_dump(mode="json") for a in allocations]
        return data

    if not customer_id:
        raise ValueError("'invoices' type requires 'id' or 'customer_id' parameter")

    if filter == "open":
        invoices = invoice_svc.list_open_for_customer(customer_id)
    elif filter is None:
        invoices = invoice_svc.list_for_customer(customer_id)
    else:
        raise ValueError(f"Unknown invoice filter '{filter}' (use filter=open)")

    return [i.model_dump(mode="json") for i in invoices]


def _handle_payments(payment_svc, customer_id, id, includes):
    if id:
        payment = payment_svc.get_by_id(id)
        if payment is None:
            raise NotFoundError("payment", id)

        data = payment.model_dump(mode="json")
        if "allocations" in includes:
            allocations = payment_svc.list_allocations(payment.id)
            data["allocations"] = [a.model_dump(mode="json") for a in allocations]
        return data

    if customer_id:
        payments = payment_svc.list_for_customer(customer_id)
        return [p.model_dump(mode="json") for p in payments]

    raise ValueError("'payments' type requires 'id' or 'customer_id' parameter")
