"""POST /api/actions: unified mutation endpoint."""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from api.base import success_response
from core.models import AllocationTarget, CreditMemoCreate, PaymentCreate


class ActionRequest(BaseModel):
    domain: str
    action: str
    data: dict


def create_actions_router(services: dict) -> APIRouter:
    router = APIRouter()

    handlers = {
        "payment": PaymentHandler(services["payment"], services["allocation"]),
    }

    @router.post("/actions")
    async def perform_action(request: Request, body: ActionRequest):
        handler = handlers.get(body.domain)
        if handler is None:
            raise ValueError(
                f"Unknown domain '{body.domain}'. "
                f"Valid domains: {', '.join(sorted(handlers.keys()))}"
            )

        if body.action not in handler.ALLOWED_ACTIONS:
            raise ValueError(
                f"Action '{body.action}' not allowed on '{body.domain}'. "
                f"Allowed: {', '.join(sorted(handler.ALLOWED_ACTIONS))}"
            )

        method = getattr(handler, f"_handle_{body.action}")
        result = method(body.data)
        return success_response(result, getattr(request.state, "request_id", None)).model_dump(mode="json")

    return router


# =============================================================================
# HANDLER CLASSES
# =============================================================================


def _allocation_result(result) -> dict:
    data = result.model_dump(mode="json")
    data["total_allocated"] = str(result.total_allocated)
    return data


class PaymentHandler:
    ALLOWED_ACTIONS = {"record", "allocate", "delete", "credit_memo"}

    def __init__(self, payment_service, allocation_service):
        self.payments = payment_service
        self.allocations = allocation_service

    def _handle_record(self, data: dict):
        result = self.allocations.record_payment(PaymentCreate(**data))
        return _allocation_result(result)

    def _handle_allocate(self, data: dict):
        payment_id = data.get("payment_id")
        targets = [AllocationTarget(**t) for t in data.get("allocations", [])]
        result = self.allocations.allocate(payment_id, targets)
        return _allocation_result(result)

    def _handle_delete(self, data: dict):
        payment_id = data.get("id")
        deleted = self.payments.delete(payment_id)
        return {"deleted": deleted}

    def _handle_credit_memo(self, data: dict):
        memo = self.payments.create_credit_memo(CreditMemoCreate(**data))
        return memo.model_dump(mode="json")
