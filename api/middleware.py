"""Request-scoped middleware for API requests."""

import logging
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an ID.

    A caller-supplied X-Request-ID is kept so a payment can be traced from
    the screen that submitted it; otherwise a fresh one is generated. The
    ID is echoed in the response header and the envelope meta.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.debug("%s %s -> %d [%s]", request.method, request.url.path, response.status_code, request_id)
        return response
