"""Request ID tracing middleware — adds X-Request-ID to every response."""
from __future__ import annotations

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Read by the logging filter so every log line carries the request ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Partners retrying a webhook sometimes send their own delivery ID instead
_INBOUND_HEADERS = ("x-request-id", "x-webhook-delivery-id")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to every request/response for tracing.

    - A client-supplied X-Request-ID (or partner delivery ID) is honored
    - Otherwise a UUID4 is generated
    - The ID lives in a ContextVar for the duration of the request
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        rid = next(
            (request.headers[h] for h in _INBOUND_HEADERS if request.headers.get(h)),
            None,
        ) or str(uuid.uuid4())
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response
