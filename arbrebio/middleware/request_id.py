"""Request ID middleware: assigns an ID per request and binds it to structlog context."""

import uuid
from contextvars import ContextVar

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"


def _incoming_request_id(request: Request) -> str | None:
    """Reuse a well-formed ID set by the reverse proxy, if any."""
    value = request.headers.get(REQUEST_ID_HEADER)
    if value and len(value) <= 64 and all(c.isalnum() or c in "-_" for c in value):
        return value
    return None


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind request_id, method and path to the log context; echo the ID in X-Request-ID."""

    async def dispatch(self, request: Request, call_next):
        rid = _incoming_request_id(request) or str(uuid.uuid4())
        request_id_var.set(rid)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=rid,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
