from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crmflow.context import bound_context

CORRELATION_HEADER = "x-correlation-id"


def _incoming_correlation_id(request: Request) -> str:
    value = request.headers.get(CORRELATION_HEADER, "").strip()
    return value[:128] if value else str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the request context used by logs, spans, store calls and activity rows.

    The user id starts unset for every request; ``get_current_user`` fills it in once a
    bearer token has been verified.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _incoming_correlation_id(request)
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        with bound_context(correlation_id):
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
