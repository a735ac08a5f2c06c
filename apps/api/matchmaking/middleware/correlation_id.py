from __future__ import annotations

import logging
import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from matchmaking.context import reset_correlation_id, set_correlation_id

CORRELATION_HEADER = "x-correlation-id"
MAX_CORRELATION_ID_LENGTH = 128
_CORRELATION_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._:-]*")

logger = logging.getLogger("matchmaking.request")


def accept_correlation_id(value: str | None) -> str | None:
    """Return the client-supplied id when it is safe to echo into logs, spans and audit entries."""

    if not value or len(value) > MAX_CORRELATION_ID_LENGTH:
        return None
    return value if _CORRELATION_ID_PATTERN.fullmatch(value) else None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        supplied = request.headers.get(CORRELATION_HEADER)
        correlation_id = accept_correlation_id(supplied) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        if supplied and supplied != correlation_id:
            logger.warning("correlation_id.replaced", extra={"path": request.url.path})
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
