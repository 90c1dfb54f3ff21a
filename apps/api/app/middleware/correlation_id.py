from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id

_CORRELATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_correlation_id(raw: str | None) -> str:
    """Accept a caller-supplied id when it is safe to echo into logs, else mint one."""
    candidate = (raw or "").strip()
    if candidate and _CORRELATION_ID_PATTERN.match(candidate):
        return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get("x-correlation-id"))
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            tenant_id = request.headers.get("x-tenant-id")
            if tenant_id:
                span.set_attribute("tenant_id", tenant_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
