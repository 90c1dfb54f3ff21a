from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    tenant_id: str | None


def _header_value(request: Request, name: str) -> str | None:
    value = (request.headers.get(name) or "").strip()
    return value or None


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Exposes correlation and tenant headers to handlers as ``request.state.context``."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            user_id=_header_value(request, "x-user-id"),
            tenant_id=_header_value(request, "x-tenant-id"),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
