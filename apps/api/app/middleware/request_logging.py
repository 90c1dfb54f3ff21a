from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        path = resolve_http_path_label(request)
        log_fields = {"method": method, "path": path, "tenant_id": request.headers.get("x-tenant-id")}

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - started
            observe_http_request(method=method, path=path, status=500, duration=duration)
            logger.error(
                "http.error",
                exc_info=True,
                extra={**log_fields, "status_code": 500, "duration_ms": round(duration * 1000, 2)},
            )
            raise

        duration = time.perf_counter() - started
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration)
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "http.request",
            extra={**log_fields, "status_code": response.status_code, "duration_ms": round(duration * 1000, 2)},
        )
        return response
