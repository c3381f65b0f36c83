"""Security and observability middleware for the admin API.

Provides:
    - API key authentication (X-API-Key header)
    - Audit logging (structured request/response logging)
    - Request metrics (counter + latency histogram per path)
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Callable, Set

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .metrics import record_request_metric

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Require X-API-Key header on all non-exempt paths."""

    EXEMPT_PATHS: Set[str] = {"/v1/health", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.api_key = api_key

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.api_key or request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        key = request.headers.get("X-API-Key", "")
        if not key or not secrets.compare_digest(key, self.api_key):
            audit_logger.warning(
                "AUTH_FAIL ip=%s path=%s",
                request.client.host if request.client else "unknown",
                request.url.path,
            )
            return JSONResponse(
                status_code=401,
                content={"error": "Invalid or missing API key", "status_code": 401},
            )

        return await call_next(request)


class AuditLogMiddleware(BaseHTTPMiddleware):
    """Log every request with structured fields and record request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.time()
        client_ip = request.client.host if request.client else "unknown"

        response = await call_next(request)
        elapsed = time.time() - start

        audit_logger.info(
            "method=%s path=%s status=%d ip=%s elapsed_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            client_ip,
            elapsed * 1000,
        )
        record_request_metric(
            method=request.method,
            path=_route_path(request),
            status=response.status_code,
            duration_seconds=elapsed,
        )

        return response


def _route_path(request: Request) -> str:
    """Route template (``/v1/files/{file_id}/usage``) rather than the raw path."""
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or request.url.path
