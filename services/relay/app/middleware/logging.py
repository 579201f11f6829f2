"""
Request logging middleware.

Binds a request id into the structlog context for the whole request, so
gateway, repository and dispatcher log lines emitted while serving it carry
the same ``request_id``. The id is echoed back as ``X-Request-ID``.
"""
import time
import uuid
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..core.logging import get_logger

logger = get_logger(__name__)

# Logged only when they fail
QUIET_PATHS = frozenset({"/metrics", "/health"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        path = request.url.path
        quiet = path in QUIET_PATHS
        started = time.perf_counter()

        if not quiet:
            logger.info(
                "request.started",
                method=request.method,
                path=path,
                client=request.client.host if request.client else None,
                has_idempotency_key="x-idempotency-key" in request.headers,
            )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request.failed",
                method=request.method,
                path=path,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                exc_info=True,
            )
            raise
        else:
            if not quiet:
                logger.info(
                    "request.completed",
                    method=request.method,
                    path=path,
                    status_code=response.status_code,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
