"""
Request tracing middleware.

Every request gets an id (propagated from ``X-Request-ID`` when the caller
sends one) that is bound into the structlog context, so the pipeline's
stage warnings for one feed request can be grouped. Feed pagination
parameters are bound too. Probe endpoints log at debug level only.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging import bind_context, clear_context, get_logger


logger = get_logger(__name__)

PROBE_PATHS = frozenset({"/health", "/ready", "/live"})
TRACED_QUERY_PARAMS = ("cursor", "offset")


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Binds request id and feed paging into logs; adds timing headers."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        path = request.url.path

        bind_context(request_id=request_id, method=request.method, path=path)
        paging = {k: request.query_params[k] for k in TRACED_QUERY_PARAMS if k in request.query_params}
        if paging:
            bind_context(**paging)

        log_done = logger.debug if path in PROBE_PATHS else logger.info
        started = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - started) * 1000
            log_done("Request completed", status_code=response.status_code, duration_ms=round(duration_ms, 2))
        except Exception as e:
            logger.error(
                "Request failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            raise
        finally:
            clear_context()

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response
