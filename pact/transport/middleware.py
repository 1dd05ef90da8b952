# pact/transport/middleware.py
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from pact.infra.logging_config import LogContext, get_logger
from pact.infra.metrics import inc_counter

logger = get_logger(__name__)

# Health checks and scrapes would drown the request log
QUIET_PATHS = frozenset({"/health", "/ready", "/metrics"})

_ENTRY_PATH = re.compile(r"^/site-entries/(?P<entry_id>[^/]+)/")
_COLLECTOR_PATH = re.compile(r"^/collectors/(?P<collector_id>[^/]+)/")


def path_context(path: str) -> dict[str, str]:
    """Entry / collector ids embedded in a route path, for log context."""
    context = {}
    match = _ENTRY_PATH.match(path)
    if match and match["entry_id"] not in ("completed", "counts"):
        context["entry_id"] = match["entry_id"]
    match = _COLLECTOR_PATH.match(path)
    if match:
        context["collector_id"] = match["collector_id"]
    return context


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an X-Request-ID (client supplied or generated)"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if not self.enabled or path in QUIET_PATHS:
            return await call_next(request)

        log_ctx = LogContext(
            logger,
            request_id=getattr(request.state, "request_id", None),
            **path_context(path),
        )
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            log_ctx.error(
                f"{request.method} {path} raised {exc.__class__.__name__} after {elapsed_ms:.1f}ms",
                exc_info=True,
            )
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        inc_counter("http_responses_total", status=f"{response.status_code // 100}xx")
        log_ctx.info(f"{request.method} {path} -> {response.status_code} in {elapsed_ms:.1f}ms")
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turn an unhandled exception into a JSON 500 that carries the request id"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"Unhandled exception on {request.method} {request.url.path}: "
                f"{exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "request_id": request_id},
            )
