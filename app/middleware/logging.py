"""
Access logging for samlflow.

One line per request with the outcome of the login flow attached: the
phase and provider of the tracked session when the flow produced a record.
The request id is taken from the proxy when present, pushed into the
logging context and echoed back in X-Request-ID.

Query strings are never logged: the SAML redirect binding carries the
signed message there.
"""

import logging
import time
import uuid
from typing import Callable, Dict, FrozenSet, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from samlflow.utils.logging import clear_request_context, set_request_context

logger = logging.getLogger(__name__)

# Never logged
SILENT_PATHS: FrozenSet[str] = frozenset({"/docs", "/openapi.json", "/redoc", "/favicon.ico"})
# Logged only when they fail (health checks hit these constantly)
QUIET_PATHS: FrozenSet[str] = frozenset({"/health"})


def incoming_request_id(request: Request) -> str:
    return request.headers.get("X-Request-ID") or str(uuid.uuid4())


def level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def login_flow_fields(request: Request) -> Dict[str, object]:
    """Phase and provider of the record the login flow attached, if any."""
    record = getattr(request.state, "login_state", None)
    if record is None:
        return {}
    return {"login_phase": record.phase.name, "login_idp_id": record.idp_id or None}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Request id propagation, timing headers and the access log."""

    def __init__(
        self,
        app,
        silent_paths: Optional[FrozenSet[str]] = None,
        quiet_paths: Optional[FrozenSet[str]] = None,
    ):
        super().__init__(app)
        self.silent_paths = silent_paths if silent_paths is not None else SILENT_PATHS
        self.quiet_paths = quiet_paths if quiet_paths is not None else QUIET_PATHS

    def _wants_log(self, path: str, status_code: int) -> bool:
        if path in self.silent_paths:
            return False
        return path not in self.quiet_paths or status_code >= 400

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = incoming_request_id(request)
        request.state.request_id = request_id
        set_request_context(request_id=request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.error(
                f"{request.method} {request.url.path} raised {type(exc).__name__} after {elapsed_ms:.1f}ms",
                extra={"event": "http_request_error", "duration_ms": round(elapsed_ms, 2)},
                exc_info=True,
            )
            clear_request_context()
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms:.2f}ms"

        path = request.url.path
        if self._wants_log(path, response.status_code):
            extra = {
                "event": "http_request",
                "http_method": request.method,
                "http_path": path,
                "http_status": response.status_code,
                "duration_ms": round(elapsed_ms, 2),
            }
            extra.update(login_flow_fields(request))
            logger.log(
                level_for_status(response.status_code),
                f"{request.method} {path} -> {response.status_code} in {elapsed_ms:.1f}ms",
                extra=extra,
            )

        clear_request_context()
        return response
