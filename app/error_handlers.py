"""
FastAPI exception handlers for samlflow.

Login flow failures are shown to the browser as a generic HTML page; the
real cause only goes to the operator log (and to the security log for
replays and rejected assertions). Unexpected exceptions and 5xx failures
are reported to Sentry.

Operator-facing JSON endpoints (audit, metadata) use the JSON error format:
{
    "success": false,
    "error": "Human-readable message",
    "error_code": "MACHINE_READABLE_CODE"
}
"""

import html
import logging
import uuid
from typing import Any, Dict, Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from samlflow.errors import (
    ErrorCode,
    LoginFlowError,
    get_safe_error_message,
    is_security_event,
)
from samlflow.utils.logging import get_operator_logger, get_security_logger

logger = logging.getLogger(__name__)
operator_logger = get_operator_logger()
security_logger = get_security_logger()

ERROR_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Sign-in problem</title></head>
<body>
<h1>Sign-in problem</h1>
<p>{message}</p>
<p>Reference: {reference}</p>
<p><a href="/">Return to the start page</a></p>
</body>
</html>
"""


def render_error_page(
    message: str,
    status_code: int,
    reference: Optional[str] = None,
) -> HTMLResponse:
    """Generic error page; never includes internal details."""
    content = ERROR_PAGE_TEMPLATE.format(
        message=html.escape(message),
        reference=html.escape(reference or "-"),
    )
    return HTMLResponse(content=content, status_code=status_code)


def create_error_response(
    status_code: int,
    error: str,
    error_code: str,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Standardized JSON error response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "error_code": error_code,
        },
        headers=headers,
    )


def report_to_sentry(
    exc: Exception,
    request: Optional[Request] = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Report an exception to Sentry with context.

    Returns:
        Sentry event ID if reported, None otherwise.
    """
    try:
        client = sentry_sdk.get_client()
        if not client.is_active():
            return None

        with sentry_sdk.push_scope() as scope:
            if request:
                # Query strings and bodies may carry SAML messages
                scope.set_context("request", {
                    "method": request.method,
                    "path": request.url.path,
                })
                request_id = getattr(request.state, "request_id", None)
                if request_id:
                    scope.set_tag("request_id", request_id)

            if extra_context:
                scope.set_context("extra", extra_context)

            return sentry_sdk.capture_exception(exc)

    except Exception as e:
        logger.warning(f"Failed to report exception to Sentry: {e}")
        return None


def login_flow_error_response(request: Request, exc: LoginFlowError) -> HTMLResponse:
    """
    Log a login flow failure and build the page the user sees.

    Used by the exception handler and by callers that must attach cookies
    to the error response themselves.
    """
    reference = str(uuid.uuid4())[:8]
    log_message = (
        f"[ref:{reference}] {exc.__class__.__name__} on "
        f"{request.method} {request.url.path}: {exc.message}"
    )
    if exc.internal_message:
        log_message += f" | Internal: {exc.internal_message}"

    extra = {
        "error_code": exc.error_code.value,
        "error_reference": reference,
        "status_code": exc.status_code,
    }
    if exc.status_code >= 500:
        operator_logger.error(log_message, extra=extra)
        report_to_sentry(exc, request, extra_context={"error_reference": reference})
    else:
        operator_logger.warning(log_message, extra=extra)

    if is_security_event(exc):
        security_logger.warning(
            f"{exc.__class__.__name__} [ref:{reference}]",
            extra={"error_code": exc.error_code.value, "client_ip": _client_ip(request)},
        )

    return render_error_page(get_safe_error_message(exc), exc.status_code, reference)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


# =============================================================================
# Exception Handlers
# =============================================================================

async def login_flow_exception_handler(
    request: Request,
    exc: LoginFlowError,
) -> HTMLResponse:
    """Handle LoginFlowError and subclasses."""
    return login_flow_error_response(request, exc)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle FastAPI validation errors without echoing the input back."""
    errors = exc.errors()
    logger.warning(
        f"Validation error on {request.method} {request.url.path}: "
        f"{len(errors)} error(s)"
    )
    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error="Invalid request",
        error_code="VALIDATION_ERROR",
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette/FastAPI HTTPException in the standard JSON format."""
    status_code_mapping = {
        401: "AUTHENTICATION_REQUIRED",
        403: "PERMISSION_DENIED",
        404: "RESOURCE_NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    error_code = status_code_mapping.get(exc.status_code, ErrorCode.INTERNAL_ERROR.value)
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {detail}")
    elif exc.status_code >= 400:
        logger.warning(f"HTTP {exc.status_code}: {detail}")

    headers = None
    if exc.headers and "WWW-Authenticate" in exc.headers:
        headers = {"WWW-Authenticate": exc.headers["WWW-Authenticate"]}

    return create_error_response(
        status_code=exc.status_code,
        error=detail,
        error_code=error_code,
        headers=headers,
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> HTMLResponse:
    """
    Catch-all for unexpected errors.

    The full traceback goes to the operator log and Sentry; the user gets
    the generic page with a reference to quote.
    """
    reference = str(uuid.uuid4())[:8]
    operator_logger.error(
        f"Unhandled exception [ref:{reference}] on "
        f"{request.method} {request.url.path}: {exc}",
        exc_info=True,
    )
    report_to_sentry(exc, request, extra_context={"error_reference": reference})
    return render_error_page(
        get_safe_error_message(exc),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        reference,
    )


# =============================================================================
# Handler Registration
# =============================================================================

def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""
    app.add_exception_handler(LoginFlowError, login_flow_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    logger.info("Exception handlers registered successfully")
