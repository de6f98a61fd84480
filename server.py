"""
samlflow server.

Entry point that assembles the login flow, its middleware and the SSO
routes into a FastAPI application.
"""

import logging
import os
import re
import sys
from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
import uvicorn
from fastapi import FastAPI
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

# Configure structured logging FIRST, before other imports that use logging
from samlflow.utils.logging import setup_logging

logger = setup_logging(service_name="samlflow")

from samlflow.config import Settings, get_settings
from samlflow.loginflow import AuthOrchestrator

from app.dependencies import build_orchestrator
from app.error_handlers import register_exception_handlers
from app.middleware import LoginFlowMiddleware, RequestLoggingMiddleware
from app.routes import health_router, saml_acs, sso_router


# =============================================================================
# Sentry Error Tracking Configuration
# =============================================================================

SENSITIVE_KEYS = [
    "password", "secret", "token", "authorization", "bearer",
    "samlresponse", "samlrequest", "x-audit-key", "cookie",
]


def filter_sensitive_breadcrumbs(crumb, hint):
    """
    Filter sensitive data from Sentry breadcrumbs.

    SAML messages, cookies and the audit key never leave the process.
    """
    if crumb.get("category") == "http":
        data = crumb.get("data")
        if isinstance(data, dict):
            if isinstance(data.get("headers"), dict):
                for key in list(data["headers"].keys()):
                    if any(s in key.lower() for s in SENSITIVE_KEYS):
                        data["headers"][key] = "[FILTERED]"
            if "url" in data:
                for key in SENSITIVE_KEYS:
                    pattern = re.compile(f"({key}=)[^&]*", re.IGNORECASE)
                    data["url"] = pattern.sub(r"\1[FILTERED]", data["url"])

    if crumb.get("category") in ("console", "log") and "message" in crumb:
        message = str(crumb["message"]).lower()
        if any(key in message for key in SENSITIVE_KEYS):
            crumb["message"] = "[FILTERED - may contain sensitive data]"

    return crumb


def init_sentry(settings: Settings) -> None:
    if not settings.is_sentry_configured:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return

    sentry_settings = settings.sentry
    sentry_sdk.init(
        dsn=sentry_settings.sentry_dsn,
        environment=sentry_settings.sentry_environment,
        sample_rate=1.0,
        traces_sample_rate=sentry_settings.sentry_traces_sample_rate,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        before_breadcrumb=filter_sensitive_breadcrumbs,
        # Identities from assertions are personal data
        send_default_pii=False,
        attach_stacktrace=True,
        release=sentry_settings.sentry_release,
    )
    logger.info(f"Sentry initialized for environment: {sentry_settings.sentry_environment}")


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[AuthOrchestrator] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Tests pass their own settings and orchestrator; the module-level app
    uses the environment.
    """
    settings = settings or get_settings()
    orchestrator = orchestrator or build_orchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup/shutdown for shared resources."""
        logger.info("Configuration loaded", extra={"config": settings.get_config_summary()})
        yield
        try:
            await orchestrator.store.backend.close()
        except Exception as e:
            logger.warning("Failed to close login state backend: %s", e)

    app = FastAPI(
        title="samlflow",
        description="SAML single sign-on login flow with durable per-session login state.",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        openapi_url=None if settings.is_production else "/openapi.json",
        openapi_tags=[
            {"name": "health", "description": "Health checks"},
            {"name": "sso", "description": "SAML Assertion Consumer Service, metadata and audit"},
        ],
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    register_exception_handlers(app)

    flow = settings.loginflow
    app.add_middleware(
        LoginFlowMiddleware,
        bypass_paths=(flow.acs_path, "/sso/", "/health", "/docs", "/openapi.json"),
        base_url=flow.base_url,
        meta_refresh=flow.meta_refresh,
    )
    # Added last so it executes first and wraps the login flow
    if settings.logging.request_logging_enabled:
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health_router)
    app.add_api_route(flow.acs_path, saml_acs, methods=["POST"], tags=["sso"])
    app.include_router(sso_router)

    return app


try:
    settings: Settings = get_settings()
except Exception as e:
    logger.critical(f"Unexpected error loading configuration: {e}")
    sys.exit(1)

init_sentry(settings)
app = create_app(settings)


if __name__ == "__main__":
    reload_enabled = os.environ.get("UVICORN_RELOAD", "false").lower() == "true"
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("server:app", host="0.0.0.0", port=port, reload=reload_enabled)
