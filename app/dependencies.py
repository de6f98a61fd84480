"""
Dependency wiring for the samlflow HTTP layer.

build_orchestrator() assembles the login flow from Settings once at
startup; routes reach the result through get_orchestrator().
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from samlflow.auth.sso import SAMLProtocol
from samlflow.config import Settings
from samlflow.exclusions import ExclusionRules
from samlflow.identity import ClaimResolver, InMemoryUserDirectory, UserDirectory
from samlflow.loginflow import AuthOrchestrator, HostSessionAdapter
from samlflow.providers import ProviderRegistry
from samlflow.state import LoginStateStore, PhaseStateMachine, SessionIdentityTracker
from samlflow.storage import StateBackend, create_backend
from samlflow.utils.logging import get_security_logger

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

AUDIT_KEY_HEADER = APIKeyHeader(name="X-Audit-Key", auto_error=False)


def build_orchestrator(
    settings: Settings,
    backend: Optional[StateBackend] = None,
    providers: Optional[ProviderRegistry] = None,
    exclusions: Optional[ExclusionRules] = None,
    users: Optional[UserDirectory] = None,
) -> AuthOrchestrator:
    """
    Assemble the login flow from configuration.

    Components can be passed in to replace the ones built from settings.
    """
    flow = settings.loginflow
    if flow.marker_secret.get_secret_value() == "change-me":
        logger.warning("LOGINFLOW_MARKER_SECRET is not set, session markers use the default secret")

    store = LoginStateStore(backend or create_backend(settings.database))
    return AuthOrchestrator(
        store=store,
        tracker=SessionIdentityTracker(store, flow.marker_secret.get_secret_value()),
        phases=PhaseStateMachine(strict=flow.strict_phase_order),
        resolver=ClaimResolver(),
        providers=providers if providers is not None else ProviderRegistry.from_file(flow.providers_file),
        exclusions=exclusions if exclusions is not None else ExclusionRules.from_file(flow.exclusions_file),
        protocol=SAMLProtocol(flow.base_url, flow.acs_path),
        users=users if users is not None else InMemoryUserDirectory(),
        host=HostSessionAdapter(
            cookie_name=flow.host_session_cookie,
            max_entries=flow.host_session_max_entries,
            idle_seconds=flow.host_session_idle_seconds,
        ),
        logout_path=flow.logout_path,
        root_url=f"{flow.base_url}/",
        persist_excluded=flow.persist_excluded,
    )


def get_orchestrator(request: Request) -> AuthOrchestrator:
    return request.app.state.orchestrator


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def verify_audit_key(
    request: Request,
    audit_key: Optional[str] = Depends(AUDIT_KEY_HEADER),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """
    Guard for the read-only audit endpoints.

    The endpoints do not exist unless LOGINFLOW_AUDIT_API_KEY is set.
    """
    expected = settings.loginflow.audit_api_key
    if expected is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    if not audit_key or not secrets.compare_digest(
        audit_key.encode(), expected.get_secret_value().encode()
    ):
        security_logger.warning(
            f"Rejected audit request on {request.url.path}",
            extra={"key_present": bool(audit_key)},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing audit key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
