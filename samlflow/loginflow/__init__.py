"""Per-request SSO login decision flow."""

from samlflow.loginflow.decisions import AuthAction, AuthDecision
from samlflow.loginflow.host import HostSessionAdapter
from samlflow.loginflow.orchestrator import (
    PROVIDER_FIELD,
    AuthOrchestrator,
    parse_provider_selection,
)

__all__ = [
    "AuthAction",
    "AuthDecision",
    "AuthOrchestrator",
    "HostSessionAdapter",
    "PROVIDER_FIELD",
    "parse_provider_selection",
]
