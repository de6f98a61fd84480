"""Data models shared across the login flow."""

from samlflow.types.identity import ClaimSet, NormalizedIdentity
from samlflow.types.login_state import LoginStateRecord, Phase
from samlflow.types.provider import ProviderConfig

__all__ = [
    "ClaimSet",
    "LoginStateRecord",
    "NormalizedIdentity",
    "Phase",
    "ProviderConfig",
]
