"""Identity resolution and local user provisioning."""

from samlflow.identity.claims import ClaimResolver, is_valid_email
from samlflow.identity.users import (
    ClaimRuleEngine,
    InMemoryUserDirectory,
    LocalUser,
    UserDirectory,
)

__all__ = [
    "ClaimResolver",
    "ClaimRuleEngine",
    "InMemoryUserDirectory",
    "LocalUser",
    "UserDirectory",
    "is_valid_email",
]
