"""
Local user matching and just-in-time provisioning.

The login flow does not own user accounts; it talks to the host's user
management through UserDirectory. find_or_create() matches on the resolved
identifier and only creates an account when the provider allows JIT
provisioning.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from samlflow.errors import UserProvisioningFailure
from samlflow.types.identity import ClaimSet, NormalizedIdentity

logger = logging.getLogger(__name__)


class LocalUser(BaseModel):
    """The host's view of a user account."""

    id: int
    name: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    comment: str = ""
    is_active: bool = True
    groups: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class UserDirectory(ABC):
    """Host user management seen from the login flow."""

    @abstractmethod
    async def find(self, identifier: str) -> Optional[LocalUser]:
        """Look a user up by login name or e-mail address."""

    @abstractmethod
    async def create(self, identity: NormalizedIdentity) -> LocalUser:
        """Create a user from a resolved identity."""

    async def find_or_create(self, identity: NormalizedIdentity, allow_jit: bool) -> LocalUser:
        """
        Match the identity to a local user, creating one if allowed.

        Raises:
            UserProvisioningFailure: If no user matches and JIT is off, or
                the matched account is disabled.
        """
        user = await self.find(identity.primary_identifier)
        if user is None and identity.email[0] != identity.primary_identifier:
            user = await self.find(identity.email[0])

        if user is not None:
            if not user.is_active:
                raise UserProvisioningFailure(
                    identity.primary_identifier,
                    internal_message=f"User '{user.name}' is disabled",
                )
            return user

        if not allow_jit:
            raise UserProvisioningFailure(identity.primary_identifier)

        user = await self.create(identity)
        logger.info(f"Provisioned user {user.name} (id={user.id})")
        return user


class InMemoryUserDirectory(UserDirectory):
    """User directory kept in process memory."""

    def __init__(self, users: Optional[List[LocalUser]] = None):
        self._users: Dict[int, LocalUser] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()
        for user in users or []:
            self._users[user.id] = user
            self._next_id = max(self._next_id, user.id + 1)

    async def find(self, identifier: str) -> Optional[LocalUser]:
        key = identifier.strip().lower()
        for user in self._users.values():
            if user.name.lower() == key or user.email.lower() == key:
                return user
        return None

    async def create(self, identity: NormalizedIdentity) -> LocalUser:
        async with self._lock:
            user = LocalUser(
                id=self._next_id,
                name=identity.primary_identifier,
                email=identity.email[0],
                first_name=identity.first_name,
                last_name=identity.last_name,
                comment=identity.provisioning_comment,
            )
            self._users[user.id] = user
            self._next_id += 1
            return user

    def __len__(self) -> int:
        return len(self._users)


class ClaimRuleEngine:
    """
    Hook for assigning groups or roles from claims after the user is matched.

    Receives the ClaimSet exactly as the SAML library decoded it. The default
    leaves the user untouched; hosts with a rule engine subclass this.
    """

    async def apply(self, claims: ClaimSet, user: LocalUser) -> LocalUser:
        return user
