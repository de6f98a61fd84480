"""Outcome of running the login flow for one request."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from samlflow.types.login_state import LoginStateRecord


class AuthAction(str, Enum):
    """What the HTTP layer should do with the request."""

    CONTINUE = "continue"      # not our business, let the application handle it
    ALLOW = "allow"            # excluded path, pass through untouched
    DENY = "deny"              # excluded path configured to be refused
    REDIRECT = "redirect"      # send the browser to the IdP
    REFRESH = "refresh"        # login finished, send the browser to location
    LOGGED_OFF = "logged_off"  # session ended


class AuthDecision(BaseModel):
    action: AuthAction
    location: Optional[str] = None
    record: Optional[LoginStateRecord] = None

    @property
    def short_circuits(self) -> bool:
        """Whether the application handler must not run."""
        return self.action in (
            AuthAction.DENY,
            AuthAction.REDIRECT,
            AuthAction.REFRESH,
            AuthAction.LOGGED_OFF,
        )
