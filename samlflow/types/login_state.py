"""
Login state type definitions.

A LoginStateRecord describes how far one browser session got through the
SSO login flow. Records are immutable; every change produces a new record
through with_changes() and must be persisted explicitly through the store.
"""

from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Provider ids handed out by the registry live in 1..998; 0 means "none"
MAX_PROVIDER_ID = 998
# Anything at or above this is rejected before it is even parsed as an id
PROVIDER_FIELD_LIMIT = 1000


# =============================================================================
# Enums
# =============================================================================


class Phase(IntEnum):
    """Lifecycle phases of a tracked session. The values are persisted."""

    INITIAL = 1
    SAML_REDIRECTED = 2
    EXTERNAL_AUTHED = 3
    LOCAL_AUTHED = 4
    EXCLUDED = 5
    FORCE_LOGGED_OFF = 6
    TIMED_OUT = 7
    LOGGED_OFF = 8


TERMINAL_PHASES = frozenset({
    Phase.FORCE_LOGGED_OFF,
    Phase.TIMED_OUT,
    Phase.LOGGED_OFF,
})

# Reachable from every phase, terminal ones included
LOGOFF_PHASES = frozenset({
    Phase.FORCE_LOGGED_OFF,
    Phase.LOGGED_OFF,
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Login State Record
# =============================================================================


class LoginStateRecord(BaseModel):
    """One record per tracked session."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = Field(None, description="Assigned by the backend on first persist")
    tracked_session_id: str = Field(..., min_length=1, description="Decoupled correlation id")
    host_session_name: str = Field("", description="Host session cookie name at record time")
    user_id: int = Field(0, ge=0, description="Local user id, 0 until established")
    user_name: str = Field("", description="Audit label, never used for authorization")
    host_authenticated: bool = Field(False, description="Host-native login completed")
    external_authenticated: bool = Field(False, description="Phase reached SAML_REDIRECTED or later")
    phase: Phase = Field(Phase.INITIAL)
    idp_id: int = Field(0, ge=0, le=MAX_PROVIDER_ID)
    enforce_logoff: bool = Field(False, description="One-shot forced invalidation flag")
    excluded_path: str = ""
    excluded_action: str = ""
    location: str = Field("", description="Last seen request path")
    login_time: datetime = Field(default_factory=utcnow)
    last_activity_time: datetime = Field(default_factory=utcnow)
    pending_response_blob: str = Field("", description="Last external response, audit only")
    pending_request_blob: str = Field("", description="Last outbound request, audit only")
    pending_request_id: str = Field("", description="ID of the outstanding AuthnRequest; the response must answer it")

    @field_validator("login_time", "last_activity_time")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def with_changes(self, **changes: Any) -> "LoginStateRecord":
        """
        Return a copy with the given fields replaced.

        The copy is validated again so that a bad value (an out of range
        idp_id for instance) cannot sneak in through an update.
        """
        data = self.model_dump()
        data.update(changes)
        return LoginStateRecord.model_validate(data)

    def touch(self, location: Optional[str] = None) -> "LoginStateRecord":
        changes: dict = {"last_activity_time": utcnow()}
        if location is not None:
            changes["location"] = location
        return self.with_changes(**changes)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_audit_dict(self) -> dict:
        """Serializable view for the audit endpoint; request/response blobs are omitted."""
        return self.model_dump(
            mode="json",
            exclude={"pending_response_blob", "pending_request_blob"},
        )
