"""Login state tracking: context, phases, persistence and session identity."""

from samlflow.state.context import CookieJar, RequestContext
from samlflow.state.phase import PhaseStateMachine
from samlflow.state.store import LoginStateStore
from samlflow.state.tracker import MARKER_COOKIE, SessionIdentityTracker

__all__ = [
    "CookieJar",
    "LoginStateStore",
    "MARKER_COOKIE",
    "PhaseStateMachine",
    "RequestContext",
    "SessionIdentityTracker",
]
