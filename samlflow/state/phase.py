"""
Phase state machine for tracked login sessions.

Pure logic: takes a record and a requested phase, returns the updated
record or raises PhaseTransitionError. Persisting the result is up to the
caller.

Two ordering modes exist. Strict mode (the default) only lets a session move
forward along INITIAL -> SAML_REDIRECTED -> EXTERNAL_AUTHED -> LOCAL_AUTHED:
it may re-enter its current phase, it may always be logged off, and once it
reached a terminal phase nothing else is accepted. EXCLUDED can only be
entered from INITIAL and can be left for any phase. Permissive mode only
checks that the phase exists, which matches deployments that reset a
session to an earlier phase by hand.
"""

import logging
from typing import Union

from samlflow.errors import PhaseTransitionError
from samlflow.types.login_state import (
    LOGOFF_PHASES,
    TERMINAL_PHASES,
    LoginStateRecord,
    Phase,
)

logger = logging.getLogger(__name__)


def coerce_phase(value: Union[int, Phase], current: object = None) -> Phase:
    """Turn an int into a Phase, rejecting anything outside 1..8."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise PhaseTransitionError(current, value, "not a phase")
    try:
        return Phase(value)
    except ValueError:
        raise PhaseTransitionError(current, value, "unknown phase") from None


class PhaseStateMachine:
    """Validates and applies phase transitions."""

    def __init__(self, strict: bool = True):
        self.strict = strict

    def check(self, current: Phase, requested: Union[int, Phase]) -> Phase:
        """
        Validate a transition without applying it.

        Returns:
            The requested phase as a Phase member.

        Raises:
            PhaseTransitionError: If the value is unknown or, in strict mode,
                the transition is not allowed.
        """
        new_phase = coerce_phase(requested, current)
        if not self.strict:
            return new_phase

        if new_phase in LOGOFF_PHASES:
            return new_phase
        if current in TERMINAL_PHASES:
            if new_phase == current:
                return new_phase
            raise PhaseTransitionError(current, new_phase, "session already ended")
        if new_phase == Phase.EXCLUDED:
            if current in (Phase.INITIAL, Phase.EXCLUDED):
                return new_phase
            raise PhaseTransitionError(current, new_phase, "only fresh sessions can be excluded")
        # EXCLUDED is a side branch, not a step on the login path
        if current == Phase.EXCLUDED:
            return new_phase
        if new_phase < current:
            raise PhaseTransitionError(current, new_phase, "phases only move forward")
        return new_phase

    def can_transition(self, current: Phase, requested: Union[int, Phase]) -> bool:
        try:
            self.check(current, requested)
        except PhaseTransitionError:
            return False
        return True

    def set_phase(self, record: LoginStateRecord, requested: Union[int, Phase]) -> LoginStateRecord:
        """
        Apply a transition to a record.

        Reaching SAML_REDIRECTED or any later phase marks the session as
        externally authenticated. The flag is sticky: no later transition
        clears it.
        """
        new_phase = self.check(record.phase, requested)
        external = record.external_authenticated or new_phase >= Phase.SAML_REDIRECTED
        if new_phase != record.phase:
            logger.debug(
                f"Session {record.tracked_session_id[:8]} phase "
                f"{record.phase.name} -> {new_phase.name}"
            )
        return record.with_changes(phase=new_phase, external_authenticated=external)
