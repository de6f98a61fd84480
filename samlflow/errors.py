"""
Exception classes for the SAML login flow.

Every failure the login flow can hit has its own exception type so that the
HTTP layer can decide how to render it without inspecting messages. All
exceptions inherit from LoginFlowError, which carries a message that is safe
to show to the end user and an internal message that only goes to the
operator log.

Exception Hierarchy:
    LoginFlowError (base)
    ├── StateLoadFailure (500)
    ├── StateWriteFailure (500)
    ├── IdentifierMigrationFailure (500)
    ├── ClaimValidationFailure (403)
    ├── ProviderInitFailure (502)
    ├── AssertionVerificationFailure (403)
    ├── ReplayOrPhaseMismatchFailure (409)
    └── UserProvisioningFailure (403)

PhaseTransitionError is a ValueError raised by the phase state machine for
illegal transitions; the orchestrator never lets it reach the user unwrapped.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """
    Machine-readable identifiers for login flow failures.

    The codes end up in the operator log and in the JSON variant of the
    error response, never in the HTML page shown to the user.
    """

    INTERNAL_ERROR = "INTERNAL_ERROR"

    # Persistence
    STATE_LOAD_FAILED = "STATE_LOAD_FAILED"
    STATE_WRITE_FAILED = "STATE_WRITE_FAILED"
    IDENTIFIER_MIGRATION_FAILED = "IDENTIFIER_MIGRATION_FAILED"

    # Claims
    MISSING_SUBJECT = "MISSING_SUBJECT"
    INVALID_EMAIL_CLAIM = "INVALID_EMAIL_CLAIM"
    NO_USABLE_EMAIL = "NO_USABLE_EMAIL"
    GUEST_IDENTITY = "GUEST_IDENTITY"

    # Provider / protocol
    PROVIDER_INIT_FAILED = "PROVIDER_INIT_FAILED"
    ASSERTION_REJECTED = "ASSERTION_REJECTED"
    REPLAY_OR_PHASE_MISMATCH = "REPLAY_OR_PHASE_MISMATCH"

    # Users
    USER_PROVISIONING_FAILED = "USER_PROVISIONING_FAILED"


class LoginFlowError(Exception):
    """
    Base exception class for all login flow errors.

    Attributes:
        message: Human-readable error message (safe for external display).
        error_code: Machine-readable error code from ErrorCode enum.
        status_code: HTTP status code to return.
        details: Additional context about the error (optional).
        internal_message: Detailed message for the operator log only.
    """

    status_code: int = 500
    default_error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    default_message: str = "An unexpected error occurred during login"

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        self.internal_message = internal_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to a dictionary for API response.

        Returns:
            Dictionary with error information suitable for JSON serialization.
        """
        response = {
            "success": False,
            "error": self.message,
            "error_code": self.error_code.value,
        }
        if self.details:
            response["details"] = self.details
        return response

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value!r}, "
            f"status_code={self.status_code})"
        )


# =============================================================================
# Persistence Errors (500 Internal Server Error)
# =============================================================================

class StateLoadFailure(LoginFlowError):
    """
    Raised when the state backend cannot be queried.

    Always fatal: without the record the flow cannot tell which phase it is in.
    """

    default_error_code = ErrorCode.STATE_LOAD_FAILED
    default_message = "Login state could not be loaded"

    def __init__(
        self,
        message: Optional[str] = None,
        tracked_session_id: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.tracked_session_id = tracked_session_id
        self.original_error = original_error
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            internal_message=internal_message or (
                f"load of '{tracked_session_id}' failed: {original_error}"
                if original_error
                else None
            ),
        )


class StateWriteFailure(LoginFlowError):
    """Raised when the backend rejects a write the flow cannot continue without."""

    default_error_code = ErrorCode.STATE_WRITE_FAILED
    default_message = "Login state could not be saved"

    def __init__(
        self,
        message: Optional[str] = None,
        operation: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.operation = operation
        self.original_error = original_error
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            internal_message=internal_message or (
                f"State operation '{operation}' failed: {original_error}"
                if operation and original_error
                else None
            ),
        )


class IdentifierMigrationFailure(LoginFlowError):
    """
    Raised when re-keying a record to the rotated host session id touched no rows.

    This means the marker cookie points at a session the store has never seen,
    so continuity of the flow cannot be established.
    """

    default_error_code = ErrorCode.IDENTIFIER_MIGRATION_FAILED
    default_message = "Login session could not be resumed"

    def __init__(
        self,
        old_id: str,
        new_id: str,
        message: Optional[str] = None,
        internal_message: Optional[str] = None,
    ):
        self.old_id = old_id
        self.new_id = new_id
        super().__init__(
            message=message,
            internal_message=internal_message or (
                f"Migration '{old_id}' -> '{new_id}' touched 0 rows"
            ),
        )


# =============================================================================
# Claim Errors (403 Forbidden)
# =============================================================================

class ClaimValidationFailure(LoginFlowError):
    """
    Raised when the asserted claims cannot produce a trustworthy identity.

    The reason is kept for the operator log; the user only sees the generic
    message.
    """

    status_code = 403
    default_error_code = ErrorCode.NO_USABLE_EMAIL
    default_message = "Your identity could not be verified"

    def __init__(
        self,
        reason: str,
        error_code: Optional[ErrorCode] = None,
        claim: Optional[str] = None,
    ):
        self.reason = reason
        details: Dict[str, Any] = {}
        if claim:
            details["claim"] = claim
        super().__init__(
            error_code=error_code,
            details=details,
            internal_message=reason,
        )


# =============================================================================
# Provider Errors (502 / 403 / 409)
# =============================================================================

class ProviderInitFailure(LoginFlowError):
    """Raised when a provider configuration is malformed or rejected by the SAML library."""

    status_code = 502
    default_error_code = ErrorCode.PROVIDER_INIT_FAILED
    default_message = "The identity provider is not available"

    def __init__(
        self,
        message: Optional[str] = None,
        idp_id: Optional[int] = None,
        internal_message: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.idp_id = idp_id
        self.original_error = original_error
        details = {"idp_id": idp_id} if idp_id is not None else {}
        super().__init__(
            message=message,
            details=details,
            internal_message=internal_message or (
                str(original_error) if original_error else None
            ),
        )


class AssertionVerificationFailure(LoginFlowError):
    """Raised when the SAML library rejects the response (signature, audience, timing...)."""

    status_code = 403
    default_error_code = ErrorCode.ASSERTION_REJECTED
    default_message = "The identity provider response was not accepted"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[list] = None,
        reason: Optional[str] = None,
    ):
        self.errors = errors or []
        self.reason = reason
        super().__init__(
            message=message,
            details={"errors": self.errors} if self.errors else None,
            internal_message=f"SAML response rejected: {reason or self.errors}",
        )


class ReplayOrPhaseMismatchFailure(LoginFlowError):
    """
    Raised when a response arrives for a session that is not waiting for one.

    Either a replayed response or one for a flow that already moved on;
    treated as a security event.
    """

    status_code = 409
    default_error_code = ErrorCode.REPLAY_OR_PHASE_MISMATCH
    default_message = "This login attempt is no longer valid"

    def __init__(
        self,
        tracked_session_id: str,
        current_phase: Optional[int] = None,
    ):
        self.tracked_session_id = tracked_session_id
        self.current_phase = current_phase
        super().__init__(
            internal_message=(
                f"Response for session '{tracked_session_id}' "
                f"received in phase {current_phase}"
            ),
        )


# =============================================================================
# User Errors
# =============================================================================

class UserProvisioningFailure(LoginFlowError):
    """Raised when no local user exists and the provider does not allow JIT creation."""

    status_code = 403
    default_error_code = ErrorCode.USER_PROVISIONING_FAILED
    default_message = "No account is available for this identity"

    def __init__(
        self,
        identifier: str,
        message: Optional[str] = None,
        internal_message: Optional[str] = None,
    ):
        self.identifier = identifier
        super().__init__(
            message=message,
            internal_message=internal_message or (
                f"User '{identifier}' not found and JIT provisioning is disabled"
            ),
        )


class PhaseTransitionError(ValueError):
    """Raised for a phase value or transition the state machine does not allow."""

    def __init__(self, current: Any, requested: Any, reason: str):
        self.current = current
        self.requested = requested
        self.reason = reason
        super().__init__(f"Cannot move from phase {current} to {requested}: {reason}")


# =============================================================================
# Utility Functions
# =============================================================================

def get_safe_error_message(exc: Exception) -> str:
    """
    Get a message that can be shown to the user without leaking details.

    Args:
        exc: The exception to get a message for.

    Returns:
        A sanitized error message safe for display.
    """
    if isinstance(exc, LoginFlowError):
        return exc.message
    return "An unexpected error occurred. Please try again later."


def is_security_event(exc: Exception) -> bool:
    """Whether the failure should also be written to the security log."""
    return isinstance(exc, (ReplayOrPhaseMismatchFailure, AssertionVerificationFailure))
