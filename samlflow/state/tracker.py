"""
Session identity tracking.

Hosts rotate their session id when a user logs in, which breaks any
correlation keyed on it. The tracker keeps a marker cookie holding the
session id the flow started with; when the marker and the host's current id
disagree, the persisted record is re-keyed to the new id and the marker is
rewritten.

The marker is signed so a client cannot point its flow at somebody else's
record. A marker that fails verification is treated as absent.
"""

import hashlib
import hmac
import logging
import re
from typing import Optional

from samlflow.errors import IdentifierMigrationFailure
from samlflow.state.context import CookieJar, RequestContext
from samlflow.state.store import LoginStateStore
from samlflow.utils.logging import get_security_logger

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

MARKER_COOKIE = "__PSML"
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_\-,]{1,255}$")


def sign_marker(session_id: str, secret: str) -> str:
    signature = hmac.new(secret.encode(), session_id.encode(), hashlib.sha256).hexdigest()
    return f"{session_id}.{signature}"


def verify_marker(value: Optional[str], secret: str) -> Optional[str]:
    """Return the session id inside a marker, or None if it is missing or forged."""
    if not value or "." not in value:
        return None
    session_id, signature = value.rsplit(".", 1)
    if not SESSION_ID_RE.match(session_id):
        return None
    expected = sign_marker(session_id, secret).rsplit(".", 1)[1]
    if not hmac.compare_digest(signature, expected):
        return None
    return session_id


class SessionIdentityTracker:
    """Resolves the tracked session id for a request."""

    def __init__(self, store: LoginStateStore, secret: str, cookie_name: str = MARKER_COOKIE):
        self.store = store
        self.secret = secret
        self.cookie_name = cookie_name

    def read_marker(self, jar: CookieJar) -> Optional[str]:
        raw = jar.get(self.cookie_name)
        session_id = verify_marker(raw, self.secret)
        if raw and session_id is None:
            security_logger.warning("Ignoring session marker with an invalid signature")
        return session_id

    def write_marker(self, jar: CookieJar, session_id: str) -> None:
        # SameSite=None so the marker comes back on the IdP's cross-site POST
        jar.set(
            self.cookie_name,
            sign_marker(session_id, self.secret),
            httponly=True,
            secure=True,
            samesite="none",
        )

    def clear_marker(self, jar: CookieJar) -> None:
        jar.delete(self.cookie_name)

    async def resolve(self, ctx: RequestContext, jar: CookieJar) -> str:
        """
        Work out which tracked session the request belongs to.

        Returns:
            The tracked session id; after a migration this is the host's
            current session id.

        Raises:
            IdentifierMigrationFailure: If the marker names a session with no
                record and no record exists under the current id either. The
                marker is deleted in the jar first.
        """
        host_id = ctx.host_session_id
        if not host_id or not SESSION_ID_RE.match(host_id):
            raise IdentifierMigrationFailure(
                old_id="",
                new_id=host_id or "",
                internal_message="Request carries no usable host session id",
            )

        marker = self.read_marker(jar)
        if marker is None:
            self.write_marker(jar, host_id)
            return host_id

        if marker == host_id:
            return host_id

        # Host rotated its session id since the marker was issued
        touched = await self.store.migrate(marker, host_id)
        if touched == 0 and not await self.store.exists(host_id):
            # The marker's record is gone (restart or teardown); drop the
            # marker so the next request starts a fresh flow
            self.clear_marker(jar)
            raise IdentifierMigrationFailure(old_id=marker, new_id=host_id)

        try:
            self.write_marker(jar, host_id)
        except Exception as e:
            # The record already moved; a stale marker only costs a no-op
            # migration on the next request
            logger.warning(f"Failed to rewrite session marker: {e}")
        return host_id
