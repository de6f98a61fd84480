"""
Host session adapter.

The login flow establishes and destroys local sessions through this
adapter. The default implementation keeps sessions in memory and hands the
browser an opaque session cookie, rotating the session id on login the way
most web frameworks do.

Sessions are kept in least recently used order. Entries idle for longer
than idle_seconds are dropped, and once max_entries is reached the least
recently used session makes room for the new one.
"""

import hashlib
import logging
import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from samlflow.identity.users import LocalUser
from samlflow.state.context import CookieJar, RequestContext

logger = logging.getLogger(__name__)

# Auto-login suppression cookie set on logout
NO_AUTO_LOGIN_COOKIE = "noAUTO"


@dataclass
class HostSession:
    session_id: str
    user_id: int = 0
    user_name: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_seen: float = 0.0

    @property
    def is_authenticated(self) -> bool:
        return self.user_id > 0


class HostSessionAdapter:
    """In-memory host sessions behind an HttpOnly cookie."""

    def __init__(
        self,
        cookie_name: str = "host_session",
        max_entries: int = 10000,
        idle_seconds: int = 8 * 3600,
    ):
        self.cookie_name = cookie_name
        self.max_entries = max_entries
        self.idle_seconds = idle_seconds
        self._sessions: "OrderedDict[str, HostSession]" = OrderedDict()

    @staticmethod
    def _new_session_id() -> str:
        token = secrets.token_urlsafe(32)
        return hashlib.sha256(token.encode()).hexdigest()

    def _expired(self, session: HostSession, now: float) -> bool:
        return now - session.last_seen > self.idle_seconds

    def _prune(self, now: float) -> None:
        # Oldest first, so expired sessions are at the front
        while self._sessions:
            oldest = next(iter(self._sessions.values()))
            if not self._expired(oldest, now):
                break
            self._sessions.popitem(last=False)
        while len(self._sessions) >= self.max_entries:
            evicted_id, _ = self._sessions.popitem(last=False)
            logger.debug(f"Evicted host session {evicted_id[:8]} to stay under {self.max_entries}")

    def _store(self, session: HostSession) -> None:
        session.last_seen = time.time()
        self._prune(session.last_seen)
        self._sessions[session.session_id] = session

    def current(self, session_id: Optional[str]) -> Optional[HostSession]:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        now = time.time()
        if self._expired(session, now):
            del self._sessions[session_id]
            return None
        session.last_seen = now
        self._sessions.move_to_end(session_id)
        return session

    def ensure(self, jar: CookieJar) -> HostSession:
        """
        Session of the current request, starting an anonymous one if needed.
        """
        session = self.current(jar.get(self.cookie_name))
        if session is None:
            session = HostSession(session_id=self._new_session_id())
            self._store(session)
            jar.set(self.cookie_name, session.session_id, samesite="lax")
        return session

    def establish(self, ctx: RequestContext, jar: CookieJar, user: LocalUser) -> HostSession:
        """
        Log the user in locally.

        The old session is dropped and a new id issued, so ctx.host_session_id
        is stale afterwards; the tracker reconciles that on the next request.
        """
        self._sessions.pop(ctx.host_session_id, None)
        session = HostSession(
            session_id=self._new_session_id(),
            user_id=user.id,
            user_name=user.name,
        )
        self._store(session)
        jar.set(self.cookie_name, session.session_id, samesite="lax")
        logger.info(f"Established local session for user {user.name}")
        return session

    def destroy(self, ctx: RequestContext, jar: CookieJar) -> None:
        """Invalidate the local session and clear its cookie."""
        self._sessions.pop(ctx.host_session_id, None)
        jar.delete(self.cookie_name)

    def suppress_auto_login(self, jar: CookieJar) -> None:
        jar.set(NO_AUTO_LOGIN_COOKIE, "1", samesite="lax")

    def __len__(self) -> int:
        return len(self._sessions)
