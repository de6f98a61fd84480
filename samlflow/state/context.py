"""
Explicit per-request inputs and outputs of the login flow.

The orchestrator never reaches into framework request objects or global
state: the HTTP layer builds a RequestContext from the incoming request and
hands in a CookieJar, then applies whatever the jar collected to the
outgoing response.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class RequestContext:
    """Snapshot of what the login flow needs to know about one request."""

    path: str
    method: str = "GET"
    host_session_id: str = ""
    cookies: Dict[str, str] = field(default_factory=dict)
    form: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None
    host_user_name: Optional[str] = None
    https: bool = True
    http_host: str = ""
    server_port: int = 443
    request_id: Optional[str] = None

    def audit_user_name(self) -> str:
        """
        Best-effort label for audit records.

        The host user name when known, else the forwarded-for address, else
        the peer address, else CLI. Never used for authorization.
        """
        if self.host_user_name:
            return self.host_user_name
        forwarded = self.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if self.client_host:
            return self.client_host
        return "CLI"

    @property
    def location(self) -> str:
        return self.path or "CLI"

    def saml_request_data(self, post_data: Optional[Dict[str, str]] = None) -> Dict[str, object]:
        """Request description in the shape python3-saml expects."""
        return {
            "https": "on" if self.https else "off",
            "http_host": self.http_host,
            "server_port": self.server_port,
            "script_name": self.path,
            "get_data": dict(self.query),
            "post_data": dict(post_data if post_data is not None else self.form),
        }


@dataclass
class CookieOp:
    name: str
    value: str = ""
    delete: bool = False
    httponly: bool = True
    secure: bool = True
    samesite: str = "lax"
    path: str = "/"


class CookieJar:
    """
    Collects cookie writes and deletions made while handling a request.

    Reads go to the incoming cookies unless the same request already wrote
    or deleted the cookie.
    """

    def __init__(self, incoming: Optional[Dict[str, str]] = None):
        self._incoming = dict(incoming or {})
        self._ops: List[CookieOp] = []

    def get(self, name: str) -> Optional[str]:
        for op in reversed(self._ops):
            if op.name == name:
                return None if op.delete else op.value
        return self._incoming.get(name)

    def set(
        self,
        name: str,
        value: str,
        httponly: bool = True,
        secure: bool = True,
        samesite: str = "lax",
        path: str = "/",
    ) -> None:
        self._ops.append(CookieOp(
            name=name,
            value=value,
            httponly=httponly,
            secure=secure,
            samesite=samesite,
            path=path,
        ))

    def delete(self, name: str, path: str = "/") -> None:
        self._ops.append(CookieOp(name=name, delete=True, path=path))

    @property
    def operations(self) -> List[CookieOp]:
        return list(self._ops)

    def apply(self, response) -> None:
        """Replay the collected operations on a Starlette response."""
        for op in self._ops:
            if op.delete:
                response.delete_cookie(op.name, path=op.path)
            else:
                # No max_age/expires: the cookie lives for the browser session
                response.set_cookie(
                    key=op.name,
                    value=op.value,
                    httponly=op.httponly,
                    secure=op.secure,
                    samesite=op.samesite,
                    path=op.path,
                )
