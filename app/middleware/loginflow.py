"""
Login flow middleware.

Runs AuthOrchestrator.do_auth() before every application request and
turns its decision into a response: the IdP redirect, the logout
redirect, a refusal, or the application's own response. Cookie changes
made by the flow are applied to whichever response goes out.

The SSO service routes (ACS, metadata, buttons, audit) are bypassed; the
ACS route drives the return leg of the flow itself.
"""

import logging
from typing import Callable, Dict, Iterable, Optional
from urllib.parse import parse_qsl

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.error_handlers import login_flow_error_response
from app.responses import denied_response, redirect_response, refresh_response
from samlflow.errors import LoginFlowError
from samlflow.loginflow import AuthAction, AuthDecision
from samlflow.loginflow.host import HostSession
from samlflow.state import CookieJar, RequestContext
from samlflow.utils.logging import set_request_context

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def build_request_context(
    request: Request,
    session: HostSession,
    form: Optional[Dict[str, str]] = None,
) -> RequestContext:
    """Snapshot a Starlette request for the login flow."""
    https = request.url.scheme == "https"
    if request.headers.get("x-forwarded-proto") == "https":
        https = True

    host = request.headers.get("x-forwarded-host", request.headers.get("host", ""))
    port = 443 if https else 80
    if ":" in host:
        host, port_str = host.rsplit(":", 1)
        try:
            port = int(port_str)
        except ValueError:
            pass

    return RequestContext(
        path=request.url.path,
        method=request.method,
        host_session_id=session.session_id,
        cookies=dict(request.cookies),
        form=dict(form or {}),
        query=dict(request.query_params),
        headers={k.lower(): v for k, v in request.headers.items()},
        client_host=request.client.host if request.client else None,
        host_user_name=session.user_name if session.is_authenticated else None,
        https=https,
        http_host=host,
        server_port=port,
        request_id=getattr(request.state, "request_id", None),
    )


async def read_form(request: Request) -> Dict[str, str]:
    """
    Url-encoded form fields of a POST, empty for anything else.

    The body is read through request.body() so the application handler can
    still read it afterwards.
    """
    if request.method != "POST":
        return {}
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith(FORM_CONTENT_TYPE):
        return {}
    body = await request.body()
    return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))


class LoginFlowMiddleware(BaseHTTPMiddleware):
    """Per-request SSO login decisions."""

    def __init__(
        self,
        app,
        bypass_paths: Iterable[str] = ("/sso/", "/health"),
        base_url: str = "",
        meta_refresh: bool = True,
    ):
        super().__init__(app)
        self.bypass_paths = tuple(bypass_paths)
        self.base_url = base_url
        self.meta_refresh = meta_refresh

    def _bypassed(self, path: str) -> bool:
        return any(path == p or path.startswith(p) for p in self.bypass_paths)

    def _to_response(self, decision: AuthDecision) -> Optional[Response]:
        if decision.action == AuthAction.DENY:
            return denied_response()
        if decision.action in (AuthAction.REDIRECT, AuthAction.LOGGED_OFF):
            return redirect_response(decision.location or "/")
        if decision.action == AuthAction.REFRESH:
            return refresh_response(decision.location or "/", self.base_url, self.meta_refresh)
        return None

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if self._bypassed(request.url.path):
            return await call_next(request)

        orchestrator = request.app.state.orchestrator
        jar = CookieJar(request.cookies)
        session = orchestrator.host.ensure(jar)
        form = await read_form(request)
        ctx = build_request_context(request, session, form)
        set_request_context(request_id=ctx.request_id)

        try:
            decision = await orchestrator.do_auth(ctx, jar)
        except LoginFlowError as exc:
            response = login_flow_error_response(request, exc)
            jar.apply(response)
            return response

        response = self._to_response(decision)
        if response is None:
            request.state.login_state = decision.record
            request.state.host_session = orchestrator.host.current(jar.get(orchestrator.host.cookie_name))
            response = await call_next(request)
        else:
            logger.debug(f"Login flow answered {request.url.path} with {decision.action.value}")

        jar.apply(response)
        return response
