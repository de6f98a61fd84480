"""
Responses the login flow sends instead of the application's own.
"""

import html
from urllib.parse import urlsplit

from fastapi import status
from fastapi.responses import HTMLResponse, RedirectResponse, Response

REFRESH_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta http-equiv="refresh" content="0;URL='{url}'"></head>
<body><p><a href="{url}">Continue</a></p></body>
</html>
"""

DENIED_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Access denied</title></head>
<body><h1>Access denied</h1></body>
</html>
"""


def safe_redirect_target(location: str, base_url: str = "") -> str:
    """
    Location if it is a local path or points at our own origin, else "/".
    """
    if not location or any(c.isspace() for c in location):
        return "/"
    if location.startswith("/") and not location.startswith("//") and "\\" not in location:
        return location

    parsed = urlsplit(location)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return "/"
    own = urlsplit(base_url) if base_url else None
    if own is None or (parsed.scheme, parsed.netloc) != (own.scheme, own.netloc):
        return "/"
    return location


def redirect_response(location: str) -> RedirectResponse:
    return RedirectResponse(url=location, status_code=status.HTTP_302_FOUND)


def refresh_response(location: str, base_url: str = "", meta_refresh: bool = True) -> Response:
    """
    Send the browser on after a completed login.

    The meta refresh page lets the browser store the new session cookies
    from a top-level navigation before the next request.
    """
    target = safe_redirect_target(location, base_url)
    if not meta_refresh:
        return redirect_response(target)
    escaped = html.escape(target, quote=True)
    return HTMLResponse(content=REFRESH_PAGE_TEMPLATE.format(url=escaped))


def denied_response() -> HTMLResponse:
    return HTMLResponse(content=DENIED_PAGE, status_code=status.HTTP_403_FORBIDDEN)
