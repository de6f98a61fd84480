"""
samlflow HTTP application package.

FastAPI wiring around the login flow: the per-request middleware, the SSO
routes and the error pages.
"""

from .error_handlers import register_exception_handlers

__version__ = "1.0.0"

__all__ = [
    "register_exception_handlers",
]
