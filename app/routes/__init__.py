"""Route modules for the samlflow application."""

from .health import router as health_router
from .sso import router as sso_router
from .sso import saml_acs

__all__ = [
    "health_router",
    "saml_acs",
    "sso_router",
]
