"""
SAML SSO support.

Wraps python3-saml behind SAMLProtocol so that the login flow only deals
with ProviderConfig, ClaimSet and the flow's own exceptions.
"""

from samlflow.auth.sso.saml_service import (
    SAMLProtocol,
    build_saml_settings,
    extract_certificate_info,
    generate_sp_metadata,
)

__all__ = [
    "SAMLProtocol",
    "build_saml_settings",
    "extract_certificate_info",
    "generate_sp_metadata",
]
