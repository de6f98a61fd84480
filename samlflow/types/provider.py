"""
Identity provider configuration models.

One ProviderConfig per configured IdP. The registry hands these out by id
(the value posted in the provider selection field) and by e-mail domain.
"""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from samlflow.types.login_state import MAX_PROVIDER_ID

PEM_CERTIFICATE_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----\s+[A-Za-z0-9+/=\s]+-----END CERTIFICATE-----"
)
DOMAIN_RE = re.compile(r"^[a-z0-9.-]+\.[a-z]{2,}$")


# =============================================================================
# Enums
# =============================================================================


class SAMLNameIDFormat(str, Enum):
    """SAML NameID formats."""

    EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
    PERSISTENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent"
    TRANSIENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:transient"
    UNSPECIFIED = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"


class AuthnContextComparison(str, Enum):
    EXACT = "exact"
    MINIMUM = "minimum"
    MAXIMUM = "maximum"
    BETTER = "better"


# =============================================================================
# Provider Configuration
# =============================================================================


class ProviderConfig(BaseModel):
    """Configuration of one identity provider."""

    id: int = Field(..., ge=1, le=MAX_PROVIDER_ID)
    name: str = Field(..., min_length=1, max_length=255)
    conf_domain: Optional[str] = Field(
        None,
        description="User e-mail domain routed to this provider (domain auto-match)",
    )
    conf_icon: Optional[str] = Field(None, description="Icon shown on the login button")
    enforce_sso: bool = False
    proxied: bool = Field(False, description="Trust X-Forwarded-* headers for SP URLs")
    strict: bool = True
    debug: bool = False
    user_jit: bool = Field(False, description="Create unknown users on first login")

    # Service provider
    sp_certificate: str = ""
    sp_private_key: str = Field("", repr=False)
    sp_nameid_format: SAMLNameIDFormat = SAMLNameIDFormat.UNSPECIFIED

    # Identity provider
    idp_entity_id: str = ""
    idp_sso_url: str = ""
    idp_slo_url: Optional[str] = None
    idp_certificate: str = ""
    requested_authn_context: list[str] = Field(default_factory=list)
    requested_authn_context_comparison: AuthnContextComparison = AuthnContextComparison.EXACT

    # Security
    security_nameidencrypted: bool = False
    security_authnrequestssigned: bool = False
    security_logoutrequestsigned: bool = False
    security_logoutresponsesigned: bool = False
    compress_requests: bool = False
    compress_responses: bool = False
    validate_xml: bool = False
    validate_destination: bool = False
    lowercase_url_encoding: bool = False

    comment: str = ""
    is_active: bool = False
    is_deleted: bool = False

    @field_validator("conf_domain")
    @classmethod
    def validate_domain(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip().lower().lstrip("@")
        if not DOMAIN_RE.match(v):
            raise ValueError("Invalid e-mail domain")
        return v

    @field_validator("idp_sso_url", "idp_slo_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        if v and not v.startswith(("https://", "http://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @property
    def is_valid(self) -> bool:
        """Whether the configuration is complete enough to start a login."""
        return (
            not self.is_deleted
            and bool(self.idp_entity_id)
            and bool(self.idp_sso_url)
            and bool(PEM_CERTIFICATE_RE.search(self.idp_certificate or ""))
        )

    @property
    def is_usable(self) -> bool:
        return self.is_active and self.is_valid

    def matches_domain(self, email: str) -> bool:
        if not self.conf_domain or "@" not in email:
            return False
        return email.rsplit("@", 1)[1].strip().lower() == self.conf_domain
