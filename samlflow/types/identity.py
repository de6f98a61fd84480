"""
Identity claim type definitions.

A ClaimSet is what the SAML library hands back after verifying a response:
the subject NameID plus a multi-valued attribute bag keyed by claim URI.
A NormalizedIdentity is what the claim resolver turns it into.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Well-known claim URIs
# =============================================================================

CLAIM_EMAIL = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress"
CLAIM_FIRST_NAME = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/firstname"
CLAIM_GIVEN_NAME = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname"
CLAIM_SURNAME = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname"

# Providers that do not use the WS-Federation URIs send one of these instead
EMAIL_CLAIMS = (
    CLAIM_EMAIL,
    "email",
    "mail",
    "urn:oid:0.9.2342.19200300.100.1.3",
)

# Azure AD marks invited guest and default accounts with this in the UPN
GUEST_IDENTITY_MARKER = "#EXT#"


class ClaimSet(BaseModel):
    """Verified assertion content."""

    name_id: str = Field("", description="Subject identifier (NameID)")
    name_id_format: Optional[str] = None
    session_index: Optional[str] = None
    attributes: Dict[str, List[str]] = Field(default_factory=dict)

    def first(self, claim: str) -> Optional[str]:
        """First non-empty value of a claim, stripped."""
        for value in self.attributes.get(claim, []):
            if value and value.strip():
                return value.strip()
        return None

    def first_of(self, *claims: str) -> Optional[str]:
        for claim in claims:
            value = self.first(claim)
            if value:
                return value
        return None

    def values(self, claim: str) -> List[str]:
        return list(self.attributes.get(claim, []))


class NormalizedIdentity(BaseModel):
    """Identity ready for user provisioning."""

    primary_identifier: str = Field(..., description="Email shaped unique identifier")
    email: List[str] = Field(..., min_length=1, max_length=1)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    provisioning_comment: str = ""
    generated_secret: str = Field("", repr=False, exclude=True)

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else self.primary_identifier
