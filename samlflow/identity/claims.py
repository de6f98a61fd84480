"""
Claim resolution.

Turns the verified ClaimSet of a SAML response into a NormalizedIdentity,
or fails with ClaimValidationFailure. The steps run in a fixed order and
each failure aborts the whole resolution:

1. The subject identifier (NameID) must be present.
2. At least one valid e-mail address is required. An e-mail shaped NameID
   is used as is; otherwise the e-mail claim is promoted to identifier. When
   both exist and differ, the claim becomes the e-mail address and the
   NameID stays the identifier.
3. Azure AD guest and default accounts (identifiers containing #EXT#) are
   refused; they mean the IdP did not map a real user.
4. First and last name are optional.
5. Provisioning scaffolding (random secret, comment) is attached.
"""

import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Optional, Tuple

from samlflow.errors import ClaimValidationFailure, ErrorCode
from samlflow.types.identity import (
    CLAIM_EMAIL,
    CLAIM_FIRST_NAME,
    CLAIM_GIVEN_NAME,
    CLAIM_SURNAME,
    EMAIL_CLAIMS,
    GUEST_IDENTITY_MARKER,
    ClaimSet,
    NormalizedIdentity,
)

logger = logging.getLogger(__name__)

# Local part allows the RFC 5322 atext set so guest UPNs still parse as e-mail
EMAIL_RE = re.compile(
    r"^[a-z0-9!#$%&'*+/=?^_`{|}~.-]+@[a-z0-9-]+(\.[a-z0-9-]+)*\.[a-z]{2,}$"
)

SECRET_BYTES = 32


def is_valid_email(value: Optional[str]) -> bool:
    if not value or len(value) > 254:
        return False
    return bool(EMAIL_RE.match(value.strip().lower()))


def contains_guest_marker(value: Optional[str]) -> bool:
    return bool(value) and GUEST_IDENTITY_MARKER.lower() in value.lower()


class ClaimResolver:
    """Stateless claim to identity resolution."""

    def __init__(self, source_name: str = "samlflow"):
        self.source_name = source_name

    def resolve(self, claims: ClaimSet) -> NormalizedIdentity:
        """
        Resolve a NormalizedIdentity from verified claims.

        Raises:
            ClaimValidationFailure: If the claims cannot identify a real user.
        """
        subject = (claims.name_id or "").strip()
        if not subject:
            raise ClaimValidationFailure(
                "missing subject identifier",
                error_code=ErrorCode.MISSING_SUBJECT,
            )

        identifier, email = self._resolve_email(subject, claims)

        if any(contains_guest_marker(v) for v in (subject, identifier, email)):
            raise ClaimValidationFailure(
                "default guest identity detected",
                error_code=ErrorCode.GUEST_IDENTITY,
            )

        first_name = claims.first(CLAIM_FIRST_NAME) or claims.first(CLAIM_GIVEN_NAME)
        last_name = claims.first(CLAIM_SURNAME)

        now = datetime.now(timezone.utc)
        identity = NormalizedIdentity(
            primary_identifier=identifier,
            email=[email],
            first_name=first_name,
            last_name=last_name,
            provisioning_comment=(
                f"Created by {self.source_name} from SAML claims on "
                f"{now.strftime('%Y-%m-%d %H:%M:%S')} UTC"
            ),
            generated_secret=secrets.token_urlsafe(SECRET_BYTES),
        )
        logger.debug(f"Resolved identity for {identifier}")
        return identity

    def _resolve_email(self, subject: str, claims: ClaimSet) -> Tuple[str, str]:
        email_claim = claims.first_of(*EMAIL_CLAIMS)

        if is_valid_email(subject):
            if email_claim and email_claim.lower() != subject.lower():
                if is_valid_email(email_claim):
                    return subject, email_claim
                # The NameID already provides a usable address
                logger.warning("Ignoring malformed e-mail claim, using the subject identifier")
            return subject, subject

        if email_claim is not None:
            if not is_valid_email(email_claim):
                raise ClaimValidationFailure(
                    "invalid email claim",
                    error_code=ErrorCode.INVALID_EMAIL_CLAIM,
                    claim=CLAIM_EMAIL,
                )
            return email_claim, email_claim

        raise ClaimValidationFailure(
            "no usable email found",
            error_code=ErrorCode.NO_USABLE_EMAIL,
        )
