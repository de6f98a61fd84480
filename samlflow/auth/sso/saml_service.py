"""
SAML 2.0 protocol adapter.

Everything that touches python3-saml lives here:
- building the python3-saml settings dictionary from a ProviderConfig
- issuing the AuthnRequest redirect
- verifying a SAMLResponse and decoding it into a ClaimSet
- Service Provider (SP) metadata generation
- certificate inspection

Security Considerations:
- Signature, audience, destination and time checks are done by python3-saml;
  this module never looks at an assertion the library did not accept
- Debug mode must NEVER be enabled in production

Dependencies:
- python3-saml: pip install python3-saml
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from samlflow.errors import AssertionVerificationFailure, ProviderInitFailure
from samlflow.types.identity import ClaimSet
from samlflow.types.provider import ProviderConfig

logger = logging.getLogger(__name__)

BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
BINDING_HTTP_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"


def _strip_pem_headers(cert: str) -> str:
    """Remove PEM headers and footers, return raw certificate."""
    lines = cert.strip().split("\n")
    cert_lines = [
        line.strip()
        for line in lines
        if not line.startswith("-----")
    ]
    return "".join(cert_lines)


def sp_entity_id(provider: ProviderConfig, base_url: str) -> str:
    return f"{base_url}/sso/metadata/{provider.id}"


def build_saml_settings(
    provider: ProviderConfig,
    base_url: str,
    acs_path: str,
) -> Dict[str, Any]:
    """
    Build settings dictionary for python3-saml library.

    Args:
        provider: Identity provider configuration
        base_url: Public base URL of the application
        acs_path: Path of the Assertion Consumer Service

    Returns:
        Settings dictionary compatible with OneLogin_Saml2_Auth
    """
    settings: Dict[str, Any] = {
        "strict": provider.strict,
        "debug": provider.debug,
        "sp": {
            "entityId": sp_entity_id(provider, base_url),
            "assertionConsumerService": {
                "url": f"{base_url}{acs_path}",
                "binding": BINDING_HTTP_POST,
            },
            "NameIDFormat": provider.sp_nameid_format.value,
            "x509cert": _strip_pem_headers(provider.sp_certificate) if provider.sp_certificate else "",
            "privateKey": provider.sp_private_key,
        },
        "idp": {
            "entityId": provider.idp_entity_id,
            "singleSignOnService": {
                "url": provider.idp_sso_url,
                "binding": BINDING_HTTP_REDIRECT,
            },
            "x509cert": _strip_pem_headers(provider.idp_certificate),
        },
        "security": {
            "nameIdEncrypted": provider.security_nameidencrypted,
            "authnRequestsSigned": provider.security_authnrequestssigned,
            "logoutRequestSigned": provider.security_logoutrequestsigned,
            "logoutResponseSigned": provider.security_logoutresponsesigned,
            "wantXMLValidation": provider.validate_xml,
            "destinationStrictlyMatches": provider.validate_destination,
            "lowercaseUrlencoding": provider.lowercase_url_encoding,
            "requestedAuthnContext": provider.requested_authn_context or False,
            "requestedAuthnContextComparison": provider.requested_authn_context_comparison.value,
            "wantNameId": True,
            "rejectUnsolicitedResponsesWithInResponseTo": True,
        },
        "compress": {
            "requests": provider.compress_requests,
            "responses": provider.compress_responses,
        },
    }

    if provider.idp_slo_url:
        settings["idp"]["singleLogoutService"] = {
            "url": provider.idp_slo_url,
            "binding": BINDING_HTTP_REDIRECT,
        }

    return settings


def generate_sp_metadata(provider: ProviderConfig, base_url: str, acs_path: str) -> str:
    """
    Generate Service Provider (SP) metadata XML for a provider.

    Raises:
        ProviderInitFailure: If python3-saml rejects the SP settings.
    """
    from onelogin.saml2.metadata import OneLogin_Saml2_Metadata

    settings = build_saml_settings(provider, base_url, acs_path)
    try:
        return OneLogin_Saml2_Metadata.builder(
            sp=settings["sp"],
            authnsign=provider.security_authnrequestssigned,
            wsign=False,
            valid_until=None,
            cache_duration=None,
        )
    except Exception as e:
        raise ProviderInitFailure(idp_id=provider.id, original_error=e) from e


def extract_certificate_info(cert_pem: str) -> Dict[str, Any]:
    """
    Extract information from an X.509 certificate.

    Args:
        cert_pem: Certificate in PEM format

    Returns:
        Dictionary with certificate information, or {"error": ...}
    """
    try:
        from cryptography import x509
        from cryptography.hazmat.primitives import hashes

        cert = x509.load_pem_x509_certificate(cert_pem.encode())

        fingerprint_hex = cert.fingerprint(hashes.SHA256()).hex().upper()
        fingerprint_formatted = ":".join(
            [fingerprint_hex[i : i + 2] for i in range(0, len(fingerprint_hex), 2)]
        )

        def name_to_dict(name: x509.Name) -> Dict[str, str]:
            return {attr.oid._name: attr.value for attr in name}

        now = datetime.now(timezone.utc)
        return {
            "subject": name_to_dict(cert.subject),
            "issuer": name_to_dict(cert.issuer),
            "serial_number": cert.serial_number,
            "not_valid_before": cert.not_valid_before_utc.isoformat(),
            "not_valid_after": cert.not_valid_after_utc.isoformat(),
            "fingerprint_sha256": fingerprint_formatted,
            "is_expired": now > cert.not_valid_after_utc,
            "days_until_expiry": (cert.not_valid_after_utc - now).days,
        }

    except Exception as e:
        return {
            "error": f"Failed to parse certificate: {e}",
        }


class SAMLProtocol:
    """
    Thin wrapper around OneLogin_Saml2_Auth.

    One instance serves every provider; the settings are rebuilt from the
    ProviderConfig on each call.
    """

    def __init__(self, base_url: str, acs_path: str):
        self.base_url = base_url
        self.acs_path = acs_path

    def _make_auth(self, settings: Dict[str, Any], request_data: Dict[str, Any]):
        from onelogin.saml2.auth import OneLogin_Saml2_Auth

        return OneLogin_Saml2_Auth(request_data, settings)

    def _init_auth(self, provider: ProviderConfig, request_data: Dict[str, Any]):
        if not provider.is_valid:
            raise ProviderInitFailure(
                idp_id=provider.id,
                internal_message=f"Provider '{provider.name}' configuration is incomplete",
            )
        settings = build_saml_settings(provider, self.base_url, self.acs_path)
        try:
            return self._make_auth(settings, request_data)
        except Exception as e:
            logger.error(f"python3-saml rejected settings of provider {provider.id}: {e}")
            raise ProviderInitFailure(idp_id=provider.id, original_error=e) from e

    def build_redirect(
        self,
        provider: ProviderConfig,
        return_to: str,
        request_data: Dict[str, Any],
    ) -> Tuple[str, str, str]:
        """
        Create an AuthnRequest for the provider.

        Returns:
            (redirect URL, AuthnRequest XML for the audit trail, AuthnRequest ID)

        Raises:
            ProviderInitFailure: If the configuration is rejected.
        """
        auth = self._init_auth(provider, request_data)
        try:
            redirect_url = auth.login(return_to=return_to)
        except Exception as e:
            raise ProviderInitFailure(idp_id=provider.id, original_error=e) from e

        request_xml = auth.get_last_request_xml() or ""
        request_id = auth.get_last_request_id() or ""
        logger.info(f"SAML auth initiated for provider {provider.id}, request_id: {request_id[:20]}")
        return redirect_url, request_xml, request_id

    def verify_and_decode(
        self,
        provider: ProviderConfig,
        request_data: Dict[str, Any],
        request_id: Optional[str] = None,
    ) -> Tuple[ClaimSet, str]:
        """
        Validate the posted SAMLResponse and extract its claims.

        Args:
            provider: Provider the session was redirected to
            request_data: Request description for python3-saml
            request_id: ID of the AuthnRequest this session sent; the
                response's InResponseTo must match it

        Returns:
            (ClaimSet, response XML for the audit trail)

        Raises:
            ProviderInitFailure: If the configuration is rejected.
            AssertionVerificationFailure: If the response does not validate.
        """
        auth = self._init_auth(provider, request_data)
        try:
            auth.process_response(request_id=request_id)
        except Exception as e:
            raise AssertionVerificationFailure(reason=str(e)) from e

        errors = auth.get_errors()
        if errors:
            error_reason = auth.get_last_error_reason()
            logger.error(
                f"SAML authentication failed for provider {provider.id}: "
                f"{errors}, reason: {error_reason}"
            )
            raise AssertionVerificationFailure(errors=list(errors), reason=error_reason)

        if not auth.is_authenticated():
            raise AssertionVerificationFailure(reason="SAML authentication not confirmed")

        # Non-strict providers skip this check inside python3-saml
        if request_id:
            in_response_to = auth.get_last_response_in_response_to()
            if in_response_to != request_id:
                logger.warning(
                    f"SAML InResponseTo mismatch for provider {provider.id}: "
                    f"expected {request_id[:20]}, "
                    f"got {in_response_to[:20] if in_response_to else 'None'}"
                )
                raise AssertionVerificationFailure(reason="SAML response InResponseTo mismatch")

        claims = ClaimSet(
            name_id=auth.get_nameid() or "",
            name_id_format=auth.get_nameid_format(),
            session_index=auth.get_session_index(),
            attributes={k: list(v) for k, v in (auth.get_attributes() or {}).items()},
        )
        return claims, auth.get_last_response_xml() or ""
