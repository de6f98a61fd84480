"""
Tests for the SAML protocol adapter.

python3-saml is replaced at SAMLProtocol._make_auth, so these tests cover
the settings we hand to the library and how its answers are translated.
"""

import unittest
from unittest.mock import MagicMock, patch

import pytest

from samlflow.auth.sso import SAMLProtocol, build_saml_settings, extract_certificate_info
from samlflow.auth.sso.saml_service import generate_sp_metadata
from samlflow.errors import AssertionVerificationFailure, ProviderInitFailure

from .saml_mock import BASE_URL, IDP_REDIRECT_URL, REQUEST_ID, make_auth_mock, make_provider

ACS_PATH = "/sso/acs"
REQUEST_DATA = {
    "https": "on",
    "http_host": "testserver",
    "server_port": 443,
    "script_name": ACS_PATH,
    "get_data": {},
    "post_data": {"SAMLResponse": "PHNhbWxwOlJlc3BvbnNlLz4="},
}


@pytest.fixture
def protocol():
    return SAMLProtocol(BASE_URL, ACS_PATH)


# =============================================================================
# Settings Tests
# =============================================================================


class TestBuildSamlSettings(unittest.TestCase):
    """ProviderConfig to python3-saml settings."""

    def test_sp_and_idp_sections(self):
        settings = build_saml_settings(make_provider(3), BASE_URL, ACS_PATH)

        self.assertEqual(settings["sp"]["entityId"], f"{BASE_URL}/sso/metadata/3")
        self.assertEqual(settings["sp"]["assertionConsumerService"]["url"], f"{BASE_URL}{ACS_PATH}")
        self.assertEqual(settings["idp"]["entityId"], "https://idp.example.com/3")
        self.assertEqual(settings["idp"]["singleSignOnService"]["url"], "https://idp.example.com/sso")
        self.assertTrue(settings["strict"])
        self.assertFalse(settings["debug"])

    def test_unsolicited_in_response_to_rejected(self):
        settings = build_saml_settings(make_provider(3), BASE_URL, ACS_PATH)
        self.assertTrue(settings["security"]["rejectUnsolicitedResponsesWithInResponseTo"])

    def test_certificate_headers_stripped(self):
        settings = build_saml_settings(make_provider(3), BASE_URL, ACS_PATH)

        cert = settings["idp"]["x509cert"]
        self.assertNotIn("-----", cert)
        self.assertNotIn("\n", cert)
        self.assertTrue(cert.startswith("MIIB"))

    def test_security_flags_follow_provider(self):
        provider = make_provider(
            3,
            security_authnrequestssigned=True,
            validate_destination=True,
            requested_authn_context=["urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"],
        )

        security = build_saml_settings(provider, BASE_URL, ACS_PATH)["security"]

        self.assertTrue(security["authnRequestsSigned"])
        self.assertTrue(security["destinationStrictlyMatches"])
        self.assertEqual(len(security["requestedAuthnContext"]), 1)
        self.assertEqual(security["requestedAuthnContextComparison"], "exact")

    def test_no_authn_context_requested_by_default(self):
        security = build_saml_settings(make_provider(3), BASE_URL, ACS_PATH)["security"]
        self.assertIs(security["requestedAuthnContext"], False)

    def test_single_logout_only_when_configured(self):
        without = build_saml_settings(make_provider(3), BASE_URL, ACS_PATH)
        with_slo = build_saml_settings(
            make_provider(3, idp_slo_url="https://idp.example.com/slo"), BASE_URL, ACS_PATH
        )

        self.assertNotIn("singleLogoutService", without["idp"])
        self.assertEqual(with_slo["idp"]["singleLogoutService"]["url"], "https://idp.example.com/slo")


# =============================================================================
# Redirect Tests
# =============================================================================


class TestBuildRedirect:
    """AuthnRequest creation."""

    def test_returns_url_and_request_xml(self, protocol):
        auth = make_auth_mock()
        with patch.object(SAMLProtocol, "_make_auth", return_value=auth) as make_auth:
            url, xml, request_id = protocol.build_redirect(make_provider(3), f"{BASE_URL}/", REQUEST_DATA)

        assert url == IDP_REDIRECT_URL
        assert xml == "<samlp:AuthnRequest/>"
        assert request_id == REQUEST_ID
        auth.login.assert_called_once_with(return_to=f"{BASE_URL}/")
        settings, request_data = make_auth.call_args.args
        assert settings["idp"]["entityId"] == "https://idp.example.com/3"
        assert request_data is REQUEST_DATA

    def test_incomplete_provider_rejected_before_library(self, protocol):
        with patch.object(SAMLProtocol, "_make_auth") as make_auth:
            with pytest.raises(ProviderInitFailure) as exc_info:
                protocol.build_redirect(make_provider(3, idp_certificate=""), "/", REQUEST_DATA)

        assert exc_info.value.idp_id == 3
        make_auth.assert_not_called()

    def test_library_settings_error_wrapped(self, protocol):
        with patch.object(SAMLProtocol, "_make_auth", side_effect=ValueError("Invalid dict settings")):
            with pytest.raises(ProviderInitFailure) as exc_info:
                protocol.build_redirect(make_provider(3), "/", REQUEST_DATA)

        assert isinstance(exc_info.value.original_error, ValueError)
        assert "Invalid dict settings" in exc_info.value.internal_message

    def test_login_error_wrapped(self, protocol):
        auth = make_auth_mock()
        auth.login.side_effect = RuntimeError("cannot sign")
        with patch.object(SAMLProtocol, "_make_auth", return_value=auth):
            with pytest.raises(ProviderInitFailure):
                protocol.build_redirect(make_provider(3), "/", REQUEST_DATA)


# =============================================================================
# Response Verification Tests
# =============================================================================


class TestVerifyAndDecode:
    """SAMLResponse validation and claim extraction."""

    def test_valid_response(self, protocol):
        auth = make_auth_mock(
            name_id="jdoe@example.com",
            attributes={"givenName": ("Jane",), "sn": ["Doe"]},
        )
        with patch.object(SAMLProtocol, "_make_auth", return_value=auth):
            claims, xml = protocol.verify_and_decode(make_provider(3), REQUEST_DATA)

        auth.process_response.assert_called_once_with(request_id=None)
        assert claims.name_id == "jdoe@example.com"
        assert claims.session_index == "_session_index"
        assert claims.attributes == {"givenName": ["Jane"], "sn": ["Doe"]}
        assert xml == "<samlp:Response/>"

    def test_response_must_answer_our_request(self, protocol):
        auth = make_auth_mock(in_response_to=REQUEST_ID)
        with patch.object(SAMLProtocol, "_make_auth", return_value=auth):
            claims, _ = protocol.verify_and_decode(make_provider(3), REQUEST_DATA, request_id=REQUEST_ID)

        auth.process_response.assert_called_once_with(request_id=REQUEST_ID)
        assert claims.name_id == "jdoe@example.com"

    def test_response_to_another_request_rejected(self, protocol):
        """A valid response issued for a different AuthnRequest is refused."""
        auth = make_auth_mock(in_response_to="ONELOGIN_issued_for_another_session")
        with patch.object(SAMLProtocol, "_make_auth", return_value=auth):
            with pytest.raises(AssertionVerificationFailure) as exc_info:
                protocol.verify_and_decode(make_provider(3), REQUEST_DATA, request_id=REQUEST_ID)

        assert "InResponseTo" in exc_info.value.reason
        auth.get_attributes.assert_not_called()

    def test_response_without_in_response_to_rejected_when_request_known(self, protocol):
        auth = make_auth_mock(in_response_to=None)
        with patch.object(SAMLProtocol, "_make_auth", return_value=auth):
            with pytest.raises(AssertionVerificationFailure):
                protocol.verify_and_decode(make_provider(3), REQUEST_DATA, request_id=REQUEST_ID)

    def test_library_errors_rejected(self, protocol):
        auth = make_auth_mock(errors=["invalid_response"])
        with patch.object(SAMLProtocol, "_make_auth", return_value=auth):
            with pytest.raises(AssertionVerificationFailure) as exc_info:
                protocol.verify_and_decode(make_provider(3), REQUEST_DATA)

        assert exc_info.value.errors == ["invalid_response"]
        assert exc_info.value.reason == "Signature validation failed"

    def test_unauthenticated_response_rejected(self, protocol):
        auth = make_auth_mock(authenticated=False)
        with patch.object(SAMLProtocol, "_make_auth", return_value=auth):
            with pytest.raises(AssertionVerificationFailure):
                protocol.verify_and_decode(make_provider(3), REQUEST_DATA)

    def test_process_response_exception_rejected(self, protocol):
        auth = make_auth_mock()
        auth.process_response.side_effect = Exception("SAML Response not found")
        with patch.object(SAMLProtocol, "_make_auth", return_value=auth):
            with pytest.raises(AssertionVerificationFailure) as exc_info:
                protocol.verify_and_decode(make_provider(3), REQUEST_DATA)

        assert "not found" in exc_info.value.reason

    def test_claims_not_read_from_rejected_response(self, protocol):
        auth = make_auth_mock(errors=["invalid_response"])
        with patch.object(SAMLProtocol, "_make_auth", return_value=auth):
            with pytest.raises(AssertionVerificationFailure):
                protocol.verify_and_decode(make_provider(3), REQUEST_DATA)

        auth.get_nameid.assert_not_called()
        auth.get_attributes.assert_not_called()


# =============================================================================
# Metadata and Certificate Tests
# =============================================================================


class TestMetadata:
    """SP metadata generation."""

    def test_metadata_uses_sp_settings(self):
        builder = MagicMock(return_value="<md:EntityDescriptor/>")
        with patch("onelogin.saml2.metadata.OneLogin_Saml2_Metadata.builder", builder):
            xml = generate_sp_metadata(make_provider(3), BASE_URL, ACS_PATH)

        assert xml == "<md:EntityDescriptor/>"
        sp = builder.call_args.kwargs["sp"]
        assert sp["entityId"] == f"{BASE_URL}/sso/metadata/3"

    def test_metadata_failure_wrapped(self):
        builder = MagicMock(side_effect=Exception("bad sp"))
        with patch("onelogin.saml2.metadata.OneLogin_Saml2_Metadata.builder", builder):
            with pytest.raises(ProviderInitFailure):
                generate_sp_metadata(make_provider(3), BASE_URL, ACS_PATH)


class TestCertificateInfo(unittest.TestCase):
    """Certificate inspection for the audit view."""

    def test_unparseable_certificate_reports_error(self):
        info = extract_certificate_info("not a certificate")
        self.assertIn("error", info)

    def test_generated_certificate(self):
        from datetime import datetime, timedelta, timezone

        from cryptography import x509
        from cryptography.hazmat.primitives import hashes, serialization
        from cryptography.hazmat.primitives.asymmetric import ec
        from cryptography.x509.oid import NameOID

        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "idp.example.com")])
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(1234)
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=30))
            .sign(key, hashes.SHA256())
        )
        pem = cert.public_bytes(serialization.Encoding.PEM).decode()

        info = extract_certificate_info(pem)

        self.assertEqual(info["subject"]["commonName"], "idp.example.com")
        self.assertEqual(info["serial_number"], 1234)
        self.assertFalse(info["is_expired"])
        self.assertIn(info["days_until_expiry"], (28, 29))
        self.assertEqual(len(info["fingerprint_sha256"].split(":")), 32)
