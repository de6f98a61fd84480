"""
Tests for claim resolution.

This module tests:
- E-mail shaped subject with no extra claims
- Azure AD guest identities rejected
- Non e-mail subject promoted from the e-mail claim
- Failure reasons for missing subject and missing / malformed e-mail
- Provisioning scaffolding (names, comment, generated secret)
"""

import unittest

import pytest

from samlflow.errors import ClaimValidationFailure, ErrorCode
from samlflow.identity.claims import ClaimResolver, contains_guest_marker, is_valid_email
from samlflow.types.identity import (
    CLAIM_EMAIL,
    CLAIM_FIRST_NAME,
    CLAIM_GIVEN_NAME,
    CLAIM_SURNAME,
    GUEST_IDENTITY_MARKER,
    ClaimSet,
)


# =============================================================================
# E-mail Validation Tests
# =============================================================================


class TestEmailValidation(unittest.TestCase):
    """Tests for is_valid_email."""

    def test_plain_address_is_valid(self):
        self.assertTrue(is_valid_email("jdoe@example.com"))

    def test_uppercase_address_is_valid(self):
        self.assertTrue(is_valid_email("JDoe@Example.COM"))

    def test_subdomain_address_is_valid(self):
        self.assertTrue(is_valid_email("j.doe+sso@mail.example.co.uk"))

    def test_guest_upn_parses_as_address(self):
        """Guest UPNs must parse so the guest check can reject them explicitly."""
        self.assertTrue(is_valid_email("jdoe#EXT#@tenant.onmicrosoft.com"))

    def test_invalid_values(self):
        for value in ["", None, "jdoe", "jdoe@", "@example.com", "jdoe@example", "a b@example.com"]:
            with self.subTest(value=value):
                self.assertFalse(is_valid_email(value))

    def test_overlong_address_is_invalid(self):
        self.assertFalse(is_valid_email("a" * 250 + "@example.com"))

    def test_guest_marker_is_case_insensitive(self):
        self.assertTrue(contains_guest_marker("jdoe#ext#@tenant.onmicrosoft.com"))
        self.assertFalse(contains_guest_marker("jdoe@example.com"))
        self.assertFalse(contains_guest_marker(None))


# =============================================================================
# Resolution Tests
# =============================================================================


class TestClaimResolution(unittest.TestCase):
    """Typical IdP answers and how they resolve."""

    def setUp(self):
        self.resolver = ClaimResolver()

    def test_email_subject_without_claims(self):
        identity = self.resolver.resolve(ClaimSet(name_id="jdoe@example.com"))

        self.assertEqual(identity.primary_identifier, "jdoe@example.com")
        self.assertEqual(identity.email, ["jdoe@example.com"])
        self.assertIsNone(identity.first_name)
        self.assertIsNone(identity.last_name)

    def test_guest_identity_rejected(self):
        claims = ClaimSet(
            name_id="jdoe#EXT#@tenant.onmicrosoft.com",
            attributes={
                CLAIM_EMAIL: ["jdoe@example.com"],
                CLAIM_FIRST_NAME: ["Jane"],
                CLAIM_SURNAME: ["Doe"],
            },
        )

        with self.assertRaises(ClaimValidationFailure) as ctx:
            self.resolver.resolve(claims)

        self.assertEqual(ctx.exception.error_code, ErrorCode.GUEST_IDENTITY)
        self.assertEqual(ctx.exception.reason, "default guest identity detected")

    def test_guest_identity_via_email_claim_rejected(self):
        claims = ClaimSet(
            name_id="jdoe",
            attributes={CLAIM_EMAIL: ["jdoe#EXT#@tenant.onmicrosoft.com"]},
        )

        with self.assertRaises(ClaimValidationFailure) as ctx:
            self.resolver.resolve(claims)
        self.assertEqual(ctx.exception.error_code, ErrorCode.GUEST_IDENTITY)

    def test_email_claim_promoted_to_identifier(self):
        claims = ClaimSet(
            name_id="jdoe",
            attributes={CLAIM_EMAIL: ["jdoe@example.com"]},
        )

        identity = self.resolver.resolve(claims)

        self.assertEqual(identity.primary_identifier, "jdoe@example.com")
        self.assertEqual(identity.email, ["jdoe@example.com"])

    def test_distinct_email_claim_kept_as_email(self):
        claims = ClaimSet(
            name_id="jane.doe@corp.example.com",
            attributes={CLAIM_EMAIL: ["jdoe@example.com"]},
        )

        identity = self.resolver.resolve(claims)

        self.assertEqual(identity.primary_identifier, "jane.doe@corp.example.com")
        self.assertEqual(identity.email, ["jdoe@example.com"])

    def test_malformed_claim_ignored_when_subject_is_email(self):
        claims = ClaimSet(
            name_id="jdoe@example.com",
            attributes={CLAIM_EMAIL: ["not-an-address"]},
        )

        identity = self.resolver.resolve(claims)

        self.assertEqual(identity.email, ["jdoe@example.com"])

    def test_short_email_claim_names_are_accepted(self):
        claims = ClaimSet(name_id="jdoe", attributes={"mail": ["jdoe@example.com"]})

        self.assertEqual(self.resolver.resolve(claims).primary_identifier, "jdoe@example.com")


# =============================================================================
# Resolution Failure Tests
# =============================================================================


class TestClaimResolverFailures(unittest.TestCase):
    """Each failing step aborts resolution with its own reason."""

    def setUp(self):
        self.resolver = ClaimResolver()

    def test_missing_subject(self):
        for name_id in ["", "   "]:
            with self.subTest(name_id=name_id):
                with self.assertRaises(ClaimValidationFailure) as ctx:
                    self.resolver.resolve(ClaimSet(name_id=name_id))
                self.assertEqual(ctx.exception.reason, "missing subject identifier")
                self.assertEqual(ctx.exception.error_code, ErrorCode.MISSING_SUBJECT)

    def test_invalid_email_claim(self):
        claims = ClaimSet(name_id="jdoe", attributes={CLAIM_EMAIL: ["jdoe-at-example"]})

        with self.assertRaises(ClaimValidationFailure) as ctx:
            self.resolver.resolve(claims)

        self.assertEqual(ctx.exception.reason, "invalid email claim")
        self.assertEqual(ctx.exception.details, {"claim": CLAIM_EMAIL})

    def test_no_usable_email(self):
        with self.assertRaises(ClaimValidationFailure) as ctx:
            self.resolver.resolve(ClaimSet(name_id="jdoe"))

        self.assertEqual(ctx.exception.reason, "no usable email found")
        self.assertEqual(ctx.exception.error_code, ErrorCode.NO_USABLE_EMAIL)

    def test_user_message_hides_reason(self):
        with self.assertRaises(ClaimValidationFailure) as ctx:
            self.resolver.resolve(ClaimSet(name_id="jdoe"))

        self.assertNotIn("email", ctx.exception.message.lower())
        self.assertEqual(ctx.exception.status_code, 403)


# =============================================================================
# Resolution Properties
# =============================================================================


@pytest.mark.parametrize("subject", [
    "jdoe@example.com",
    "Jane.Doe@Example.org",
    "first.last+tag@sub.example.co.uk",
    "x@example.io",
])
def test_email_subject_becomes_email(subject):
    identity = ClaimResolver().resolve(ClaimSet(name_id=subject))

    assert identity.email == [subject]
    assert GUEST_IDENTITY_MARKER not in identity.primary_identifier
    assert all(GUEST_IDENTITY_MARKER not in e for e in identity.email)


@pytest.mark.parametrize("subject,attributes", [
    ("jdoe", {}),
    ("jdoe", {CLAIM_FIRST_NAME: ["Jane"]}),
    ("12345", {CLAIM_SURNAME: ["Doe"]}),
    ("jdoe", {CLAIM_EMAIL: [""]}),
])
def test_claims_without_email_never_resolve(subject, attributes):
    with pytest.raises(ClaimValidationFailure):
        ClaimResolver().resolve(ClaimSet(name_id=subject, attributes=attributes))


# =============================================================================
# Provisioning Scaffolding Tests
# =============================================================================


class TestProvisioningData(unittest.TestCase):
    """Names, comment and generated secret."""

    def setUp(self):
        self.resolver = ClaimResolver(source_name="samlflow-test")

    def test_first_name_falls_back_to_given_name(self):
        claims = ClaimSet(
            name_id="jdoe@example.com",
            attributes={CLAIM_GIVEN_NAME: ["Jane"], CLAIM_SURNAME: ["Doe"]},
        )

        identity = self.resolver.resolve(claims)

        self.assertEqual(identity.first_name, "Jane")
        self.assertEqual(identity.last_name, "Doe")
        self.assertEqual(identity.display_name, "Jane Doe")

    def test_first_name_claim_wins_over_given_name(self):
        claims = ClaimSet(
            name_id="jdoe@example.com",
            attributes={CLAIM_FIRST_NAME: ["Janet"], CLAIM_GIVEN_NAME: ["Jane"]},
        )

        self.assertEqual(self.resolver.resolve(claims).first_name, "Janet")

    def test_comment_names_source(self):
        identity = self.resolver.resolve(ClaimSet(name_id="jdoe@example.com"))

        self.assertIn("samlflow-test", identity.provisioning_comment)
        self.assertIn("UTC", identity.provisioning_comment)

    def test_generated_secret_is_random_and_hidden(self):
        first = self.resolver.resolve(ClaimSet(name_id="jdoe@example.com"))
        second = self.resolver.resolve(ClaimSet(name_id="jdoe@example.com"))

        self.assertGreaterEqual(len(first.generated_secret), 40)
        self.assertNotEqual(first.generated_secret, second.generated_secret)
        self.assertNotIn(first.generated_secret, repr(first))
        self.assertNotIn("generated_secret", first.model_dump())
