"""
Unit tests for external collaborators: delivery, breach check, QR rendering,
audit sink and WebAuthn assertion verification.
"""
import dataclasses
import json
import logging

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from himaya.security.collaborators import (
    BiometricAssertion, HTTPDeliveryGateway, LoggingAuditSink, LoggingDeliveryGateway,
    PwnedPasswordsChecker, QRCodeRenderer, StaticBreachChecker, WebAuthnAssertionVerifier,
    b64url_decode, b64url_encode, breach_hash, build_breach_checker, build_delivery_gateway
)
from himaya.security.exceptions import ExternalServiceError, ValidationError
from himaya.security.mfa_system import MFAManager


class TestDeliveryGateways:
    """Test cases for delivery gateways."""

    def test_logging_gateway_masks_destination(self, caplog):
        """Test that the development gateway never logs the full number."""
        caplog.set_level(logging.INFO)
        result = LoggingDeliveryGateway().send_sms("+15551234567", "123456")

        assert result.delivered is True
        assert "+15551234567" not in caplog.text
        assert "123456" not in caplog.text

    def test_http_gateway_posts_code(self):
        """Test the JSON request sent to the messaging API."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "msg-1"})

        client = httpx.Client(base_url="https://messaging.test", transport=httpx.MockTransport(handler))
        result = HTTPDeliveryGateway("https://messaging.test", client=client).send_sms("+15551234567", "654321")

        assert result.delivered is True
        assert result.message_id == "msg-1"
        assert seen["path"] == "/sms"
        assert "654321" in seen["body"]["message"]

    def test_http_gateway_timeout_is_a_failed_result(self):
        """Test that transport timeouts do not raise."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = httpx.Client(base_url="https://messaging.test", transport=httpx.MockTransport(handler))
        result = HTTPDeliveryGateway("https://messaging.test", client=client).send_email("a@example.com", "1")

        assert result.delivered is False
        assert result.error == "timeout"

    def test_http_gateway_server_error(self):
        """Test that HTTP errors become a failed result."""
        client = httpx.Client(
            base_url="https://messaging.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        result = HTTPDeliveryGateway("https://messaging.test", client=client).send_sms("+15551234567", "1")

        assert result.delivered is False

    def test_default_gateway_uses_configured_api(self, test_settings):
        """Test that a configured delivery API yields the HTTP gateway."""
        settings = test_settings.model_copy(update={
            "DELIVERY_API_URL": "https://messaging.test",
            "DELIVERY_API_KEY": "key-1",
            "DELIVERY_TIMEOUT": 3.0,
        })

        gateway = build_delivery_gateway(settings)

        assert isinstance(gateway, HTTPDeliveryGateway)
        assert str(gateway.client.base_url).startswith("https://messaging.test")
        assert gateway.client.headers["Authorization"] == "Bearer key-1"
        assert gateway.client.timeout == httpx.Timeout(3.0)

    def test_default_gateway_without_api_only_logs(self, test_settings):
        """Test the fallback when no delivery API is configured."""
        assert isinstance(build_delivery_gateway(test_settings), LoggingDeliveryGateway)

    def test_mfa_manager_builds_gateway_from_settings(self, db_session, vault, event_log, test_settings):
        """Test that MFAManager without an injected gateway delivers over HTTP."""
        settings = test_settings.model_copy(update={"DELIVERY_API_URL": "https://messaging.test"})

        manager = MFAManager(db_session, vault, event_log, settings=settings)

        assert isinstance(manager.delivery, HTTPDeliveryGateway)


class TestBreachCheckers:
    """Test cases for breach checkers."""

    def test_breach_hash_is_uppercase_sha1(self):
        """Test the digest format breach corpora use."""
        assert breach_hash("password") == "5BAA61E4C9B93F3F0682250B6CF8331B7EE68FD8"

    def test_build_breach_checker(self, test_settings):
        """Test the checker built from settings."""
        checker = build_breach_checker(test_settings)
        disabled = test_settings.model_copy(update={"BREACH_CHECK_ENABLED": False})

        assert isinstance(checker, PwnedPasswordsChecker)
        assert checker.base_url == "https://api.pwnedpasswords.com/range"
        assert build_breach_checker(disabled) is None

    def test_static_checker(self):
        """Test in-memory lookups."""
        checker = StaticBreachChecker.from_passwords(["password"])

        assert checker.is_known_breached(breach_hash("password"))
        assert not checker.is_known_breached(breach_hash("something else"))

    def test_range_query_sends_only_prefix(self):
        """Test k-anonymity: only five hash characters leave the process."""
        digest = breach_hash("password")
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(request.url.path)
            return httpx.Response(200, text=f"0018A45C4D1DEF81644B54AB7F969B88D65:1\r\n{digest[5:]}:3861493\r\n")

        checker = PwnedPasswordsChecker(
            base_url="https://breach.test/range",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

        assert checker.is_known_breached(digest) is True
        assert requested == [f"/range/{digest[:5]}"]

    def test_padding_entries_are_ignored(self):
        """Test that zero-count padding rows do not match."""
        digest = breach_hash("password")
        checker = PwnedPasswordsChecker(
            base_url="https://breach.test/range",
            client=httpx.Client(transport=httpx.MockTransport(
                lambda request: httpx.Response(200, text=f"{digest[5:]}:0\n")
            )),
        )

        assert checker.is_known_breached(digest) is False

    def test_timeout_raises_external_service_error(self):
        """Test that a lookup timeout surfaces as ExternalServiceError."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        checker = PwnedPasswordsChecker(client=httpx.Client(transport=httpx.MockTransport(handler)))

        with pytest.raises(ExternalServiceError) as exc_info:
            checker.is_known_breached(breach_hash("password"))
        assert exc_info.value.service == "breach-check"


class TestQRCodeRenderer:
    """Test cases for QR rendering."""

    def test_renders_png_data_uri(self):
        """Test that provisioning URIs render to a PNG data URI."""
        image = QRCodeRenderer().render_provisioning_image("otpauth://totp/Himaya:alice?secret=JBSWY3DPEHPK3PXP")

        assert image.startswith("data:image/png;base64,")


class TestLoggingAuditSink:
    """Test cases for the logging audit sink."""

    def test_emit_writes_structured_record(self, caplog):
        """Test that the audit record carries the event as extra data."""
        caplog.set_level(logging.INFO, logger="himaya.audit")
        LoggingAuditSink().emit("LOGIN_SUCCESS", "site-1", "user-1", True, {"kind": "login"})

        records = [r for r in caplog.records if r.name == "himaya.audit"]
        assert records
        assert records[-1].extra_data["event_type"] == "LOGIN_SUCCESS"
        assert records[-1].extra_data["metadata"] == {"kind": "login"}


class TestWebAuthnAssertionVerifier:
    """Test cases for WebAuthn signature verification."""

    @pytest.fixture
    def verifier(self, test_settings):
        return WebAuthnAssertionVerifier(rp_id=test_settings.WEBAUTHN_RP_ID)

    def test_b64url_round_trip_without_padding(self):
        """Test unpadded base64url helpers."""
        encoded = b64url_encode(b"\xff\xfe\x00")

        assert "=" not in encoded
        assert b64url_decode(encoded) == b"\xff\xfe\x00"

    def test_valid_es256_assertion(self, verifier, es256_key, sign_assertion):
        """Test that a correctly signed assertion verifies."""
        private_key, public_pem = es256_key
        assertion = sign_assertion(private_key, "challenge-value")

        assert verifier.verify(public_pem, assertion, "challenge-value") is True

    def test_tampered_signature_rejected(self, verifier, es256_key, sign_assertion):
        """Test that altering the signed data breaks verification."""
        private_key, public_pem = es256_key
        assertion = sign_assertion(private_key, "challenge-value")
        data = bytearray(b64url_decode(assertion.authenticator_data))
        data[-1] ^= 0x01
        tampered = dataclasses.replace(assertion, authenticator_data=b64url_encode(bytes(data)))

        assert verifier.verify(public_pem, tampered, "challenge-value") is False

    def test_wrong_challenge_rejected(self, verifier, es256_key, sign_assertion):
        """Test challenge binding."""
        private_key, public_pem = es256_key
        assertion = sign_assertion(private_key, "challenge-value")

        assert verifier.verify(public_pem, assertion, "another-challenge") is False

    def test_wrong_relying_party_rejected(self, verifier, es256_key, sign_assertion):
        """Test relying-party id binding."""
        private_key, public_pem = es256_key
        assertion = sign_assertion(private_key, "challenge-value", rp_id="evil.test")

        assert verifier.verify(public_pem, assertion, "challenge-value") is False

    def test_user_verification_required(self, verifier, es256_key, sign_assertion):
        """Test that assertions without the UV flag are refused."""
        private_key, public_pem = es256_key
        assertion = sign_assertion(private_key, "challenge-value", flags=0x01)

        assert verifier.verify(public_pem, assertion, "challenge-value") is False

    def test_other_key_rejected(self, verifier, es256_key, sign_assertion):
        """Test that a signature from a different key fails."""
        private_key, _ = es256_key
        other_pem = ec.generate_private_key(ec.SECP256R1()).public_key().public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode()

        assert verifier.verify(other_pem, sign_assertion(private_key, "c"), "c") is False

    def test_load_public_key_accepts_rsa(self):
        """Test that RS256 credentials are supported."""
        pem = rsa.generate_private_key(public_exponent=65537, key_size=2048).public_key().public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode()

        assert isinstance(WebAuthnAssertionVerifier.load_public_key(pem), rsa.RSAPublicKey)

    def test_load_public_key_rejects_garbage(self):
        """Test that unreadable keys raise ValidationError."""
        with pytest.raises(ValidationError):
            WebAuthnAssertionVerifier.load_public_key("not a key")

    def test_from_token_parses_client_json(self):
        """Test parsing of the token submitted to MFA verification."""
        token = json.dumps({
            "challengeId": "c1",
            "credentialId": "cred",
            "clientDataJSON": "e30",
            "authenticatorData": "AA",
            "signature": "AA",
        })

        assertion = BiometricAssertion.from_token(token)
        assert assertion.challenge_id == "c1"

        with pytest.raises(ValidationError):
            BiometricAssertion.from_token("{}")
