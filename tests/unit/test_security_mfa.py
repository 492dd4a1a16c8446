"""
Unit tests for the MFA manager.

Covers TOTP, SMS/email codes, backup codes and WebAuthn biometrics, plus the
lockout behaviour of verification.
"""
import json
import time
from datetime import timedelta

import pyotp
import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from himaya.database.models import utcnow
from himaya.security.collaborators import DeliveryResult
from himaya.security.devices import generate_device_fingerprint
from himaya.security.events import parse_payload
from himaya.security.exceptions import (
    ExternalServiceError, NotFoundError, RateLimitedError, ValidationError
)
from himaya.security.mfa_system import MFAManager, hash_backup_code
from himaya.security.models import (
    FactorSecret, FactorType, MFAMethod, PendingFactor, SecurityEventType,
    UserSession, VerificationMethod
)

DEVICE_INFO = {
    "user_agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15 Safari/605.1.15",
    "screen": "1512x982",
    "timezone": "Europe/Madrid",
    "language": "es",
}


def assertion_token(assertion) -> str:
    return json.dumps({
        "challengeId": assertion.challenge_id,
        "credentialId": assertion.credential_id,
        "clientDataJSON": assertion.client_data_json,
        "authenticatorData": assertion.authenticator_data,
        "signature": assertion.signature,
    })


@pytest.fixture
def mfa_manager(db_session, vault, event_log, mock_delivery, mock_qr_renderer, test_settings):
    return MFAManager(
        db_session,
        vault,
        event_log,
        delivery=mock_delivery,
        qr_renderer=mock_qr_renderer,
        settings=test_settings,
    )


@pytest.fixture
def totp_enrollment(mfa_manager, user, site_id):
    """A user with confirmed TOTP; returns the secret and backup codes."""
    setup = mfa_manager.setup_totp(user.id, site_id)
    assert mfa_manager.verify_totp_setup(user.id, site_id, pyotp.TOTP(setup.secret).now())
    return setup


class TestTOTPEnrollment:
    """Test cases for TOTP setup."""

    def test_setup_returns_enrollment_material(self, mfa_manager, user, site_id, mock_qr_renderer, db_session):
        """Test the secret, QR image and backup codes handed to the user."""
        setup = mfa_manager.setup_totp(user.id, site_id)

        assert len(setup.secret) >= 16
        assert setup.provisioning_uri.startswith("otpauth://totp/")
        assert setup.qr_code_image == mock_qr_renderer.render_provisioning_image.return_value
        assert len(setup.backup_codes) == 10
        assert all(len(code) == 8 and code == code.upper() for code in setup.backup_codes)

        profile = mfa_manager.store.get_profile(user.id)
        assert profile.mfa_enabled is False
        assert len(profile.backup_code_hashes) == 10
        assert setup.secret not in db_session.query(PendingFactor).one().encrypted_payload

    def test_setup_unknown_user(self, mfa_manager, site_id):
        """Test that setup for an unknown user raises NotFoundError."""
        with pytest.raises(NotFoundError):
            mfa_manager.setup_totp("missing-user", site_id)

    def test_verify_setup_enables_totp(self, mfa_manager, user, site_id, db_session, event_log):
        """Test that a valid code confirms the pending secret."""
        setup = mfa_manager.setup_totp(user.id, site_id)

        assert mfa_manager.verify_totp_setup(user.id, site_id, pyotp.TOTP(setup.secret).now()) is True

        profile = mfa_manager.store.get_profile(user.id)
        assert profile.mfa_enabled is True
        assert profile.mfa_method == MFAMethod.TOTP
        assert db_session.query(PendingFactor).count() == 0
        assert mfa_manager.store.get_factor_secret(user.id, FactorType.TOTP) == {"secret": setup.secret}
        assert event_log.query(site_id, event_types=[SecurityEventType.MFA_ENABLED])

    def test_verify_setup_wrong_code(self, mfa_manager, user, site_id, event_log):
        """Test that a wrong code leaves MFA disabled."""
        setup = mfa_manager.setup_totp(user.id, site_id)
        wrong = pyotp.TOTP(setup.secret).at(time.time() - 3600)

        assert mfa_manager.verify_totp_setup(user.id, site_id, wrong) is False
        assert mfa_manager.store.get_profile(user.id).mfa_enabled is False

        failed = event_log.query(site_id, event_types=[SecurityEventType.MFA_VERIFICATION_FAILED])
        assert parse_payload(failed[-1].event_metadata).reason == "invalid_setup_token"
        assert wrong not in json.dumps(failed[-1].event_metadata)

    def test_verify_setup_without_pending(self, mfa_manager, user, site_id):
        """Test confirmation when nothing was staged."""
        assert mfa_manager.verify_totp_setup(user.id, site_id, "123456") is False


class TestTOTPVerification:
    """Test cases for TOTP verification windows."""

    def test_token_inside_window_accepted(self, mfa_manager, totp_enrollment, user, site_id):
        """Test a token generated one minute ago."""
        token = pyotp.TOTP(totp_enrollment.secret).at(time.time() - 60)

        result = mfa_manager.verify_mfa(user.id, site_id, VerificationMethod.TOTP, token)

        assert result.success is True

    def test_future_token_inside_window_accepted(self, mfa_manager, totp_enrollment, user, site_id):
        """Test a token generated one minute ahead."""
        token = pyotp.TOTP(totp_enrollment.secret).at(time.time() + 60)

        assert mfa_manager.verify_mfa(user.id, site_id, "TOTP", token).success is True

    def test_token_outside_window_rejected(self, mfa_manager, totp_enrollment, user, site_id):
        """Test a token generated five minutes ago."""
        token = pyotp.TOTP(totp_enrollment.secret).at(time.time() - 300)

        result = mfa_manager.verify_mfa(user.id, site_id, VerificationMethod.TOTP, token)

        assert result.success is False
        assert result.requires_backup is True

    def test_invalid_method(self, mfa_manager, totp_enrollment, user, site_id):
        """Test that unknown methods raise ValidationError."""
        with pytest.raises(ValidationError):
            mfa_manager.verify_mfa(user.id, site_id, "CARRIER_PIGEON", "123456")

    def test_missing_profile(self, mfa_manager, user, site_id):
        """Test that verification without a profile raises NotFoundError."""
        with pytest.raises(NotFoundError):
            mfa_manager.verify_mfa(user.id, site_id, VerificationMethod.TOTP, "123456")

    def test_success_records_verification_time(self, mfa_manager, totp_enrollment, user, site_id, event_log):
        """Test bookkeeping after a successful verification."""
        mfa_manager.verify_mfa(user.id, site_id, "TOTP", pyotp.TOTP(totp_enrollment.secret).now())

        status = mfa_manager.get_mfa_status(user.id)
        assert status.last_verification is not None
        assert event_log.query(site_id, event_types=[SecurityEventType.MFA_VERIFICATION])


class TestLockout:
    """Test cases for verification lockout."""

    def test_failures_count_up_and_lock(self, mfa_manager, totp_enrollment, user, site_id, event_log):
        """Test that the counter grows and the threshold sets a future lock."""
        for expected in (1, 2, 3):
            result = mfa_manager.verify_mfa(user.id, site_id, "TOTP", "000000")
            assert result.success is False
            assert mfa_manager.store.get_profile(user.id).failed_attempts == expected

        profile = mfa_manager.store.get_profile(user.id)
        assert profile.locked_until > utcnow()
        assert event_log.query(site_id, event_types=[SecurityEventType.ACCOUNT_LOCKED])

    def test_locked_profile_rejects_even_valid_token(self, mfa_manager, totp_enrollment, user, site_id, event_log):
        """Test RateLimitedError with a positive retry-after while locked."""
        for _ in range(3):
            mfa_manager.verify_mfa(user.id, site_id, "TOTP", "000000")

        with pytest.raises(RateLimitedError) as exc_info:
            mfa_manager.verify_mfa(user.id, site_id, "TOTP", pyotp.TOTP(totp_enrollment.secret).now())

        assert exc_info.value.retry_after > 0
        assert exc_info.value.retry_after <= 15 * 60
        assert event_log.query(site_id, event_types=[SecurityEventType.MFA_VERIFICATION_BLOCKED])

    def test_success_resets_counter(self, mfa_manager, totp_enrollment, user, site_id):
        """Test that a success clears earlier failures."""
        mfa_manager.verify_mfa(user.id, site_id, "TOTP", "000000")
        mfa_manager.verify_mfa(user.id, site_id, "TOTP", pyotp.TOTP(totp_enrollment.secret).now())

        profile = mfa_manager.store.get_profile(user.id)
        assert profile.failed_attempts == 0
        assert profile.locked_until is None

    def test_elapsed_lock_allows_verification(self, mfa_manager, totp_enrollment, user, site_id, db_session):
        """Test that an expired lock no longer blocks."""
        profile = mfa_manager.store.get_profile(user.id)
        profile.failed_attempts = 3
        profile.locked_until = utcnow() - timedelta(minutes=1)
        db_session.commit()

        result = mfa_manager.verify_mfa(user.id, site_id, "TOTP", pyotp.TOTP(totp_enrollment.secret).now())

        assert result.success is True
        assert mfa_manager.store.get_profile(user.id).failed_attempts == 0


class TestBackupCodes:
    """Test cases for backup codes."""

    def test_hash_is_stable_and_normalized(self):
        """Test that the same raw code always hashes the same."""
        assert hash_backup_code("ab12-cd34", "pepper") == hash_backup_code(" AB12CD34 ", "pepper")
        assert hash_backup_code("AB12CD34", "pepper") != hash_backup_code("AB12CD34", "other")

    def test_stored_hash_matches_issued_code(self, mfa_manager, user, site_id):
        """Test that issued codes are stored only as their hashes."""
        setup = mfa_manager.setup_totp(user.id, site_id)
        hashes = mfa_manager.store.get_profile(user.id).backup_code_hashes

        assert mfa_manager.hash_backup_code(setup.backup_codes[0]) in hashes
        assert setup.backup_codes[0] not in hashes

    def test_backup_code_is_single_use(self, mfa_manager, totp_enrollment, user, site_id, event_log):
        """Test that a code works once and the count drops by one."""
        code = totp_enrollment.backup_codes[0]

        first = mfa_manager.verify_mfa(user.id, site_id, VerificationMethod.BACKUP_CODES, code)
        assert first.success is True
        assert mfa_manager.get_mfa_status(user.id).backup_codes_remaining == 9

        second = mfa_manager.verify_mfa(user.id, site_id, VerificationMethod.BACKUP_CODES, code)
        assert second.success is False
        assert second.requires_backup is False
        assert mfa_manager.get_mfa_status(user.id).backup_codes_remaining == 9

        verified = event_log.query(site_id, event_types=[SecurityEventType.MFA_VERIFICATION])
        assert parse_payload(verified[-1].event_metadata).remaining_backup_codes == 9

    def test_backup_codes_need_enabled_mfa(self, mfa_manager, user, site_id):
        """Test that codes from an unconfirmed setup are not accepted."""
        setup = mfa_manager.setup_totp(user.id, site_id)

        result = mfa_manager.verify_mfa(user.id, site_id, "BACKUP_CODES", setup.backup_codes[0])

        assert result.success is False

    def test_regenerate_invalidates_old_codes(self, mfa_manager, totp_enrollment, user, site_id):
        """Test that regeneration replaces every code."""
        new_codes = mfa_manager.regenerate_backup_codes(user.id, site_id)

        assert len(new_codes) == 10
        assert mfa_manager.verify_mfa(user.id, site_id, "BACKUP_CODES", totp_enrollment.backup_codes[0]).success is False
        assert mfa_manager.verify_mfa(user.id, site_id, "BACKUP_CODES", new_codes[0]).success is True


class TestCodeFactors:
    """Test cases for SMS and email factors."""

    def test_sms_setup_and_confirmation(self, mfa_manager, user, site_id, mock_delivery):
        """Test the SMS enrollment round trip."""
        setup = mfa_manager.setup_sms(user.id, site_id, "+1 555 123 4567")

        mock_delivery.send_sms.assert_called_once_with("+1 555 123 4567", setup.verification_code)
        assert setup.expires_at > utcnow()

        assert mfa_manager.verify_code_setup(user.id, site_id, MFAMethod.SMS, setup.verification_code) is True
        assert mfa_manager.store.get_profile(user.id).mfa_method == MFAMethod.SMS
        assert mfa_manager.store.get_factor_secret(user.id, FactorType.SMS) == {"destination": "+1 555 123 4567"}

    def test_email_setup_wrong_code(self, mfa_manager, user, site_id):
        """Test that a wrong email code does not enroll."""
        setup = mfa_manager.setup_email(user.id, site_id, "alice@example.com")
        wrong = "000000" if setup.verification_code != "000000" else "111111"

        assert mfa_manager.verify_code_setup(user.id, site_id, "EMAIL", wrong) is False
        assert mfa_manager.store.get_profile(user.id).mfa_enabled is False

    def test_invalid_destinations(self, mfa_manager, user, site_id):
        """Test phone and email validation."""
        with pytest.raises(ValidationError):
            mfa_manager.setup_sms(user.id, site_id, "12")
        with pytest.raises(ValidationError):
            mfa_manager.setup_email(user.id, site_id, "not-an-email")

    def test_delivery_failure_leaves_no_pending_factor(
        self, mfa_manager, user, site_id, mock_delivery, db_session, event_log
    ):
        """Test that a failed SMS aborts enrollment cleanly."""
        mock_delivery.send_sms.return_value = DeliveryResult(delivered=False, error="timeout")

        with pytest.raises(ExternalServiceError):
            mfa_manager.setup_sms(user.id, site_id, "+15551234567")

        assert db_session.query(PendingFactor).count() == 0
        failed = event_log.query(site_id, event_types=[SecurityEventType.MFA_SETUP_FAILED])
        payload = parse_payload(failed[-1].event_metadata)
        assert payload.reason == "delivery_failed"
        assert payload.destination == "***4567"
        assert "5551234567" not in json.dumps(failed[-1].event_metadata)

    def test_delivery_exception_treated_as_failure(self, mfa_manager, user, site_id, mock_delivery, db_session):
        """Test that a raising gateway is contained."""
        mock_delivery.send_email.side_effect = ConnectionError("smtp down")

        with pytest.raises(ExternalServiceError):
            mfa_manager.setup_email(user.id, site_id, "alice@example.com")
        assert db_session.query(PendingFactor).count() == 0

    def test_login_code_verification(self, mfa_manager, user, site_id, mock_delivery):
        """Test sending and verifying a login code once."""
        setup = mfa_manager.setup_sms(user.id, site_id, "+15551234567")
        mfa_manager.verify_code_setup(user.id, site_id, "SMS", setup.verification_code)

        mfa_manager.send_verification_code(user.id, site_id, "SMS")
        code = mock_delivery.send_sms.call_args.args[1]

        assert mfa_manager.verify_mfa(user.id, site_id, "SMS", code).success is True
        assert mfa_manager.verify_mfa(user.id, site_id, "SMS", code).success is False

    def test_setup_code_cannot_log_in(self, mfa_manager, user, site_id):
        """Test that a staged setup code is not a login code."""
        setup = mfa_manager.setup_sms(user.id, site_id, "+15551234567")
        mfa_manager.verify_code_setup(user.id, site_id, "SMS", setup.verification_code)

        assert mfa_manager.verify_mfa(user.id, site_id, "SMS", setup.verification_code).success is False

    def test_send_code_requires_enrollment(self, mfa_manager, user, site_id):
        """Test that codes are only sent to enrolled factors."""
        with pytest.raises(NotFoundError):
            mfa_manager.send_verification_code(user.id, site_id, "EMAIL")


class TestBiometric:
    """Test cases for WebAuthn biometric factors."""

    def test_registration_options(self, mfa_manager, user, site_id, test_settings):
        """Test the options a browser needs for navigator.credentials.create()."""
        setup = mfa_manager.setup_biometric(user.id, site_id, {"platform": "macOS"})
        options = setup.registration_options

        assert options["challenge"] == setup.challenge
        assert options["rp"]["id"] == test_settings.WEBAUTHN_RP_ID
        assert [p["alg"] for p in options["pubKeyCredParams"]] == [-7, -257]
        assert options["authenticatorSelection"]["userVerification"] == "required"
        assert options["user"]["name"] == user.email

    def test_full_ceremony(self, mfa_manager, user, site_id, es256_key, sign_assertion):
        """Test registration followed by a signed authentication."""
        private_key, public_pem = es256_key
        setup = mfa_manager.setup_biometric(user.id, site_id)
        assert mfa_manager.complete_biometric_registration(
            user.id, site_id, setup.challenge_id, "cred-1", public_pem
        ) is True

        challenge = mfa_manager.begin_biometric_authentication(user.id, site_id)
        assert challenge.request_options["allowCredentials"][0]["id"] == "cred-1"

        token = assertion_token(sign_assertion(
            private_key, challenge.challenge, challenge_id=challenge.challenge_id, credential_id="cred-1"
        ))
        assert mfa_manager.verify_mfa(user.id, site_id, "BIOMETRIC", token).success is True

        # Replaying the same assertion fails: the challenge was consumed
        assert mfa_manager.verify_mfa(user.id, site_id, "BIOMETRIC", token).success is False

    def test_signature_from_other_key_rejected(self, mfa_manager, user, site_id, es256_key, sign_assertion):
        """Test that an assertion signed by another authenticator fails."""
        _, public_pem = es256_key
        setup = mfa_manager.setup_biometric(user.id, site_id)
        mfa_manager.complete_biometric_registration(user.id, site_id, setup.challenge_id, "cred-1", public_pem)
        challenge = mfa_manager.begin_biometric_authentication(user.id, site_id)

        intruder = ec.generate_private_key(ec.SECP256R1())
        token = assertion_token(sign_assertion(
            intruder, challenge.challenge, challenge_id=challenge.challenge_id, credential_id="cred-1"
        ))

        assert mfa_manager.verify_mfa(user.id, site_id, "BIOMETRIC", token).success is False

    def test_registration_with_unknown_challenge(self, mfa_manager, user, site_id, es256_key):
        """Test that registration needs the issued challenge id."""
        _, public_pem = es256_key
        mfa_manager.setup_biometric(user.id, site_id)

        assert mfa_manager.complete_biometric_registration(
            user.id, site_id, "made-up", "cred-1", public_pem
        ) is False

    def test_registration_rejects_bad_key(self, mfa_manager, user, site_id):
        """Test that unreadable public keys are refused."""
        setup = mfa_manager.setup_biometric(user.id, site_id)

        with pytest.raises(ValidationError):
            mfa_manager.complete_biometric_registration(user.id, site_id, setup.challenge_id, "cred", "junk")

    def test_malformed_token(self, mfa_manager, totp_enrollment, user, site_id):
        """Test that a malformed assertion raises ValidationError."""
        with pytest.raises(ValidationError):
            mfa_manager.verify_mfa(user.id, site_id, "BIOMETRIC", "not json")


class TestTrustedDeviceAndManagement:
    """Test cases for trusted devices, status and disabling."""

    def test_trusted_device_detected(self, mfa_manager, totp_enrollment, user, site_id, db_session):
        """Test that a verified live session marks the device trusted."""
        now = utcnow()
        db_session.add(UserSession(
            user_id=user.id,
            site_id=site_id,
            ip_address="10.0.0.1",
            user_agent=DEVICE_INFO["user_agent"],
            device_fingerprint=generate_device_fingerprint(DEVICE_INFO),
            location={},
            last_activity=now,
            expires_at=now + timedelta(hours=1),
            verified=True,
        ))
        db_session.commit()

        result = mfa_manager.verify_mfa(
            user.id, site_id, "TOTP", pyotp.TOTP(totp_enrollment.secret).now(), device_info=DEVICE_INFO
        )

        assert result.trusted_device is True

    def test_unknown_device_not_trusted(self, mfa_manager, totp_enrollment, user, site_id):
        """Test that devices without a verified session are not trusted."""
        result = mfa_manager.verify_mfa(
            user.id, site_id, "TOTP", pyotp.TOTP(totp_enrollment.secret).now(), device_info=DEVICE_INFO
        )

        assert result.trusted_device is False

    def test_status_lists_enrolled_factors(self, mfa_manager, totp_enrollment, user):
        """Test the MFA status summary."""
        status = mfa_manager.get_mfa_status(user.id)

        assert status.enabled is True
        assert status.method == MFAMethod.TOTP
        assert status.enrolled_factors == ["TOTP"]
        assert status.backup_codes_remaining == 10

    def test_status_without_profile(self, mfa_manager, user):
        """Test status for a user who never enrolled."""
        assert mfa_manager.get_mfa_status(user.id).enabled is False

    def test_disable_by_admin(self, mfa_manager, totp_enrollment, user, site_id, db_session, event_log):
        """Test that disabling clears secrets and records the actor."""
        assert mfa_manager.disable_mfa(user.id, site_id, acting_admin_id="admin-7") is True

        status = mfa_manager.get_mfa_status(user.id)
        assert status.enabled is False
        assert status.backup_codes_remaining == 0
        assert db_session.query(FactorSecret).count() == 0

        disabled = event_log.query(site_id, event_types=[SecurityEventType.MFA_DISABLED])
        assert parse_payload(disabled[-1].event_metadata).disabled_by == "admin-7"

    def test_disable_without_profile(self, mfa_manager, user, site_id):
        """Test disabling for an unknown profile."""
        with pytest.raises(NotFoundError):
            mfa_manager.disable_mfa(user.id, site_id)
