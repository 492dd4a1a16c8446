"""
Himaya Multi-Factor Authentication (MFA) System
TOTP + SMS/Email codes + Backup Codes + WebAuthn biometrics
"""

import hashlib
import hmac
import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Union

import pyotp
from sqlalchemy import select
from sqlalchemy.orm import Session

from himaya.core.config import Settings, get_settings
from himaya.core.encryption import VaultManager
from himaya.core.logging import LoggerMixin
from himaya.database.models import new_id, utcnow
from .collaborators import (
    AssertionVerifier, BiometricAssertion, DeliveryGateway, DeliveryResult,
    QRCodeRenderer, QRRenderer, WebAuthnAssertionVerifier, b64url_encode,
    build_delivery_gateway
)
from .devices import generate_device_fingerprint
from .events import LockoutPayload, MFAPayload, SecurityEventLog, mask_email, mask_phone
from .exceptions import (
    ExternalServiceError, NotFoundError, RateLimitedError, ValidationError
)
from .models import (
    FactorType, MFAMethod, SecurityEventType, SecurityProfile, UserSession,
    VerificationMethod
)
from .store import SecurityStore


@dataclass
class TOTPSetupResult:
    """TOTP enrollment material shown to the user once"""
    secret: str
    qr_code_image: str
    backup_codes: List[str]
    provisioning_uri: str


@dataclass
class CodeSetupResult:
    """SMS / email code staged for confirmation"""
    verification_code: str
    expires_at: datetime


@dataclass
class BiometricSetupResult:
    """WebAuthn registration challenge"""
    challenge_id: str
    challenge: str
    registration_options: Dict[str, Any]


@dataclass
class BiometricChallenge:
    """WebAuthn authentication challenge"""
    challenge_id: str
    challenge: str
    request_options: Dict[str, Any]


@dataclass
class MFAVerificationResult:
    success: bool
    requires_backup: Optional[bool] = None
    trusted_device: Optional[bool] = None


@dataclass
class MFAStatus:
    enabled: bool
    method: Optional[MFAMethod] = None
    backup_codes_remaining: int = 0
    last_verification: Optional[datetime] = None
    enrolled_factors: List[str] = field(default_factory=list)


def normalize_backup_code(code: str) -> str:
    return code.strip().upper().replace("-", "").replace(" ", "")


def hash_backup_code(code: str, pepper: str) -> str:
    """Keyed, deterministic hash of a backup code.

    The same raw code always yields the same digest, so a submitted code is
    matched by exact lookup and plaintext codes are never stored.
    """
    return hmac.new(
        pepper.encode("utf-8"),
        normalize_backup_code(code).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class MFAManager(LoggerMixin):
    """Multi-factor enrollment and verification"""

    def __init__(
        self,
        db: Session,
        vault: VaultManager,
        event_log: SecurityEventLog,
        delivery: Optional[DeliveryGateway] = None,
        qr_renderer: Optional[QRRenderer] = None,
        assertion_verifier: Optional[AssertionVerifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.store = SecurityStore(db, vault)
        self.event_log = event_log
        self.delivery = delivery or build_delivery_gateway(self.settings)
        self.qr_renderer = qr_renderer or QRCodeRenderer()
        self.assertion_verifier = assertion_verifier or WebAuthnAssertionVerifier(
            rp_id=self.settings.WEBAUTHN_RP_ID
        )

        self.service_name = self.settings.MFA_SERVICE_NAME
        self.token_window = self.settings.MFA_TOKEN_WINDOW
        self.max_attempts = self.settings.MFA_MAX_VERIFICATION_ATTEMPTS
        self.lockout_duration = timedelta(minutes=self.settings.MFA_LOCKOUT_MINUTES)

    # =========================================================================
    # TOTP
    # =========================================================================

    def setup_totp(self, user_id: str, site_id: str) -> TOTPSetupResult:
        """Set up TOTP for user and generate QR code"""
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")

        try:
            secret = pyotp.random_base32()
            provisioning_uri = pyotp.TOTP(secret).provisioning_uri(
                name=user.email,
                issuer_name=self.service_name
            )
            qr_code_image = self.qr_renderer.render_provisioning_image(provisioning_uri)
            backup_codes = self._generate_backup_codes()

            profile = self.store.get_or_create_profile(user_id, site_id)
            profile.mfa_enabled = False
            profile.backup_code_hashes = [self.hash_backup_code(code) for code in backup_codes]

            self.store.stage_pending_factor(
                user_id,
                FactorType.TOTP,
                {"secret": secret},
                timedelta(seconds=self.settings.MFA_SETUP_EXPIRY_SECONDS),
            )
            self.db.commit()

        except Exception as e:
            self.db.rollback()
            self.logger.error(f"TOTP setup failed: {e}")
            self._log(
                SecurityEventType.MFA_SETUP_FAILED, site_id, user_id,
                MFAPayload(method=MFAMethod.TOTP.value, error=e.__class__.__name__),
                success=False,
            )
            raise

        self._log(
            SecurityEventType.MFA_SETUP_INITIATED, site_id, user_id,
            MFAPayload(method=MFAMethod.TOTP.value),
        )
        self.logger.info(f"TOTP setup initiated for user: {user_id}")

        return TOTPSetupResult(
            secret=secret,
            qr_code_image=qr_code_image,
            backup_codes=backup_codes,
            provisioning_uri=provisioning_uri,
        )

    def verify_totp_setup(self, user_id: str, site_id: str, token: str) -> bool:
        """Confirm TOTP enrollment with a code from the authenticator app"""
        pending = self.store.get_pending_factor(user_id, FactorType.TOTP)
        self.db.commit()

        if pending is None:
            self._log(
                SecurityEventType.MFA_VERIFICATION_FAILED, site_id, user_id,
                MFAPayload(method=MFAMethod.TOTP.value, reason="no_pending_setup"),
                success=False,
            )
            return False

        if not pyotp.TOTP(pending["secret"]).verify(str(token).strip(), valid_window=self.token_window):
            self._log(
                SecurityEventType.MFA_VERIFICATION_FAILED, site_id, user_id,
                MFAPayload(method=MFAMethod.TOTP.value, reason="invalid_setup_token"),
                success=False,
            )
            self.logger.warning(f"TOTP setup verification failed for user: {user_id}")
            return False

        try:
            self.store.put_factor_secret(user_id, FactorType.TOTP, {"secret": pending["secret"]})
            self.store.delete_pending_factor(user_id, FactorType.TOTP)
            self._enable(user_id, site_id, MFAMethod.TOTP)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"TOTP setup confirmation failed: {e}")
            raise

        self._log(
            SecurityEventType.MFA_ENABLED, site_id, user_id,
            MFAPayload(method=MFAMethod.TOTP.value),
        )
        self.logger.info(f"TOTP setup completed for user: {user_id}")
        return True

    # =========================================================================
    # SMS / EMAIL
    # =========================================================================

    def setup_sms(self, user_id: str, site_id: str, phone_number: str) -> CodeSetupResult:
        """Stage and deliver a 6-digit code to confirm a phone number"""
        digits = "".join(ch for ch in phone_number if ch.isdigit())
        if len(digits) < 7 or len(digits) > 15:
            raise ValidationError(["Invalid phone number"])
        return self._setup_code_factor(user_id, site_id, FactorType.SMS, phone_number.strip())

    def setup_email(self, user_id: str, site_id: str, email: str) -> CodeSetupResult:
        """Stage and deliver a 6-digit code to confirm an email address"""
        local, _, domain = email.strip().partition("@")
        if not local or "." not in domain:
            raise ValidationError(["Invalid email address"])
        return self._setup_code_factor(user_id, site_id, FactorType.EMAIL, email.strip())

    def verify_code_setup(
        self,
        user_id: str,
        site_id: str,
        method: Union[MFAMethod, str],
        code: str,
    ) -> bool:
        """Confirm a pending SMS or email factor"""
        factor = self._code_factor(method)
        pending = self.store.get_pending_factor(user_id, factor)
        self.db.commit()

        if pending is None or pending.get("purpose") != "setup":
            self._log(
                SecurityEventType.MFA_VERIFICATION_FAILED, site_id, user_id,
                MFAPayload(method=factor.value, reason="no_pending_setup"),
                success=False,
            )
            return False

        if not hmac.compare_digest(pending["code"], str(code).strip()):
            self._log(
                SecurityEventType.MFA_VERIFICATION_FAILED, site_id, user_id,
                MFAPayload(method=factor.value, reason="invalid_setup_code"),
                success=False,
            )
            return False

        try:
            self.store.put_factor_secret(user_id, factor, {"destination": pending["destination"]})
            self.store.delete_pending_factor(user_id, factor)
            self._enable(user_id, site_id, MFAMethod(factor.value))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"{factor.value} setup confirmation failed: {e}")
            raise

        self._log(
            SecurityEventType.MFA_ENABLED, site_id, user_id,
            MFAPayload(method=factor.value, destination=self._mask(factor, pending["destination"])),
        )
        self.logger.info(f"{factor.value} MFA enabled for user: {user_id}")
        return True

    def send_verification_code(
        self,
        user_id: str,
        site_id: str,
        method: Union[MFAMethod, str],
    ) -> datetime:
        """Deliver a login code to an enrolled SMS or email factor; returns its expiry"""
        factor = self._code_factor(method)
        enrolled = self.store.get_factor_secret(user_id, factor)
        if enrolled is None:
            raise NotFoundError(f"{factor.value} factor is not enrolled")

        destination = enrolled["destination"]
        code = self._generate_numeric_code()
        expires_at = self.store.stage_pending_factor(
            user_id,
            factor,
            {"code": code, "destination": destination, "purpose": "login"},
            timedelta(seconds=self.settings.MFA_CODE_EXPIRY_SECONDS),
        )
        self.db.commit()

        self._deliver_or_abort(user_id, site_id, factor, destination, code)

        self._log(
            SecurityEventType.MFA_CODE_SENT, site_id, user_id,
            MFAPayload(method=factor.value, destination=self._mask(factor, destination)),
        )
        return expires_at

    def _setup_code_factor(
        self,
        user_id: str,
        site_id: str,
        factor: FactorType,
        destination: str,
    ) -> CodeSetupResult:
        if self.store.get_user(user_id) is None:
            raise NotFoundError("User not found")

        code = self._generate_numeric_code()
        try:
            self.store.get_or_create_profile(user_id, site_id)
            expires_at = self.store.stage_pending_factor(
                user_id,
                factor,
                {"code": code, "destination": destination, "purpose": "setup"},
                timedelta(seconds=self.settings.MFA_CODE_EXPIRY_SECONDS),
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"{factor.value} setup failed: {e}")
            raise

        self._deliver_or_abort(user_id, site_id, factor, destination, code)

        self._log(
            SecurityEventType.MFA_SETUP_INITIATED, site_id, user_id,
            MFAPayload(method=factor.value, destination=self._mask(factor, destination)),
        )
        self.logger.info(f"{factor.value} setup initiated for user: {user_id}")
        return CodeSetupResult(verification_code=code, expires_at=expires_at)

    def _deliver_or_abort(
        self,
        user_id: str,
        site_id: str,
        factor: FactorType,
        destination: str,
        code: str,
    ) -> None:
        """Send a code; on failure drop the staged code and raise"""
        try:
            if factor == FactorType.SMS:
                result = self.delivery.send_sms(destination, code)
            else:
                result = self.delivery.send_email(destination, code)
        except Exception as e:
            self.logger.error(f"{factor.value} delivery raised: {e}")
            result = DeliveryResult(delivered=False, error=e.__class__.__name__)

        if result.delivered:
            return

        self.store.delete_pending_factor(user_id, factor)
        self.db.commit()
        self._log(
            SecurityEventType.MFA_SETUP_FAILED, site_id, user_id,
            MFAPayload(
                method=factor.value,
                reason="delivery_failed",
                destination=self._mask(factor, destination),
                error=result.error,
            ),
            success=False,
        )
        raise ExternalServiceError("delivery", f"{factor.value} code could not be delivered")

    # =========================================================================
    # BIOMETRIC (WebAuthn)
    # =========================================================================

    def setup_biometric(
        self,
        user_id: str,
        site_id: str,
        device_info: Optional[Mapping[str, Any]] = None,
    ) -> BiometricSetupResult:
        """Start WebAuthn registration with a platform authenticator"""
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")

        challenge_id = new_id()
        challenge = b64url_encode(secrets.token_bytes(32))

        try:
            self.store.get_or_create_profile(user_id, site_id)
            self.store.stage_pending_factor(
                user_id,
                FactorType.BIOMETRIC,
                {"challenge_id": challenge_id, "challenge": challenge, "purpose": "registration"},
                timedelta(seconds=self.settings.MFA_BIOMETRIC_CHALLENGE_SECONDS),
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Biometric setup failed: {e}")
            raise

        registration_options = {
            "challenge": challenge,
            "rp": {
                "name": self.settings.WEBAUTHN_RP_NAME,
                "id": self.settings.WEBAUTHN_RP_ID,
            },
            "user": {
                "id": b64url_encode(user.id.encode("utf-8")),
                "name": user.email,
                "displayName": user.name or user.email,
            },
            "pubKeyCredParams": [
                {"alg": -7, "type": "public-key"},    # ES256
                {"alg": -257, "type": "public-key"},  # RS256
            ],
            "authenticatorSelection": {
                "authenticatorAttachment": "platform",
                "userVerification": "required",
            },
            "timeout": self.settings.WEBAUTHN_TIMEOUT_MS,
            "attestation": "direct",
        }

        self._log(
            SecurityEventType.MFA_SETUP_INITIATED, site_id, user_id,
            MFAPayload(method=MFAMethod.BIOMETRIC.value),
        )
        platform = (device_info or {}).get("platform", "unknown")
        self.logger.info(f"Biometric setup initiated for user: {user_id} on {platform}")

        return BiometricSetupResult(
            challenge_id=challenge_id,
            challenge=challenge,
            registration_options=registration_options,
        )

    def complete_biometric_registration(
        self,
        user_id: str,
        site_id: str,
        challenge_id: str,
        credential_id: str,
        public_key_pem: str,
    ) -> bool:
        """Store the credential public key created for a registration challenge"""
        WebAuthnAssertionVerifier.load_public_key(public_key_pem)

        pending = self.store.get_pending_factor(user_id, FactorType.BIOMETRIC)
        self.db.commit()

        if (
            pending is None
            or pending.get("purpose") != "registration"
            or not hmac.compare_digest(pending["challenge_id"], challenge_id)
        ):
            self._log(
                SecurityEventType.MFA_VERIFICATION_FAILED, site_id, user_id,
                MFAPayload(method=MFAMethod.BIOMETRIC.value, reason="unknown_or_expired_challenge"),
                success=False,
            )
            return False

        try:
            self.store.put_factor_secret(user_id, FactorType.BIOMETRIC, {
                "credential_id": credential_id,
                "public_key": public_key_pem,
            })
            self.store.delete_pending_factor(user_id, FactorType.BIOMETRIC)
            self._enable(user_id, site_id, MFAMethod.BIOMETRIC)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Biometric registration failed: {e}")
            raise

        self._log(
            SecurityEventType.MFA_ENABLED, site_id, user_id,
            MFAPayload(method=MFAMethod.BIOMETRIC.value),
        )
        return True

    def begin_biometric_authentication(self, user_id: str, site_id: str) -> BiometricChallenge:
        """Issue a single-use challenge for a WebAuthn ``get()`` ceremony"""
        credential = self.store.get_factor_secret(user_id, FactorType.BIOMETRIC)
        if credential is None:
            raise NotFoundError("Biometric factor is not enrolled")

        challenge_id = new_id()
        challenge = b64url_encode(secrets.token_bytes(32))
        self.store.stage_pending_factor(
            user_id,
            FactorType.BIOMETRIC,
            {"challenge_id": challenge_id, "challenge": challenge, "purpose": "authentication"},
            timedelta(seconds=self.settings.MFA_BIOMETRIC_CHALLENGE_SECONDS),
        )
        self.db.commit()

        return BiometricChallenge(
            challenge_id=challenge_id,
            challenge=challenge,
            request_options={
                "challenge": challenge,
                "rpId": self.settings.WEBAUTHN_RP_ID,
                "allowCredentials": [{"type": "public-key", "id": credential["credential_id"]}],
                "userVerification": "required",
                "timeout": self.settings.WEBAUTHN_TIMEOUT_MS,
            },
        )

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def verify_mfa(
        self,
        user_id: str,
        site_id: str,
        method: Union[VerificationMethod, str],
        token: str,
        device_info: Optional[Mapping[str, Any]] = None,
    ) -> MFAVerificationResult:
        """
        Verify a second factor.

        Raises:
            RateLimitedError: the profile is locked out
            ValidationError: unknown method or malformed token
            NotFoundError: the user has no security profile
        """
        try:
            method = VerificationMethod(method)
        except ValueError:
            raise ValidationError([f"Unsupported MFA method: {method}"])

        profile = self.store.get_profile(user_id)
        if profile is None:
            raise NotFoundError("Security profile not found")

        now = utcnow()
        self._check_lockout(profile, site_id, method, now)

        try:
            if method == VerificationMethod.TOTP:
                verified = self._verify_totp(user_id, token)
            elif method in (VerificationMethod.SMS, VerificationMethod.EMAIL):
                verified = self._verify_code(user_id, FactorType(method.value), token)
            elif method == VerificationMethod.BACKUP_CODES:
                verified = self._verify_backup_code(profile, token)
            elif method == VerificationMethod.BIOMETRIC:
                verified = self._verify_biometric(user_id, token)
            else:
                raise ValidationError([f"Unsupported MFA method: {method.value}"])

            if verified:
                return self._verification_succeeded(profile, site_id, method, device_info, now)
            return self._verification_failed(user_id, site_id, method, now)

        except (ValidationError, RateLimitedError):
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"MFA verification error for user {user_id}: {e}")
            self._log(
                SecurityEventType.MFA_VERIFICATION_ERROR, site_id, user_id,
                MFAPayload(method=method.value, error=e.__class__.__name__),
                success=False,
            )
            raise

    def _check_lockout(
        self,
        profile: SecurityProfile,
        site_id: str,
        method: VerificationMethod,
        now: datetime,
    ) -> None:
        locked_until = profile.locked_until

        if locked_until is not None and locked_until > now:
            self._blocked(profile.user_id, site_id, method, locked_until, now)

        if locked_until is not None:
            # Lock has elapsed
            self.store.reset_failed_attempts(profile.user_id)
            self.db.commit()
            return

        if profile.failed_attempts >= self.max_attempts:
            locked_until = now + self.lockout_duration
            self.store.lock_profile(profile.user_id, locked_until)
            self.db.commit()
            self._blocked(profile.user_id, site_id, method, locked_until, now)

    def _blocked(
        self,
        user_id: str,
        site_id: str,
        method: VerificationMethod,
        locked_until: datetime,
        now: datetime,
    ) -> None:
        retry_after = max(1, math.ceil((locked_until - now).total_seconds()))
        self._log(
            SecurityEventType.MFA_VERIFICATION_BLOCKED, site_id, user_id,
            MFAPayload(method=method.value, reason="locked", retry_after=retry_after),
            success=False,
        )
        self.logger.warning(f"MFA verification blocked for user {user_id}, retry in {retry_after}s")
        raise RateLimitedError(
            "Too many failed attempts. Please try again later.",
            retry_after=retry_after,
            locked_until=locked_until,
        )

    def _verification_succeeded(
        self,
        profile: SecurityProfile,
        site_id: str,
        method: VerificationMethod,
        device_info: Optional[Mapping[str, Any]],
        now: datetime,
    ) -> MFAVerificationResult:
        self.store.reset_failed_attempts(profile.user_id)
        profile.last_mfa_verification = now
        trusted_device = self._check_trusted_device(profile.user_id, device_info, now)
        remaining = len(profile.backup_code_hashes or [])
        self.db.commit()

        self._log(
            SecurityEventType.MFA_VERIFICATION, site_id, profile.user_id,
            MFAPayload(
                method=method.value,
                trusted_device=trusted_device,
                remaining_backup_codes=remaining if method == VerificationMethod.BACKUP_CODES else None,
            ),
        )
        return MFAVerificationResult(success=True, trusted_device=trusted_device)

    def _verification_failed(
        self,
        user_id: str,
        site_id: str,
        method: VerificationMethod,
        now: datetime,
    ) -> MFAVerificationResult:
        attempts, locked_until = self.store.register_failed_attempt(
            user_id, self.max_attempts, self.lockout_duration, now
        )

        if locked_until is not None:
            self._log(
                SecurityEventType.ACCOUNT_LOCKED, site_id, user_id,
                LockoutPayload(scope="mfa", failed_attempts=attempts, locked_until=locked_until),
                success=False,
            )
            self.logger.warning(f"User {user_id} locked out of MFA until {locked_until.isoformat()}")

        self._log(
            SecurityEventType.MFA_VERIFICATION_FAILED, site_id, user_id,
            MFAPayload(method=method.value, reason="invalid_token"),
            success=False,
        )
        return MFAVerificationResult(
            success=False,
            requires_backup=method != VerificationMethod.BACKUP_CODES,
        )

    def _verify_totp(self, user_id: str, token: str) -> bool:
        secret = self.store.get_factor_secret(user_id, FactorType.TOTP)
        if secret is None:
            return False
        return pyotp.TOTP(secret["secret"]).verify(str(token).strip(), valid_window=self.token_window)

    def _verify_code(self, user_id: str, factor: FactorType, token: str) -> bool:
        if self.store.get_factor_secret(user_id, factor) is None:
            return False
        pending = self.store.get_pending_factor(user_id, factor)
        if pending is None or pending.get("purpose") != "login":
            return False
        if not hmac.compare_digest(pending["code"], str(token).strip()):
            return False
        self.store.delete_pending_factor(user_id, factor)
        return True

    def _verify_backup_code(self, profile: SecurityProfile, token: str) -> bool:
        """Consume a matching backup code"""
        if not profile.mfa_enabled:
            return False
        candidate = self.hash_backup_code(str(token))
        hashes = list(profile.backup_code_hashes or [])
        for stored in hashes:
            if hmac.compare_digest(stored, candidate):
                hashes.remove(stored)
                # Reassign so the JSON column is flagged dirty
                profile.backup_code_hashes = hashes
                return True
        return False

    def _verify_biometric(self, user_id: str, token: str) -> bool:
        assertion = BiometricAssertion.from_token(token)

        credential = self.store.get_factor_secret(user_id, FactorType.BIOMETRIC)
        pending = self.store.get_pending_factor(user_id, FactorType.BIOMETRIC)
        if credential is None or pending is None or pending.get("purpose") != "authentication":
            return False
        if not hmac.compare_digest(pending["challenge_id"], assertion.challenge_id):
            return False

        # Challenges are single-use whatever the outcome
        self.store.delete_pending_factor(user_id, FactorType.BIOMETRIC)

        if credential["credential_id"] != assertion.credential_id:
            return False
        return self.assertion_verifier.verify(credential["public_key"], assertion, pending["challenge"])

    def _check_trusted_device(
        self,
        user_id: str,
        device_info: Optional[Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> bool:
        """True when the device matches an active, previously verified session"""
        if not device_info:
            return False
        now = now or utcnow()
        fingerprint = generate_device_fingerprint(device_info)
        match = self.db.scalar(
            select(UserSession.id).where(
                UserSession.user_id == user_id,
                UserSession.device_fingerprint == fingerprint,
                UserSession.verified.is_(True),
                UserSession.active.is_(True),
                UserSession.terminated.is_(False),
                UserSession.expires_at > now,
            ).limit(1)
        )
        return match is not None

    # =========================================================================
    # MANAGEMENT
    # =========================================================================

    def disable_mfa(self, user_id: str, site_id: str, acting_admin_id: Optional[str] = None) -> bool:
        """Disable MFA for a user, by themselves or by an administrator"""
        profile = self.store.get_profile(user_id)
        if profile is None:
            raise NotFoundError("Security profile not found")

        previous_method = profile.mfa_method
        try:
            profile.mfa_enabled = False
            profile.mfa_method = None
            profile.backup_code_hashes = []
            self.store.delete_factor_secrets(user_id)
            self.store.delete_pending_factors(user_id)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Disabling MFA failed for user {user_id}: {e}")
            self._log(
                SecurityEventType.MFA_DISABLE_FAILED, site_id, user_id,
                MFAPayload(
                    method=previous_method.value if previous_method else "NONE",
                    error=e.__class__.__name__,
                ),
                success=False,
            )
            raise

        self._log(
            SecurityEventType.MFA_DISABLED, site_id, user_id,
            MFAPayload(
                method=previous_method.value if previous_method else "NONE",
                disabled_by=acting_admin_id or "self",
            ),
        )
        self.logger.info(f"MFA disabled for user {user_id} by {acting_admin_id or 'self'}")
        return True

    def get_mfa_status(self, user_id: str) -> MFAStatus:
        profile = self.store.get_profile(user_id)
        if profile is None:
            return MFAStatus(enabled=False)

        enrolled = [
            factor.value for factor in FactorType
            if self.store.get_factor_secret(user_id, factor) is not None
        ]
        return MFAStatus(
            enabled=profile.mfa_enabled,
            method=profile.mfa_method,
            backup_codes_remaining=len(profile.backup_code_hashes or []),
            last_verification=profile.last_mfa_verification,
            enrolled_factors=enrolled,
        )

    def regenerate_backup_codes(self, user_id: str, site_id: str) -> List[str]:
        """Replace every backup code with a fresh set"""
        profile = self.store.get_profile(user_id)
        if profile is None:
            raise NotFoundError("Security profile not found")

        backup_codes = self._generate_backup_codes()
        try:
            profile.backup_code_hashes = [self.hash_backup_code(code) for code in backup_codes]
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Backup code regeneration failed: {e}")
            raise

        self._log(
            SecurityEventType.BACKUP_CODES_REGENERATED, site_id, user_id,
            MFAPayload(method=VerificationMethod.BACKUP_CODES.value, remaining_backup_codes=len(backup_codes)),
        )
        self.logger.info(f"Backup codes regenerated for user: {user_id}")
        return backup_codes

    # =========================================================================
    # HELPERS
    # =========================================================================

    def hash_backup_code(self, code: str) -> str:
        return hash_backup_code(code, self.settings.BACKUP_CODE_PEPPER)

    def _generate_backup_codes(self) -> List[str]:
        return [
            secrets.token_hex(self.settings.MFA_BACKUP_CODE_BYTES).upper()
            for _ in range(self.settings.MFA_BACKUP_CODE_COUNT)
        ]

    def _generate_numeric_code(self) -> str:
        length = self.settings.MFA_CODE_LENGTH
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    def _enable(self, user_id: str, site_id: str, method: MFAMethod) -> None:
        profile = self.store.get_or_create_profile(user_id, site_id)
        profile.mfa_enabled = True
        profile.mfa_method = method

    def _code_factor(self, method: Union[MFAMethod, str]) -> FactorType:
        value = method.value if isinstance(method, (MFAMethod, VerificationMethod)) else str(method)
        if value not in (FactorType.SMS.value, FactorType.EMAIL.value):
            raise ValidationError([f"{value} is not a code-based factor"])
        return FactorType(value)

    @staticmethod
    def _mask(factor: FactorType, destination: str) -> str:
        return mask_phone(destination) if factor == FactorType.SMS else mask_email(destination)

    def _log(self, event_type, site_id, user_id, payload, success: bool = True) -> None:
        self.event_log.log_event(
            event_type=event_type,
            site_id=site_id,
            payload=payload,
            user_id=user_id,
            success=success,
        )
