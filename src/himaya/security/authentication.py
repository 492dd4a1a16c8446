"""
Himaya Authentication Manager
Password login with account lockout, manual unlock and password-reset tokens
"""

import hashlib
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from himaya.core.config import Settings, get_settings
from himaya.core.logging import LoggerMixin
from himaya.database.models import utcnow
from .events import LockoutPayload, LoginPayload, PasswordPayload, SecurityEventLog
from .exceptions import AuthenticationError, NotFoundError, RateLimitedError
from .models import MFAMethod, PasswordResetToken, SecurityEventType
from .password_policy import PasswordChangeResult, PasswordPolicyEngine
from .store import LOGIN_SCOPE, MFA_SCOPE, SecurityStore

INVALID_CREDENTIALS = "Invalid email or password"


@dataclass
class LoginResult:
    user_id: str
    requires_mfa: bool
    mfa_method: Optional[MFAMethod] = None


@dataclass
class AccountLockStatus:
    locked: bool
    locked_until: Optional[datetime]
    remaining_attempts: int


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthenticationManager(LoggerMixin):
    """
    First-factor authentication.

    Failed logins are counted on the profile's login counter, separate from
    the MFA verification counter, and lock the account with the password
    policy's threshold and duration. A correct password clears the login
    counter; MFA failures are cleared only by the second factor.
    """

    def __init__(
        self,
        db: Session,
        event_log: SecurityEventLog,
        password_engine: Optional[PasswordPolicyEngine] = None,
        settings: Optional[Settings] = None,
        policy_name: Optional[str] = None,
    ):
        self.db = db
        self.event_log = event_log
        self.settings = settings or get_settings()
        self.store = SecurityStore(db)
        self.password_engine = password_engine or PasswordPolicyEngine(db, event_log, settings=self.settings)
        self.policy = self.password_engine.get_policy(policy_name)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.policy.lockout_duration_minutes)

    # =========================================================================
    # LOGIN
    # =========================================================================

    def authenticate_password(
        self,
        email: str,
        password: str,
        site_id: str,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        """Verify an email/password pair.

        Raises ``NotFoundError`` for unknown or inactive users,
        ``RateLimitedError`` while the account is locked and
        ``AuthenticationError`` for a wrong password. Every outcome is
        written to the event log.
        """
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            self._log_login(
                SecurityEventType.LOGIN_FAILURE, site_id, None,
                LoginPayload(ip_address=ip_address, reason="unknown_user" if user is None else "inactive_user"),
                success=False,
            )
            raise NotFoundError(INVALID_CREDENTIALS)

        profile = self.store.get_or_create_profile(user.id, site_id)
        now = utcnow()

        if profile.login_locked_until is not None:
            if profile.login_locked_until > now:
                retry_after = max(1, math.ceil((profile.login_locked_until - now).total_seconds()))
                locked_until = profile.login_locked_until
                self.db.commit()
                self._log_login(
                    SecurityEventType.LOGIN_FAILURE, site_id, user.id,
                    LoginPayload(ip_address=ip_address, reason="account_locked"),
                    success=False,
                )
                raise RateLimitedError(
                    f"Account locked, try again in {retry_after} seconds",
                    retry_after=retry_after,
                    locked_until=locked_until,
                )
            self.store.reset_failed_attempts(user.id, LOGIN_SCOPE)
        self.db.commit()

        if not self.password_engine.verify_password(password, user.hashed_password):
            attempts, locked_until = self.store.register_failed_attempt(
                user.id, self.policy.lockout_attempts, self.lockout_duration, scope=LOGIN_SCOPE
            )
            self._log_login(
                SecurityEventType.LOGIN_FAILURE, site_id, user.id,
                LoginPayload(ip_address=ip_address, reason="invalid_password", failed_attempts=attempts),
                success=False,
            )
            if locked_until is not None:
                self.event_log.log_event(
                    event_type=SecurityEventType.ACCOUNT_LOCKED,
                    site_id=site_id,
                    payload=LockoutPayload(scope="login", failed_attempts=attempts, locked_until=locked_until),
                    user_id=user.id,
                    success=False,
                )
                self.logger.warning(f"Account locked after {attempts} failed logins: {user.id}")
            raise AuthenticationError(INVALID_CREDENTIALS)

        try:
            profile.last_login_at = now
            requires_mfa = profile.mfa_enabled
            mfa_method = profile.mfa_method
            self.store.reset_failed_attempts(user.id, LOGIN_SCOPE)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Login bookkeeping failed for user {user.id}: {e}")
            raise

        self._log_login(
            SecurityEventType.LOGIN_SUCCESS, site_id, user.id,
            LoginPayload(ip_address=ip_address),
        )
        self.logger.info(f"Password login succeeded for user: {user.id}")

        return LoginResult(user_id=user.id, requires_mfa=requires_mfa, mfa_method=mfa_method)

    def _log_login(
        self,
        event_type: SecurityEventType,
        site_id: str,
        user_id: Optional[str],
        payload: LoginPayload,
        success: bool = True,
    ) -> None:
        self.event_log.log_event(
            event_type=event_type,
            site_id=site_id,
            payload=payload,
            user_id=user_id,
            success=success,
        )

    # =========================================================================
    # LOCKOUT
    # =========================================================================

    def unlock_account(self, user_id: str, site_id: str, unlocked_by: Optional[str] = None) -> bool:
        profile = self.store.get_profile(user_id)
        if profile is None:
            return False

        previous_attempts = profile.login_attempts
        try:
            self.store.reset_failed_attempts(user_id, LOGIN_SCOPE)
            self.store.reset_failed_attempts(user_id, MFA_SCOPE)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Failed to unlock account {user_id}: {e}")
            raise

        self.event_log.log_event(
            event_type=SecurityEventType.ACCOUNT_UNLOCKED,
            site_id=site_id,
            payload=LockoutPayload(
                scope="login",
                failed_attempts=previous_attempts,
                unlocked_by=unlocked_by or "system",
            ),
            user_id=user_id,
        )
        self.logger.info(f"Account unlocked: {user_id}")
        return True

    def is_account_locked(self, user_id: str) -> AccountLockStatus:
        profile = self.store.get_profile(user_id)
        if profile is None:
            return AccountLockStatus(locked=False, locked_until=None, remaining_attempts=self.policy.lockout_attempts)

        locked = profile.login_locked_until is not None and profile.login_locked_until > utcnow()
        return AccountLockStatus(
            locked=locked,
            locked_until=profile.login_locked_until if locked else None,
            remaining_attempts=max(0, self.policy.lockout_attempts - profile.login_attempts),
        )

    # =========================================================================
    # PASSWORD RESET
    # =========================================================================

    def request_password_reset(self, email: str, site_id: str) -> Optional[str]:
        """Issue a one-hour reset token.

        Returns the raw token for delivery to the user; only its SHA-256
        digest is stored. Unknown emails return ``None`` without an error so
        callers cannot be used to probe for accounts.
        """
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("Password reset requested for unknown email")
            return None

        token = secrets.token_hex(32)
        expires_at = utcnow() + timedelta(minutes=self.settings.PASSWORD_RESET_TOKEN_MINUTES)
        try:
            self.db.add(PasswordResetToken(
                user_id=user.id,
                token_hash=hash_reset_token(token),
                expires_at=expires_at,
            ))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Failed to issue reset token for user {user.id}: {e}")
            raise

        self.event_log.log_event(
            event_type=SecurityEventType.PASSWORD_RESET_REQUESTED,
            site_id=site_id,
            payload=PasswordPayload(),
            user_id=user.id,
        )
        return token

    def reset_password(
        self,
        token: str,
        new_password: str,
        confirm_password: str,
        site_id: str,
    ) -> PasswordChangeResult:
        """Set a new password with a reset token; the token is single-use"""
        if new_password != confirm_password:
            return self._reset_failed(
                None, site_id, "confirmation_mismatch", ["New password and confirmation do not match"]
            )

        now = utcnow()
        record = self.db.scalar(
            select(PasswordResetToken).where(
                PasswordResetToken.token_hash == hash_reset_token(token),
                PasswordResetToken.used_at.is_(None),
                PasswordResetToken.expires_at > now,
            )
        )
        if record is None:
            return self._reset_failed(None, site_id, "invalid_token", ["Invalid or expired reset token"])

        user = self.store.get_user(record.user_id)
        if user is None:
            return self._reset_failed(record.user_id, site_id, "user_not_found", ["User not found"])

        validation = self.password_engine.validate_password(
            new_password,
            self.policy.name,
            {"email": user.email, "name": user.name, "username": user.username},
            user.id,
        )
        if not validation.is_valid:
            return self._reset_failed(user.id, site_id, "policy_violation", validation.errors)

        try:
            hashed = self.password_engine.hash_password(new_password)
            user.hashed_password = hashed

            profile = self.store.get_or_create_profile(user.id, site_id)
            profile.password_changed_at = now
            profile.password_expires_at = now + timedelta(days=self.policy.max_age_days)
            requires_mfa = profile.mfa_enabled

            self.store.add_password_history(user.id, hashed, now)
            self.store.reset_failed_attempts(user.id, LOGIN_SCOPE)
            record.used_at = now
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Password reset failed for user {user.id}: {e}")
            return self._reset_failed(
                user.id, site_id, "system_error", ["Password reset failed due to system error"]
            )

        self.event_log.log_event(
            event_type=SecurityEventType.PASSWORD_RESET,
            site_id=site_id,
            payload=PasswordPayload(policy=self.policy.name),
            user_id=user.id,
        )
        self.logger.info(f"Password reset completed for user: {user.id}")
        return PasswordChangeResult(success=True, requires_mfa=requires_mfa)

    def _reset_failed(
        self,
        user_id: Optional[str],
        site_id: str,
        reason: str,
        errors: List[str],
    ) -> PasswordChangeResult:
        self.event_log.log_event(
            event_type=SecurityEventType.PASSWORD_RESET_FAILED,
            site_id=site_id,
            payload=PasswordPayload(reason=reason, policy=self.policy.name, errors=list(errors)),
            user_id=user_id,
            success=False,
        )
        return PasswordChangeResult(success=False, errors=list(errors))

    def cleanup_expired_reset_tokens(self) -> int:
        result = self.db.execute(
            delete(PasswordResetToken)
            .where(PasswordResetToken.expires_at < utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        removed = result.rowcount or 0
        if removed:
            self.logger.info(f"Removed {removed} expired password reset tokens")
        return removed
