"""
Himaya Security Store
Profile, lockout counter, secret store and password history over SQLAlchemy
"""

from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from himaya.core.encryption import EncryptionError, VaultManager
from himaya.core.logging import LoggerMixin
from himaya.database.models import User, utcnow
from .models import (
    FactorSecret, FactorType, PasswordHistoryEntry, PendingFactor, SecurityProfile
)

MFA_SCOPE = "mfa"
LOGIN_SCOPE = "login"


def _lockout_columns(scope: str):
    if scope == MFA_SCOPE:
        return SecurityProfile.failed_attempts, SecurityProfile.locked_until
    if scope == LOGIN_SCOPE:
        return SecurityProfile.login_attempts, SecurityProfile.login_locked_until
    raise ValueError(f"Unknown lockout scope: {scope}")


class SecurityStore(LoggerMixin):
    """
    Data-store operations the security services need.

    Methods stage changes on the session and leave the commit to the calling
    service, except ``register_failed_attempt`` which is its own transaction.
    Pending and confirmed factor material is encrypted with the vault before
    it reaches the database; stores built without a vault cannot touch it.
    """

    def __init__(self, db: Session, vault: Optional[VaultManager] = None):
        self.db = db
        self.vault = vault

    def _require_vault(self) -> VaultManager:
        if self.vault is None:
            raise EncryptionError("SecurityStore was created without a vault")
        return self.vault

    # ------------------------------------------------------------------
    # Users and profiles
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.scalar(select(User).where(User.email == email.strip().lower()))

    def get_profile(self, user_id: str) -> Optional[SecurityProfile]:
        return self.db.scalar(select(SecurityProfile).where(SecurityProfile.user_id == user_id))

    def get_or_create_profile(self, user_id: str, site_id: str) -> SecurityProfile:
        profile = self.get_profile(user_id)
        if profile is None:
            profile = SecurityProfile(
                user_id=user_id,
                site_id=site_id,
                mfa_enabled=False,
                backup_code_hashes=[],
                risk_factors=[],
                failed_attempts=0,
                login_attempts=0,
                risk_score=0,
                active_session_count=0,
            )
            self.db.add(profile)
            self.db.flush()
            self.logger.info(f"Security profile created for user: {user_id}")
        return profile

    # ------------------------------------------------------------------
    # Failed-attempt counters
    # ------------------------------------------------------------------

    def register_failed_attempt(
        self,
        user_id: str,
        max_attempts: int,
        lockout: timedelta,
        now: Optional[datetime] = None,
        scope: str = MFA_SCOPE,
    ) -> Tuple[int, Optional[datetime]]:
        """Atomically count a failure and lock once the threshold is reached.

        ``scope`` picks the counter: ``"mfa"`` for second-factor verification
        or ``"login"`` for password login. The increment is a single
        ``UPDATE ... SET attempts = attempts + 1`` so concurrent failures
        cannot both read the same value. Returns the new count and the lock
        expiry when this call set the lock (``None`` if no lock was set or one
        was already active).
        """
        attempts_column, lock_column = _lockout_columns(scope)
        now = now or utcnow()
        self.db.execute(
            update(SecurityProfile)
            .where(SecurityProfile.user_id == user_id)
            .values({attempts_column: attempts_column + 1})
            .execution_options(synchronize_session=False)
        )
        attempts = self.db.scalar(
            select(attempts_column).where(SecurityProfile.user_id == user_id)
        ) or 0

        locked_until = None
        if attempts >= max_attempts:
            candidate = now + lockout
            result = self.db.execute(
                update(SecurityProfile)
                .where(
                    SecurityProfile.user_id == user_id,
                    or_(lock_column.is_(None), lock_column <= now),
                )
                .values({lock_column: candidate})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                locked_until = candidate

        self.db.commit()
        return attempts, locked_until

    def reset_failed_attempts(self, user_id: str, scope: str = MFA_SCOPE) -> None:
        """Clear one counter and its lock"""
        attempts_column, lock_column = _lockout_columns(scope)
        self.db.execute(
            update(SecurityProfile)
            .where(SecurityProfile.user_id == user_id)
            .values({attempts_column: 0, lock_column: None})
        )

    def lock_profile(self, user_id: str, locked_until: datetime, scope: str = MFA_SCOPE) -> None:
        _, lock_column = _lockout_columns(scope)
        self.db.execute(
            update(SecurityProfile)
            .where(SecurityProfile.user_id == user_id)
            .values({lock_column: locked_until})
        )

    # ------------------------------------------------------------------
    # Pending factors (TTL enforced on read)
    # ------------------------------------------------------------------

    def stage_pending_factor(
        self,
        user_id: str,
        factor_type: FactorType,
        payload: dict,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> datetime:
        """Replace any pending factor of this type; returns its expiry"""
        now = now or utcnow()
        self.delete_pending_factor(user_id, factor_type)
        expires_at = now + ttl
        self.db.add(PendingFactor(
            user_id=user_id,
            factor_type=factor_type,
            encrypted_payload=self._require_vault().encrypt_data(payload, f"pending:{factor_type.value}"),
            expires_at=expires_at,
            created_at=now,
        ))
        self.db.flush()
        return expires_at

    def get_pending_factor(
        self,
        user_id: str,
        factor_type: FactorType,
        now: Optional[datetime] = None,
    ) -> Optional[dict]:
        now = now or utcnow()
        pending = self.db.scalar(
            select(PendingFactor).where(
                PendingFactor.user_id == user_id,
                PendingFactor.factor_type == factor_type,
            )
        )
        if pending is None:
            return None
        if pending.expires_at <= now:
            self.db.delete(pending)
            self.db.flush()
            return None
        return self._require_vault().decrypt_data(
            pending.encrypted_payload,
            expected_key_id=f"pending:{factor_type.value}",
        )

    def delete_pending_factor(self, user_id: str, factor_type: FactorType) -> None:
        self.db.execute(
            delete(PendingFactor)
            .where(PendingFactor.user_id == user_id, PendingFactor.factor_type == factor_type)
            .execution_options(synchronize_session=False)
        )

    def delete_pending_factors(self, user_id: str) -> None:
        self.db.execute(
            delete(PendingFactor)
            .where(PendingFactor.user_id == user_id)
            .execution_options(synchronize_session=False)
        )

    def purge_expired_pending_factors(self, now: Optional[datetime] = None) -> int:
        result = self.db.execute(
            delete(PendingFactor)
            .where(PendingFactor.expires_at <= (now or utcnow()))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Confirmed factor secrets
    # ------------------------------------------------------------------

    def put_factor_secret(self, user_id: str, factor_type: FactorType, secret: Any) -> None:
        encrypted = self._require_vault().encrypt_data(secret, f"factor:{factor_type.value}")
        existing = self.db.scalar(
            select(FactorSecret).where(
                FactorSecret.user_id == user_id,
                FactorSecret.factor_type == factor_type,
            )
        )
        if existing is None:
            self.db.add(FactorSecret(user_id=user_id, factor_type=factor_type, encrypted_secret=encrypted))
        else:
            existing.encrypted_secret = encrypted
        self.db.flush()

    def get_factor_secret(self, user_id: str, factor_type: FactorType) -> Optional[Any]:
        record = self.db.scalar(
            select(FactorSecret).where(
                FactorSecret.user_id == user_id,
                FactorSecret.factor_type == factor_type,
            )
        )
        if record is None:
            return None
        return self._require_vault().decrypt_data(record.encrypted_secret, expected_key_id=f"factor:{factor_type.value}")

    def delete_factor_secrets(self, user_id: str) -> int:
        result = self.db.execute(
            delete(FactorSecret)
            .where(FactorSecret.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Password history
    # ------------------------------------------------------------------

    def add_password_history(self, user_id: str, password_hash: str, now: Optional[datetime] = None) -> None:
        self.db.add(PasswordHistoryEntry(
            user_id=user_id,
            password_hash=password_hash,
            created_at=now or utcnow(),
        ))

    def recent_password_hashes(self, user_id: str, limit: int) -> List[str]:
        stmt = (
            select(PasswordHistoryEntry.password_hash)
            .where(PasswordHistoryEntry.user_id == user_id)
            .order_by(PasswordHistoryEntry.created_at.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt))
