"""
Himaya Security Database Models
Security profile, factor secrets, sessions and the append-only event log
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, Boolean, Enum as SQLEnum, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from himaya.database.models import Base, TimestampMixin, UTCDateTime, User, new_id, utcnow


class MFAMethod(str, Enum):
    """Second factors a profile can be enrolled with"""
    TOTP = "TOTP"
    SMS = "SMS"
    EMAIL = "EMAIL"
    HARDWARE_TOKEN = "HARDWARE_TOKEN"
    BIOMETRIC = "BIOMETRIC"


class VerificationMethod(str, Enum):
    """Methods accepted by MFA verification"""
    TOTP = "TOTP"
    SMS = "SMS"
    EMAIL = "EMAIL"
    BACKUP_CODES = "BACKUP_CODES"
    BIOMETRIC = "BIOMETRIC"


class FactorType(str, Enum):
    """Keys of the secret store"""
    TOTP = "TOTP"
    SMS = "SMS"
    EMAIL = "EMAIL"
    BIOMETRIC = "BIOMETRIC"


class Severity(str, Enum):
    """Security event severity levels"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEventType(str, Enum):
    """Security event types written to the event log"""
    # Authentication
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"

    # Multi-factor authentication
    MFA_SETUP_INITIATED = "MFA_SETUP_INITIATED"
    MFA_SETUP_FAILED = "MFA_SETUP_FAILED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_DISABLE_FAILED = "MFA_DISABLE_FAILED"
    MFA_CODE_SENT = "MFA_CODE_SENT"
    MFA_VERIFICATION = "MFA_VERIFICATION"
    MFA_VERIFICATION_FAILED = "MFA_VERIFICATION_FAILED"
    MFA_VERIFICATION_BLOCKED = "MFA_VERIFICATION_BLOCKED"
    MFA_VERIFICATION_ERROR = "MFA_VERIFICATION_ERROR"
    BACKUP_CODES_REGENERATED = "BACKUP_CODES_REGENERATED"

    # Sessions
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_CREATE_FAILED = "SESSION_CREATE_FAILED"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    BULK_SESSION_TERMINATION = "BULK_SESSION_TERMINATION"
    SUSPICIOUS_SESSION_DETECTED = "SUSPICIOUS_SESSION_DETECTED"

    # Passwords
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_CHANGE_FAILED = "PASSWORD_CHANGE_FAILED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET = "PASSWORD_RESET"
    PASSWORD_RESET_FAILED = "PASSWORD_RESET_FAILED"

    # Analytics
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"


class SecurityProfile(Base, TimestampMixin):
    """Per-user security state, created on first interaction"""
    __tablename__ = "security_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, unique=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Multi-factor authentication
    mfa_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mfa_method: Mapped[Optional[MFAMethod]] = mapped_column(SQLEnum(MFAMethod))
    backup_code_hashes: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    last_mfa_verification: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # MFA verification lockout
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # Password login lockout
    login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    login_locked_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # Risk
    risk_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    risk_factors: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)

    # Passwords
    password_changed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    password_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # Sessions
    active_session_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    user: Mapped["User"] = relationship("User")

    __table_args__ = (
        Index("ix_security_profiles_site_id", "site_id"),
        Index("ix_security_profiles_risk_score", "risk_score"),
    )


class PendingFactor(Base):
    """Staged, unconfirmed factor material with a TTL"""
    __tablename__ = "pending_factors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    factor_type: Mapped[FactorType] = mapped_column(SQLEnum(FactorType), nullable=False)
    encrypted_payload: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "factor_type", name="uq_pending_factor_user_type"),
        Index("ix_pending_factors_expires_at", "expires_at"),
    )


class FactorSecret(Base, TimestampMixin):
    """Confirmed factor secret, encrypted at rest"""
    __tablename__ = "factor_secrets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    factor_type: Mapped[FactorType] = mapped_column(SQLEnum(FactorType), nullable=False)
    encrypted_secret: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "factor_type", name="uq_factor_secret_user_type"),
    )


class UserSession(Base, TimestampMixin):
    """Login session with device trust and suspicion signals"""
    __tablename__ = "user_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Client
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    user_agent: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    device_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    location: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    # Lifecycle
    last_activity: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    terminated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    terminated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    terminated_reason: Mapped[Optional[str]] = mapped_column(String(100))
    terminated_by: Mapped[Optional[str]] = mapped_column(String(36))

    # Trust
    suspicious: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    suspicion_reasons: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship("User")

    __table_args__ = (
        Index("ix_user_sessions_user_id", "user_id"),
        Index("ix_user_sessions_site_created", "site_id", "created_at"),
        Index("ix_user_sessions_fingerprint", "device_fingerprint"),
        Index("ix_user_sessions_expires_at", "expires_at"),
    )

    @property
    def country(self) -> Optional[str]:
        return (self.location or {}).get("country")

    def is_usable(self, now: datetime) -> bool:
        return self.active and not self.terminated and now < self.expires_at


class SecurityEvent(Base):
    """Append-only security event log entry"""
    __tablename__ = "security_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[Severity] = mapped_column(SQLEnum(Severity), nullable=False, default=Severity.LOW)
    user_id: Mapped[Optional[str]] = mapped_column(String(36))
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(36))
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    event_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_security_events_site_created", "site_id", "created_at"),
        Index("ix_security_events_user_id", "user_id"),
        Index("ix_security_events_event_type", "event_type"),
    )


class PasswordHistoryEntry(Base):
    """Previous password hashes, queried for reuse detection"""
    __tablename__ = "password_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_password_history_user_created", "user_id", "created_at"),
    )


class PasswordResetToken(Base):
    """Single-use password reset token, stored as a SHA-256 digest"""
    __tablename__ = "password_reset_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class SecurityIncident(Base, TimestampMixin):
    """Site-level incident raised by operators or alerting"""
    __tablename__ = "security_incidents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    severity: Mapped[Severity] = mapped_column(SQLEnum(Severity), default=Severity.MEDIUM)
    status: Mapped[str] = mapped_column(String(20), default="OPEN")


class PolicyViolation(Base, TimestampMixin):
    """Recorded breach of a site security policy"""
    __tablename__ = "policy_violations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    policy: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(36))


class Vulnerability(Base, TimestampMixin):
    """Known vulnerability affecting a site"""
    __tablename__ = "vulnerabilities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    severity: Mapped[Severity] = mapped_column(SQLEnum(Severity), default=Severity.MEDIUM)
    status: Mapped[str] = mapped_column(String(20), default="OPEN")  # OPEN, FIXED, ACCEPTED


class ComplianceRecord(Base, TimestampMixin):
    """Outcome of a compliance control check"""
    __tablename__ = "compliance_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    control: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="COMPLIANT")  # COMPLIANT, NON_COMPLIANT
