"""
Himaya Security Event Log
Append-only event log with typed per-kind payloads

Every service writes through ``SecurityEventLog.log_event``. Each payload is a
pydantic model tagged by ``kind`` so the stored metadata of any event can be
parsed back into the exact shape it was written with. Writing an event never
raises: failures of the database insert or of the audit sink are logged
locally and swallowed.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sqlalchemy import select
from sqlalchemy.orm import Session

from himaya.core.logging import LoggerMixin
from himaya.database.models import utcnow
from .models import SecurityEvent, SecurityEventType, Severity


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class LoginPayload(_Payload):
    kind: Literal["login"] = "login"
    ip_address: Optional[str] = None
    reason: Optional[str] = None
    failed_attempts: Optional[int] = None


class LockoutPayload(_Payload):
    kind: Literal["lockout"] = "lockout"
    scope: Literal["login", "mfa"]
    failed_attempts: int
    locked_until: Optional[datetime] = None
    unlocked_by: Optional[str] = None


class MFAPayload(_Payload):
    kind: Literal["mfa"] = "mfa"
    method: str
    reason: Optional[str] = None
    destination: Optional[str] = None  # always masked
    trusted_device: Optional[bool] = None
    remaining_backup_codes: Optional[int] = None
    disabled_by: Optional[str] = None
    retry_after: Optional[int] = None
    error: Optional[str] = None


class SessionPayload(_Payload):
    kind: Literal["session"] = "session"
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    device_type: Optional[str] = None
    suspicious: Optional[bool] = None
    trusted_device: Optional[bool] = None
    warning_flags: List[str] = Field(default_factory=list)
    reason: Optional[str] = None
    terminated_by: Optional[str] = None
    terminated_count: Optional[int] = None
    error: Optional[str] = None


class PasswordPayload(_Payload):
    kind: Literal["password"] = "password"
    reason: Optional[str] = None
    policy: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class AnomalyPayload(_Payload):
    kind: Literal["anomaly"] = "anomaly"
    anomaly_types: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)
    window_days: Optional[int] = None


EventPayload = Annotated[
    Union[LoginPayload, LockoutPayload, MFAPayload, SessionPayload, PasswordPayload, AnomalyPayload],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter = TypeAdapter(EventPayload)


def parse_payload(metadata: Dict[str, Any]) -> EventPayload:
    """Rebuild the typed payload stored in an event's metadata"""
    return _payload_adapter.validate_python(metadata)


DEFAULT_SEVERITY: Dict[SecurityEventType, Severity] = {
    SecurityEventType.LOGIN_FAILURE: Severity.MEDIUM,
    SecurityEventType.ACCOUNT_LOCKED: Severity.HIGH,
    SecurityEventType.MFA_SETUP_FAILED: Severity.MEDIUM,
    SecurityEventType.MFA_DISABLED: Severity.MEDIUM,
    SecurityEventType.MFA_DISABLE_FAILED: Severity.MEDIUM,
    SecurityEventType.MFA_VERIFICATION_FAILED: Severity.MEDIUM,
    SecurityEventType.MFA_VERIFICATION_BLOCKED: Severity.HIGH,
    SecurityEventType.MFA_VERIFICATION_ERROR: Severity.HIGH,
    SecurityEventType.SESSION_CREATE_FAILED: Severity.MEDIUM,
    SecurityEventType.BULK_SESSION_TERMINATION: Severity.MEDIUM,
    SecurityEventType.SUSPICIOUS_SESSION_DETECTED: Severity.HIGH,
    SecurityEventType.PASSWORD_CHANGE_FAILED: Severity.MEDIUM,
    SecurityEventType.PASSWORD_RESET_FAILED: Severity.MEDIUM,
    SecurityEventType.SUSPICIOUS_ACTIVITY: Severity.HIGH,
}


def mask_phone(phone_number: str) -> str:
    digits = "".join(ch for ch in phone_number if ch.isdigit())
    return f"***{digits[-4:]}" if digits else "***"


def mask_email(address: str) -> str:
    local, _, domain = address.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


class SecurityEventLog(LoggerMixin):
    """Append-only writer and reader of security events"""

    def __init__(self, db: Session, audit_sink: Optional[Any] = None):
        self.db = db
        self.audit_sink = audit_sink

    def log_event(
        self,
        event_type: SecurityEventType,
        site_id: str,
        payload: EventPayload,
        user_id: Optional[str] = None,
        success: bool = True,
        severity: Optional[Severity] = None,
        session_id: Optional[str] = None,
    ) -> Optional[SecurityEvent]:
        """Persist an event and forward it to the audit sink; never raises"""
        event = SecurityEvent(
            event_type=event_type.value,
            severity=severity or DEFAULT_SEVERITY.get(event_type, Severity.LOW),
            user_id=user_id,
            site_id=site_id or "",
            session_id=session_id,
            success=success,
            event_metadata=payload.model_dump(mode="json", exclude_none=True),
            created_at=utcnow(),
        )

        try:
            self.db.add(event)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Failed to persist security event {event_type.value}: {e}")
            event = None

        if self.audit_sink is not None:
            try:
                self.audit_sink.emit(
                    event_type=event_type.value,
                    site_id=site_id,
                    user_id=user_id,
                    success=success,
                    metadata=payload.model_dump(mode="json", exclude_none=True),
                )
            except Exception as e:
                self.logger.error(f"Audit sink rejected {event_type.value}: {e}")

        return event

    def query(
        self,
        site_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_types: Optional[Sequence[SecurityEventType]] = None,
        user_id: Optional[str] = None,
    ) -> List[SecurityEvent]:
        """Events for a site, oldest first"""
        stmt = select(SecurityEvent).where(SecurityEvent.site_id == site_id)
        if start is not None:
            stmt = stmt.where(SecurityEvent.created_at >= start)
        if end is not None:
            stmt = stmt.where(SecurityEvent.created_at <= end)
        if event_types:
            stmt = stmt.where(SecurityEvent.event_type.in_([t.value for t in event_types]))
        if user_id is not None:
            stmt = stmt.where(SecurityEvent.user_id == user_id)
        stmt = stmt.order_by(SecurityEvent.created_at.asc())
        return list(self.db.scalars(stmt))
