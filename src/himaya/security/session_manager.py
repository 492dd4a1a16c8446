"""
Himaya Session Manager
Session lifecycle with device trust and suspicion signals
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from himaya.core.config import Settings, get_settings
from himaya.core.logging import LoggerMixin
from himaya.database.models import new_id, utcnow
from .devices import (
    detect_device_type, is_suspicious_user_agent, parse_device_info, session_fingerprint
)
from .events import SecurityEventLog, SessionPayload
from .exceptions import NotFoundError
from .models import SecurityEventType, SecurityProfile, UserSession
from .store import SecurityStore


# Risk added per warning flag
SIGNAL_WEIGHTS = {
    "new_ip_address": 5,
    "new_device": 10,
    "location_anomaly": 15,
    "rapid_location_change": 20,
    "suspicious_user_agent": 5,
}

RAPID_CHANGE_WINDOW = timedelta(minutes=5)


@dataclass
class SuspicionSignals:
    reasons: List[str] = field(default_factory=list)
    risk_increase: int = 0
    suspicious: bool = False


@dataclass
class SessionCreateResult:
    session_id: str
    expires_at: datetime
    trusted_device: bool
    warning_flags: List[str] = field(default_factory=list)
    suspicious: bool = False


@dataclass
class SessionValidationResult:
    valid: bool
    session: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)
    extended: bool = False


@dataclass
class SessionInfo:
    session_id: str
    ip_address: str
    user_agent: str
    location: Dict[str, Any]
    device_info: Dict[str, Any]
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    suspicious: bool
    verified: bool
    current: bool = False


class SessionManager(LoggerMixin):
    """Creates, validates and terminates login sessions"""

    def __init__(
        self,
        db: Session,
        event_log: SecurityEventLog,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.store = SecurityStore(db)
        self.event_log = event_log

        self.max_sessions = self.settings.SESSION_MAX_PER_USER
        self.inactivity_timeout = timedelta(minutes=self.settings.SESSION_INACTIVITY_MINUTES)
        self.absolute_timeout = timedelta(hours=self.settings.SESSION_ABSOLUTE_TIMEOUT_HOURS)
        self.extension_window = timedelta(minutes=self.settings.SESSION_EXTENSION_WINDOW_MINUTES)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def create_session(
        self,
        user_id: str,
        site_id: str,
        ip_address: str,
        user_agent: str,
        location: Optional[Mapping[str, Any]] = None,
        device_info: Optional[Mapping[str, Any]] = None,
        trusted_device: bool = False,
    ) -> SessionCreateResult:
        """Mint a session after successful authentication"""
        if self.store.get_user(user_id) is None:
            raise NotFoundError("User not found")

        now = utcnow()
        device_type = (device_info or {}).get("type") or detect_device_type(user_agent)

        try:
            profile = self.store.get_or_create_profile(user_id, site_id)
            fingerprint = session_fingerprint(user_agent, device_info)
            signals = self._detect_suspicious_activity(user_id, ip_address, user_agent, location, fingerprint, now)

            self._enforce_session_limit(user_id)

            trusted = trusted_device and not signals.suspicious
            session = UserSession(
                id=new_id(),
                user_id=user_id,
                site_id=site_id,
                ip_address=ip_address,
                user_agent=user_agent or "",
                device_fingerprint=fingerprint,
                location=dict(location or {}),
                created_at=now,
                last_activity=now,
                expires_at=now + self.absolute_timeout,
                active=True,
                terminated=False,
                suspicious=signals.suspicious,
                suspicion_reasons=list(signals.reasons),
                verified=trusted,
            )
            self.db.add(session)

            profile.active_session_count = (profile.active_session_count or 0) + 1
            profile.last_login_at = now
            if signals.suspicious:
                self._raise_risk(profile, signals.risk_increase)

            self.db.commit()

        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Session creation failed for user {user_id}: {e}")
            self.event_log.log_event(
                event_type=SecurityEventType.SESSION_CREATE_FAILED,
                site_id=site_id,
                payload=SessionPayload(ip_address=ip_address, error=e.__class__.__name__),
                user_id=user_id,
                success=False,
            )
            raise

        self.event_log.log_event(
            event_type=SecurityEventType.SESSION_CREATED,
            site_id=site_id,
            payload=SessionPayload(
                session_id=session.id,
                ip_address=ip_address,
                device_type=device_type,
                suspicious=signals.suspicious,
                trusted_device=trusted,
                warning_flags=signals.reasons,
            ),
            user_id=user_id,
            session_id=session.id,
        )
        if signals.suspicious:
            self.event_log.log_event(
                event_type=SecurityEventType.SUSPICIOUS_SESSION_DETECTED,
                site_id=site_id,
                payload=SessionPayload(session_id=session.id, suspicious=True, warning_flags=signals.reasons),
                user_id=user_id,
                session_id=session.id,
            )
            self.logger.warning(f"Suspicious session for user {user_id}: {', '.join(signals.reasons)}")

        return SessionCreateResult(
            session_id=session.id,
            expires_at=session.expires_at,
            trusted_device=trusted,
            warning_flags=list(signals.reasons),
            suspicious=signals.suspicious,
        )

    def validate_session(self, session_id: str) -> SessionValidationResult:
        """
        Check a session and refresh its activity.

        Raises:
            NotFoundError: the id does not resolve
        """
        session = self.db.get(UserSession, session_id)
        if session is None:
            raise NotFoundError("Session not found")

        now = utcnow()

        if not session.is_usable(now):
            if now >= session.expires_at:
                self.terminate_session(session_id, "expired")
                return SessionValidationResult(valid=False, warnings=["Session expired"])
            return SessionValidationResult(valid=False, warnings=["Session terminated"])

        if session.last_activity + self.inactivity_timeout < now:
            self.terminate_session(session_id, "inactivity_timeout")
            return SessionValidationResult(valid=False, warnings=["Session timed out due to inactivity"])

        warnings = []
        if session.suspicious:
            warnings.append("Suspicious activity detected")

        extended = session.expires_at - now < self.extension_window
        session.last_activity = now
        if extended:
            session.expires_at = now + self.absolute_timeout
        self.db.commit()

        user = session.user
        profile = self.store.get_profile(session.user_id)
        context = {
            "id": session.id,
            "user_id": session.user_id,
            "site_id": session.site_id,
            "user": {"id": user.id, "name": user.name, "email": user.email},
            "expires_at": session.expires_at,
            "suspicious": session.suspicious,
            "trusted_device": session.verified,
            "profile": {
                "mfa_enabled": profile.mfa_enabled if profile else False,
                "risk_score": profile.risk_score if profile else 0,
            },
        }
        return SessionValidationResult(valid=True, session=context, warnings=warnings, extended=extended)

    def terminate_session(self, session_id: str, reason: str, terminated_by: Optional[str] = None) -> bool:
        """Terminate one session; False when unknown or already terminated"""
        session = self.db.get(UserSession, session_id)
        if session is None or session.terminated:
            return False

        try:
            session.active = False
            session.terminated = True
            session.terminated_at = utcnow()
            session.terminated_reason = reason
            session.terminated_by = terminated_by

            profile = self.store.get_profile(session.user_id)
            if profile is not None:
                profile.active_session_count = max(0, (profile.active_session_count or 0) - 1)

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Session termination failed for {session_id}: {e}")
            raise

        self.event_log.log_event(
            event_type=SecurityEventType.SESSION_TERMINATED,
            site_id=session.site_id,
            payload=SessionPayload(
                session_id=session_id,
                reason=reason,
                terminated_by=terminated_by or "system",
            ),
            user_id=session.user_id,
            session_id=session_id,
        )
        return True

    def terminate_all_user_sessions(
        self,
        user_id: str,
        site_id: str,
        reason: str,
        except_session_id: Optional[str] = None,
        terminated_by: Optional[str] = None,
    ) -> int:
        """Terminate every live session of a user, optionally keeping one"""
        stmt = select(UserSession.id).where(
            UserSession.user_id == user_id,
            UserSession.site_id == site_id,
            UserSession.active.is_(True),
            UserSession.terminated.is_(False),
        )
        if except_session_id:
            stmt = stmt.where(UserSession.id != except_session_id)

        terminated = 0
        for session_id in list(self.db.scalars(stmt)):
            if self.terminate_session(session_id, reason, terminated_by):
                terminated += 1

        self.event_log.log_event(
            event_type=SecurityEventType.BULK_SESSION_TERMINATION,
            site_id=site_id,
            payload=SessionPayload(
                reason=reason,
                terminated_by=terminated_by or "system",
                terminated_count=terminated,
            ),
            user_id=user_id,
        )
        return terminated

    def get_user_sessions(self, user_id: str, site_id: str) -> List[SessionInfo]:
        stmt = (
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.site_id == site_id,
                UserSession.active.is_(True),
                UserSession.terminated.is_(False),
            )
            .order_by(UserSession.last_activity.desc())
        )
        return [
            SessionInfo(
                session_id=session.id,
                ip_address=session.ip_address,
                user_agent=session.user_agent,
                location=dict(session.location or {}),
                device_info=parse_device_info(session.user_agent, session.device_fingerprint),
                created_at=session.created_at,
                last_activity=session.last_activity,
                expires_at=session.expires_at,
                suspicious=session.suspicious,
                verified=session.verified,
            )
            for session in self.db.scalars(stmt)
        ]

    def flag_suspicious_session(self, session_id: str, reasons: List[str]) -> None:
        """Mark a session suspicious and raise the owner's risk"""
        session = self.db.get(UserSession, session_id)
        if session is None:
            raise NotFoundError("Session not found")

        merged = list(session.suspicion_reasons or [])
        for reason in reasons:
            if reason not in merged:
                merged.append(reason)

        try:
            session.suspicious = True
            session.suspicion_reasons = merged
            profile = self.store.get_profile(session.user_id)
            if profile is not None:
                self._raise_risk(profile, 10)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Flagging session {session_id} failed: {e}")
            raise

        self.event_log.log_event(
            event_type=SecurityEventType.SUSPICIOUS_SESSION_DETECTED,
            site_id=session.site_id,
            payload=SessionPayload(session_id=session_id, suspicious=True, warning_flags=merged),
            user_id=session.user_id,
            session_id=session_id,
        )

    def cleanup_expired_sessions(self) -> int:
        """Terminate expired and idle sessions, then reconcile session counts"""
        now = utcnow()
        stmt = select(UserSession.id).where(
            UserSession.active.is_(True),
            UserSession.terminated.is_(False),
            or_(
                UserSession.expires_at < now,
                UserSession.last_activity < now - self.inactivity_timeout,
            ),
        )

        cleaned = 0
        for session_id in list(self.db.scalars(stmt)):
            if self.terminate_session(session_id, "expired_cleanup"):
                cleaned += 1

        self._reconcile_session_counts()
        purged = self.store.purge_expired_pending_factors(now)
        self.db.commit()

        self.logger.info(f"Cleaned up {cleaned} expired sessions and {purged} expired pending factors")
        return cleaned

    def get_session_analytics(self, site_id: str, days: int = 7) -> Dict[str, Any]:
        start = utcnow() - timedelta(days=days)
        sessions = list(self.db.scalars(
            select(UserSession).where(
                UserSession.site_id == site_id,
                UserSession.created_at >= start,
            )
        ))

        device_breakdown = Counter(detect_device_type(s.user_agent) for s in sessions)
        location_breakdown = Counter(s.country or "unknown" for s in sessions)
        hourly_distribution = Counter(str(s.created_at.hour) for s in sessions)

        return {
            "total_sessions": len(sessions),
            "active_sessions": sum(1 for s in sessions if s.active),
            "suspicious_sessions": sum(1 for s in sessions if s.suspicious),
            "device_breakdown": dict(device_breakdown),
            "location_breakdown": dict(location_breakdown),
            "hourly_distribution": dict(hourly_distribution),
        }

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _detect_suspicious_activity(
        self,
        user_id: str,
        ip_address: str,
        user_agent: str,
        location: Optional[Mapping[str, Any]],
        fingerprint: str,
        now: datetime,
    ) -> SuspicionSignals:
        recent = list(self.db.scalars(
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.created_at >= now - timedelta(days=self.settings.SESSION_LOOKBACK_DAYS),
            )
            .order_by(UserSession.created_at.desc())
            .limit(self.settings.SESSION_LOOKBACK_LIMIT)
        ))

        reasons = []
        # A first login has no baseline to differ from
        if recent:
            if ip_address not in {s.ip_address for s in recent}:
                reasons.append("new_ip_address")

            if fingerprint not in {s.device_fingerprint for s in recent}:
                reasons.append("new_device")

            if location:
                located = [s for s in recent if s.country]
                if located and location.get("country") != located[0].country:
                    reasons.append("location_anomaly")

            rapid = any(
                s.created_at > now - RAPID_CHANGE_WINDOW and s.ip_address != ip_address
                for s in recent
            )
            if rapid:
                reasons.append("rapid_location_change")

        if is_suspicious_user_agent(user_agent):
            reasons.append("suspicious_user_agent")

        risk_increase = sum(SIGNAL_WEIGHTS[r] for r in reasons)
        return SuspicionSignals(
            reasons=reasons,
            risk_increase=risk_increase,
            suspicious=risk_increase >= self.settings.SESSION_SUSPICIOUS_THRESHOLD,
        )

    def _enforce_session_limit(self, user_id: str) -> None:
        """Evict the least recently active session once the cap is reached"""
        live = select(UserSession).where(
            UserSession.user_id == user_id,
            UserSession.active.is_(True),
            UserSession.terminated.is_(False),
        )
        count = self.db.scalar(select(func.count()).select_from(live.subquery())) or 0
        if count < self.max_sessions:
            return

        oldest = self.db.scalar(live.order_by(UserSession.last_activity.asc()).limit(1))
        if oldest is not None:
            self.logger.info(f"Session limit reached for user {user_id}, evicting {oldest.id}")
            self.terminate_session(oldest.id, "session_limit_exceeded")

    def _reconcile_session_counts(self) -> None:
        counts = dict(self.db.execute(
            select(UserSession.user_id, func.count(UserSession.id))
            .where(UserSession.active.is_(True), UserSession.terminated.is_(False))
            .group_by(UserSession.user_id)
        ).all())

        for profile in self.db.scalars(select(SecurityProfile)):
            actual = counts.get(profile.user_id, 0)
            if profile.active_session_count != actual:
                profile.active_session_count = actual

    @staticmethod
    def _raise_risk(profile: SecurityProfile, increase: int) -> None:
        profile.risk_score = min(100, (profile.risk_score or 0) + increase)
        factors = list(profile.risk_factors or [])
        if "suspicious_session" not in factors:
            profile.risk_factors = factors + ["suspicious_session"]
