"""
Himaya Authentication Analytics
Metrics, anomaly detection and per-user risk scoring over the event log and
session store, plus a background sweeper that records anomalies on profiles.
"""

import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from himaya.core.config import Settings, get_settings
from himaya.core.logging import LoggerMixin
from himaya.database.models import User, utcnow
from himaya.database.session import session_scope
from .devices import detect_device_type
from .events import AnomalyPayload, SecurityEventLog
from .exceptions import ValidationError
from .models import (
    ComplianceRecord, PolicyViolation, SecurityEventType, SecurityIncident,
    SecurityProfile, Severity, UserSession, Vulnerability
)
from .store import SecurityStore

AUTH_EVENT_TYPES = (
    SecurityEventType.LOGIN_SUCCESS,
    SecurityEventType.LOGIN_FAILURE,
    SecurityEventType.MFA_VERIFICATION,
    SecurityEventType.ACCOUNT_LOCKED,
)

TREND_SERIES = (
    ("Login Success", "login_success", SecurityEventType.LOGIN_SUCCESS),
    ("Login Failure", "login_failure", SecurityEventType.LOGIN_FAILURE),
    ("MFA Usage", "mfa_usage", SecurityEventType.MFA_VERIFICATION),
    ("Suspicious Activity", "suspicious_activity", SecurityEventType.SUSPICIOUS_ACTIVITY),
)

TREND_STEPS = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}


@dataclass
class AuthenticationMetrics:
    total_logins: int
    successful_logins: int
    failed_logins: int
    success_rate: float
    mfa_usage: int
    unique_users: int
    new_users: int
    blocked_attempts: int


@dataclass
class SecurityMetrics:
    suspicious_activities: int
    security_incidents: int
    policy_violations: int
    vulnerabilities: int
    risk_score: int
    compliance_score: float


@dataclass
class SessionMetrics:
    active_sessions: int
    average_session_duration: int  # minutes
    sessions_by_device: Dict[str, int]
    sessions_by_location: Dict[str, int]
    concurrent_peak_sessions: int


@dataclass
class UserBehaviorMetrics:
    login_patterns: Dict[str, int]
    device_usage: Dict[str, int]
    location_patterns: Dict[str, int]
    time_patterns: Dict[str, int]
    risk_distribution: Dict[str, int]


@dataclass
class Anomaly:
    type: str
    description: str
    severity: str
    confidence: float
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AnomalyReport:
    anomalies: List[Anomaly] = field(default_factory=list)
    risk_factors: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def anomaly_types(self) -> List[str]:
        return [a.type for a in self.anomalies]


@dataclass
class RiskFactor:
    factor: str
    impact: int
    description: str


@dataclass
class RiskAssessment:
    overall_risk: int
    risk_level: str
    factors: List[RiskFactor]
    recommendations: List[str]
    score: int


@dataclass
class TrendDataset:
    label: str
    type: str
    data: List[int]


@dataclass
class AuthenticationTrends:
    labels: List[str]
    datasets: List[TrendDataset]


def time_slot(hour: int) -> str:
    if 6 <= hour < 12:
        return "Morning"
    if 12 <= hour < 18:
        return "Afternoon"
    if 18 <= hour < 22:
        return "Evening"
    return "Night"


def risk_level(score: int) -> str:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 30:
        return "medium"
    return "low"


def device_label(user_agent: str) -> str:
    return detect_device_type(user_agent or "").capitalize()


def concurrent_peak(intervals: Sequence[Tuple[datetime, datetime]]) -> int:
    """Largest number of overlapping ``[start, end)`` intervals"""
    edges: List[Tuple[datetime, int]] = []
    for start, end in intervals:
        edges.append((start, 1))
        edges.append((end, -1))
    # Ends sort before starts at the same instant
    edges.sort(key=lambda edge: (edge[0], edge[1]))

    peak = current = 0
    for _, delta in edges:
        current += delta
        peak = max(peak, current)
    return peak


class AuthAnalyticsService(LoggerMixin):
    """
    Read-side analytics over security events and sessions.

    Point queries run synchronously against the request's session; the only
    writer is ``run_anomaly_sweep``, which belongs off the login path.
    """

    def __init__(self, db: Session, event_log: SecurityEventLog, settings: Optional[Settings] = None):
        self.db = db
        self.event_log = event_log
        self.settings = settings or get_settings()
        self.store = SecurityStore(db)

    def _date_range(
        self, start: Optional[datetime], end: Optional[datetime]
    ) -> Tuple[datetime, datetime]:
        end = end or utcnow()
        start = start or end - timedelta(days=self.settings.ANALYTICS_DEFAULT_RANGE_DAYS)
        return start, end

    def _sessions(
        self,
        site_id: str,
        start: datetime,
        end: datetime,
        user_id: Optional[str] = None,
    ) -> List[UserSession]:
        stmt = select(UserSession).where(
            UserSession.site_id == site_id,
            UserSession.created_at >= start,
            UserSession.created_at <= end,
        )
        if user_id is not None:
            stmt = stmt.where(UserSession.user_id == user_id)
        return list(self.db.scalars(stmt.order_by(UserSession.created_at.asc())))

    def _count(self, model, site_id: str, start: datetime, end: datetime, *criteria) -> int:
        stmt = select(func.count()).select_from(model).where(
            model.site_id == site_id,
            model.created_at >= start,
            model.created_at <= end,
            *criteria,
        )
        return self.db.scalar(stmt) or 0

    # =========================================================================
    # METRICS
    # =========================================================================

    def get_authentication_metrics(
        self,
        site_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AuthenticationMetrics:
        start, end = self._date_range(start, end)
        events = self.event_log.query(site_id, start, end, event_types=AUTH_EVENT_TYPES)

        logins = [
            e for e in events
            if e.event_type in (SecurityEventType.LOGIN_SUCCESS.value, SecurityEventType.LOGIN_FAILURE.value)
        ]
        successful = sum(
            1 for e in logins if e.event_type == SecurityEventType.LOGIN_SUCCESS.value and e.success
        )
        failed = sum(
            1 for e in logins if e.event_type == SecurityEventType.LOGIN_FAILURE.value or not e.success
        )
        mfa_usage = sum(
            1 for e in events if e.event_type == SecurityEventType.MFA_VERIFICATION.value and e.success
        )
        blocked = sum(1 for e in events if e.event_type == SecurityEventType.ACCOUNT_LOCKED.value)
        unique_users = len({e.user_id for e in events if e.user_id})

        new_users = self.db.scalar(
            select(func.count()).select_from(User).where(
                User.site_id == site_id,
                User.created_at >= start,
                User.created_at <= end,
            )
        ) or 0

        success_rate = round(successful / len(logins) * 100, 2) if logins else 0.0

        return AuthenticationMetrics(
            total_logins=len(logins),
            successful_logins=successful,
            failed_logins=failed,
            success_rate=success_rate,
            mfa_usage=mfa_usage,
            unique_users=unique_users,
            new_users=new_users,
            blocked_attempts=blocked,
        )

    def get_security_metrics(
        self,
        site_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> SecurityMetrics:
        start, end = self._date_range(start, end)
        suspicious = len(self.event_log.query(
            site_id, start, end,
            event_types=[SecurityEventType.SUSPICIOUS_ACTIVITY, SecurityEventType.SUSPICIOUS_SESSION_DETECTED],
        ))

        return SecurityMetrics(
            suspicious_activities=suspicious,
            security_incidents=self._count(SecurityIncident, site_id, start, end),
            policy_violations=self._count(PolicyViolation, site_id, start, end),
            vulnerabilities=self._count(Vulnerability, site_id, start, end, Vulnerability.status == "OPEN"),
            risk_score=self._site_risk_score(site_id),
            compliance_score=self._compliance_score(site_id),
        )

    def _site_risk_score(self, site_id: str) -> int:
        now = utcnow()
        recent_incidents = self._count(SecurityIncident, site_id, now - timedelta(days=7), now)
        open_severe = self.db.scalar(
            select(func.count()).select_from(Vulnerability).where(
                Vulnerability.site_id == site_id,
                Vulnerability.status == "OPEN",
                Vulnerability.severity.in_([Severity.HIGH, Severity.CRITICAL]),
            )
        ) or 0
        return min(recent_incidents * 20 + open_severe * 15, 100)

    def _compliance_score(self, site_id: str) -> float:
        statuses = list(self.db.scalars(
            select(ComplianceRecord.status).where(ComplianceRecord.site_id == site_id)
        ))
        if not statuses:
            return 0.0
        compliant = sum(1 for status in statuses if status == "COMPLIANT")
        return round(compliant / len(statuses) * 100, 2)

    def get_session_metrics(
        self,
        site_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> SessionMetrics:
        start, end = self._date_range(start, end)
        sessions = self._sessions(site_id, start, end)

        ended = [s for s in sessions if not s.active]
        if ended:
            total_minutes = sum(
                (s.last_activity - s.created_at).total_seconds() / 60 for s in ended
            )
            average = round(total_minutes / len(ended))
        else:
            average = 0

        lifetimes = [
            (s.created_at, s.terminated_at or s.expires_at)
            for s in sessions
        ]

        return SessionMetrics(
            active_sessions=sum(1 for s in sessions if s.active),
            average_session_duration=average,
            sessions_by_device=dict(Counter(device_label(s.user_agent) for s in sessions)),
            sessions_by_location=dict(Counter(s.country or "Unknown" for s in sessions)),
            concurrent_peak_sessions=concurrent_peak(lifetimes),
        )

    def get_user_behavior_metrics(
        self,
        site_id: str,
        user_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> UserBehaviorMetrics:
        start, end = self._date_range(start, end)
        logins = self.event_log.query(
            site_id, start, end,
            event_types=[SecurityEventType.LOGIN_SUCCESS],
            user_id=user_id,
        )
        sessions = self._sessions(site_id, start, end, user_id=user_id)

        user_ids = {s.user_id for s in sessions}
        risk_scores: Dict[str, int] = {}
        if user_ids:
            rows = self.db.execute(
                select(SecurityProfile.user_id, SecurityProfile.risk_score)
                .where(SecurityProfile.user_id.in_(user_ids))
            )
            risk_scores = {row.user_id: row.risk_score for row in rows}

        risk_distribution = Counter(
            risk_level(risk_scores[s.user_id]) for s in sessions if s.user_id in risk_scores
        )

        return UserBehaviorMetrics(
            login_patterns=dict(Counter(time_slot(e.created_at.hour) for e in logins if e.success)),
            device_usage=dict(Counter(device_label(s.user_agent) for s in sessions)),
            location_patterns=dict(Counter(s.country or "Unknown" for s in sessions)),
            time_patterns=dict(Counter(s.created_at.strftime("%A") for s in sessions)),
            risk_distribution=dict(risk_distribution),
        )

    # =========================================================================
    # ANOMALIES AND RISK
    # =========================================================================

    def detect_anomalies(
        self,
        site_id: str,
        user_id: Optional[str] = None,
        window_days: Optional[int] = None,
    ) -> AnomalyReport:
        """Run every detector over the window and collect what triggered"""
        window_days = window_days or self.settings.ANALYTICS_DEFAULT_RANGE_DAYS
        end = utcnow()
        start = end - timedelta(days=window_days)
        report = AnomalyReport()

        sessions = self._sessions(site_id, start, end, user_id=user_id)

        logins = self.event_log.query(
            site_id, start, end, event_types=[SecurityEventType.LOGIN_SUCCESS], user_id=user_id
        )
        unusual_hours = set(self.settings.ANALYTICS_UNUSUAL_HOURS)
        unusual_times = [e.created_at.hour for e in logins if e.created_at.hour in unusual_hours]
        if unusual_times:
            report.anomalies.append(Anomaly(
                type="unusual_login_time",
                description="Login attempts at unusual hours detected",
                severity="medium",
                confidence=0.8,
                timestamp=end,
                metadata={"unusual_times": unusual_times},
            ))
            report.risk_factors.append("Off-hours login activity")
            report.recommendations.append("Review login activity during unusual hours")

        device_count = len({s.device_fingerprint for s in sessions})
        if device_count > self.settings.ANALYTICS_NEW_DEVICE_THRESHOLD:
            report.anomalies.append(Anomaly(
                type="multiple_new_devices",
                description="Multiple new devices detected",
                severity="high",
                confidence=0.9,
                timestamp=end,
                metadata={"device_count": device_count},
            ))
            report.risk_factors.append("Multiple new device registrations")
            report.recommendations.append("Verify device ownership and enable MFA")

        travel = self._geographic_anomalies(sessions)
        if travel:
            report.anomalies.append(Anomaly(
                type="geographic_anomaly",
                description="Unusual geographic login pattern detected",
                severity="high",
                confidence=0.85,
                timestamp=end,
                metadata={"anomalies": travel},
            ))
            report.risk_factors.append("Unusual geographic access patterns")
            report.recommendations.append("Verify recent travel or remote access needs")

        failures = len(self.event_log.query(
            site_id, start, end, event_types=[SecurityEventType.LOGIN_FAILURE], user_id=user_id
        ))
        if failures > self.settings.ANALYTICS_BRUTE_FORCE_THRESHOLD:
            report.anomalies.append(Anomaly(
                type="brute_force_pattern",
                description="Potential brute force attack detected",
                severity="high",
                confidence=0.95,
                timestamp=end,
                metadata={"attempts": failures},
            ))
            report.risk_factors.append("Brute force attack indicators")
            report.recommendations.append("Enable account lockout and MFA immediately")

        return report

    def _geographic_anomalies(self, sessions: Sequence[UserSession]) -> List[Dict[str, Any]]:
        """Consecutive sessions from different countries closer than the travel window"""
        window_hours = self.settings.ANALYTICS_TRAVEL_WINDOW_HOURS
        anomalies = []
        for previous, current in zip(sessions, sessions[1:]):
            if not previous.country or not current.country or previous.country == current.country:
                continue
            hours = (current.created_at - previous.created_at).total_seconds() / 3600
            if hours < window_hours:
                anomalies.append({
                    "from": previous.country,
                    "to": current.country,
                    "timespan": round(hours, 2),
                    "timestamp": current.created_at.isoformat(),
                })
        return anomalies

    def assess_user_risk(self, user_id: str, site_id: str) -> RiskAssessment:
        """Additive risk model over the user's security profile.

        Users without a profile get a fixed medium risk rather than a
        computed one.
        """
        profile = self.store.get_profile(user_id)
        if profile is None:
            return RiskAssessment(
                overall_risk=50,
                risk_level="medium",
                factors=[RiskFactor(
                    factor="No security profile",
                    impact=50,
                    description="User has no security profile configured",
                )],
                recommendations=["Set up user security profile"],
                score=50,
            )

        factors: List[RiskFactor] = []
        recommendations: List[str] = []

        if not profile.mfa_enabled:
            factors.append(RiskFactor("No MFA", 30, "Multi-factor authentication is not enabled"))
            recommendations.append("Enable multi-factor authentication")

        failed_attempts = profile.login_attempts + profile.failed_attempts
        if failed_attempts > 3:
            impact = min(failed_attempts * 5, 25)
            factors.append(RiskFactor(
                "Failed logins", impact, f"{failed_attempts} recent failed login attempts"
            ))
            recommendations.append("Review recent login attempts")

        if profile.active_session_count > self.settings.SESSION_MAX_PER_USER:
            factors.append(RiskFactor(
                "Multiple sessions", 15, f"{profile.active_session_count} active sessions detected"
            ))
            recommendations.append("Review and terminate unnecessary sessions")

        if profile.last_login_at is not None:
            days_since_login = (utcnow() - profile.last_login_at).total_seconds() / 86400
            if days_since_login > 30:
                factors.append(RiskFactor(
                    "Inactive account", 10, f"Account inactive for {round(days_since_login)} days"
                ))

        for stored in profile.risk_factors or []:
            readable = stored.replace("_", " ")
            factors.append(RiskFactor(readable, 10, f"Risk factor: {readable}"))

        overall = min(sum(f.impact for f in factors), 100)
        if overall > 70:
            recommendations.append("Conduct immediate security review")

        return RiskAssessment(
            overall_risk=overall,
            risk_level=risk_level(overall),
            factors=factors,
            recommendations=recommendations,
            score=100 - overall,
        )

    def get_authentication_trends(
        self,
        site_id: str,
        days: int = 30,
        granularity: str = "day",
    ) -> AuthenticationTrends:
        """Event counts per period, one aligned series per tracked event type"""
        step = TREND_STEPS.get(granularity)
        if step is None:
            raise ValidationError([f"Unknown granularity: {granularity}"])

        end = utcnow()
        start = end - timedelta(days=days)
        events = self.event_log.query(
            site_id, start, end, event_types=[series[2] for series in TREND_SERIES]
        )

        labels: List[str] = []
        counts: Dict[str, List[int]] = {series[1]: [] for series in TREND_SERIES}

        current = start
        while current < end:
            period_end = current + step
            if granularity == "hour":
                labels.append(current.strftime("%H:%M"))
            elif granularity == "day":
                labels.append(current.date().isoformat())
            else:
                labels.append(f"Week of {current.date().isoformat()}")

            in_period = Counter(e.event_type for e in events if current <= e.created_at < period_end)
            for _, key, event_type in TREND_SERIES:
                counts[key].append(in_period.get(event_type.value, 0))
            current = period_end

        return AuthenticationTrends(
            labels=labels,
            datasets=[TrendDataset(label=label, type=key, data=counts[key]) for label, key, _ in TREND_SERIES],
        )

    # =========================================================================
    # SWEEP
    # =========================================================================

    def run_anomaly_sweep(self, site_id: str, window_days: Optional[int] = None) -> Dict[str, AnomalyReport]:
        """Detect anomalies for every recently active user and record them.

        Anomaly types are added to the profile's risk factors and a
        ``SUSPICIOUS_ACTIVITY`` event is written per flagged user. Returns the
        reports of flagged users keyed by user id.
        """
        window_days = window_days or self.settings.ANALYTICS_DEFAULT_RANGE_DAYS
        end = utcnow()
        start = end - timedelta(days=window_days)

        user_ids = {e.user_id for e in self.event_log.query(site_id, start, end) if e.user_id}
        user_ids.update(s.user_id for s in self._sessions(site_id, start, end))

        flagged: Dict[str, AnomalyReport] = {}
        for user_id in sorted(user_ids):
            try:
                report = self.detect_anomalies(site_id, user_id=user_id, window_days=window_days)
                if not report.anomalies:
                    continue

                profile = self.store.get_profile(user_id)
                if profile is not None:
                    existing = list(profile.risk_factors or [])
                    additions = [t for t in report.anomaly_types if t not in existing]
                    if additions:
                        profile.risk_factors = existing + additions
                self.db.commit()

                flagged[user_id] = report
                self.event_log.log_event(
                    SecurityEventType.SUSPICIOUS_ACTIVITY,
                    site_id,
                    AnomalyPayload(
                        anomaly_types=report.anomaly_types,
                        risk_factors=report.risk_factors,
                        window_days=window_days,
                    ),
                    user_id=user_id,
                    success=False,
                )
            except Exception as e:
                self.db.rollback()
                self.logger.error(f"Anomaly sweep failed for user {user_id} on site {site_id}: {e}")

        self.logger.info(f"Anomaly sweep of site {site_id} flagged {len(flagged)} of {len(user_ids)} users")
        return flagged


class AnalyticsSweeper(LoggerMixin):
    """
    Periodic anomaly sweep on a daemon thread.

    Each pass opens its own SQLAlchemy session per site.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        site_ids: Sequence[str],
        settings: Optional[Settings] = None,
        audit_sink: Optional[Any] = None,
    ):
        self.session_factory = session_factory
        self.site_ids = list(site_ids)
        self.settings = settings or get_settings()
        self.audit_sink = audit_sink
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Dict[str, int]:
        """One sweep over every site; returns flagged-user counts per site"""
        results: Dict[str, int] = {}
        for site_id in self.site_ids:
            with session_scope(self.session_factory) as db:
                service = AuthAnalyticsService(db, SecurityEventLog(db, self.audit_sink), self.settings)
                results[site_id] = len(service.run_anomaly_sweep(site_id))
        return results

    def _run(self) -> None:
        interval = self.settings.ANALYTICS_SWEEP_INTERVAL_SECONDS
        while not self._stop_event.wait(interval):
            try:
                self.run_once()
            except Exception as e:
                self.logger.error(f"Analytics sweep failed: {e}")

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="himaya-analytics-sweeper", daemon=True)
        self._thread.start()
        self.logger.info(f"Analytics sweeper started for {len(self.site_ids)} sites")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.logger.info("Analytics sweeper stopped")
