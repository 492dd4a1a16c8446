"""
Himaya Security Module
MFA, sessions, password policy, authentication and risk analytics
"""

from .exceptions import (
    SecurityError,
    ValidationError,
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    ExternalServiceError
)

from .models import (
    MFAMethod,
    VerificationMethod,
    FactorType,
    Severity,
    SecurityEventType,
    SecurityProfile,
    UserSession,
    SecurityEvent
)

from .events import SecurityEventLog, parse_payload

from .collaborators import (
    DeliveryResult,
    LoggingDeliveryGateway,
    HTTPDeliveryGateway,
    PwnedPasswordsChecker,
    StaticBreachChecker,
    QRCodeRenderer,
    LoggingAuditSink,
    WebAuthnAssertionVerifier,
    build_delivery_gateway,
    build_breach_checker
)

from .store import SecurityStore

# Multi-Factor Authentication
from .mfa_system import (
    MFAManager,
    MFAStatus,
    MFAVerificationResult,
    TOTPSetupResult,
    CodeSetupResult,
    BiometricSetupResult,
    BiometricChallenge
)

# Sessions
from .session_manager import (
    SessionManager,
    SessionCreateResult,
    SessionValidationResult,
    SessionInfo
)

# Passwords
from .password_policy import (
    PasswordPolicyEngine,
    PasswordPolicy,
    PASSWORD_POLICIES,
    PasswordValidationResult,
    PasswordChangeResult,
    PasswordExpiryStatus,
    Ok,
    Err
)

from .authentication import AuthenticationManager, LoginResult, AccountLockStatus

# Analytics
from .analytics import (
    AuthAnalyticsService,
    AnalyticsSweeper,
    AnomalyReport,
    RiskAssessment
)

__all__ = [
    # Errors
    "SecurityError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "RateLimitedError",
    "ExternalServiceError",

    # Models
    "MFAMethod",
    "VerificationMethod",
    "FactorType",
    "Severity",
    "SecurityEventType",
    "SecurityProfile",
    "UserSession",
    "SecurityEvent",

    # Event log and collaborators
    "SecurityEventLog",
    "parse_payload",
    "DeliveryResult",
    "LoggingDeliveryGateway",
    "HTTPDeliveryGateway",
    "PwnedPasswordsChecker",
    "StaticBreachChecker",
    "QRCodeRenderer",
    "LoggingAuditSink",
    "WebAuthnAssertionVerifier",
    "build_delivery_gateway",
    "build_breach_checker",
    "SecurityStore",

    # MFA
    "MFAManager",
    "MFAStatus",
    "MFAVerificationResult",
    "TOTPSetupResult",
    "CodeSetupResult",
    "BiometricSetupResult",
    "BiometricChallenge",

    # Sessions
    "SessionManager",
    "SessionCreateResult",
    "SessionValidationResult",
    "SessionInfo",

    # Passwords
    "PasswordPolicyEngine",
    "PasswordPolicy",
    "PASSWORD_POLICIES",
    "PasswordValidationResult",
    "PasswordChangeResult",
    "PasswordExpiryStatus",
    "Ok",
    "Err",
    "AuthenticationManager",
    "LoginResult",
    "AccountLockStatus",

    # Analytics
    "AuthAnalyticsService",
    "AnalyticsSweeper",
    "AnomalyReport",
    "RiskAssessment",
]
