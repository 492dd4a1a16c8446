"""
Himaya Security Exceptions
Error taxonomy shared by the security services
"""

from datetime import datetime
from typing import Iterable, List, Optional


class SecurityError(Exception):
    """Base class for security core errors"""
    pass


class ValidationError(SecurityError):
    """Malformed input or policy violation, carries every reason"""

    def __init__(self, reasons: Iterable[str]):
        self.reasons: List[str] = list(reasons)
        super().__init__("; ".join(self.reasons) or "Validation failed")


class AuthenticationError(SecurityError):
    """Wrong credential or token"""
    pass


class NotFoundError(AuthenticationError):
    """Unknown user, profile or session; handled like an authentication failure"""
    pass


class RateLimitedError(AuthenticationError):
    """Lockout is active"""

    def __init__(self, message: str, retry_after: int, locked_until: Optional[datetime] = None):
        self.retry_after = retry_after
        self.locked_until = locked_until
        super().__init__(message)


class ExternalServiceError(SecurityError):
    """A collaborator (delivery gateway, breach check) failed or timed out"""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")
