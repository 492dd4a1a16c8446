"""
Himaya Password Policy Engine
Strength scoring, reuse history, breach lookup and password changes
"""

import math
import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Generic, List, Mapping, Optional, TypeVar, Union

import bcrypt
import httpx
from sqlalchemy.orm import Session

from himaya.core.config import Settings, get_settings
from himaya.core.logging import LoggerMixin
from himaya.database.models import utcnow
from .collaborators import BreachChecker, breach_hash, build_breach_checker
from .events import PasswordPayload, SecurityEventLog
from .exceptions import ExternalServiceError, ValidationError
from .models import SecurityEventType
from .store import SecurityStore


SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{}|;:,.<>?"


@dataclass(frozen=True)
class PasswordPolicy:
    """Named password policy preset"""
    name: str
    min_length: int
    max_length: int
    require_uppercase: bool
    require_lowercase: bool
    require_numbers: bool
    require_special_chars: bool
    max_repeating_chars: int
    min_unique_chars: int
    prevent_common_passwords: bool
    prevent_user_info: bool
    prevent_dictionary_words: bool
    max_age_days: int
    history_count: int
    lockout_attempts: int
    lockout_duration_minutes: int
    special_chars: str = SPECIAL_CHARACTERS


PASSWORD_POLICIES = {
    "default": PasswordPolicy(
        name="default",
        min_length=12,
        max_length=128,
        require_uppercase=True,
        require_lowercase=True,
        require_numbers=True,
        require_special_chars=True,
        max_repeating_chars=3,
        min_unique_chars=8,
        prevent_common_passwords=True,
        prevent_user_info=True,
        prevent_dictionary_words=True,
        max_age_days=90,
        history_count=12,
        lockout_attempts=5,
        lockout_duration_minutes=30,
    ),
    "strict": PasswordPolicy(
        name="strict",
        min_length=16,
        max_length=128,
        require_uppercase=True,
        require_lowercase=True,
        require_numbers=True,
        require_special_chars=True,
        max_repeating_chars=2,
        min_unique_chars=12,
        prevent_common_passwords=True,
        prevent_user_info=True,
        prevent_dictionary_words=True,
        max_age_days=60,
        history_count=24,
        lockout_attempts=3,
        lockout_duration_minutes=60,
    ),
    "relaxed": PasswordPolicy(
        name="relaxed",
        min_length=8,
        max_length=128,
        require_uppercase=False,
        require_lowercase=True,
        require_numbers=True,
        require_special_chars=False,
        max_repeating_chars=4,
        min_unique_chars=6,
        prevent_common_passwords=True,
        prevent_user_info=False,
        prevent_dictionary_words=False,
        max_age_days=180,
        history_count=6,
        lockout_attempts=10,
        lockout_duration_minutes=15,
    ),
}

COMMON_PASSWORDS = frozenset({
    "password", "123456", "123456789", "12345678", "12345", "1234567",
    "password123", "admin", "qwerty", "abc123", "letmein", "monkey",
    "welcome", "login", "administrator", "root", "toor", "pass",
    "test", "guest", "info", "user", "master", "hello", "access",
})

DICTIONARY_WORDS = frozenset({
    "computer", "internet", "security", "system", "network", "server",
    "database", "application", "website", "software", "hardware",
})

BREACH_CHECK_UNAVAILABLE = "Breach check unavailable; password was not checked against known breaches"


@dataclass
class PasswordValidationResult:
    is_valid: bool
    score: int
    strength: str  # very-weak, weak, fair, good, strong, very-strong
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    entropy: float = 0.0
    estimated_crack_time: str = "Less than 1 minute"


T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    violations: List[str]
    result: Optional[PasswordValidationResult] = None


PasswordCheck = Union[Ok[PasswordValidationResult], Err]


@dataclass
class PasswordChangeResult:
    success: bool
    errors: List[str] = field(default_factory=list)
    requires_mfa: Optional[bool] = None


@dataclass
class PasswordExpiryStatus:
    expired: bool
    expires_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None


def hash_password(password: str, rounds: int = 12) -> str:
    """bcrypt hash; bcrypt only reads the first 72 bytes"""
    return bcrypt.hashpw(password.encode("utf-8")[:72], bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:72], hashed_password.encode("utf-8"))
    except ValueError:
        return False


def max_repeating_run(password: str) -> int:
    longest = 0
    current = 0
    previous = None
    for char in password:
        current = current + 1 if char == previous else 1
        previous = char
        longest = max(longest, current)
    return longest


def calculate_entropy(password: str) -> float:
    """log2(charset_size ** length) over the character classes present"""
    charset_size = 0
    if re.search(r"[a-z]", password):
        charset_size += 26
    if re.search(r"[A-Z]", password):
        charset_size += 26
    if re.search(r"[0-9]", password):
        charset_size += 10
    if re.search(r"[^a-zA-Z0-9]", password):
        charset_size += 32

    if charset_size == 0:
        return 0.0
    return len(password) * math.log2(charset_size)


def determine_strength(score: int, error_count: int) -> str:
    if error_count > 0:
        return "very-weak"
    if score >= 90:
        return "very-strong"
    if score >= 75:
        return "strong"
    if score >= 60:
        return "good"
    if score >= 40:
        return "fair"
    if score >= 20:
        return "weak"
    return "very-weak"


def estimate_crack_time(entropy: float, guesses_per_second: float = 1e9) -> str:
    # Exponents past 1000 bits are centuries at any rate; keeps pow() finite
    seconds = math.pow(2, min(entropy, 1000) - 1) / guesses_per_second

    if seconds < 60:
        return "Less than 1 minute"
    if seconds < 3600:
        return f"{round(seconds / 60)} minutes"
    if seconds < 86400:
        return f"{round(seconds / 3600)} hours"
    if seconds < 31536000:
        return f"{round(seconds / 86400)} days"
    if seconds < 31536000000:
        return f"{round(seconds / 31536000)} years"
    return "Centuries"


def contains_user_info(password: str, user_info: Mapping[str, Optional[str]]) -> bool:
    lowered = password.lower()

    email = user_info.get("email")
    if email:
        local_part = email.lower().split("@")[0]
        if len(local_part) > 2 and local_part in lowered:
            return True

    name = user_info.get("name")
    if name:
        for part in name.lower().split():
            if len(part) > 2 and part in lowered:
                return True

    username = user_info.get("username")
    if username and len(username) > 2 and username.lower() in lowered:
        return True

    return False


def contains_dictionary_word(password: str) -> bool:
    lowered = password.lower()
    return any(word in lowered for word in DICTIONARY_WORDS)


class PasswordPolicyEngine(LoggerMixin):
    """Validates, scores, generates and changes passwords"""

    def __init__(
        self,
        db: Session,
        event_log: SecurityEventLog,
        breach_checker: Optional[BreachChecker] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.store = SecurityStore(db)
        self.event_log = event_log
        if self.settings.BREACH_CHECK_ENABLED:
            self.breach_checker = breach_checker or build_breach_checker(self.settings)
        else:
            self.breach_checker = None

    def get_policy(self, policy_name: Optional[str] = None) -> PasswordPolicy:
        name = policy_name or self.settings.PASSWORD_DEFAULT_POLICY
        try:
            return PASSWORD_POLICIES[name]
        except KeyError:
            raise ValidationError([f"Unknown password policy: {name}"])

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_password(
        self,
        password: str,
        policy_name: Optional[str] = None,
        user_info: Optional[Mapping[str, Optional[str]]] = None,
        user_id: Optional[str] = None,
    ) -> PasswordValidationResult:
        """
        Run every policy check and score the password.

        Args:
            password: Candidate password
            policy_name: ``default``, ``strict`` or ``relaxed``
            user_info: ``email`` / ``name`` / ``username`` checked for leakage
            user_id: Enables the reuse check against password history

        Returns:
            PasswordValidationResult; ``is_valid`` is False when any error
            was recorded
        """
        policy = self.get_policy(policy_name)
        errors: List[str] = []
        warnings: List[str] = []
        suggestions: List[str] = []
        score = 0

        # Length
        if len(password) < policy.min_length:
            errors.append(f"Password must be at least {policy.min_length} characters long")
        else:
            score += 20
        if len(password) > policy.max_length:
            errors.append(f"Password must not exceed {policy.max_length} characters")

        # Character classes
        has_upper = bool(re.search(r"[A-Z]", password))
        if policy.require_uppercase and not has_upper:
            errors.append("Password must contain at least one uppercase letter")
            suggestions.append("Add uppercase letters (A-Z)")
        elif has_upper:
            score += 10

        has_lower = bool(re.search(r"[a-z]", password))
        if policy.require_lowercase and not has_lower:
            errors.append("Password must contain at least one lowercase letter")
            suggestions.append("Add lowercase letters (a-z)")
        elif has_lower:
            score += 10

        has_digit = bool(re.search(r"[0-9]", password))
        if policy.require_numbers and not has_digit:
            errors.append("Password must contain at least one number")
            suggestions.append("Add numbers (0-9)")
        elif has_digit:
            score += 10

        if policy.require_special_chars:
            if not any(char in policy.special_chars for char in password):
                errors.append("Password must contain at least one special character")
                suggestions.append(f"Add special characters ({policy.special_chars})")
            else:
                score += 15

        # Repeats and diversity
        if max_repeating_run(password) > policy.max_repeating_chars:
            errors.append(f"Password must not have more than {policy.max_repeating_chars} repeating characters")
            suggestions.append("Avoid repeating the same character multiple times")

        if len(set(password)) < policy.min_unique_chars:
            warnings.append(f"Password should have at least {policy.min_unique_chars} unique characters")
            suggestions.append("Use more diverse characters")
        else:
            score += 10

        # Guessability
        if policy.prevent_common_passwords and password.lower() in COMMON_PASSWORDS:
            errors.append("Password is too common and easily guessable")
            suggestions.append("Use a more unique password")
        else:
            score += 10

        if policy.prevent_user_info and user_info and contains_user_info(password, user_info):
            errors.append("Password must not contain personal information")
            suggestions.append("Avoid using your name, email, or username in the password")
        else:
            score += 5

        if policy.prevent_dictionary_words and contains_dictionary_word(password):
            warnings.append("Password contains common dictionary words")
            suggestions.append("Consider using less common words or abbreviations")
        else:
            score += 10

        # Reuse
        if user_id:
            if self._is_reused(user_id, password, policy.history_count):
                errors.append("Password has been used recently and cannot be reused")
            else:
                score += 5

        # Known breaches
        breached = self._check_breach(password)
        if breached is None:
            warnings.append(BREACH_CHECK_UNAVAILABLE)
        elif breached:
            errors.append("Password has been found in data breaches and should not be used")
            suggestions.append("Choose a completely different password")
        else:
            score += 5

        entropy = calculate_entropy(password)
        if entropy >= 60:
            score += 15
        elif entropy >= 40:
            score += 10
        elif entropy >= 25:
            score += 5

        score = min(score, 100)

        return PasswordValidationResult(
            is_valid=not errors,
            score=score,
            strength=determine_strength(score, len(errors)),
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
            entropy=entropy,
            estimated_crack_time=estimate_crack_time(entropy, self.settings.PASSWORD_GUESSES_PER_SECOND),
        )

    def check_password(
        self,
        password: str,
        policy_name: Optional[str] = None,
        user_info: Optional[Mapping[str, Optional[str]]] = None,
        user_id: Optional[str] = None,
    ) -> PasswordCheck:
        """Validation outcome as ``Ok(result)`` or ``Err(violations)``"""
        result = self.validate_password(password, policy_name, user_info, user_id)
        if result.is_valid:
            return Ok(result)
        return Err(violations=list(result.errors), result=result)

    def _is_reused(self, user_id: str, password: str, history_count: int) -> bool:
        for previous_hash in self.store.recent_password_hashes(user_id, history_count):
            if verify_password(password, previous_hash):
                return True
        return False

    def _check_breach(self, password: str) -> Optional[bool]:
        """True/False from the breach checker, None when it could not answer"""
        if self.breach_checker is None:
            return False
        try:
            return self.breach_checker.is_known_breached(breach_hash(password))
        except (ExternalServiceError, httpx.HTTPError, OSError) as e:
            self.logger.warning(f"Breach check failed open: {e.__class__.__name__}: {e}")
            return None

    # =========================================================================
    # CHANGES
    # =========================================================================

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
        site_id: str,
        policy_name: Optional[str] = None,
    ) -> PasswordChangeResult:
        """Change a password after verifying the current one"""
        policy = self.get_policy(policy_name)

        if new_password != confirm_password:
            return self._change_failed(
                user_id, site_id, "confirmation_mismatch",
                ["New password and confirmation do not match"],
            )

        user = self.store.get_user(user_id)
        if user is None:
            return self._change_failed(user_id, site_id, "user_not_found", ["User not found"])

        if not verify_password(current_password, user.hashed_password):
            return self._change_failed(
                user_id, site_id, "incorrect_current_password",
                ["Current password is incorrect"],
            )

        validation = self.validate_password(
            new_password,
            policy.name,
            {"email": user.email, "name": user.name, "username": user.username},
            user_id,
        )
        if not validation.is_valid:
            return self._change_failed(
                user_id, site_id, "policy_violation", validation.errors, policy=policy.name
            )

        try:
            now = utcnow()
            hashed = self.hash_password(new_password)
            user.hashed_password = hashed

            profile = self.store.get_or_create_profile(user_id, site_id)
            profile.password_changed_at = now
            profile.password_expires_at = now + timedelta(days=policy.max_age_days)
            requires_mfa = profile.mfa_enabled

            self.store.add_password_history(user_id, hashed, now)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.logger.error(f"Password change failed for user {user_id}: {e}")
            return self._change_failed(
                user_id, site_id, "system_error",
                ["Password change failed due to system error"],
            )

        self.event_log.log_event(
            event_type=SecurityEventType.PASSWORD_CHANGE,
            site_id=site_id,
            payload=PasswordPayload(policy=policy.name),
            user_id=user_id,
        )
        self.logger.info(f"Password changed for user: {user_id}")

        return PasswordChangeResult(success=True, requires_mfa=requires_mfa)

    def _change_failed(
        self,
        user_id: str,
        site_id: str,
        reason: str,
        errors: List[str],
        policy: Optional[str] = None,
    ) -> PasswordChangeResult:
        self.event_log.log_event(
            event_type=SecurityEventType.PASSWORD_CHANGE_FAILED,
            site_id=site_id,
            payload=PasswordPayload(reason=reason, policy=policy, errors=list(errors)),
            user_id=user_id,
            success=False,
        )
        return PasswordChangeResult(success=False, errors=list(errors))

    def generate_secure_password(self, length: int = 16, policy_name: Optional[str] = None) -> str:
        """Random password satisfying every required character class"""
        policy = self.get_policy(policy_name)

        classes = []
        if policy.require_lowercase:
            classes.append(string.ascii_lowercase)
        if policy.require_uppercase:
            classes.append(string.ascii_uppercase)
        if policy.require_numbers:
            classes.append(string.digits)
        if policy.require_special_chars:
            classes.append(policy.special_chars)

        if length < len(classes):
            raise ValidationError([f"Password length must be at least {len(classes)} for the {policy.name} policy"])
        if length > policy.max_length:
            raise ValidationError([f"Password length must not exceed {policy.max_length}"])

        charset = "".join(classes)
        chars = [secrets.choice(chars_of_class) for chars_of_class in classes]
        chars.extend(secrets.choice(charset) for _ in range(length - len(chars)))

        # Seed characters must not stay at the front
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)

    def check_password_expiry(self, user_id: str) -> PasswordExpiryStatus:
        profile = self.store.get_profile(user_id)
        if profile is None or profile.password_expires_at is None:
            return PasswordExpiryStatus(expired=False)

        now = utcnow()
        expires_at = profile.password_expires_at
        expired = expires_at < now
        days = math.ceil((expires_at - now).total_seconds() / 86400)

        return PasswordExpiryStatus(
            expired=expired,
            expires_at=expires_at,
            days_until_expiry=0 if expired else days,
        )

    def hash_password(self, password: str) -> str:
        return hash_password(password, self.settings.PASSWORD_BCRYPT_ROUNDS)

    def verify_password(self, password: str, hashed_password: str) -> bool:
        return verify_password(password, hashed_password)
