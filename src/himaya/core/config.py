"""
Himaya Core Configuration
Environment-driven settings for the authentication security core.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Himaya Configuration Settings
    """

    # Application
    APP_NAME: str = "Himaya CMS"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    DATABASE_ECHO: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = False
    LOG_DIR: Path = Path("logs")

    # Encryption
    MASTER_KEY: Optional[str] = None  # base64, 32 bytes
    BACKUP_CODE_PEPPER: str = "change-this-backup-code-pepper"

    # MFA
    MFA_SERVICE_NAME: str = "Himaya CMS"
    MFA_TOKEN_WINDOW: int = 2
    MFA_BACKUP_CODE_COUNT: int = 10
    MFA_BACKUP_CODE_BYTES: int = 4
    MFA_CODE_LENGTH: int = 6
    MFA_CODE_EXPIRY_SECONDS: int = 5 * 60
    MFA_SETUP_EXPIRY_SECONDS: int = 10 * 60
    MFA_BIOMETRIC_CHALLENGE_SECONDS: int = 60
    MFA_MAX_VERIFICATION_ATTEMPTS: int = 3
    MFA_LOCKOUT_MINUTES: int = 15

    # WebAuthn relying party
    WEBAUTHN_RP_ID: str = "localhost"
    WEBAUTHN_RP_NAME: str = "Himaya CMS"
    WEBAUTHN_TIMEOUT_MS: int = 60000

    # Sessions
    SESSION_MAX_PER_USER: int = 5
    SESSION_INACTIVITY_MINUTES: int = 30
    SESSION_ABSOLUTE_TIMEOUT_HOURS: int = 24
    SESSION_EXTENSION_WINDOW_MINUTES: int = 15
    SESSION_LOOKBACK_DAYS: int = 7
    SESSION_LOOKBACK_LIMIT: int = 10
    SESSION_SUSPICIOUS_THRESHOLD: int = 15

    # Passwords
    PASSWORD_DEFAULT_POLICY: str = "default"
    PASSWORD_BCRYPT_ROUNDS: int = 12
    PASSWORD_RESET_TOKEN_MINUTES: int = 60
    PASSWORD_GUESSES_PER_SECOND: float = 1e9

    # Analytics
    ANALYTICS_DEFAULT_RANGE_DAYS: int = 7
    ANALYTICS_NEW_DEVICE_THRESHOLD: int = 3
    ANALYTICS_BRUTE_FORCE_THRESHOLD: int = 20
    ANALYTICS_UNUSUAL_HOURS: List[int] = [2, 3, 4, 5]
    ANALYTICS_TRAVEL_WINDOW_HOURS: float = 12.0
    ANALYTICS_SWEEP_INTERVAL_SECONDS: int = 15 * 60

    # External collaborators
    BREACH_CHECK_ENABLED: bool = True
    BREACH_CHECK_URL: str = "https://api.pwnedpasswords.com/range"
    BREACH_CHECK_TIMEOUT: float = 2.0
    DELIVERY_API_URL: Optional[str] = None
    DELIVERY_API_KEY: Optional[str] = None
    DELIVERY_TIMEOUT: float = 5.0

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            return v
        # Default to SQLite for development
        return "sqlite:///./himaya.db"

    @field_validator("ANALYTICS_UNUSUAL_HOURS", mode="before")
    @classmethod
    def assemble_unusual_hours(cls, v: Any) -> List[int]:
        if isinstance(v, str) and not v.startswith("["):
            return [int(i.strip()) for i in v.split(",") if i.strip()]
        return v

    @field_validator("PASSWORD_DEFAULT_POLICY")
    @classmethod
    def check_policy_name(cls, v: str) -> str:
        if v not in ("default", "strict", "relaxed"):
            raise ValueError(f"Unknown password policy: {v}")
        return v

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="HIMAYA_",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
