"""
PyTest configuration and shared fixtures for the Himaya security test suite.

Every test runs against an in-memory SQLite database with the full schema
created, explicit test settings and fake collaborators.
"""
import base64
import hashlib
import json
from typing import Callable, Generator, Optional
from unittest.mock import Mock

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from himaya.core.config import Settings
from himaya.core.encryption import VaultManager
from himaya.database.models import Base, User
from himaya.security import models as security_models  # noqa: F401  registers tables
from himaya.security.collaborators import (
    BiometricAssertion, DeliveryResult, StaticBreachChecker, b64url_encode
)
from himaya.security.events import SecurityEventLog
from himaya.security.password_policy import hash_password

TEST_PASSWORD = "Vq7#mPz2!kLw9$Rt"
SITE_ID = "site-test"


@pytest.fixture
def test_settings() -> Settings:
    """Settings tuned for fast, deterministic tests."""
    return Settings(
        ENVIRONMENT="testing",
        DATABASE_URL="sqlite:///:memory:",
        MASTER_KEY=base64.b64encode(b"\x07" * 32).decode(),
        BACKUP_CODE_PEPPER="test-pepper",
        PASSWORD_BCRYPT_ROUNDS=4,
        BREACH_CHECK_ENABLED=True,
        WEBAUTHN_RP_ID="himaya.test",
        LOG_TO_FILE=False,
    )


@pytest.fixture
def test_db() -> Engine:
    """Create a test database engine."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def session_factory(test_db) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a database session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def vault(test_settings) -> VaultManager:
    return VaultManager(settings=test_settings)


@pytest.fixture
def audit_sink() -> Mock:
    return Mock()


@pytest.fixture
def event_log(db_session, audit_sink) -> SecurityEventLog:
    return SecurityEventLog(db_session, audit_sink=audit_sink)


@pytest.fixture
def mock_delivery() -> Mock:
    """Delivery gateway that accepts every message."""
    delivery = Mock()
    delivery.send_sms.return_value = DeliveryResult(delivered=True)
    delivery.send_email.return_value = DeliveryResult(delivered=True)
    return delivery


@pytest.fixture
def mock_qr_renderer() -> Mock:
    renderer = Mock()
    renderer.render_provisioning_image.return_value = "data:image/png;base64,iVBORw0KGgo="
    return renderer


@pytest.fixture
def breach_checker() -> StaticBreachChecker:
    return StaticBreachChecker.from_passwords(["Password123!", "Tr0ub4dor&3xyz"])


@pytest.fixture
def make_user(db_session) -> Callable[..., User]:
    """Factory for persisted users with real bcrypt hashes."""
    def _make_user(
        email: str = "alice@example.com",
        password: str = TEST_PASSWORD,
        name: Optional[str] = "Alice Example",
        username: Optional[str] = None,
        site_id: str = SITE_ID,
        is_active: bool = True,
    ) -> User:
        user = User(
            email=email,
            username=username or email.split("@")[0],
            name=name,
            site_id=site_id,
            hashed_password=hash_password(password, rounds=4),
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture
def user(make_user) -> User:
    return make_user()


@pytest.fixture
def site_id() -> str:
    return SITE_ID


@pytest.fixture
def es256_key():
    """P-256 key pair standing in for a platform authenticator."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_key, public_pem


@pytest.fixture
def sign_assertion(test_settings):
    """Build a WebAuthn assertion signed the way an authenticator would."""
    def _sign(
        private_key,
        challenge: str,
        challenge_id: str = "challenge-1",
        credential_id: str = "cred-1",
        rp_id: Optional[str] = None,
        flags: int = 0x05,
        ceremony: str = "webauthn.get",
    ) -> BiometricAssertion:
        client_data = json.dumps({
            "type": ceremony,
            "challenge": challenge,
            "origin": f"https://{test_settings.WEBAUTHN_RP_ID}",
        }).encode()
        rp_hash = hashlib.sha256((rp_id or test_settings.WEBAUTHN_RP_ID).encode()).digest()
        authenticator_data = rp_hash + bytes([flags]) + (1).to_bytes(4, "big")
        signature = private_key.sign(
            authenticator_data + hashlib.sha256(client_data).digest(),
            ec.ECDSA(hashes.SHA256()),
        )
        return BiometricAssertion(
            challenge_id=challenge_id,
            credential_id=credential_id,
            client_data_json=b64url_encode(client_data),
            authenticator_data=b64url_encode(authenticator_data),
            signature=b64url_encode(signature),
        )

    return _sign
