"""
Himaya Security Collaborators
Delivery gateway, breach check, QR rendering, audit sink and WebAuthn
assertion verification used by the security services
"""

import base64
import hashlib
import io
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Protocol, Set

import httpx
import qrcode
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from himaya.core.config import Settings
from himaya.core.logging import LoggerMixin, get_logger
from .events import mask_email, mask_phone
from .exceptions import ExternalServiceError, ValidationError

audit_logger = get_logger("himaya.audit")


# =============================================================================
# DELIVERY GATEWAY
# =============================================================================

@dataclass
class DeliveryResult:
    """Outcome of a code delivery"""
    delivered: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class DeliveryGateway(Protocol):
    def send_sms(self, phone_number: str, code: str) -> DeliveryResult: ...

    def send_email(self, address: str, code: str) -> DeliveryResult: ...


class LoggingDeliveryGateway(LoggerMixin):
    """Development gateway: records deliveries without sending anything"""

    def send_sms(self, phone_number: str, code: str) -> DeliveryResult:
        self.logger.info(f"SMS verification code issued to {mask_phone(phone_number)}")
        return DeliveryResult(delivered=True)

    def send_email(self, address: str, code: str) -> DeliveryResult:
        self.logger.info(f"Email verification code issued to {mask_email(address)}")
        return DeliveryResult(delivered=True)


class HTTPDeliveryGateway(LoggerMixin):
    """Delivers codes through a JSON messaging API"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        service_name: str = "Himaya CMS",
        client: Optional[httpx.Client] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
        )
        self.service_name = service_name

    def send_sms(self, phone_number: str, code: str) -> DeliveryResult:
        return self._post("/sms", {
            "to": phone_number,
            "message": f"Your {self.service_name} verification code is {code}",
        }, mask_phone(phone_number))

    def send_email(self, address: str, code: str) -> DeliveryResult:
        return self._post("/email", {
            "to": address,
            "subject": f"{self.service_name} verification code",
            "text": f"Your verification code is {code}. It expires in 5 minutes.",
        }, mask_email(address))

    def _post(self, path: str, body: Dict[str, Any], masked_destination: str) -> DeliveryResult:
        try:
            response = self.client.post(path, json=body)
            response.raise_for_status()
        except httpx.TimeoutException:
            self.logger.warning(f"Delivery to {masked_destination} timed out")
            return DeliveryResult(delivered=False, error="timeout")
        except httpx.HTTPError as e:
            self.logger.warning(f"Delivery to {masked_destination} failed: {e.__class__.__name__}")
            return DeliveryResult(delivered=False, error=e.__class__.__name__)

        message_id = None
        if response.headers.get("content-type", "").startswith("application/json"):
            message_id = response.json().get("id")
        return DeliveryResult(delivered=True, message_id=message_id)


def build_delivery_gateway(settings: Settings) -> DeliveryGateway:
    """HTTP gateway when a delivery API is configured, log-only otherwise"""
    if settings.DELIVERY_API_URL:
        return HTTPDeliveryGateway(
            settings.DELIVERY_API_URL,
            api_key=settings.DELIVERY_API_KEY,
            timeout=settings.DELIVERY_TIMEOUT,
            service_name=settings.MFA_SERVICE_NAME,
        )
    return LoggingDeliveryGateway()


# =============================================================================
# BREACH CHECK
# =============================================================================

class BreachChecker(Protocol):
    def is_known_breached(self, password_hash: str) -> bool: ...


def breach_hash(password: str) -> str:
    """SHA-1 digest in the form breach corpora are keyed by"""
    return hashlib.sha1(password.encode("utf-8")).hexdigest().upper()


class PwnedPasswordsChecker(LoggerMixin):
    """k-anonymity range lookup: only the first five hash characters leave the process"""

    def __init__(
        self,
        base_url: str = "https://api.pwnedpasswords.com/range",
        timeout: float = 2.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def is_known_breached(self, password_hash: str) -> bool:
        password_hash = password_hash.upper()
        prefix, suffix = password_hash[:5], password_hash[5:]

        try:
            response = self.client.get(f"{self.base_url}/{prefix}", headers={"Add-Padding": "true"})
            response.raise_for_status()
        except httpx.TimeoutException:
            raise ExternalServiceError("breach-check", "lookup timed out")
        except httpx.HTTPError as e:
            raise ExternalServiceError("breach-check", f"lookup failed: {e.__class__.__name__}")

        for line in response.text.splitlines():
            candidate, _, count = line.strip().partition(":")
            if candidate.upper() == suffix and count.strip() not in ("", "0"):
                return True
        return False


class StaticBreachChecker:
    """In-memory breach list keyed by SHA-1 digests"""

    def __init__(self, hashes: Iterable[str] = ()):
        self.hashes: Set[str] = {h.upper() for h in hashes}

    @classmethod
    def from_passwords(cls, passwords: Iterable[str]) -> "StaticBreachChecker":
        return cls(breach_hash(p) for p in passwords)

    def is_known_breached(self, password_hash: str) -> bool:
        return password_hash.upper() in self.hashes


def build_breach_checker(settings: Settings) -> Optional[BreachChecker]:
    """Pwned Passwords lookup when breach checking is enabled"""
    if not settings.BREACH_CHECK_ENABLED:
        return None
    return PwnedPasswordsChecker(settings.BREACH_CHECK_URL, timeout=settings.BREACH_CHECK_TIMEOUT)


# =============================================================================
# QR RENDERING
# =============================================================================

class QRRenderer(Protocol):
    def render_provisioning_image(self, uri: str) -> str: ...


class QRCodeRenderer:
    """Renders provisioning URIs as PNG data URIs"""

    def __init__(self, box_size: int = 10, border: int = 4):
        self.box_size = box_size
        self.border = border

    def render_provisioning_image(self, uri: str) -> str:
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=self.box_size,
            border=self.border,
        )
        qr.add_data(uri)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")

        return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


# =============================================================================
# AUDIT SINK
# =============================================================================

class AuditSink(Protocol):
    def emit(
        self,
        event_type: str,
        site_id: str,
        user_id: Optional[str],
        success: bool,
        metadata: Dict[str, Any],
    ) -> None: ...


class LoggingAuditSink(LoggerMixin):
    """Forwards events to the ``himaya.audit`` logger as structured records"""

    def emit(
        self,
        event_type: str,
        site_id: str,
        user_id: Optional[str],
        success: bool,
        metadata: Dict[str, Any],
    ) -> None:
        record = audit_logger.makeRecord(
            name=audit_logger.name,
            level=logging.INFO,
            fn="",
            lno=0,
            msg=f"{event_type} site={site_id} user={user_id or '-'} success={success}",
            args=(),
            exc_info=None,
        )
        record.extra_data = {
            "event_type": event_type,
            "site_id": site_id,
            "user_id": user_id,
            "success": success,
            "metadata": metadata,
        }
        audit_logger.handle(record)


# =============================================================================
# WEBAUTHN ASSERTIONS
# =============================================================================

def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


@dataclass
class BiometricAssertion:
    """Authenticator response to a WebAuthn ``get()`` ceremony"""
    challenge_id: str
    credential_id: str
    client_data_json: str      # base64url
    authenticator_data: str    # base64url
    signature: str             # base64url

    @classmethod
    def from_token(cls, token: str) -> "BiometricAssertion":
        """Parse the JSON token a client submits to MFA verification"""
        try:
            data = json.loads(token)
            return cls(
                challenge_id=data["challengeId"],
                credential_id=data["credentialId"],
                client_data_json=data["clientDataJSON"],
                authenticator_data=data["authenticatorData"],
                signature=data["signature"],
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationError([f"Malformed biometric assertion: {e.__class__.__name__}"])


class AssertionVerifier(Protocol):
    def verify(self, public_key_pem: str, assertion: BiometricAssertion, expected_challenge: str) -> bool: ...


class WebAuthnAssertionVerifier(LoggerMixin):
    """
    Verifies WebAuthn assertions signed with ES256 or RS256.

    Checks the client data type and challenge, the relying-party id hash and
    the user-present / user-verified flags of the authenticator data, then
    the signature over ``authenticatorData || SHA-256(clientDataJSON)``.
    """

    FLAG_USER_PRESENT = 0x01
    FLAG_USER_VERIFIED = 0x04

    def __init__(self, rp_id: Optional[str] = None, expected_origin: Optional[str] = None):
        self.rp_id = rp_id
        self.expected_origin = expected_origin

    @staticmethod
    def load_public_key(public_key_pem: str):
        """Load and check a credential public key; only P-256 and RSA are accepted"""
        try:
            key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        except ValueError as e:
            raise ValidationError([f"Invalid credential public key: {e}"])
        if isinstance(key, ec.EllipticCurvePublicKey) and isinstance(key.curve, ec.SECP256R1):
            return key
        if isinstance(key, rsa.RSAPublicKey):
            return key
        raise ValidationError(["Unsupported credential key type"])

    def verify(self, public_key_pem: str, assertion: BiometricAssertion, expected_challenge: str) -> bool:
        try:
            client_data_raw = b64url_decode(assertion.client_data_json)
            authenticator_data = b64url_decode(assertion.authenticator_data)
            signature = b64url_decode(assertion.signature)
            client_data = json.loads(client_data_raw)
        except ValueError:
            self.logger.warning("Biometric assertion could not be decoded")
            return False

        if client_data.get("type") != "webauthn.get":
            return False
        if client_data.get("challenge") != expected_challenge:
            self.logger.warning("Biometric assertion challenge mismatch")
            return False
        if self.expected_origin and client_data.get("origin") != self.expected_origin:
            return False

        if len(authenticator_data) < 37:
            return False
        if self.rp_id and authenticator_data[:32] != hashlib.sha256(self.rp_id.encode("utf-8")).digest():
            self.logger.warning("Biometric assertion relying party mismatch")
            return False
        flags = authenticator_data[32]
        if not (flags & self.FLAG_USER_PRESENT) or not (flags & self.FLAG_USER_VERIFIED):
            return False

        signed_data = authenticator_data + hashlib.sha256(client_data_raw).digest()
        try:
            key = self.load_public_key(public_key_pem)
            if isinstance(key, ec.EllipticCurvePublicKey):
                key.verify(signature, signed_data, ec.ECDSA(hashes.SHA256()))
            else:
                key.verify(signature, signed_data, padding.PKCS1v15(), hashes.SHA256())
        except (InvalidSignature, ValidationError):
            self.logger.warning("Biometric assertion signature rejected")
            return False

        return True
