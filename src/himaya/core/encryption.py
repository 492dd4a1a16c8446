"""
Himaya Encryption Module
AES-256-GCM envelope encryption for factor secrets at rest
"""

import base64
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from himaya.core.config import Settings, get_settings
from himaya.core.logging import LoggerMixin


class EncryptionError(Exception):
    """Encryption-related errors"""
    pass


class VaultManager(LoggerMixin):
    """
    AES-256-GCM encryption with PBKDF2-derived, per-purpose keys.

    Every ``key_id`` (for example ``"factor:TOTP"``) gets its own key derived
    from the master key, so a ciphertext written for one purpose cannot be
    decrypted as another. The key id and version travel inside the encrypted
    package and are bound to the ciphertext as associated data.
    """

    def __init__(
        self,
        master_key: Optional[bytes] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self._keys: Dict[Tuple[str, int], bytes] = {}
        self._key_versions: Dict[str, int] = {}
        self._master_key = master_key or self._load_master_key()

        self.logger.debug("VaultManager initialized with AES-256-GCM")

    def _load_master_key(self) -> bytes:
        """Load master key from settings or generate an ephemeral one"""
        if self.settings.MASTER_KEY:
            try:
                key = base64.b64decode(self.settings.MASTER_KEY)
            except ValueError as e:
                raise EncryptionError(f"Master key is not valid base64: {e}")
            if len(key) != 32:
                raise EncryptionError("Master key must decode to 32 bytes")
            return key

        self.logger.warning(
            "No MASTER_KEY configured - generated an ephemeral key; "
            "secrets will not survive a restart"
        )
        return AESGCM.generate_key(bit_length=256)

    def encrypt_data(self, data: Any, key_id: str = "default") -> str:
        """
        Encrypt data with AES-256-GCM

        Args:
            data: Data to encrypt (dicts and lists are JSON serialized)
            key_id: Key identifier, one derived key per purpose

        Returns:
            Base64 encoded encrypted package
        """
        if isinstance(data, (dict, list)):
            plaintext = json.dumps(data).encode("utf-8")
        elif isinstance(data, str):
            plaintext = data.encode("utf-8")
        else:
            plaintext = str(data).encode("utf-8")

        version = self._key_versions.get(key_id, 1)
        encryption_key = self._get_or_create_key(key_id, version)

        nonce = secrets.token_bytes(12)  # 96-bit nonce for GCM
        aad = json.dumps({
            "key_id": key_id,
            "version": version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }).encode("utf-8")

        try:
            ciphertext = AESGCM(encryption_key).encrypt(nonce, plaintext, aad)
        except Exception as e:
            self.logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Encryption failed: {e}")

        encrypted_package = {
            "version": "1.0",
            "key_id": key_id,
            "key_version": version,
            "algorithm": "AES-256-GCM",
            "nonce": base64.b64encode(nonce).decode("utf-8"),
            "ciphertext": base64.b64encode(ciphertext).decode("utf-8"),
            "aad": base64.b64encode(aad).decode("utf-8"),
        }

        package_json = json.dumps(encrypted_package)
        return base64.b64encode(package_json.encode("utf-8")).decode("utf-8")

    def decrypt_data(self, encrypted_data: str, expected_key_id: Optional[str] = None) -> Any:
        """
        Decrypt data with AES-256-GCM

        Args:
            encrypted_data: Base64 encoded encrypted package
            expected_key_id: Reject packages written for another purpose

        Returns:
            Decrypted data (JSON values are parsed back)
        """
        try:
            package_json = base64.b64decode(encrypted_data.encode("utf-8")).decode("utf-8")
            encrypted_package = json.loads(package_json)
        except (ValueError, UnicodeDecodeError) as e:
            raise EncryptionError(f"Malformed encrypted package: {e}")

        for field in ("key_id", "key_version", "nonce", "ciphertext", "aad"):
            if field not in encrypted_package:
                raise EncryptionError(f"Missing field in encrypted package: {field}")

        key_id = encrypted_package["key_id"]
        if expected_key_id is not None and key_id != expected_key_id:
            raise EncryptionError(f"Package key {key_id} does not match {expected_key_id}")

        encryption_key = self._get_or_create_key(key_id, int(encrypted_package["key_version"]))

        nonce = base64.b64decode(encrypted_package["nonce"])
        ciphertext = base64.b64decode(encrypted_package["ciphertext"])
        aad = base64.b64decode(encrypted_package["aad"])

        try:
            plaintext = AESGCM(encryption_key).decrypt(nonce, ciphertext, aad)
        except InvalidTag:
            self.logger.error(f"Decryption failed for key {key_id}: authentication tag mismatch")
            raise EncryptionError("Decryption failed: data was tampered with or the key is wrong")

        decrypted_str = plaintext.decode("utf-8")
        try:
            return json.loads(decrypted_str)
        except json.JSONDecodeError:
            return decrypted_str

    def rotate_key(self, key_id: str = "default") -> int:
        """Move ``key_id`` to a new key version; old packages stay readable"""
        new_version = self._key_versions.get(key_id, 1) + 1
        self._get_or_create_key(key_id, new_version)
        self._key_versions[key_id] = new_version

        self.logger.info(f"Key rotated: {key_id} (version {new_version})")
        return new_version

    def _get_or_create_key(self, key_id: str, version: int) -> bytes:
        cache_key = (key_id, version)
        if cache_key not in self._keys:
            self._keys[cache_key] = self._derive_key(key_id, version)
        return self._keys[cache_key]

    def _derive_key(self, key_id: str, version: int) -> bytes:
        """Derive encryption key from master key using PBKDF2"""
        salt = hashes.Hash(hashes.SHA256())
        salt.update(f"{key_id}:{version}:himaya".encode("utf-8"))
        salt_bytes = salt.finalize()[:16]

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt_bytes,
            iterations=100000,
        )
        return kdf.derive(self._master_key)

    def get_key_info(self, key_id: str = "default") -> Dict[str, Any]:
        return {
            "key_id": key_id,
            "version": self._key_versions.get(key_id, 1),
            "algorithm": "AES-256-GCM",
            "key_derivation": "PBKDF2-SHA256",
        }

    def clear_keys(self) -> None:
        """Drop all derived keys from memory"""
        self._keys.clear()
        self.logger.info("Derived keys cleared from memory")
