"""
RiftSettle - Ledger Encryption at Rest

Encrypts the JSON ledger file, which holds wallet addresses, payout
signatures and balances, using AES-256-GCM with PBKDF2 key derivation.

Security Features:
- AES-256-GCM authenticated encryption
- PBKDF2-HMAC-SHA256 key derivation (600,000 iterations)
- Random IV for every write; the salt is fixed per cipher so the
  expensive derivation runs once per process instead of once per write
- Key supplied through RIFTSETTLE_ENCRYPTION_KEY
"""

import base64
import json
import os
import secrets
import threading
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SALT_SIZE = 16
IV_SIZE = 12  # 96 bits for GCM
KEY_SIZE = 32
PBKDF2_ITERATIONS = 600_000

ENCRYPTION_KEY_ENV = "RIFTSETTLE_ENCRYPTION_KEY"
ENCRYPTION_ENABLED_ENV = "RIFTSETTLE_ENCRYPTION_ENABLED"

ENCRYPTED_PREFIX = "RSENC:1:"


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""
    pass


def is_encryption_enabled() -> bool:
    """True if encryption is not switched off and a key is configured."""
    enabled = os.getenv(ENCRYPTION_ENABLED_ENV, "true").lower()
    if enabled in ("false", "0", "no", "off"):
        return False
    return bool(os.getenv(ENCRYPTION_KEY_ENV))


def generate_encryption_key() -> str:
    """Base64-encoded 256-bit random passphrase."""
    return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("utf-8")


def is_encrypted(data: str) -> bool:
    return isinstance(data, str) and data.startswith(ENCRYPTED_PREFIX)


class LedgerCipher:
    """
    Encrypts and decrypts ledger snapshots.

    Usage:
        cipher = LedgerCipher(os.environ["RIFTSETTLE_ENCRYPTION_KEY"])
        blob = cipher.encrypt({"earnings": {...}})
        data = cipher.decrypt(blob)
    """

    def __init__(self, passphrase: str | None = None, iterations: int = PBKDF2_ITERATIONS):
        passphrase = passphrase or os.getenv(ENCRYPTION_KEY_ENV)
        if not passphrase:
            raise EncryptionError(f"No encryption key provided. Set {ENCRYPTION_KEY_ENV}.")
        self._passphrase = passphrase.encode("utf-8")
        self._iterations = iterations
        self._salt = secrets.token_bytes(SALT_SIZE)
        self._keys: dict[bytes, bytes] = {}
        self._lock = threading.Lock()

    def _key_for(self, salt: bytes) -> bytes:
        with self._lock:
            key = self._keys.get(salt)
            if key is None:
                kdf = PBKDF2HMAC(
                    algorithm=hashes.SHA256(),
                    length=KEY_SIZE,
                    salt=salt,
                    iterations=self._iterations,
                )
                key = kdf.derive(self._passphrase)
                self._keys[salt] = key
            return key

    def encrypt(self, data: dict[str, Any]) -> str:
        """Serialize and encrypt; output is prefix + base64(salt + iv + ciphertext)."""
        try:
            plaintext = json.dumps(data, sort_keys=True).encode("utf-8")
            iv = secrets.token_bytes(IV_SIZE)
            ciphertext = AESGCM(self._key_for(self._salt)).encrypt(iv, plaintext, None)
            blob = self._salt + iv + ciphertext
            return ENCRYPTED_PREFIX + base64.b64encode(blob).decode("utf-8")
        except Exception as e:
            raise EncryptionError(f"Encryption failed: {e}") from e

    def decrypt(self, encrypted: str) -> dict[str, Any]:
        if not is_encrypted(encrypted):
            raise EncryptionError("Invalid encrypted data format: missing prefix")
        try:
            blob = base64.b64decode(encrypted[len(ENCRYPTED_PREFIX):])
            if len(blob) < SALT_SIZE + IV_SIZE + 16:
                raise EncryptionError("Invalid encrypted data: too short")
            salt = blob[:SALT_SIZE]
            iv = blob[SALT_SIZE:SALT_SIZE + IV_SIZE]
            plaintext = AESGCM(self._key_for(salt)).decrypt(iv, blob[SALT_SIZE + IV_SIZE:], None)
            return json.loads(plaintext.decode("utf-8"))
        except EncryptionError:
            raise
        except Exception as e:
            raise EncryptionError(f"Decryption failed: {e}") from e
