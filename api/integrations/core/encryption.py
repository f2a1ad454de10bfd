"""
Per-user token encryption.

AES-256-GCM with a key derived per user from a master secret:

    key = PBKDF2-HMAC-SHA256(f"{master}:{user_id}", salt, 100_000 iterations, 32 bytes)

Every call uses a fresh random salt and nonce, so encrypting the same token
twice yields different blobs. The stored format is four base64 parts joined
by ":" - salt:nonce:tag:ciphertext.

A blob encrypted for one user can never be decrypted with another user's id.
All decryption failures raise the same DecryptionError so callers cannot
distinguish a wrong key from corrupted data.

Environment:
    ENCRYPTION_MASTER_KEY: Master secret (any string, 32+ chars recommended)
"""

import os
import base64
import binascii
import logging
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError, EncryptionConfigError

logger = logging.getLogger(__name__)

SALT_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000


class EncryptionService:
    """
    Encrypts and decrypts tokens bound to a user id.

    Usage:
        service = EncryptionService()
        blob = service.encrypt("gho_abc", user_id)
        token = service.decrypt(blob, user_id)
    """

    def __init__(self, master_key: Optional[str] = None):
        key = master_key or os.getenv("ENCRYPTION_MASTER_KEY")
        if not key:
            raise EncryptionConfigError(
                "ENCRYPTION_MASTER_KEY environment variable is required. "
                "Generate one with: python -c 'import secrets; print(secrets.token_hex(32))'"
            )
        self._master_key = key

    def _derive_key(self, user_id: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(f"{self._master_key}:{user_id}".encode())

    def encrypt(self, plaintext: str, user_id: str) -> str:
        """
        Encrypt a token for storage.

        Args:
            plaintext: The token to encrypt
            user_id: Owner of the token; part of the key derivation

        Returns:
            "salt:nonce:tag:ciphertext", each part base64
        """
        if not plaintext:
            raise ValueError("Plaintext is required")
        if not user_id:
            raise ValueError("User ID is required")

        salt = os.urandom(SALT_LENGTH)
        nonce = os.urandom(NONCE_LENGTH)
        key = self._derive_key(user_id, salt)

        # AESGCM appends the tag to the ciphertext
        sealed = AESGCM(key).encrypt(nonce, plaintext.encode(), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return ":".join(
            base64.b64encode(part).decode()
            for part in (salt, nonce, tag, ciphertext)
        )

    def decrypt(self, blob: str, user_id: str) -> str:
        """
        Decrypt a stored token.

        Raises:
            DecryptionError: For any failure (format, wrong user, tampering)
        """
        if not blob or not user_id:
            raise DecryptionError()

        parts = blob.split(":")
        if len(parts) != 4:
            raise DecryptionError()

        try:
            salt, nonce, tag, ciphertext = (
                base64.b64decode(part, validate=True) for part in parts
            )
        except (binascii.Error, ValueError):
            raise DecryptionError() from None

        if len(salt) != SALT_LENGTH or len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionError()

        key = self._derive_key(user_id, salt)
        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
            return plaintext.decode()
        except (InvalidTag, UnicodeDecodeError):
            raise DecryptionError() from None

    def validate(self, user_id: str = "encryption-self-test") -> bool:
        """Round-trip self check, run from the app lifespan before serving."""
        sample = "encryption-self-test-value"
        try:
            return self.decrypt(self.encrypt(sample, user_id), user_id) == sample
        except DecryptionError:
            logger.error("[ENCRYPTION] Self-test failed")
            return False


# Singleton instance
_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get the global EncryptionService instance."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service


def reset_encryption_service() -> None:
    """Drop the cached instance (tests, key rotation)."""
    global _encryption_service
    _encryption_service = None
