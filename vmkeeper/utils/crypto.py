"""
Encryption utilities for secrets kept in the backup settings document
(archive password, SMTP password, S3 credentials).

Values are stored as ``enc:<token>`` where the token is a Fernet ciphertext.
The Fernet key is derived from an operator passphrase with PBKDF2.
"""

import os
import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


SECRET_PREFIX = 'enc:'


class SecretError(Exception):
    """Raised when a stored secret cannot be decrypted."""
    pass


class CryptoManager:
    """Handles encryption and decryption of configuration secrets."""

    def __init__(self):
        self._fernet = None
        self._salt = None

    def initialize(self, passphrase: str, salt: bytes = None) -> bytes:
        """
        Initialize the encryption manager with a passphrase.

        Args:
            passphrase: Operator passphrase to derive the encryption key from
            salt: Optional salt (if None, generates new one)

        Returns:
            The salt used (export it as VMKEEPER_SALT on first setup)
        """
        if salt is None:
            salt = os.urandom(16)

        self._salt = salt

        # Derive a 32-byte key from passphrase using PBKDF2
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=480000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))

        self._fernet = Fernet(key)
        return salt

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string into an ``enc:`` token.

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        token = self._fernet.encrypt(plaintext.encode())
        return SECRET_PREFIX + token.decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt an ``enc:`` token (the prefix is optional).

        Raises:
            RuntimeError: If crypto manager not initialized
            SecretError: If the token is invalid for the current key
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        if encrypted.startswith(SECRET_PREFIX):
            encrypted = encrypted[len(SECRET_PREFIX):]

        try:
            return self._fernet.decrypt(encrypted.encode()).decode()
        except InvalidToken as e:
            raise SecretError("Secret cannot be decrypted with the configured passphrase") from e

    def resolve_secret(self, value: Optional[str]) -> Optional[str]:
        """
        Return plaintext for a settings value.

        Plain values pass through unchanged; ``enc:`` values are decrypted.

        Raises:
            SecretError: If an encrypted value is found but the manager is not initialized
        """
        if value is None or not is_encrypted(value):
            return value

        if not self.is_initialized:
            raise SecretError(
                "Encrypted secret found but no passphrase configured. Set VMKEEPER_PASSPHRASE and VMKEEPER_SALT."
            )
        return self.decrypt(value)

    @property
    def salt(self) -> Optional[bytes]:
        return self._salt

    @property
    def is_initialized(self) -> bool:
        """Check if the crypto manager has been initialized."""
        return self._fernet is not None


def is_encrypted(value: str) -> bool:
    return isinstance(value, str) and value.startswith(SECRET_PREFIX)


# Global instance, initialized by the application factory
crypto_manager = CryptoManager()
