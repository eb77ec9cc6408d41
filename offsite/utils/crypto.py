"""
Encryption utilities for destination credentials stored at rest
(secret keys, account keys, OAuth tokens, SSH passwords).
Uses Fernet symmetric encryption with a key derived from CREDENTIALS_PASSPHRASE.
"""

import os
import base64
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class CryptoManager:
    """Handles encryption and decryption of destination secrets."""

    def __init__(self):
        self._fernet = None
        self._salt = None

    def initialize(self, passphrase: str, salt: bytes = None) -> bytes:
        """
        Derive the encryption key from a passphrase.

        Args:
            passphrase: Credentials passphrase
            salt: Optional salt (if None, generates new one)

        Returns:
            The salt used (persist it so the key can be derived again)
        """
        if salt is None:
            salt = os.urandom(16)

        self._salt = salt

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
        Encrypt a string.

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Set CREDENTIALS_PASSPHRASE.")

        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a string.

        Raises:
            RuntimeError: If crypto manager not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Set CREDENTIALS_PASSPHRASE.")

        return self._fernet.decrypt(encrypted.encode()).decode()

    @property
    def is_initialized(self) -> bool:
        return self._fernet is not None


def load_or_create_salt() -> bytes:
    """Return the stored salt, creating one on first use (needs an app context)."""
    from offsite import db
    from offsite.models import EncryptionKey

    record = EncryptionKey.query.first()
    if record is not None:
        return base64.b64decode(record.salt)

    salt = os.urandom(16)
    db.session.add(EncryptionKey(salt=base64.b64encode(salt).decode()))
    db.session.commit()
    return salt
