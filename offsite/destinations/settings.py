"""
Stored destination settings.

Settings live in the options table under `destination_settings.<id>`.
Secret fields are encrypted with the CryptoManager before they are stored
and decrypted when a destination is built.
"""

import logging
from typing import Any, Dict, Optional

from cryptography.fernet import InvalidToken

from offsite.persistence import OptionStore
from offsite.utils.crypto import CryptoManager


logger = logging.getLogger(__name__)

OPTION_PREFIX = 'destination_settings.'

SECRET_FIELDS = (
    'secret_key',
    'account_key',
    'application_key',
    'access_token',
    'refresh_token',
    'client_secret',
    'password',
    'private_key_passphrase',
    'session_token',
)


class DestinationSettingsStore:
    """
    Load and save per-destination settings.

    Args:
        options: OptionStore used for persistence
        crypto: Initialized CryptoManager, or None to refuse storing secrets
    """

    def __init__(self, options: OptionStore, crypto: Optional[CryptoManager] = None):
        self.options = options
        self.crypto = crypto

    def get(self, destination_id: str) -> Dict[str, Any]:
        """
        Return decrypted settings ({} when none are stored).

        Secrets that cannot be decrypted are left out, which makes the
        destination report itself as not connected.
        """
        stored = self.options.get_json(OPTION_PREFIX + destination_id, {}) or {}
        settings = {}

        for name, value in stored.items():
            if not name.endswith('_encrypted'):
                settings[name] = value
                continue

            field = name[:-len('_encrypted')]
            if not self.crypto or not self.crypto.is_initialized:
                logger.warning(f"Cannot decrypt {field} for {destination_id}: no credentials passphrase")
                continue
            try:
                settings[field] = self.crypto.decrypt(value)
            except InvalidToken:
                logger.error(f"Failed to decrypt {field} for {destination_id}: wrong passphrase?")

        return settings

    def save(self, destination_id: str, settings: Dict[str, Any]) -> bool:
        """
        Store settings, encrypting secret fields.

        Raises:
            RuntimeError: If a secret is present and no passphrase is configured
        """
        stored = {}
        for name, value in settings.items():
            if name in SECRET_FIELDS and value:
                if not self.crypto or not self.crypto.is_initialized:
                    raise RuntimeError("CREDENTIALS_PASSPHRASE must be set to store destination secrets")
                stored[f"{name}_encrypted"] = self.crypto.encrypt(str(value))
            else:
                stored[name] = value

        return self.options.set_json(OPTION_PREFIX + destination_id, stored)

    def delete(self, destination_id: str) -> bool:
        return self.options.delete(OPTION_PREFIX + destination_id)
