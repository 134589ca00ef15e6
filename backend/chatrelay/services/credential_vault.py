"""Symmetric encryption of provider API keys at rest."""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class CredentialVault:
    """Encrypt and decrypt stored API keys with a Fernet key."""

    def __init__(self, key: Optional[str]):
        self._fernet = Fernet(key.encode()) if key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        if self._fernet is None:
            raise ValueError("No encryption key configured")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored key.

        Returns the input unchanged when it cannot be decrypted, so keys
        stored before encryption was enabled keep working.
        """
        if self._fernet is None:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, ValueError):
            logger.warning("Stored API key could not be decrypted; using it as-is")
            return ciphertext
