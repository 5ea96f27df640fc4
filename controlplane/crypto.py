"""Symmetric encryption for secrets at rest (env values, OAuth tokens, DB passwords)."""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("crypto")


class SecretBox:
    def __init__(self, key: Optional[str] = None):
        if not key:
            key = Fernet.generate_key().decode()
            logger.warning(
                "No --secret-key provided; generated ephemeral key "
                "(stored secrets will be unreadable after restart)"
            )
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """Decrypt a stored value; None for empty input or a value sealed with another key."""
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Failed to decrypt stored secret (wrong key or corrupted value)")
            return None
