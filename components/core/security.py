"""Field-level ciphers for customer PII."""

import logging
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from components.core.config import Settings
from components.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


class FieldCipher(Protocol):
    """Reversible transform applied to PII columns at rest.

    ``encrypt("")`` must return ``""`` so empty contacts stay empty.
    """

    def encrypt(self, plaintext: str) -> str:
        ...

    def decrypt(self, ciphertext: str) -> str:
        ...


class PlaintextCipher:
    """Identity cipher for deployments where the store itself is encrypted."""

    def encrypt(self, plaintext: str) -> str:
        return plaintext or ""

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext or ""


class FernetCipher:
    """
    Authenticated symmetric encryption (AES-128-CBC + HMAC) of single fields.

    Ciphertext is the url-safe base64 Fernet token, so it fits the existing
    string columns.
    """

    def __init__(self, key: str):
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as exc:
            raise ValidationError(f"invalid field encryption key: {exc}") from None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            raise ValidationError("field could not be decrypted with the configured key") from None


def build_cipher(settings: Settings) -> FieldCipher:
    """Fernet when FIELD_ENCRYPTION_KEY is set, identity otherwise."""
    if settings.FIELD_ENCRYPTION_KEY:
        return FernetCipher(settings.FIELD_ENCRYPTION_KEY)
    logger.warning("FIELD_ENCRYPTION_KEY not set; customer contacts are stored in plaintext")
    return PlaintextCipher()
