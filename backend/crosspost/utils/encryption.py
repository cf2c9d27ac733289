"""Encryption utilities for OAuth tokens stored at rest"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from crosspost.core.config import settings

logger = logging.getLogger(__name__)

_cipher = None


def get_cipher() -> Fernet:
    """Build the Fernet cipher from ENCRYPTION_KEY on first use.

    Raises:
        ValueError: If the key is missing or not a valid Fernet key
    """
    global _cipher
    if _cipher is None:
        key = settings.ENCRYPTION_KEY
        if not key:
            raise ValueError(
                "ENCRYPTION_KEY environment variable is required. "
                "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        try:
            _cipher = Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as e:
            raise ValueError(
                f"Invalid ENCRYPTION_KEY format: {e}. "
                "The key must be 32 bytes, base64-encoded (URL-safe), resulting in 44 characters."
            )
    return _cipher


def encrypt(plaintext: str) -> str:
    """Encrypt a string"""
    if not plaintext:
        return ""
    return get_cipher().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> Optional[str]:
    """Decrypt a string

    Raises:
        ValueError: If decryption fails (invalid token, wrong key, corrupted data)
    """
    if not ciphertext:
        return None
    try:
        return get_cipher().decrypt(ciphertext.encode()).decode()
    except InvalidToken as e:
        logger.error(f"Decryption failed: {type(e).__name__}")
        raise ValueError(f"Decryption failed: {type(e).__name__}")
