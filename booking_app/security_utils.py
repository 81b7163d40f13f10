"""
Security Utilities
Token encryption at rest and constant-time comparison
"""

import base64
import hashlib
import logging
import secrets
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import SECRET_KEY, TOKEN_ENCRYPTION_KEY

logger = logging.getLogger(__name__)


class TokenDecryptionError(Exception):
    """Stored credential could not be decrypted (key rotated or data corrupted)"""


def _build_cipher() -> Fernet:
    if TOKEN_ENCRYPTION_KEY:
        return Fernet(TOKEN_ENCRYPTION_KEY.encode())
    # Derive a valid 32-byte urlsafe key from SECRET_KEY
    digest = hashlib.sha256(SECRET_KEY.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


_cipher_suite = _build_cipher()


# ============================================================================
# TOKEN ENCRYPTION
# ============================================================================


def encrypt_token(value: Optional[str]) -> Optional[str]:
    """Encrypt an OAuth credential for storage"""
    if value is None:
        return None
    return _cipher_suite.encrypt(value.encode()).decode()


def decrypt_token(value: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored OAuth credential

    Raises:
        TokenDecryptionError: if the value was not produced by encrypt_token with the current key
    """
    if value is None:
        return None
    try:
        return _cipher_suite.decrypt(value.encode()).decode()
    except InvalidToken as e:
        raise TokenDecryptionError("Stored token could not be decrypted") from e


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks

    Args:
        a: First string
        b: Second string

    Returns:
        True if strings are equal, False otherwise
    """
    return secrets.compare_digest(a.encode(), b.encode())
