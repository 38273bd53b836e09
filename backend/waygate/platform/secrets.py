"""
Secret encryption and redaction primitives.

SECURITY REQUIREMENTS:
- Uses Fernet symmetric encryption keyed from the ENCRYPTION_KEY env var
- Any ENCRYPTION_KEY string is accepted; it is stretched to a Fernet key
  with SHA-256 so operators can use a passphrase or a generated key
- Plaintext is never logged
- Redaction helpers are shared by credential audit logging

Usage:
    from waygate.platform.secrets import encrypt_secret, decrypt_secret

    ciphertext = await encrypt_secret("value")
    plaintext = await decrypt_secret(ciphertext)
"""

import base64
import hashlib
import os
import re
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"
REDACTED_VALUE = "[REDACTED]"

# Key names that indicate secret material
SECRET_PATTERNS = [
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"api[_-]?key", re.IGNORECASE),
    re.compile(r"authorization", re.IGNORECASE),
    re.compile(r"private[_-]?key", re.IGNORECASE),
]

# Value shapes that look like secrets regardless of key name
SECRET_VALUE_PATTERNS = [
    re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"Basic\s+[A-Za-z0-9+/]+=*", re.IGNORECASE),
    re.compile(r"(?:access|refresh)_token=[^&\s]+", re.IGNORECASE),
    re.compile(r"client_secret=[^&\s]+", re.IGNORECASE),
    re.compile(r"gAAAAA[A-Za-z0-9_\-]+=*"),  # Fernet ciphertext
]


class EncryptionError(Exception):
    """Raised when a secret cannot be encrypted or decrypted."""
    pass


def _get_key() -> Optional[str]:
    return os.getenv(ENCRYPTION_KEY_ENV) or None


def _fernet() -> Fernet:
    key = _get_key()
    if not key:
        raise EncryptionError("ENCRYPTION_KEY is not configured")
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def validate_encryption_configured() -> bool:
    """Return True when ENCRYPTION_KEY is set."""
    return _get_key() is not None


async def encrypt_secret(plaintext: str) -> str:
    """
    Encrypt a string with the configured key.

    Raises:
        EncryptionError: If the key is missing or encryption fails
    """
    fernet = _fernet()
    try:
        return fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncryptionError(f"Encryption failed: {type(e).__name__}") from e


async def decrypt_secret(ciphertext: str) -> str:
    """
    Decrypt a string produced by encrypt_secret.

    Raises:
        EncryptionError: If the key is missing, wrong, or the data is corrupt
    """
    fernet = _fernet()
    try:
        return fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise EncryptionError("Decryption failed: invalid token or wrong key") from e
    except (TypeError, ValueError) as e:
        raise EncryptionError(f"Decryption failed: {type(e).__name__}") from e


def is_secret_key(key: str) -> bool:
    """Check if a key name indicates secret material."""
    return any(pattern.search(key) for pattern in SECRET_PATTERNS)


def redact_secrets(data: Any) -> Any:
    """Recursively replace secret-looking keys and values."""
    if isinstance(data, dict):
        return {
            k: REDACTED_VALUE if is_secret_key(str(k)) else redact_secrets(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [redact_secrets(item) for item in data]
    if isinstance(data, str):
        result = data
        for pattern in SECRET_VALUE_PATTERNS:
            result = pattern.sub(REDACTED_VALUE, result)
        return result
    return data
