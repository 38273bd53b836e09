"""
Credential encryption boundary.

Wraps the platform secrets module for credential-specific encryption.
This is the only place credential ciphertext turns into plaintext.

SECURITY REQUIREMENTS:
- Uses Fernet symmetric encryption via ENCRYPTION_KEY env var
- No plaintext tokens outside process memory
- Clear error messages without exposing sensitive data

Usage:
    from waygate.credentials.encryption import encrypt_payload, decrypt_payload

    # Encrypt before storage
    encrypted = await encrypt_payload({"access_token": token, "token_type": "Bearer"})

    # Decrypt for use (in memory only)
    payload = await decrypt_payload(encrypted)
"""

import json
import logging
from typing import Any, Dict

from waygate.platform.secrets import (
    encrypt_secret,
    decrypt_secret,
    EncryptionError,
    validate_encryption_configured,
)

logger = logging.getLogger(__name__)


class CredentialEncryptionError(Exception):
    """Raised when credential encryption/decryption fails."""

    def __init__(self, message: str, operation: str = "unknown"):
        self.operation = operation
        super().__init__(message)


class DecryptionFailedError(CredentialEncryptionError):
    """
    Stored ciphertext could not be decrypted.

    Terminal for token refresh: the key changed or the row is corrupt, so
    retrying cannot help.
    """

    def __init__(self, message: str):
        super().__init__(message, operation="decrypt")


def _require_configured(operation: str) -> None:
    if not validate_encryption_configured():
        logger.error(
            "Encryption not configured",
            extra={"operation": operation}
        )
        raise CredentialEncryptionError(
            "Encryption key not configured. Set ENCRYPTION_KEY environment variable.",
            operation=operation.split("_")[0]
        )


async def encrypt_token(plaintext: str) -> str:
    """
    Encrypt a single secret (refresh token, client secret) for storage.

    SECURITY:
    - Input is never logged

    Raises:
        CredentialEncryptionError: If encryption fails
        ValueError: If plaintext is empty
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty token")

    _require_configured("encrypt_token")

    try:
        return await encrypt_secret(plaintext)
    except EncryptionError as e:
        logger.error(
            "Token encryption failed",
            extra={"operation": "encrypt_token", "error_type": type(e).__name__}
        )
        raise CredentialEncryptionError(
            "Failed to encrypt token",
            operation="encrypt"
        ) from e


async def decrypt_token(ciphertext: str) -> str:
    """
    Decrypt a single encrypted secret.

    SECURITY:
    - Decrypted value must NEVER be logged

    Raises:
        DecryptionFailedError: If the ciphertext cannot be decrypted
        CredentialEncryptionError: If encryption is not configured
        ValueError: If ciphertext is empty
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty ciphertext")

    _require_configured("decrypt_token")

    try:
        return await decrypt_secret(ciphertext)
    except EncryptionError as e:
        logger.error(
            "Token decryption failed",
            extra={"operation": "decrypt_token", "error_type": type(e).__name__}
        )
        raise DecryptionFailedError(
            "Failed to decrypt token. Token may be corrupted or encryption key changed."
        ) from e


async def encrypt_payload(payload: Dict[str, Any]) -> str:
    """Serialize a credential payload to JSON and encrypt it."""
    if not payload:
        raise ValueError("Cannot encrypt empty payload")
    return await encrypt_token(json.dumps(payload))


async def decrypt_payload(ciphertext: str) -> Dict[str, Any]:
    """
    Decrypt and parse a credential payload.

    Raises:
        DecryptionFailedError: If decryption fails or the plaintext is not a JSON object
    """
    plaintext = await decrypt_token(ciphertext)
    try:
        payload = json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise DecryptionFailedError("Decrypted credential payload is not valid JSON") from e
    if not isinstance(payload, dict):
        raise DecryptionFailedError("Decrypted credential payload is not an object")
    return payload


def validate_encryption_ready() -> bool:
    """
    Validate that encryption is properly configured.

    Call this during worker startup to fail fast if encryption
    is not configured.

    Raises:
        CredentialEncryptionError: If encryption is not configured
    """
    if not validate_encryption_configured():
        raise CredentialEncryptionError(
            "ENCRYPTION_KEY environment variable is required for credential storage.",
            operation="validate"
        )

    logger.info("Credential encryption validated successfully")
    return True
