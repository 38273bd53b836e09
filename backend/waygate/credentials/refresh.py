"""
Token refresh executor.

Refreshes one credential, from either pool, through the RefreshableCredential
capability: load the decrypted refresh token, resolve the OAuth client,
exchange with retry and exponential backoff, persist the new tokens with an
optimistic version guard, and emit exactly one refresh event.

Retry policy:
- Up to MAX_RETRY_ATTEMPTS provider calls
- Backoff BASE_BACKOFF_MS * 2**attempt between attempts (1s, 2s)
- Provider rejections naming invalid_grant, invalid_token,
  unauthorized_client or access_denied stop immediately
- Exhausted or terminal failures flag the credential needs_reauth

SECURITY REQUIREMENTS:
- Decrypted tokens live only in local variables of refresh()
- Error messages are redacted before they reach a result or event
- New tokens are encrypted by the store before storage

Usage:
    executor = RefreshExecutor(resolver, OAuthTokenClient(), RefreshEventLogger())
    result = await executor.refresh(store.refreshable(context))
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from waygate.credentials.encryption import DecryptionFailedError
from waygate.credentials.events import RefreshEventLogger
from waygate.credentials.oauth_client import OAuthError, OAuthTokenClient, TokenResponse
from waygate.credentials.redaction import redact_credential_value
from waygate.credentials.resolver import OAuthClientResolver
from waygate.credentials.results import (
    RefreshBatchResult,
    RefreshErrorCode,
    RefreshErrorInfo,
    RefreshResult,
    RefreshStatus,
)
from waygate.credentials.store import (
    CredentialContext,
    CredentialNotFoundError,
    RefreshableCredential,
    UpdateStatus,
)

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3
BASE_BACKOFF_MS = 1000
MAX_UPDATE_ATTEMPTS = 3

# Provider errors meaning the grant itself is dead
NON_RETRYABLE_OAUTH_ERRORS = (
    "invalid_grant",
    "invalid_token",
    "unauthorized_client",
    "access_denied",
)

SleepFunc = Callable[[float], Awaitable[None]]


def backoff_delay_ms(attempt: int) -> int:
    """Delay after the given zero-based failed attempt."""
    return BASE_BACKOFF_MS * (2 ** attempt)


def is_retryable_error(error: BaseException) -> bool:
    """
    Classify a refresh failure.

    Matches the message and, for OAuthError, the provider's error code,
    case-insensitively. Anything unrecognised is treated as transient.
    """
    haystacks = [str(error).lower()]
    oauth_error = getattr(error, "oauth_error", None)
    if oauth_error:
        haystacks.append(str(oauth_error).lower())

    for marker in NON_RETRYABLE_OAUTH_ERRORS:
        if any(marker in text for text in haystacks):
            return False
    return True


def extract_error_info(error: BaseException) -> RefreshErrorInfo:
    """Sanitized code/message for a result. OAuthError keeps its own code."""
    if isinstance(error, OAuthError):
        return RefreshErrorInfo(code=error.code, message=redact_credential_value(error.message))
    message = str(error) or type(error).__name__
    return RefreshErrorInfo(
        code=RefreshErrorCode.UNKNOWN_ERROR.value,
        message=redact_credential_value(message),
    )


def build_result(
    context: CredentialContext,
    status: RefreshStatus,
    error: Optional[RefreshErrorInfo] = None,
    retry_count: int = 0,
    rotated_refresh_token: bool = False,
    duration_ms: int = 0,
) -> RefreshResult:
    """RefreshResult carrying the context's identity fields."""
    return RefreshResult(
        credential_id=context.id,
        integration_id=context.integration_id,
        tenant_id=context.tenant_id,
        credential_kind=context.kind,
        status=status,
        connection_id=context.connection_id,
        app_user_id=context.app_user_id,
        rotated_refresh_token=rotated_refresh_token,
        retry_count=retry_count,
        duration_ms=duration_ms,
        error=error,
    )


class RefreshExecutor:
    """
    Runs the refresh algorithm for one credential.

    The caller owns locking: refresh() assumes the credential lock is held
    for its whole duration.
    """

    def __init__(
        self,
        resolver: OAuthClientResolver,
        token_client: OAuthTokenClient,
        event_logger: Optional[RefreshEventLogger] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.resolver = resolver
        self.token_client = token_client
        self.event_logger = event_logger or RefreshEventLogger()
        self._sleep = sleep

    async def refresh(self, credential: RefreshableCredential) -> RefreshResult:
        """
        Refresh one credential and report the outcome.

        Never raises for provider, configuration or decryption failures;
        those become failed results. Unexpected storage errors propagate.
        """
        started = time.monotonic()
        result = await self._run(credential)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.event_logger.log_refresh_event(result)
        return result

    async def _run(self, credential: RefreshableCredential) -> RefreshResult:
        context = credential.context

        try:
            material = await credential.load()
        except CredentialNotFoundError:
            return build_result(
                context,
                RefreshStatus.FAILED,
                RefreshErrorInfo(
                    RefreshErrorCode.CREDENTIAL_NOT_FOUND.value,
                    "Credential no longer exists",
                ),
            )
        except DecryptionFailedError:
            return await self._terminal(
                credential,
                RefreshErrorCode.DECRYPTION_FAILED,
                "Stored credential could not be decrypted",
            )

        if not material.refresh_token:
            return await self._terminal(
                credential,
                RefreshErrorCode.NO_REFRESH_TOKEN,
                "Credential has no refresh token",
            )

        try:
            config = await self.resolver.resolve(context)
        except DecryptionFailedError:
            return await self._terminal(
                credential,
                RefreshErrorCode.DECRYPTION_FAILED,
                "OAuth client secret could not be decrypted",
            )

        if config is None:
            return await self._terminal(
                credential,
                RefreshErrorCode.INVALID_AUTH_CONFIG,
                "No usable OAuth client configuration for credential",
            )

        last_error: Optional[RefreshErrorInfo] = None
        retry_count = 0

        for attempt in range(MAX_RETRY_ATTEMPTS):
            retry_count = attempt
            try:
                tokens = await self.token_client.refresh_token(config, material.refresh_token)
            except Exception as e:
                last_error = extract_error_info(e)
                if not is_retryable_error(e):
                    logger.warning(
                        "Token refresh rejected, not retrying",
                        extra={
                            "credential_id": context.id,
                            "attempt": attempt + 1,
                            "error_code": last_error.code,
                        },
                    )
                    break

                if attempt < MAX_RETRY_ATTEMPTS - 1:
                    delay_ms = backoff_delay_ms(attempt)
                    logger.info(
                        "Token refresh failed, backing off",
                        extra={
                            "credential_id": context.id,
                            "attempt": attempt + 1,
                            "delay_ms": delay_ms,
                            "error_code": last_error.code,
                        },
                    )
                    await self._sleep(delay_ms / 1000)
                continue

            return await self._persist(credential, tokens, material.version, retry_count)

        await credential.flag_needs_reauth()
        return build_result(
            context,
            RefreshStatus.FAILED,
            last_error,
            retry_count=retry_count,
        )

    async def _terminal(
        self,
        credential: RefreshableCredential,
        code: RefreshErrorCode,
        message: str,
    ) -> RefreshResult:
        logger.warning(
            "Credential cannot be refreshed",
            extra={"credential_id": credential.id, "error_code": code.value},
        )
        await credential.flag_needs_reauth()
        return build_result(
            credential.context,
            RefreshStatus.FAILED,
            RefreshErrorInfo(code.value, message),
        )

    async def _persist(
        self,
        credential: RefreshableCredential,
        tokens: TokenResponse,
        expected_version: int,
        retry_count: int,
    ) -> RefreshResult:
        """
        Save refreshed tokens with the version guard.

        A concurrent writer only bumped the version; our tokens are newer, so
        the write is retried against the re-read version.
        """
        context = credential.context
        rotated = tokens.refresh_token is not None

        for _ in range(MAX_UPDATE_ATTEMPTS):
            update = await credential.save_tokens(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_in=tokens.expires_in,
                token_type=tokens.token_type,
                scopes=tokens.scopes or None,
                expected_version=expected_version,
            )

            if update.status == UpdateStatus.UPDATED:
                if rotated:
                    logger.info(
                        "Refresh token was rotated",
                        extra={"credential_id": context.id},
                    )
                return build_result(
                    context,
                    RefreshStatus.SUCCESS,
                    retry_count=retry_count,
                    rotated_refresh_token=rotated,
                )

            if update.status == UpdateStatus.NOT_FOUND:
                return build_result(
                    context,
                    RefreshStatus.FAILED,
                    RefreshErrorInfo(
                        RefreshErrorCode.CREDENTIAL_NOT_FOUND.value,
                        "Credential was deleted during refresh",
                    ),
                    retry_count=retry_count,
                )

            current = await credential.current_version()
            if current is None:
                return build_result(
                    context,
                    RefreshStatus.FAILED,
                    RefreshErrorInfo(
                        RefreshErrorCode.CREDENTIAL_NOT_FOUND.value,
                        "Credential was deleted during refresh",
                    ),
                    retry_count=retry_count,
                )
            expected_version = current

        logger.error(
            "Credential kept changing during refresh",
            extra={"credential_id": context.id, "attempts": MAX_UPDATE_ATTEMPTS},
        )
        return build_result(
            context,
            RefreshStatus.FAILED,
            RefreshErrorInfo(
                RefreshErrorCode.CONCURRENT_MODIFICATION.value,
                "Credential was modified concurrently",
            ),
            retry_count=retry_count,
        )


__all__ = [
    "MAX_RETRY_ATTEMPTS",
    "BASE_BACKOFF_MS",
    "MAX_UPDATE_ATTEMPTS",
    "NON_RETRYABLE_OAUTH_ERRORS",
    "backoff_delay_ms",
    "is_retryable_error",
    "extract_error_info",
    "build_result",
    "RefreshExecutor",
    "RefreshResult",
    "RefreshBatchResult",
    "RefreshStatus",
    "RefreshErrorCode",
    "RefreshErrorInfo",
]
