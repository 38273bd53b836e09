"""
Tests for the refresh executor: retry, backoff, classification, rotation
and optimistic persistence.

Covers:
- Backoff timing between attempts and total provider calls
- Non-retryable provider errors stop immediately and flag re-auth
- Terminal failures before any provider call
- Rotated vs. non-rotated refresh tokens
- Concurrent modification is re-read and retried
- Exactly one refresh event per attempt
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from waygate.models import CredentialKind, CredentialStatus, CredentialType
from waygate.credentials.encryption import DecryptionFailedError
from waygate.credentials.oauth_client import OAuthClientConfig, OAuthError, TokenResponse
from waygate.credentials.refresh import (
    BASE_BACKOFF_MS,
    MAX_RETRY_ATTEMPTS,
    MAX_UPDATE_ATTEMPTS,
    RefreshErrorCode,
    RefreshExecutor,
    RefreshStatus,
    backoff_delay_ms,
    extract_error_info,
    is_retryable_error,
)
from waygate.credentials.store import (
    CredentialContext,
    CredentialNotFoundError,
    DecryptedCredential,
    UpdateResult,
    UpdateStatus,
)

TENANT_ID = "tenant-refresh-test-001"


# =============================================================================
# Fixtures
# =============================================================================

class FakeCredential:
    """RefreshableCredential stand-in with recorded callbacks."""

    def __init__(self, kind=CredentialKind.SHARED, refresh_token="refresh-original", version=3):
        self.context = CredentialContext(
            id="cred-1",
            kind=kind,
            tenant_id=TENANT_ID,
            integration_id="int-1",
            credential_type=CredentialType.OAUTH2,
            status=CredentialStatus.ACTIVE,
            version=version,
            connection_id="conn-1",
            app_user_id="end-user-1" if kind == CredentialKind.USER else None,
            has_refresh_token=refresh_token is not None,
        )
        self.load = AsyncMock(return_value=DecryptedCredential(
            id="cred-1",
            kind=kind,
            version=version,
            access_token="access-original",
            refresh_token=refresh_token,
        ))
        self.save_tokens = AsyncMock(return_value=UpdateResult(UpdateStatus.UPDATED, version=version + 1))
        self.current_version = AsyncMock(return_value=version + 1)
        self.flag_needs_reauth = AsyncMock(return_value=True)

    @property
    def id(self):
        return self.context.id

    @property
    def kind(self):
        return self.context.kind


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def client_config():
    return OAuthClientConfig(
        client_id="client-abc",
        client_secret="client-secret",
        token_url="https://provider.example.com/token",
    )


@pytest.fixture
def resolver(client_config):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=client_config)
    return resolver


@pytest.fixture
def token_client():
    client = MagicMock()
    client.refresh_token = AsyncMock(
        return_value=TokenResponse(access_token="access-new", expires_in=3600)
    )
    return client


@pytest.fixture
def events():
    return MagicMock()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def executor(resolver, token_client, events, sleep):
    return RefreshExecutor(resolver, token_client, events, sleep=sleep)


def _server_error():
    return OAuthError("TOKEN_REFRESH_FAILED", "Failed to refresh token: 503", status_code=503)


def _invalid_grant():
    return OAuthError(
        "TOKEN_REFRESH_FAILED",
        "Failed to refresh token: 400 invalid_grant",
        status_code=400,
        oauth_error="invalid_grant",
    )


# =============================================================================
# Error classification
# =============================================================================

class TestErrorClassification:

    @pytest.mark.parametrize("marker", [
        "invalid_grant", "invalid_token", "unauthorized_client", "access_denied",
    ])
    def test_grant_errors_are_not_retryable(self, marker):
        assert is_retryable_error(OAuthError("TOKEN_REFRESH_FAILED", f"Failed: 400 {marker}")) is False

    def test_match_is_case_insensitive(self):
        assert is_retryable_error(Exception("Provider said INVALID_GRANT")) is False

    def test_oauth_error_code_is_checked(self):
        error = OAuthError("TOKEN_REFRESH_FAILED", "Failed to refresh token: 401", oauth_error="invalid_token")
        assert is_retryable_error(error) is False

    @pytest.mark.parametrize("error", [
        OAuthError("NETWORK_ERROR", "Token endpoint request failed: ConnectError"),
        OAuthError("TOKEN_REFRESH_FAILED", "Failed to refresh token: 429", status_code=429),
        RuntimeError("something odd"),
    ])
    def test_everything_else_is_retryable(self, error):
        assert is_retryable_error(error) is True

    def test_backoff_doubles(self):
        assert [backoff_delay_ms(a) for a in range(3)] == [1000, 2000, 4000]
        assert BASE_BACKOFF_MS == 1000

    def test_extract_error_info_keeps_oauth_code(self):
        info = extract_error_info(_invalid_grant())
        assert info.code == "TOKEN_REFRESH_FAILED"
        assert "invalid_grant" in info.message

    def test_extract_error_info_redacts_generic_errors(self):
        info = extract_error_info(ValueError("bad header Bearer abc.def"))
        assert info.code == "UNKNOWN_ERROR"
        assert "abc.def" not in info.message


# =============================================================================
# Retry and backoff
# =============================================================================

class TestRetryAndBackoff:

    @pytest.mark.asyncio
    async def test_three_transient_failures_back_off_then_flag_reauth(self, executor, token_client, sleep):
        token_client.refresh_token.side_effect = [_server_error(), _server_error(), _server_error()]
        credential = FakeCredential()

        result = await executor.refresh(credential)

        assert token_client.refresh_token.await_count == MAX_RETRY_ATTEMPTS == 3
        assert sleep.calls == [1.0, 2.0]
        assert result.status == RefreshStatus.FAILED
        assert result.retry_count == 2
        assert result.error.code == "TOKEN_REFRESH_FAILED"
        credential.flag_needs_reauth.assert_awaited_once()
        credential.save_tokens.assert_not_called()

    @pytest.mark.asyncio
    async def test_success_after_transient_failure(self, executor, token_client, sleep):
        token_client.refresh_token.side_effect = [
            _server_error(),
            TokenResponse(access_token="access-new", expires_in=3600),
        ]
        credential = FakeCredential()

        result = await executor.refresh(credential)

        assert result.success
        assert result.retry_count == 1
        assert sleep.calls == [1.0]
        credential.flag_needs_reauth.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_grant_stops_after_one_call(self, executor, token_client, sleep):
        token_client.refresh_token.side_effect = _invalid_grant()
        credential = FakeCredential()

        result = await executor.refresh(credential)

        assert token_client.refresh_token.await_count == 1
        assert sleep.calls == []
        assert result.status == RefreshStatus.FAILED
        assert result.retry_count == 0
        assert "invalid_grant" in result.error.message
        credential.flag_needs_reauth.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_refresh_token_passed_to_provider(self, executor, token_client, client_config):
        await executor.refresh(FakeCredential(refresh_token="refresh-xyz"))

        token_client.refresh_token.assert_awaited_once_with(client_config, "refresh-xyz")


# =============================================================================
# Terminal failures
# =============================================================================

class TestTerminalFailures:

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, executor, token_client):
        credential = FakeCredential(refresh_token=None)

        result = await executor.refresh(credential)

        assert result.error.code == RefreshErrorCode.NO_REFRESH_TOKEN.value
        token_client.refresh_token.assert_not_called()
        credential.flag_needs_reauth.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unresolvable_client_config(self, executor, resolver, token_client):
        resolver.resolve.return_value = None
        credential = FakeCredential()

        result = await executor.refresh(credential)

        assert result.error.code == RefreshErrorCode.INVALID_AUTH_CONFIG.value
        token_client.refresh_token.assert_not_called()
        credential.flag_needs_reauth.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_undecryptable_credential(self, executor, resolver):
        credential = FakeCredential()
        credential.load.side_effect = DecryptionFailedError("bad ciphertext")

        result = await executor.refresh(credential)

        assert result.error.code == RefreshErrorCode.DECRYPTION_FAILED.value
        resolver.resolve.assert_not_called()
        credential.flag_needs_reauth.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_undecryptable_client_secret(self, executor, resolver):
        resolver.resolve.side_effect = DecryptionFailedError("bad client secret")
        credential = FakeCredential()

        result = await executor.refresh(credential)

        assert result.error.code == RefreshErrorCode.DECRYPTION_FAILED.value
        credential.flag_needs_reauth.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_deleted_credential_is_not_flagged(self, executor):
        credential = FakeCredential()
        credential.load.side_effect = CredentialNotFoundError("cred-1")

        result = await executor.refresh(credential)

        assert result.error.code == RefreshErrorCode.CREDENTIAL_NOT_FOUND.value
        credential.flag_needs_reauth.assert_not_called()


# =============================================================================
# Persistence and rotation
# =============================================================================

class TestPersistence:

    @pytest.mark.asyncio
    async def test_non_rotating_provider_keeps_refresh_token(self, executor):
        credential = FakeCredential(version=3)

        result = await executor.refresh(credential)

        assert result.success
        assert result.rotated_refresh_token is False
        credential.save_tokens.assert_awaited_once_with(
            access_token="access-new",
            refresh_token=None,
            expires_in=3600,
            token_type="Bearer",
            scopes=None,
            expected_version=3,
        )

    @pytest.mark.asyncio
    async def test_rotating_provider_replaces_refresh_token(self, executor, token_client):
        token_client.refresh_token.return_value = TokenResponse(
            access_token="access-new", refresh_token="refresh-rotated", expires_in=3600, scope="read"
        )
        credential = FakeCredential()

        result = await executor.refresh(credential)

        assert result.rotated_refresh_token is True
        kwargs = credential.save_tokens.await_args.kwargs
        assert kwargs["refresh_token"] == "refresh-rotated"
        assert kwargs["scopes"] == ["read"]

    @pytest.mark.asyncio
    async def test_concurrent_modification_retries_with_current_version(self, executor):
        credential = FakeCredential(version=3)
        credential.save_tokens.side_effect = [
            UpdateResult(UpdateStatus.CONCURRENT_MODIFICATION),
            UpdateResult(UpdateStatus.UPDATED, version=5),
        ]
        credential.current_version.return_value = 4

        result = await executor.refresh(credential)

        assert result.success
        versions = [c.kwargs["expected_version"] for c in credential.save_tokens.await_args_list]
        assert versions == [3, 4]

    @pytest.mark.asyncio
    async def test_concurrent_modification_exhausted(self, executor):
        credential = FakeCredential()
        credential.save_tokens.return_value = UpdateResult(UpdateStatus.CONCURRENT_MODIFICATION)

        result = await executor.refresh(credential)

        assert result.status == RefreshStatus.FAILED
        assert result.error.code == RefreshErrorCode.CONCURRENT_MODIFICATION.value
        assert credential.save_tokens.await_count == MAX_UPDATE_ATTEMPTS
        credential.flag_needs_reauth.assert_not_called()

    @pytest.mark.asyncio
    async def test_row_deleted_before_save(self, executor):
        credential = FakeCredential()
        credential.save_tokens.return_value = UpdateResult(UpdateStatus.NOT_FOUND)

        result = await executor.refresh(credential)

        assert result.error.code == RefreshErrorCode.CREDENTIAL_NOT_FOUND.value


# =============================================================================
# Events and results
# =============================================================================

class TestEventsAndResults:

    @pytest.mark.asyncio
    async def test_exactly_one_event_per_refresh(self, executor, token_client, events):
        token_client.refresh_token.side_effect = [_server_error(), _server_error(), _server_error()]

        result = await executor.refresh(FakeCredential())

        events.log_refresh_event.assert_called_once_with(result)

    @pytest.mark.asyncio
    async def test_user_credential_result_carries_identity(self, executor):
        result = await executor.refresh(FakeCredential(kind=CredentialKind.USER))

        assert result.credential_kind == CredentialKind.USER
        assert result.app_user_id == "end-user-1"
        assert result.connection_id == "conn-1"
        assert result.tenant_id == TENANT_ID
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_result_never_contains_tokens(self, executor, token_client):
        token_client.refresh_token.return_value = TokenResponse(
            access_token="access-new-secret", refresh_token="refresh-new-secret", expires_in=60
        )

        result = await executor.refresh(FakeCredential())

        serialized = str(result.to_dict())
        assert "access-new-secret" not in serialized
        assert "refresh-new-secret" not in serialized
        assert "refresh-original" not in serialized
