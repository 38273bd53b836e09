"""
Credentials module for OAuth credential lifecycle and proactive refresh.

This module provides:
- Encrypted storage for shared and end-user credentials
- Per-credential locking across worker processes
- OAuth client resolution (platform connector, App, integration)
- Token refresh with retry, backoff and rotation handling
- Refresh event logging with automatic redaction

SECURITY:
- Tokens are encrypted at rest using ENCRYPTION_KEY
- No plaintext tokens outside process memory
- Tokens NEVER appear in logs, results or events

Usage:
    from waygate.credentials import (
        CredentialStore, InMemoryLockManager, OAuthClientResolver,
        DatabaseOAuthSources, OAuthTokenClient, RefreshExecutor,
        RefreshEventLogger, TokenRefreshOrchestrator,
    )

    store = CredentialStore(db_session)
    sources = DatabaseOAuthSources(db_session)
    events = RefreshEventLogger(environment="production")
    executor = RefreshExecutor(
        OAuthClientResolver(sources, sources, sources), OAuthTokenClient(), events
    )
    orchestrator = TokenRefreshOrchestrator(store, AdvisoryLockManager(db_session), executor, events)

    batch = await orchestrator.refresh_expiring_tokens(buffer_minutes=10)
"""

from waygate.credentials.store import (
    CredentialStore,
    CredentialStoreError,
    CredentialNotFoundError,
    CredentialContext,
    DecryptedCredential,
    RefreshableCredential,
    UpdateResult,
    UpdateStatus,
    is_credential_expired,
)
from waygate.credentials.encryption import (
    encrypt_token,
    decrypt_token,
    CredentialEncryptionError,
    DecryptionFailedError,
)
from waygate.credentials.locks import (
    CredentialLockManager,
    AdvisoryLockManager,
    RedisLockManager,
    InMemoryLockManager,
    build_lock_manager,
    lock_key,
)
from waygate.credentials.oauth_client import (
    OAuthClientConfig,
    OAuthError,
    OAuthTokenClient,
    TokenResponse,
    ClientSource,
)
from waygate.credentials.oauth_state import OAuthState, OAuthStateStore, create_state
from waygate.credentials.resolver import OAuthClientResolver, DatabaseOAuthSources
from waygate.credentials.results import (
    RefreshBatchResult,
    RefreshErrorCode,
    RefreshErrorInfo,
    RefreshResult,
    RefreshStatus,
)
from waygate.credentials.refresh import RefreshExecutor, is_retryable_error
from waygate.credentials.orchestrator import TokenRefreshOrchestrator
from waygate.credentials.events import RefreshEventLogger
from waygate.credentials.redaction import (
    redact_credential_data,
    CredentialAuditLogger,
    AuditEventType,
    setup_credential_logging,
)

__all__ = [
    # Store
    "CredentialStore",
    "CredentialStoreError",
    "CredentialNotFoundError",
    "CredentialContext",
    "DecryptedCredential",
    "RefreshableCredential",
    "UpdateResult",
    "UpdateStatus",
    "is_credential_expired",
    # Encryption
    "encrypt_token",
    "decrypt_token",
    "CredentialEncryptionError",
    "DecryptionFailedError",
    # Locks
    "CredentialLockManager",
    "AdvisoryLockManager",
    "RedisLockManager",
    "InMemoryLockManager",
    "build_lock_manager",
    "lock_key",
    # OAuth
    "OAuthClientConfig",
    "OAuthError",
    "OAuthTokenClient",
    "TokenResponse",
    "ClientSource",
    "OAuthState",
    "OAuthStateStore",
    "create_state",
    "OAuthClientResolver",
    "DatabaseOAuthSources",
    # Refresh
    "RefreshExecutor",
    "TokenRefreshOrchestrator",
    "RefreshBatchResult",
    "RefreshErrorCode",
    "RefreshErrorInfo",
    "RefreshResult",
    "RefreshStatus",
    "is_retryable_error",
    # Events, redaction & audit
    "RefreshEventLogger",
    "redact_credential_data",
    "CredentialAuditLogger",
    "AuditEventType",
    "setup_credential_logging",
]
