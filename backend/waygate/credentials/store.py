"""
Credential storage service for both credential populations.

Shared (organisation) credentials live in `credentials`; end-user delegated
credentials live in `user_credentials` and reach their tenant and
integration through their Connection. Every read and write that the refresh
path needs is expressed once, parameterised by CredentialKind.

SECURITY REQUIREMENTS:
- Tokens are encrypted at rest before storage
- Decrypted values only leave this module inside DecryptedCredential,
  whose repr never shows them
- Audit events for every lifecycle transition

Concurrency:
- Every write bumps `version`
- update_tokens(expected_version=...) is a compare-and-swap: the UPDATE
  only matches the row when the stored version is unchanged

Usage:
    store = CredentialStore(db_session)

    # Find credentials to refresh
    contexts = store.find_expiring(CredentialKind.SHARED, timedelta(minutes=10))

    # Persist refreshed tokens with an optimistic guard
    result = await store.update_tokens(
        CredentialKind.SHARED, cred_id, access_token="...",
        expires_in=3600, expected_version=context.version,
    )
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import update, func
from sqlalchemy.orm import Session, joinedload

from waygate.models.base import as_utc
from waygate.models.connection import Connection
from waygate.models.credential import (
    Credential,
    CredentialKind,
    CredentialStatus,
    CredentialType,
)
from waygate.models.user_credential import UserCredential
from waygate.platform.errors import NotFoundError, ValidationError
from waygate.credentials.encryption import (
    encrypt_payload,
    decrypt_payload,
    encrypt_token,
    decrypt_token,
)
from waygate.credentials.redaction import CredentialAuditLogger, AuditEventType

logger = logging.getLogger(__name__)

# Default lead time used by is_credential_expired
DEFAULT_EXPIRY_BUFFER_SECONDS = 300

CredentialRow = Union[Credential, UserCredential]


class CredentialStoreError(Exception):
    """Base exception for credential store errors."""
    pass


class CredentialNotFoundError(NotFoundError, CredentialStoreError):
    """Credential not found or not accessible."""

    def __init__(self, credential_id: str):
        super().__init__("Credential", credential_id, code="CREDENTIAL_NOT_FOUND")
        self.credential_id = credential_id


class UpdateStatus(str, Enum):
    """Outcome of a guarded token update."""
    UPDATED = "updated"
    NOT_FOUND = "not_found"
    CONCURRENT_MODIFICATION = "concurrent_modification"


@dataclass
class UpdateResult:
    status: UpdateStatus
    version: Optional[int] = None

    @property
    def updated(self) -> bool:
        return self.status == UpdateStatus.UPDATED


@dataclass
class CredentialContext:
    """
    Non-secret view of a credential plus the relations refresh needs.

    SECURITY: Does NOT include token values.
    """
    id: str
    kind: CredentialKind
    tenant_id: str
    integration_id: str
    credential_type: CredentialType
    status: CredentialStatus
    version: int
    expires_at: Optional[datetime] = None
    connection_id: Optional[str] = None
    app_user_id: Optional[str] = None
    app_id: Optional[str] = None
    platform_connector_id: Optional[str] = None
    has_refresh_token: bool = False


@dataclass
class DecryptedCredential:
    """
    Decrypted credential material.

    SECURITY: token fields are excluded from repr. Never log this object's
    fields directly.
    """
    id: str
    kind: CredentialKind
    version: int
    token_type: str = "Bearer"
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    data: Dict[str, Any] = field(default_factory=dict, repr=False)
    scopes: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None


def is_credential_expired(
    credential: CredentialRow,
    buffer_seconds: int = DEFAULT_EXPIRY_BUFFER_SECONDS,
) -> bool:
    """
    Check if a credential's access token is expired or about to be.

    Credentials without an expiry (api keys, non-expiring tokens) never expire.
    """
    expires_at = as_utc(credential.expires_at)
    if expires_at is None:
        return False
    return datetime.now(timezone.utc) + timedelta(seconds=buffer_seconds) >= expires_at


class RefreshableCredential:
    """
    The capability the refresh executor drives, for either population.

    Exposes identity and scope plus three callbacks: load the decrypted
    material, save refreshed tokens, and flag the credential for re-auth.

    Writes are committed before the callback returns, while the caller
    still holds the credential's lock. A second worker that takes the lock
    next therefore reads the rotated refresh token.
    """

    def __init__(self, store: "CredentialStore", context: CredentialContext):
        self._store = store
        self.context = context

    @property
    def id(self) -> str:
        return self.context.id

    @property
    def kind(self) -> CredentialKind:
        return self.context.kind

    @property
    def tenant_id(self) -> str:
        return self.context.tenant_id

    async def load(self) -> DecryptedCredential:
        return await self._store.get_decrypted(self.kind, self.id)

    async def save_tokens(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        token_type: str = "Bearer",
        scopes: Optional[List[str]] = None,
        expected_version: Optional[int] = None,
    ) -> UpdateResult:
        result = await self._store.update_tokens(
            self.kind,
            self.id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            token_type=token_type,
            scopes=scopes,
            expected_version=expected_version,
        )
        if result.updated:
            self._store.commit()
        return result

    async def current_version(self) -> Optional[int]:
        return self._store.get_version(self.kind, self.id)

    async def flag_needs_reauth(self) -> bool:
        changed = self._store.mark_needs_reauth(self.kind, self.id)
        self._store.commit()
        return changed

    def __repr__(self) -> str:
        return f"<RefreshableCredential(id={self.id}, kind={self.kind.value})>"


class CredentialStore:
    """
    Persistence and encryption boundary for credentials.

    Not tenant-scoped: the refresh worker scans every tenant. Methods that
    serve tenant-facing callers accept tenant_id and filter on it.
    """

    def __init__(self, db_session: Session):
        self.db = db_session
        self.audit = CredentialAuditLogger()

    # =========================================================================
    # Transactions
    # =========================================================================

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        """Discard writes of the credential in flight."""
        self.db.rollback()

    # =========================================================================
    # Lookups
    # =========================================================================

    @staticmethod
    def _model(kind: CredentialKind):
        if kind == CredentialKind.USER:
            return UserCredential
        return Credential

    def _to_context(self, row: CredentialRow, kind: CredentialKind) -> CredentialContext:
        connection = row.connection
        if kind == CredentialKind.USER:
            tenant_id = connection.tenant_id
            integration_id = connection.integration_id
            app_user_id = row.app_user_id
        else:
            tenant_id = row.tenant_id
            integration_id = row.integration_id
            app_user_id = None

        return CredentialContext(
            id=row.id,
            kind=kind,
            tenant_id=tenant_id,
            integration_id=integration_id,
            credential_type=row.credential_type,
            status=row.status,
            version=row.version,
            expires_at=as_utc(row.expires_at),
            connection_id=row.connection_id,
            app_user_id=app_user_id,
            app_id=connection.app_id if connection is not None else None,
            platform_connector_id=(
                connection.platform_connector_id
                if connection is not None and connection.is_platform
                else None
            ),
            has_refresh_token=row.encrypted_refresh_token is not None,
        )

    def _scoped_query(self, kind: CredentialKind, tenant_id: Optional[str] = None):
        model = self._model(kind)
        query = self.db.query(model)
        if tenant_id is not None:
            if kind == CredentialKind.USER:
                query = query.join(Connection, UserCredential.connection_id == Connection.id).filter(
                    Connection.tenant_id == tenant_id
                )
            else:
                query = query.filter(Credential.tenant_id == tenant_id)
        return query

    def find_expiring(
        self,
        kind: CredentialKind,
        buffer: timedelta,
    ) -> List[CredentialContext]:
        """
        Find active oauth2 credentials expiring within the buffer window.

        Credentials already past expiry but still active are included; they
        are recoverable by refresh. Ordered by soonest expiry first. Each
        row's Connection is loaded in the same query.
        """
        model = self._model(kind)
        threshold = datetime.now(timezone.utc) + buffer

        rows = self.db.query(model).options(joinedload(model.connection)).filter(
            model.status == CredentialStatus.ACTIVE,
            model.credential_type == CredentialType.OAUTH2,
            model.encrypted_refresh_token.isnot(None),
            model.expires_at.isnot(None),
            model.expires_at <= threshold,
        ).order_by(model.expires_at.asc()).all()

        return [self._to_context(row, kind) for row in rows]

    def get_context(
        self,
        kind: CredentialKind,
        credential_id: str,
        tenant_id: Optional[str] = None,
    ) -> Optional[CredentialContext]:
        """Get the non-secret context for one credential, optionally tenant-checked."""
        model = self._model(kind)
        row = self._scoped_query(kind, tenant_id).filter(model.id == credential_id).first()
        if row is None:
            return None
        return self._to_context(row, kind)

    def get_version(self, kind: CredentialKind, credential_id: str) -> Optional[int]:
        """Read the current stored version, bypassing the identity map."""
        model = self._model(kind)
        return self.db.query(model.version).filter(model.id == credential_id).scalar()

    async def get_decrypted(self, kind: CredentialKind, credential_id: str) -> DecryptedCredential:
        """
        Get decrypted credential material.

        SECURITY:
        - Only the refresh executor should call this
        - Decrypted values must NEVER be logged

        Raises:
            CredentialNotFoundError: If the credential does not exist
            DecryptionFailedError: If stored ciphertext cannot be decrypted
        """
        model = self._model(kind)
        row = self.db.query(model).filter(model.id == credential_id).first()
        if row is None:
            raise CredentialNotFoundError(credential_id)

        payload = await decrypt_payload(row.encrypted_data)
        refresh_token = None
        if row.encrypted_refresh_token:
            refresh_token = await decrypt_token(row.encrypted_refresh_token)

        return DecryptedCredential(
            id=row.id,
            kind=kind,
            version=row.version,
            token_type=payload.get("token_type") or "Bearer",
            access_token=payload.get("access_token"),
            refresh_token=refresh_token,
            data=payload,
            scopes=row.scope_list,
            expires_at=as_utc(row.expires_at),
        )

    def refreshable(self, context: CredentialContext) -> RefreshableCredential:
        return RefreshableCredential(self, context)

    # =========================================================================
    # Token updates
    # =========================================================================

    async def update_tokens(
        self,
        kind: CredentialKind,
        credential_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        token_type: str = "Bearer",
        scopes: Optional[List[str]] = None,
        expected_version: Optional[int] = None,
    ) -> UpdateResult:
        """
        Store refreshed tokens in place.

        The access token is always replaced. The refresh token is replaced
        only when one is supplied (provider rotated it). expires_at is
        recomputed from expires_in and left unchanged when the provider
        omits it. Status returns to active.

        When expected_version is given the write is a compare-and-swap and
        returns CONCURRENT_MODIFICATION if someone else wrote first.
        """
        if not access_token:
            raise ValidationError("access_token is required", field="access_token")

        model = self._model(kind)
        now = datetime.now(timezone.utc)

        values: Dict[str, Any] = {
            "encrypted_data": await encrypt_payload({
                "access_token": access_token,
                "token_type": token_type or "Bearer",
            }),
            "status": CredentialStatus.ACTIVE,
            "version": model.version + 1,
            "updated_at": now,
        }
        # No expires_in keeps the previous expiry so the row stays on the refresh scan
        if expires_in:
            values["expires_at"] = now + timedelta(seconds=expires_in)
        if refresh_token:
            values["encrypted_refresh_token"] = await encrypt_token(refresh_token)
        if scopes:
            values["scopes"] = json.dumps(scopes)

        stmt = update(model).where(model.id == credential_id)
        if expected_version is not None:
            stmt = stmt.where(model.version == expected_version)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        self.db.flush()
        rowcount = self.db.execute(stmt).rowcount
        self.db.expire_all()

        if rowcount == 0:
            if self.get_version(kind, credential_id) is None:
                return UpdateResult(status=UpdateStatus.NOT_FOUND)
            logger.warning(
                "Credential changed since it was read",
                extra={
                    "credential_id": credential_id,
                    "credential_kind": kind.value,
                    "expected_version": expected_version,
                }
            )
            return UpdateResult(status=UpdateStatus.CONCURRENT_MODIFICATION)

        version = self.get_version(kind, credential_id)
        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            credential_id=credential_id,
            credential_kind=kind.value,
            metadata={
                "rotated_refresh_token": bool(refresh_token),
                "expires_at": values["expires_at"].isoformat() if "expires_at" in values else None,
                "version": version,
            },
        )
        return UpdateResult(status=UpdateStatus.UPDATED, version=version)

    # =========================================================================
    # Lifecycle transitions
    # =========================================================================

    def _set_status(
        self,
        kind: CredentialKind,
        credential_id: str,
        status: CredentialStatus,
        event_type: AuditEventType,
    ) -> bool:
        model = self._model(kind)
        stmt = (
            update(model)
            .where(model.id == credential_id)
            .values(
                status=status,
                version=model.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        changed = self.db.execute(stmt).rowcount > 0
        self.db.expire_all()

        if changed:
            self.audit.log(
                event_type=event_type,
                credential_id=credential_id,
                credential_kind=kind.value,
                metadata={"status": status.value},
            )
        return changed

    def mark_needs_reauth(self, kind: CredentialKind, credential_id: str) -> bool:
        """Flag a credential that can no longer refresh itself."""
        return self._set_status(
            kind, credential_id,
            CredentialStatus.NEEDS_REAUTH,
            AuditEventType.CREDENTIAL_NEEDS_REAUTH,
        )

    def mark_expired(self, kind: CredentialKind, credential_id: str) -> bool:
        return self._set_status(
            kind, credential_id,
            CredentialStatus.EXPIRED,
            AuditEventType.CREDENTIAL_EXPIRED,
        )

    def mark_revoked(self, kind: CredentialKind, credential_id: str) -> bool:
        """
        Revoke a credential (soft delete).

        The row and its ciphertext are retained for audit.
        """
        return self._set_status(
            kind, credential_id,
            CredentialStatus.REVOKED,
            AuditEventType.CREDENTIAL_REVOKED,
        )

    # =========================================================================
    # Credential creation
    # =========================================================================

    async def _create_shared(
        self,
        tenant_id: str,
        integration_id: str,
        credential_type: CredentialType,
        payload: Dict[str, Any],
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        scopes: Optional[List[str]] = None,
        connection_id: Optional[str] = None,
    ) -> Credential:
        if not tenant_id:
            raise ValueError("tenant_id is required")

        credential = Credential(
            tenant_id=tenant_id,
            integration_id=integration_id,
            connection_id=connection_id,
            credential_type=credential_type,
            status=CredentialStatus.ACTIVE,
            encrypted_data=await encrypt_payload(payload),
            encrypted_refresh_token=await encrypt_token(refresh_token) if refresh_token else None,
            expires_at=expires_at,
            scopes=json.dumps(scopes) if scopes else None,
            version=1,
        )
        self.db.add(credential)
        self.db.flush()

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            credential_id=credential.id,
            credential_kind=CredentialKind.SHARED.value,
            tenant_id=tenant_id,
            integration_id=integration_id,
            metadata={"credential_type": credential_type.value},
        )
        logger.info(
            "Credential stored",
            extra={
                "credential_id": credential.id,
                "tenant_id": tenant_id,
                "integration_id": integration_id,
                "credential_type": credential_type.value,
            }
        )
        return credential

    async def store_oauth2_credential(
        self,
        tenant_id: str,
        integration_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        scopes: Optional[List[str]] = None,
        token_type: str = "Bearer",
        connection_id: Optional[str] = None,
    ) -> Credential:
        """Store tokens from a completed OAuth2 authorization-code exchange."""
        if not access_token:
            raise ValidationError("access_token is required", field="access_token")

        expires_at = None
        if expires_in:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        return await self._create_shared(
            tenant_id,
            integration_id,
            CredentialType.OAUTH2,
            {"access_token": access_token, "token_type": token_type or "Bearer"},
            refresh_token=refresh_token,
            expires_at=expires_at,
            scopes=scopes,
            connection_id=connection_id,
        )

    async def store_api_key_credential(
        self,
        tenant_id: str,
        integration_id: str,
        api_key: str,
        placement: str = "header",
        param_name: str = "X-API-Key",
        connection_id: Optional[str] = None,
    ) -> Credential:
        if not api_key:
            raise ValidationError("api_key is required", field="api_key")
        if placement not in ("header", "query", "body"):
            raise ValidationError(f"Unsupported api key placement: {placement}", field="placement")

        return await self._create_shared(
            tenant_id,
            integration_id,
            CredentialType.API_KEY,
            {"api_key": api_key, "placement": placement, "param_name": param_name},
            connection_id=connection_id,
        )

    async def store_basic_credential(
        self,
        tenant_id: str,
        integration_id: str,
        username: str,
        password: str,
        connection_id: Optional[str] = None,
    ) -> Credential:
        if not username or not password:
            raise ValidationError("username and password are required")

        return await self._create_shared(
            tenant_id,
            integration_id,
            CredentialType.BASIC,
            {"username": username, "password": password},
            connection_id=connection_id,
        )

    async def store_bearer_credential(
        self,
        tenant_id: str,
        integration_id: str,
        token: str,
        connection_id: Optional[str] = None,
    ) -> Credential:
        if not token:
            raise ValidationError("token is required", field="token")

        return await self._create_shared(
            tenant_id,
            integration_id,
            CredentialType.BEARER,
            {"token": token},
            connection_id=connection_id,
        )

    async def upsert_user_credential(
        self,
        connection_id: str,
        app_user_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        scopes: Optional[List[str]] = None,
        token_type: str = "Bearer",
    ) -> UserCredential:
        """
        Create or replace the end user's credential for a connection.

        Exactly one row exists per (connection_id, app_user_id); a repeated
        connect replaces tokens in place and reactivates the row.
        """
        if not connection_id or not app_user_id:
            raise ValueError("connection_id and app_user_id are required")
        if not access_token:
            raise ValidationError("access_token is required", field="access_token")

        encrypted_data = await encrypt_payload({
            "access_token": access_token,
            "token_type": token_type or "Bearer",
        })
        encrypted_refresh = await encrypt_token(refresh_token) if refresh_token else None
        expires_at = None
        if expires_in:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        credential = self.db.query(UserCredential).filter(
            UserCredential.connection_id == connection_id,
            UserCredential.app_user_id == app_user_id,
        ).first()

        action = "updated"
        if credential is None:
            action = "created"
            credential = UserCredential(
                connection_id=connection_id,
                app_user_id=app_user_id,
                credential_type=CredentialType.OAUTH2,
                version=1,
            )
            self.db.add(credential)
        else:
            credential.version = (credential.version or 0) + 1

        credential.encrypted_data = encrypted_data
        credential.encrypted_refresh_token = encrypted_refresh
        credential.expires_at = expires_at
        credential.scopes = json.dumps(scopes) if scopes else None
        credential.status = CredentialStatus.ACTIVE
        self.db.flush()

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            credential_id=credential.id,
            credential_kind=CredentialKind.USER.value,
            metadata={
                "action": action,
                "connection_id": connection_id,
                "app_user_id": app_user_id,
            },
        )
        return credential

    # =========================================================================
    # Reporting and cleanup
    # =========================================================================

    def count_by_status(
        self,
        kind: CredentialKind,
        tenant_id: Optional[str] = None,
    ) -> Dict[str, int]:
        """Count credentials per status; every status is present in the result."""
        model = self._model(kind)
        query = self._scoped_query(kind, tenant_id).with_entities(
            model.status, func.count(model.id)
        ).group_by(model.status)

        counts = {status.value: 0 for status in CredentialStatus}
        for status, count in query.all():
            key = status.value if isinstance(status, CredentialStatus) else str(status)
            counts[key] = count
        return counts

    def delete_by_integration(self, integration_id: str) -> int:
        """
        Hard-delete every credential of an integration.

        Only called when the owning integration itself is deleted.
        """
        self.db.flush()
        deleted = self.db.query(Credential).filter(
            Credential.integration_id == integration_id
        ).delete(synchronize_session=False)

        connection_ids = [
            row.id for row in self.db.query(Connection.id).filter(
                Connection.integration_id == integration_id
            ).all()
        ]
        if connection_ids:
            deleted += self.db.query(UserCredential).filter(
                UserCredential.connection_id.in_(connection_ids)
            ).delete(synchronize_session=False)

        self.db.expire_all()
        logger.info(
            "Deleted credentials for integration",
            extra={"integration_id": integration_id, "count": deleted}
        )
        return deleted
