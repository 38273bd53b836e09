"""
OAuth client resolution for token refresh.

Decides which client id/secret and token endpoint refresh a credential.
Resolution priority, first match wins:

1. Platform connector: the credential's connection was provisioned through
   a platform-managed connector. Its registration is used as-is and no
   other source is consulted.
2. App config: an end-user credential whose connection is owned by a
   consuming App that registered its own client for the integration. The
   App's client is combined with the integration's endpoints; the App's
   scopes win when it has any.
3. Integration config: the integration's own stored OAuth config.

A None result is a configuration error (integration is not oauth2, or the
token endpoint, client id or client secret is missing). It is terminal for
the credential and never retried.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from waygate.models.connection import AppIntegrationConfig
from waygate.models.credential import CredentialKind
from waygate.models.integration import (
    AuthType,
    Integration,
    PlatformConnector,
    PlatformConnectorStatus,
)
from waygate.credentials.encryption import decrypt_token
from waygate.credentials.oauth_client import ClientSource, OAuthClientConfig
from waygate.credentials.store import CredentialContext

logger = logging.getLogger(__name__)


@dataclass
class AppClient:
    """An App's registered OAuth client for one integration."""
    client_id: str
    client_secret: str = field(repr=False)
    scopes: List[str] = field(default_factory=list)


@dataclass
class IntegrationOAuthConfig:
    """An integration's auth type and decrypted OAuth config."""
    auth_type: AuthType
    token_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    authorization_url: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    use_pkce: bool = False
    introspection_url: Optional[str] = None
    revocation_url: Optional[str] = None
    user_info_url: Optional[str] = None
    additional_auth_params: Dict[str, str] = field(default_factory=dict)
    additional_token_params: Dict[str, str] = field(default_factory=dict)


class PlatformClientSource(ABC):
    @abstractmethod
    async def get_platform_client(self, platform_connector_id: str) -> Optional[OAuthClientConfig]:
        """Registered client and endpoints of an active platform connector."""


class AppClientSource(ABC):
    @abstractmethod
    async def get_app_client(self, app_id: str, integration_id: str) -> Optional[AppClient]:
        """The App's client for the integration, decrypted on demand."""


class IntegrationConfigSource(ABC):
    @abstractmethod
    async def get_integration_config(self, integration_id: str) -> Optional[IntegrationOAuthConfig]:
        """The integration's own auth config, decrypted on demand."""


def _is_complete(config: OAuthClientConfig) -> bool:
    return bool(config.token_url and config.client_id and config.client_secret)


class OAuthClientResolver:
    """Resolves the OAuth client for a credential across the three sources."""

    def __init__(
        self,
        platform_source: PlatformClientSource,
        app_source: AppClientSource,
        integration_source: IntegrationConfigSource,
    ):
        self.platform_source = platform_source
        self.app_source = app_source
        self.integration_source = integration_source

    async def resolve(self, context: CredentialContext) -> Optional[OAuthClientConfig]:
        """
        Resolve the OAuth client for a credential.

        Returns:
            OAuthClientConfig, or None when no usable configuration exists

        Raises:
            DecryptionFailedError: If a stored client secret cannot be decrypted
        """
        if context.platform_connector_id:
            config = await self.platform_source.get_platform_client(context.platform_connector_id)
            if config is None or not _is_complete(config):
                logger.warning(
                    "Platform connector has no usable OAuth client",
                    extra={
                        "credential_id": context.id,
                        "platform_connector_id": context.platform_connector_id,
                    },
                )
                return None
            return config

        integration = await self.integration_source.get_integration_config(context.integration_id)
        if integration is None or integration.auth_type != AuthType.OAUTH2:
            logger.warning(
                "Integration does not use OAuth2",
                extra={"credential_id": context.id, "integration_id": context.integration_id},
            )
            return None
        if not integration.token_url:
            logger.warning(
                "Integration missing token_url in auth config",
                extra={"credential_id": context.id, "integration_id": context.integration_id},
            )
            return None

        if context.kind == CredentialKind.USER and context.app_id:
            app_client = await self.app_source.get_app_client(context.app_id, context.integration_id)
            if app_client is not None:
                config = self._build(
                    integration,
                    client_id=app_client.client_id,
                    client_secret=app_client.client_secret,
                    scopes=app_client.scopes or integration.scopes,
                    source=ClientSource.APP,
                )
                if _is_complete(config):
                    return config
                logger.warning(
                    "App OAuth client incomplete, falling back to integration config",
                    extra={"credential_id": context.id, "app_id": context.app_id},
                )

        config = self._build(
            integration,
            client_id=integration.client_id or "",
            client_secret=integration.client_secret or "",
            scopes=integration.scopes,
            source=ClientSource.INTEGRATION,
        )
        if not _is_complete(config):
            logger.warning(
                "Integration missing client_id or client_secret in auth config",
                extra={"credential_id": context.id, "integration_id": context.integration_id},
            )
            return None
        return config

    @staticmethod
    def _build(
        integration: IntegrationOAuthConfig,
        client_id: str,
        client_secret: str,
        scopes: List[str],
        source: ClientSource,
    ) -> OAuthClientConfig:
        return OAuthClientConfig(
            client_id=client_id,
            client_secret=client_secret,
            token_url=integration.token_url,
            # Refresh-only configs have no authorization endpoint
            authorization_url=integration.authorization_url or integration.token_url,
            scopes=list(scopes),
            use_pkce=integration.use_pkce,
            introspection_url=integration.introspection_url,
            revocation_url=integration.revocation_url,
            user_info_url=integration.user_info_url,
            additional_auth_params=integration.additional_auth_params,
            additional_token_params=integration.additional_token_params,
            source=source,
        )


class DatabaseOAuthSources(PlatformClientSource, AppClientSource, IntegrationConfigSource):
    """All three lookups backed by the database. Secrets are decrypted on demand."""

    def __init__(self, db_session: Session):
        self.db = db_session

    async def get_platform_client(self, platform_connector_id: str) -> Optional[OAuthClientConfig]:
        connector = self.db.get(PlatformConnector, platform_connector_id)
        if connector is None or connector.status != PlatformConnectorStatus.ACTIVE:
            return None
        return OAuthClientConfig(
            client_id=connector.client_id,
            client_secret=await decrypt_token(connector.client_secret_encrypted),
            token_url=connector.token_url,
            authorization_url=connector.authorization_url or connector.token_url,
            scopes=connector.scope_list,
            source=ClientSource.PLATFORM,
        )

    async def get_app_client(self, app_id: str, integration_id: str) -> Optional[AppClient]:
        row = self.db.query(AppIntegrationConfig).filter(
            AppIntegrationConfig.app_id == app_id,
            AppIntegrationConfig.integration_id == integration_id,
        ).first()
        if row is None:
            return None
        return AppClient(
            client_id=row.client_id,
            client_secret=await decrypt_token(row.client_secret_encrypted),
            scopes=row.scope_list,
        )

    async def get_integration_config(self, integration_id: str) -> Optional[IntegrationOAuthConfig]:
        integration = self.db.get(Integration, integration_id)
        if integration is None:
            return None

        config = integration.auth_config_dict
        secret_encrypted = config.get("client_secret_encrypted")
        return IntegrationOAuthConfig(
            auth_type=integration.auth_type,
            token_url=config.get("token_url"),
            client_id=config.get("client_id"),
            client_secret=await decrypt_token(secret_encrypted) if secret_encrypted else None,
            authorization_url=config.get("authorization_url"),
            scopes=list(config.get("scopes") or []),
            use_pkce=bool(config.get("use_pkce", False)),
            introspection_url=config.get("introspection_url"),
            revocation_url=config.get("revocation_url"),
            user_info_url=config.get("user_info_url"),
            additional_auth_params=dict(config.get("additional_auth_params") or {}),
            additional_token_params=dict(config.get("additional_token_params") or {}),
        )
