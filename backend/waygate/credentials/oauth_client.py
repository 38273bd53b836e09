"""
Generic OAuth2 token endpoint client.

Performs the refresh_token grant against any provider's token URL using
client credentials resolved per credential, plus the PKCE and state helpers
used by the authorization-code flow.

SECURITY:
- Refresh tokens and client secrets are sent only in the POST body
- Raw provider response bodies are NEVER logged or put in error messages;
  only the OAuth `error` code is kept
- TokenResponse and OAuthClientConfig hide secrets from repr

Usage:
    client = OAuthTokenClient(timeout=30.0)
    tokens = await client.refresh_token(config, refresh_token)
    tokens.access_token, tokens.refresh_token, tokens.expires_in
"""

import base64
import hashlib
import logging
import secrets
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class OAuthError(Exception):
    """
    Token endpoint failure.

    code is our classification (TOKEN_REFRESH_FAILED, NETWORK_ERROR, ...);
    oauth_error is the provider's RFC 6749 error code when it sent one.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        oauth_error: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.oauth_error = oauth_error


class ClientSource(str, Enum):
    """Where resolved OAuth client credentials came from."""
    PLATFORM = "platform"
    APP = "app"
    INTEGRATION = "integration"


class OAuthClientConfig(BaseModel):
    """Resolved OAuth client for one credential."""

    client_id: str
    client_secret: str = Field(repr=False)
    token_url: str
    authorization_url: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    use_pkce: bool = False
    introspection_url: Optional[str] = None
    revocation_url: Optional[str] = None
    user_info_url: Optional[str] = None
    additional_auth_params: Dict[str, str] = Field(default_factory=dict)
    additional_token_params: Dict[str, str] = Field(default_factory=dict)
    source: ClientSource = ClientSource.INTEGRATION


class TokenResponse(BaseModel):
    """Parsed token endpoint response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(repr=False)
    token_type: str = "Bearer"
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_in: Optional[int] = None
    scope: Optional[str] = None

    @field_validator("token_type", mode="before")
    @classmethod
    def default_token_type(cls, value):
        return value or "Bearer"

    @field_validator("access_token")
    @classmethod
    def require_access_token(cls, value: str) -> str:
        if not value:
            raise ValueError("access_token is empty")
        return value

    @field_validator("refresh_token", mode="before")
    @classmethod
    def blank_refresh_token(cls, value):
        # Some providers send "" when they do not rotate
        return value or None

    @property
    def scopes(self) -> List[str]:
        if not self.scope:
            return []
        return [s for s in self.scope.replace(",", " ").split() if s]


def generate_state() -> str:
    """Random, URL-safe authorization state token."""
    return secrets.token_urlsafe(32)


def generate_pkce() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Returns:
        (code_verifier, code_challenge)
    """
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def build_authorization_url(
    config: OAuthClientConfig,
    redirect_uri: str,
    state: str,
    code_challenge: Optional[str] = None,
) -> str:
    """Build the provider authorization URL for the authorization-code flow."""
    if not config.authorization_url:
        raise ValueError("authorization_url is not configured")

    params = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": redirect_uri,
        "state": state,
    }
    if config.scopes:
        params["scope"] = " ".join(config.scopes)
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    params.update(config.additional_auth_params)

    separator = "&" if "?" in config.authorization_url else "?"
    return f"{config.authorization_url}{separator}{urlencode(params)}"


def _parse_body(response: httpx.Response) -> Dict[str, str]:
    content_type = response.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(response.text))
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class OAuthTokenClient:
    """
    Calls OAuth2 token endpoints.

    A transport can be injected (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self._transport = transport

    async def refresh_token(
        self,
        config: OAuthClientConfig,
        refresh_token: str,
    ) -> TokenResponse:
        """
        Exchange a refresh token for a new access token.

        Raises:
            OAuthError: TOKEN_REFRESH_FAILED for provider rejections,
                NETWORK_ERROR for transport failures,
                INVALID_TOKEN_RESPONSE for unparseable success bodies
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            **config.additional_token_params,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    config.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.warning(
                "Token endpoint request failed",
                extra={"token_url": config.token_url, "error_type": type(e).__name__},
            )
            raise OAuthError(
                "NETWORK_ERROR",
                f"Token endpoint request failed: {type(e).__name__}",
            ) from e

        body = _parse_body(response)
        oauth_error = body.get("error") if isinstance(body.get("error"), str) else None

        if not response.is_success or oauth_error:
            message = f"Failed to refresh token: {response.status_code}"
            if oauth_error:
                message = f"{message} {oauth_error}"
            logger.warning(
                "Token endpoint rejected refresh",
                extra={
                    "token_url": config.token_url,
                    "status_code": response.status_code,
                    "oauth_error": oauth_error,
                },
            )
            raise OAuthError(
                "TOKEN_REFRESH_FAILED",
                message,
                status_code=response.status_code,
                oauth_error=oauth_error,
            )

        try:
            return TokenResponse.model_validate(body)
        except ValidationError as e:
            raise OAuthError(
                "INVALID_TOKEN_RESPONSE",
                "Token endpoint response did not contain a usable access_token",
                status_code=response.status_code,
            ) from e
