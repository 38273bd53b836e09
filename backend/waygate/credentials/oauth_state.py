"""
Short-lived OAuth authorization state.

Holds what the authorization-code callback needs (integration, tenant,
redirect URI, PKCE verifier) under a random state token. Entries expire
after OAUTH_STATE_TTL_SECONDS and can be consumed once.

Redis is used when a client is supplied so every web instance sees the
same state; otherwise an in-process table is used (tests, single-instance
deployments).

Usage:
    states = OAuthStateStore(redis_client, ttl_seconds=600)
    state, challenge = create_state(states, integration_id, tenant_id, redirect_uri)
    ...
    pending = states.consume(state)  # None if unknown, expired or reused
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import redis
from pydantic import BaseModel, Field

from waygate.config.settings import DEFAULT_OAUTH_STATE_TTL_SECONDS
from waygate.credentials.oauth_client import generate_pkce, generate_state

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "waygate:oauth_state:"


class OAuthState(BaseModel):
    """Pending authorization-code flow."""

    integration_id: str
    tenant_id: str
    redirect_uri: str
    code_verifier: Optional[str] = Field(default=None, repr=False)
    connection_id: Optional[str] = None
    app_user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def _key(state: str) -> str:
    return f"{STATE_KEY_PREFIX}{state}"


class OAuthStateStore:
    """TTL store for OAuth state, single-use on consume."""

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        ttl_seconds: int = DEFAULT_OAUTH_STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # state -> (expires_at, serialized OAuthState)
        self._memory: Dict[str, Tuple[float, str]] = {}

    def save(self, state: str, data: OAuthState) -> None:
        payload = data.model_dump_json()
        if self._redis is not None:
            self._redis.setex(_key(state), self.ttl_seconds, payload)
            return
        self._memory[state] = (self._clock() + self.ttl_seconds, payload)

    def consume(self, state: str) -> Optional[OAuthState]:
        """
        Return and delete the state.

        Returns None for unknown, expired or already-consumed state.
        """
        if not state:
            return None

        if self._redis is not None:
            pipe = self._redis.pipeline()
            pipe.get(_key(state))
            pipe.delete(_key(state))
            raw, _ = pipe.execute()
        else:
            entry = self._memory.pop(state, None)
            raw = None
            if entry is not None:
                expires_at, payload = entry
                if self._clock() < expires_at:
                    raw = payload

        if not raw:
            logger.info("OAuth state not found or expired")
            return None

        try:
            return OAuthState.model_validate(json.loads(raw))
        except ValueError:
            logger.warning("Discarding malformed OAuth state")
            return None

    def purge_expired(self) -> int:
        """Drop expired in-memory entries. Redis expires keys itself."""
        if self._redis is not None:
            return 0
        now = self._clock()
        expired = [s for s, (expires_at, _) in self._memory.items() if expires_at <= now]
        for state in expired:
            del self._memory[state]
        return len(expired)

    def __len__(self) -> int:
        return len(self._memory)


def create_state(
    store: OAuthStateStore,
    integration_id: str,
    tenant_id: str,
    redirect_uri: str,
    use_pkce: bool = True,
    connection_id: Optional[str] = None,
    app_user_id: Optional[str] = None,
) -> Tuple[str, Optional[str]]:
    """
    Start an authorization-code flow.

    Returns:
        (state, code_challenge); code_challenge is None without PKCE
    """
    state = generate_state()
    verifier, challenge = generate_pkce() if use_pkce else (None, None)
    store.save(
        state,
        OAuthState(
            integration_id=integration_id,
            tenant_id=tenant_id,
            redirect_uri=redirect_uri,
            code_verifier=verifier,
            connection_id=connection_id,
            app_user_id=app_user_id,
        ),
    )
    return state, challenge
