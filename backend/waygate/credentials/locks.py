"""
Per-credential mutual exclusion for token refresh.

Every batch process (one per server instance) may scan the same credential
population at the same time. Before refreshing a credential a worker takes a
non-blocking lock keyed by the credential id; a worker that cannot take the
lock skips the credential because someone else is already refreshing it.

Backends:
- AdvisoryLockManager: PostgreSQL session-level advisory locks
  (pg_try_advisory_lock / pg_advisory_unlock). Released automatically if
  the connection dies. Session-level locks outlive commits, so the session
  must be bound to a single Connection, not to a pooled Engine.
- RedisLockManager: SET key token NX EX ttl, released only by the owner.
- InMemoryLockManager: single-process lock table for tests and local runs.

Usage:
    locks = AdvisoryLockManager(db_session)

    async with locks.hold(credential_id) as acquired:
        if not acquired:
            return skipped
        await refresh(...)
"""

import logging
import secrets
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Set

import redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from waygate.config.settings import RefreshSettings

logger = logging.getLogger(__name__)

# Number.MAX_SAFE_INTEGER; keeps keys inside a signed bigint
LOCK_KEY_MODULUS = 2 ** 53 - 1
REDIS_LOCK_PREFIX = "waygate:token_refresh:lock:"

# Delete the key only if it still holds our token
_REDIS_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def lock_key(credential_id: str) -> int:
    """
    Map a credential id to a stable integer lock key.

    Polynomial rolling hash. Collisions only serialize two unrelated
    credentials, they never cause an incorrect refresh.
    """
    value = 0
    for char in credential_id:
        value = (value * 31 + ord(char)) % LOCK_KEY_MODULUS
    return value


class CredentialLockManager(ABC):
    """Non-blocking try-acquire / release keyed by credential id."""

    @abstractmethod
    async def try_lock(self, credential_id: str) -> bool:
        """Take the lock without waiting. False means another worker holds it."""

    @abstractmethod
    async def unlock(self, credential_id: str) -> bool:
        """Release a lock taken by try_lock. False if it was not held."""

    @asynccontextmanager
    async def hold(self, credential_id: str) -> AsyncIterator[bool]:
        """
        Scoped acquisition.

        Yields whether the lock was acquired. When it was, unlock runs exactly
        once on exit whether the body returns or raises.
        """
        acquired = await self.try_lock(credential_id)
        try:
            yield acquired
        finally:
            if acquired:
                await self.unlock(credential_id)


class AdvisoryLockManager(CredentialLockManager):
    """PostgreSQL advisory locks on the worker's database session."""

    def __init__(self, db_session: Session):
        self.db = db_session

    async def try_lock(self, credential_id: str) -> bool:
        key = lock_key(credential_id)
        try:
            acquired = self.db.execute(
                text("SELECT pg_try_advisory_lock(:key)"),
                {"key": key},
            ).scalar()
        except Exception as e:
            logger.error(
                "Failed to acquire advisory lock",
                extra={"credential_id": credential_id, "lock_key": key, "error": str(e)},
            )
            return False

        if not acquired:
            logger.debug(
                "Credential already locked by another session",
                extra={"credential_id": credential_id, "lock_key": key},
            )
        return bool(acquired)

    async def unlock(self, credential_id: str) -> bool:
        key = lock_key(credential_id)
        try:
            released = self.db.execute(
                text("SELECT pg_advisory_unlock(:key)"),
                {"key": key},
            ).scalar()
        except Exception as e:
            logger.error(
                "Failed to release advisory lock",
                extra={"credential_id": credential_id, "lock_key": key, "error": str(e)},
            )
            return False

        if not released:
            logger.warning(
                "Released advisory lock that was not held by this session",
                extra={"credential_id": credential_id, "lock_key": key},
            )
        return bool(released)


class RedisLockManager(CredentialLockManager):
    """
    Redis lease lock.

    The lease TTL bounds how long a crashed worker can block a credential.
    It must exceed the worst-case refresh time (3 attempts plus backoff).
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 300):
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds
        self._tokens: Dict[str, str] = {}

    @staticmethod
    def _key(credential_id: str) -> str:
        return f"{REDIS_LOCK_PREFIX}{lock_key(credential_id)}"

    async def try_lock(self, credential_id: str) -> bool:
        token = secrets.token_hex(16)
        try:
            acquired = self._redis.set(
                self._key(credential_id), token, nx=True, ex=self._ttl_seconds
            )
        except Exception:
            logger.warning(
                "Failed to acquire Redis lock",
                extra={"credential_id": credential_id},
                exc_info=True,
            )
            return False

        if acquired:
            self._tokens[credential_id] = token
        return bool(acquired)

    async def unlock(self, credential_id: str) -> bool:
        token = self._tokens.pop(credential_id, None)
        if token is None:
            return False
        try:
            released = self._redis.eval(
                _REDIS_RELEASE_SCRIPT, 1, self._key(credential_id), token
            )
        except Exception:
            logger.warning(
                "Failed to release Redis lock",
                extra={"credential_id": credential_id},
                exc_info=True,
            )
            return False

        if not released:
            logger.warning(
                "Redis lock lease expired before release",
                extra={"credential_id": credential_id},
            )
        return bool(released)


class InMemoryLockManager(CredentialLockManager):
    """
    Lock table for a single process.

    Managers constructed with the same `held` set contend with each other,
    which is how tests model several workers.
    """

    def __init__(self, held: Optional[Set[int]] = None):
        self._held: Set[int] = held if held is not None else set()

    async def try_lock(self, credential_id: str) -> bool:
        key = lock_key(credential_id)
        if key in self._held:
            return False
        self._held.add(key)
        return True

    async def unlock(self, credential_id: str) -> bool:
        key = lock_key(credential_id)
        if key not in self._held:
            return False
        self._held.discard(key)
        return True

    def is_locked(self, credential_id: str) -> bool:
        return lock_key(credential_id) in self._held


def build_lock_manager(
    settings: RefreshSettings,
    db_session: Optional[Session] = None,
    redis_client: Optional[redis.Redis] = None,
) -> CredentialLockManager:
    """Pick the lock backend named by settings.lock_backend."""
    if settings.lock_backend == "memory":
        return InMemoryLockManager()

    if settings.lock_backend == "redis":
        if redis_client is None:
            if not settings.redis_url:
                raise ValueError("REDIS_URL is required for the redis lock backend")
            redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        return RedisLockManager(redis_client, ttl_seconds=settings.lock_ttl_seconds)

    if db_session is None:
        raise ValueError("db_session is required for the postgres lock backend")
    return AdvisoryLockManager(db_session)
