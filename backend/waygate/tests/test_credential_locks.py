"""
Tests for per-credential refresh locks.

Covers:
- Lock key hashing is stable and bounded
- Exclusivity: a held lock denies a second worker
- Guaranteed release: hold() unlocks on success and on exception
- Postgres advisory and Redis lease backends against mocks
- Backend selection from settings
"""

from unittest.mock import MagicMock

import pytest

from waygate.config.settings import RefreshSettings
from waygate.credentials.locks import (
    LOCK_KEY_MODULUS,
    AdvisoryLockManager,
    InMemoryLockManager,
    RedisLockManager,
    build_lock_manager,
    lock_key,
)


# =============================================================================
# Lock keys
# =============================================================================

class TestLockKey:

    def test_same_id_same_key(self):
        assert lock_key("cred-abc-123") == lock_key("cred-abc-123")

    def test_different_ids_differ(self):
        assert lock_key("cred-abc-123") != lock_key("cred-abc-124")

    def test_known_value(self):
        # ((97 * 31) + 98) * 31 + 99
        assert lock_key("abc") == 96354

    def test_key_stays_within_modulus(self):
        key = lock_key("x" * 500)
        assert 0 <= key < LOCK_KEY_MODULUS

    def test_empty_id(self):
        assert lock_key("") == 0


# =============================================================================
# In-memory backend
# =============================================================================

class TestInMemoryLockManager:

    @pytest.mark.asyncio
    async def test_second_worker_is_denied_while_held(self):
        held = set()
        worker_a = InMemoryLockManager(held)
        worker_b = InMemoryLockManager(held)

        assert await worker_a.try_lock("cred-1") is True
        assert await worker_b.try_lock("cred-1") is False
        assert await worker_b.try_lock("cred-2") is True

    @pytest.mark.asyncio
    async def test_lock_is_available_after_unlock(self):
        locks = InMemoryLockManager()

        await locks.try_lock("cred-1")
        assert await locks.unlock("cred-1") is True
        assert await locks.try_lock("cred-1") is True

    @pytest.mark.asyncio
    async def test_unlock_without_lock_returns_false(self):
        assert await InMemoryLockManager().unlock("cred-1") is False

    @pytest.mark.asyncio
    async def test_hold_releases_after_body(self):
        locks = InMemoryLockManager()

        async with locks.hold("cred-1") as acquired:
            assert acquired is True
            assert locks.is_locked("cred-1")

        assert not locks.is_locked("cred-1")

    @pytest.mark.asyncio
    async def test_hold_releases_when_body_raises(self):
        locks = InMemoryLockManager()

        with pytest.raises(RuntimeError):
            async with locks.hold("cred-1"):
                raise RuntimeError("refresh blew up")

        assert not locks.is_locked("cred-1")

    @pytest.mark.asyncio
    async def test_hold_does_not_release_lock_it_did_not_take(self):
        held = set()
        owner = InMemoryLockManager(held)
        other = InMemoryLockManager(held)
        await owner.try_lock("cred-1")

        async with other.hold("cred-1") as acquired:
            assert acquired is False

        assert owner.is_locked("cred-1")


# =============================================================================
# PostgreSQL advisory backend
# =============================================================================

def _session_returning(*values):
    session = MagicMock()
    results = []
    for value in values:
        result = MagicMock()
        result.scalar.return_value = value
        results.append(result)
    session.execute.side_effect = results
    return session


class TestAdvisoryLockManager:

    @pytest.mark.asyncio
    async def test_try_lock_uses_pg_try_advisory_lock(self):
        session = _session_returning(True)
        locks = AdvisoryLockManager(session)

        assert await locks.try_lock("cred-1") is True

        statement, params = session.execute.call_args[0]
        assert "pg_try_advisory_lock" in str(statement)
        assert params == {"key": lock_key("cred-1")}

    @pytest.mark.asyncio
    async def test_try_lock_denied(self):
        locks = AdvisoryLockManager(_session_returning(False))

        assert await locks.try_lock("cred-1") is False

    @pytest.mark.asyncio
    async def test_database_error_is_treated_as_not_acquired(self):
        session = MagicMock()
        session.execute.side_effect = Exception("connection lost")

        assert await AdvisoryLockManager(session).try_lock("cred-1") is False

    @pytest.mark.asyncio
    async def test_hold_unlocks_with_pg_advisory_unlock(self):
        session = _session_returning(True, True)
        locks = AdvisoryLockManager(session)

        async with locks.hold("cred-1") as acquired:
            assert acquired

        unlock_statement, params = session.execute.call_args_list[1][0]
        assert "pg_advisory_unlock" in str(unlock_statement)
        assert params == {"key": lock_key("cred-1")}

    @pytest.mark.asyncio
    async def test_hold_skips_unlock_when_not_acquired(self):
        session = _session_returning(False)

        async with AdvisoryLockManager(session).hold("cred-1") as acquired:
            assert not acquired

        assert session.execute.call_count == 1


# =============================================================================
# Redis backend
# =============================================================================

class TestRedisLockManager:

    @pytest.mark.asyncio
    async def test_try_lock_sets_key_nx_with_ttl(self):
        client = MagicMock()
        client.set.return_value = True
        locks = RedisLockManager(client, ttl_seconds=120)

        assert await locks.try_lock("cred-1") is True

        args, kwargs = client.set.call_args
        assert args[0].endswith(str(lock_key("cred-1")))
        assert kwargs == {"nx": True, "ex": 120}

    @pytest.mark.asyncio
    async def test_try_lock_denied_when_key_exists(self):
        client = MagicMock()
        client.set.return_value = None

        assert await RedisLockManager(client).try_lock("cred-1") is False

    @pytest.mark.asyncio
    async def test_unlock_releases_with_owner_token(self):
        client = MagicMock()
        client.set.return_value = True
        client.eval.return_value = 1
        locks = RedisLockManager(client)

        await locks.try_lock("cred-1")
        token = client.set.call_args[0][1]

        assert await locks.unlock("cred-1") is True
        script, num_keys, key, passed_token = client.eval.call_args[0]
        assert num_keys == 1
        assert passed_token == token

    @pytest.mark.asyncio
    async def test_unlock_without_lock_does_not_touch_redis(self):
        client = MagicMock()

        assert await RedisLockManager(client).unlock("cred-1") is False
        client.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_redis_error_is_treated_as_not_acquired(self):
        client = MagicMock()
        client.set.side_effect = ConnectionError("redis down")

        assert await RedisLockManager(client).try_lock("cred-1") is False


# =============================================================================
# Backend selection
# =============================================================================

class TestBuildLockManager:

    def test_memory_backend(self):
        settings = RefreshSettings(lock_backend="memory")
        assert isinstance(build_lock_manager(settings), InMemoryLockManager)

    def test_postgres_backend_requires_session(self):
        with pytest.raises(ValueError, match="db_session"):
            build_lock_manager(RefreshSettings(lock_backend="postgres"))

    def test_postgres_backend(self):
        locks = build_lock_manager(RefreshSettings(), db_session=MagicMock())
        assert isinstance(locks, AdvisoryLockManager)

    def test_redis_backend_with_client(self):
        settings = RefreshSettings(lock_backend="redis", lock_ttl_seconds=60)
        locks = build_lock_manager(settings, redis_client=MagicMock())
        assert isinstance(locks, RedisLockManager)

    def test_redis_backend_requires_url_or_client(self):
        with pytest.raises(ValueError, match="REDIS_URL"):
            build_lock_manager(RefreshSettings(lock_backend="redis"))

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValueError, match="lock_backend"):
            RefreshSettings(lock_backend="zookeeper")
