"""
Unit tests for the Redis-backed idempotency store and connection wrapper.

The Redis client is mocked; no server is needed.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from flowguard.config.settings import RedisSettings
from flowguard.retry.models import IdempotencyEntry, IdempotencyState
from flowguard.storage.redis.cache import RedisIdempotencyStore
from flowguard.storage.redis.connection import RedisConnection


def stored(state: IdempotencyState, owner: str = None, result=None) -> str:
    entry = IdempotencyEntry.create("k", "send", "exec-1", 60, state=state, owner=owner, result=result)
    return json.dumps(entry.model_dump(mode="json"))


@pytest.fixture
def mock_redis():
    """Create mock Redis client."""
    mock = MagicMock()
    mock.get = AsyncMock(return_value=None)
    mock.set = AsyncMock(return_value=True)
    mock.setex = AsyncMock()
    mock.delete = AsyncMock()
    return mock


@pytest.fixture
def store(mock_redis) -> RedisIdempotencyStore:
    return RedisIdempotencyStore(mock_redis, key_prefix="test:idem:")


class TestRedisIdempotencyStore:
    """Tests for Redis key handling."""

    @pytest.mark.asyncio
    async def test_claim_uses_set_nx(self, store, mock_redis):
        """Test claims are written atomically with an expiry."""
        assert await store.claim("k", "send", "exec-1", "worker-a", 300)

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "test:idem:k"
        assert kwargs == {"nx": True, "ex": 300}
        payload = json.loads(args[1])
        assert payload["state"] == "claimed"
        assert payload["owner"] == "worker-a"

    @pytest.mark.asyncio
    async def test_claim_taken(self, store, mock_redis):
        """Test a refused SET NX reports the key as taken."""
        mock_redis.set.return_value = None

        assert not await store.claim("k", "send", "exec-1", "worker-a", 300)

    @pytest.mark.asyncio
    async def test_complete_uses_setex(self, store, mock_redis):
        """Test results overwrite the claim with the result TTL."""
        await store.complete("k", "send", "exec-1", {"id": "m-1"}, 86400)

        key, ttl, data = mock_redis.setex.call_args.args
        assert key == "test:idem:k"
        assert ttl == 86400
        assert json.loads(data)["result"] == {"id": "m-1"}
        assert json.loads(data)["state"] == "completed"

    @pytest.mark.asyncio
    async def test_get(self, store, mock_redis):
        """Test entries are decoded from JSON."""
        assert await store.get("k") is None

        mock_redis.get.return_value = stored(IdempotencyState.COMPLETED, result=[1, 2])
        entry = await store.get("k")

        assert entry.state == IdempotencyState.COMPLETED
        assert entry.result == [1, 2]
        mock_redis.get.assert_awaited_with("test:idem:k")

    @pytest.mark.asyncio
    async def test_release_own_claim(self, store, mock_redis):
        """Test the owner's claim is deleted."""
        mock_redis.get.return_value = stored(IdempotencyState.CLAIMED, owner="worker-a")

        await store.release("k", "worker-a")

        mock_redis.delete.assert_awaited_once_with("test:idem:k")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "state,owner",
        [
            (IdempotencyState.CLAIMED, "worker-b"),
            (IdempotencyState.COMPLETED, None),
        ],
    )
    async def test_release_keeps_other_entries(self, store, mock_redis, state, owner):
        """Test foreign claims and completed results are kept."""
        mock_redis.get.return_value = stored(state, owner=owner)

        await store.release("k", "worker-a")

        mock_redis.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_count_completed(self, store, mock_redis):
        """Test only completed entries are counted."""
        data = {
            "test:idem:a": stored(IdempotencyState.COMPLETED),
            "test:idem:b": stored(IdempotencyState.CLAIMED, owner="worker-a"),
            "test:idem:c": stored(IdempotencyState.COMPLETED),
        }

        async def scan_iter(match=None):
            for key in data:
                yield key

        mock_redis.scan_iter = MagicMock(side_effect=scan_iter)
        mock_redis.get = AsyncMock(side_effect=lambda key: data.get(key))

        assert await store.count() == 2
        mock_redis.scan_iter.assert_called_once_with(match="test:idem:*")

    @pytest.mark.asyncio
    async def test_purge_is_noop(self, store):
        """Test expiry is left to Redis."""
        assert await store.purge_expired() == 0


class TestRedisConnection:
    """Tests for the connection wrapper before initialization."""

    def test_client_requires_init(self):
        """Test accessing the client before init fails."""
        connection = RedisConnection(RedisSettings())

        with pytest.raises(RuntimeError):
            connection.client

    @pytest.mark.asyncio
    async def test_health_check_uninitialized(self):
        """Test an uninitialized connection is unhealthy."""
        assert await RedisConnection(RedisSettings()).health_check() is False

    @pytest.mark.asyncio
    async def test_health_check_ping_failure(self):
        """Test a failing ping reports unhealthy."""
        connection = RedisConnection(RedisSettings())
        connection._client = MagicMock()
        connection._client.ping = AsyncMock(side_effect=redis.ConnectionError("down"))

        assert await connection.health_check() is False
