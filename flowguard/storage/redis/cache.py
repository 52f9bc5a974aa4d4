"""
Redis-backed idempotency store.

Shares claims and cached results between processes. Claims are written with
``SET NX EX`` so only one process can hold a key; expiry is left to Redis.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from flowguard.config import get_settings
from flowguard.retry.idempotency import IdempotencyStore
from flowguard.retry.models import IdempotencyEntry, IdempotencyState

logger = logging.getLogger(__name__)


class RedisIdempotencyStore(IdempotencyStore):
    """
    Idempotency entries stored as JSON strings under a key prefix.
    """

    def __init__(self, client: redis.Redis, key_prefix: Optional[str] = None):
        self.client = client
        self.key_prefix = key_prefix if key_prefix is not None else get_settings().redis.key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @staticmethod
    def _dump(entry: IdempotencyEntry) -> str:
        return json.dumps(entry.model_dump(mode="json"), default=str)

    async def get(self, key: str) -> Optional[IdempotencyEntry]:
        data = await self.client.get(self._key(key))
        if not data:
            return None
        return IdempotencyEntry.model_validate(json.loads(data))

    async def claim(
        self,
        key: str,
        node_id: str,
        execution_id: str,
        owner: str,
        ttl_seconds: int,
    ) -> bool:
        entry = IdempotencyEntry.create(
            key, node_id, execution_id, ttl_seconds, state=IdempotencyState.CLAIMED, owner=owner
        )
        written = await self.client.set(self._key(key), self._dump(entry), nx=True, ex=ttl_seconds)
        return bool(written)

    async def complete(
        self,
        key: str,
        node_id: str,
        execution_id: str,
        result: Any,
        ttl_seconds: int,
    ) -> None:
        entry = IdempotencyEntry.create(
            key, node_id, execution_id, ttl_seconds, state=IdempotencyState.COMPLETED, result=result
        )
        await self.client.setex(self._key(key), ttl_seconds, self._dump(entry))

    async def release(self, key: str, owner: str) -> None:
        entry = await self.get(key)
        if entry is not None and entry.state == IdempotencyState.CLAIMED and entry.owner == owner:
            await self.client.delete(self._key(key))

    async def purge_expired(self) -> int:
        # Redis expires keys itself
        return 0

    async def count(self) -> int:
        total = 0
        async for redis_key in self.client.scan_iter(match=f"{self.key_prefix}*"):
            data = await self.client.get(redis_key)
            if data and json.loads(data).get("state") == IdempotencyState.COMPLETED.value:
                total += 1
        return total
