"""Redis storage for shared idempotency state."""

from flowguard.storage.redis.cache import RedisIdempotencyStore
from flowguard.storage.redis.connection import RedisConnection

__all__ = ["RedisConnection", "RedisIdempotencyStore"]
