"""
Idempotency stores.

An entry is first written as a claim while the executor runs and is then
either converted into a completed entry holding the result or released on
failure. Claims expire on their own so a crashed executor cannot block a
key forever.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional

from flowguard.retry.models import IdempotencyEntry, IdempotencyState, utcnow


class IdempotencyStore(ABC):
    """Storage for idempotency claims and cached results."""

    @abstractmethod
    async def get(self, key: str) -> Optional[IdempotencyEntry]:
        """Get a live entry, or None if absent or expired."""

    @abstractmethod
    async def claim(
        self,
        key: str,
        node_id: str,
        execution_id: str,
        owner: str,
        ttl_seconds: int,
    ) -> bool:
        """
        Atomically write a claim if no live entry exists.

        Returns:
            True if the claim was written, False if the key is taken
        """

    @abstractmethod
    async def complete(
        self,
        key: str,
        node_id: str,
        execution_id: str,
        result: Any,
        ttl_seconds: int,
    ) -> None:
        """Store the result, replacing any claim."""

    @abstractmethod
    async def release(self, key: str, owner: str) -> None:
        """Drop a claim held by ``owner``. Completed entries are kept."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Remove expired entries; return how many were removed."""

    @abstractmethod
    async def count(self) -> int:
        """Number of live completed entries."""


class InMemoryIdempotencyStore(IdempotencyStore):
    """
    Process-local idempotency store.

    Plain dict access is atomic under cooperative scheduling, so claims need
    no lock.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._entries: dict[str, IdempotencyEntry] = {}
        self._clock = clock

    def _live(self, key: str) -> Optional[IdempotencyEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[IdempotencyEntry]:
        return self._live(key)

    async def claim(
        self,
        key: str,
        node_id: str,
        execution_id: str,
        owner: str,
        ttl_seconds: int,
    ) -> bool:
        if self._live(key) is not None:
            return False
        entry = IdempotencyEntry.create(
            key, node_id, execution_id, ttl_seconds, state=IdempotencyState.CLAIMED,
            owner=owner, now=self._clock(),
        )
        self._entries[key] = entry
        return True

    async def complete(
        self,
        key: str,
        node_id: str,
        execution_id: str,
        result: Any,
        ttl_seconds: int,
    ) -> None:
        entry = IdempotencyEntry.create(
            key, node_id, execution_id, ttl_seconds, state=IdempotencyState.COMPLETED,
            result=result, now=self._clock(),
        )
        self._entries[key] = entry

    async def release(self, key: str, owner: str) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.state == IdempotencyState.CLAIMED and entry.owner == owner:
            del self._entries[key]

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def count(self) -> int:
        now = self._clock()
        return sum(
            1 for entry in self._entries.values()
            if entry.state == IdempotencyState.COMPLETED and not entry.is_expired(now)
        )
