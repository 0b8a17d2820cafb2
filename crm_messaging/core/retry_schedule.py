"""
Durable schedule of pending retries.

One entry per message id holding its due time (epoch seconds). Scheduling an
id that is already present moves it instead of adding a second entry.
"""
import heapq
import itertools
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from crm_messaging.core.redis_client import RedisClient


class RetrySchedule(ABC):

    @abstractmethod
    async def schedule(self, message_id: str, due_at: float) -> None:
        ...

    @abstractmethod
    async def cancel(self, message_id: str) -> bool:
        """Remove a pending entry. Returns False if nothing was scheduled."""

    @abstractmethod
    async def pop_due(self, now: float) -> List[str]:
        """Remove and return the ids that are due at ``now``, earliest first."""

    @abstractmethod
    async def due_at(self, message_id: str) -> Optional[float]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    async def contains(self, message_id: str) -> bool:
        return await self.due_at(message_id) is not None


class MemoryRetrySchedule(RetrySchedule):
    """Min-heap of due times with lazy invalidation of replaced entries."""

    def __init__(self):
        self._heap: List[Tuple[float, int, str]] = []
        self._entries: Dict[str, Tuple[float, int]] = {}
        self._sequence = itertools.count()

    async def schedule(self, message_id, due_at):
        seq = next(self._sequence)
        self._entries[message_id] = (due_at, seq)
        heapq.heappush(self._heap, (due_at, seq, message_id))

    async def cancel(self, message_id):
        return self._entries.pop(message_id, None) is not None

    async def pop_due(self, now):
        due = []
        while self._heap and self._heap[0][0] <= now:
            due_at, seq, message_id = heapq.heappop(self._heap)
            if self._entries.get(message_id) != (due_at, seq):
                continue  # stale
            del self._entries[message_id]
            due.append(message_id)
        return due

    async def due_at(self, message_id):
        entry = self._entries.get(message_id)
        return entry[0] if entry else None

    async def count(self):
        return len(self._entries)


class RedisRetrySchedule(RetrySchedule):
    """ZSET keyed by message id, scored by due time. Survives restarts."""

    def __init__(self, redis_client: RedisClient, key: str = "retry:schedule"):
        self.redis = redis_client
        self.key = key

    async def schedule(self, message_id, due_at):
        await self.redis.schedule_member(self.key, message_id, due_at)

    async def cancel(self, message_id):
        return await self.redis.remove_member(self.key, message_id)

    async def pop_due(self, now):
        return await self.redis.claim_due_members(self.key, now)

    async def due_at(self, message_id):
        return await self.redis.member_score(self.key, message_id)

    async def count(self):
        return await self.redis.count_members(self.key)
