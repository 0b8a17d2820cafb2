import json
from typing import Any, Dict, List, Optional
import redis.asyncio as redis
from redis.asyncio import ConnectionPool

from crm_messaging.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Redis client backing the document store and the retry schedule.
    """

    def __init__(self, url: str, max_connections: int = 50):
        self.pool = ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True
        )
        self.client: Optional[redis.Redis] = None

    async def connect(self):
        """Initialize Redis connection."""
        try:
            self.client = redis.Redis(connection_pool=self.pool)
            await self.client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def disconnect(self):
        """Close Redis connection."""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("Redis connection closed")

    async def ping(self) -> bool:
        try:
            if not self.client:
                return False
            return bool(await self.client.ping())
        except Exception as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    # Documents: one hash per collection, JSON values keyed by document id

    async def hash_set_json(self, key: str, field: str, value: Dict[str, Any]):
        await self.client.hset(key, field, json.dumps(value, default=str))

    async def hash_get_json(self, key: str, field: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.hget(key, field)
        return json.loads(raw) if raw is not None else None

    async def hash_get_all_json(self, key: str) -> Dict[str, Dict[str, Any]]:
        raw = await self.client.hgetall(key)
        return {field: json.loads(value) for field, value in raw.items()}

    async def hash_delete(self, key: str, field: str) -> bool:
        return bool(await self.client.hdel(key, field))

    # Schedules: ZSET with due-time scores

    async def schedule_member(self, key: str, member: str, due_at: float):
        """Add or move a member; a member appears at most once in the set."""
        await self.client.zadd(key, {member: due_at})
        logger.debug("Scheduled member", key=key, member=member, due_at=due_at)

    async def remove_member(self, key: str, member: str) -> bool:
        return bool(await self.client.zrem(key, member))

    async def claim_due_members(self, key: str, now: float) -> List[str]:
        """Return members whose score is <= now, removing them from the set.

        A member is only returned if this caller's ZREM removed it. The
        removals go out in a single pipelined round trip.
        """
        members = await self.client.zrangebyscore(key, 0, now)
        if not members:
            return []
        async with self.client.pipeline(transaction=False) as pipe:
            for member in members:
                pipe.zrem(key, member)
            removed = await pipe.execute()
        claimed = [member for member, count in zip(members, removed) if count]
        if claimed:
            logger.debug(f"Claimed {len(claimed)} due members from {key}")
        return claimed

    async def member_score(self, key: str, member: str) -> Optional[float]:
        return await self.client.zscore(key, member)

    async def count_members(self, key: str) -> int:
        try:
            return await self.client.zcard(key)
        except Exception as e:
            logger.error(f"Failed to count members of {key}: {e}")
            return 0
