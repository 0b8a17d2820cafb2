"""
Unit tests for the retry schedules.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from crm_messaging.core.redis_client import RedisClient
from crm_messaging.core.retry_schedule import MemoryRetrySchedule, RedisRetrySchedule


class TestMemoryRetrySchedule:
    """Test cases for the in-process schedule."""

    @pytest.mark.asyncio
    async def test_pop_due_returns_due_ids_earliest_first(self, schedule):
        await schedule.schedule("b", 20.0)
        await schedule.schedule("a", 10.0)
        await schedule.schedule("c", 30.0)

        assert await schedule.pop_due(25.0) == ["a", "b"]
        assert await schedule.count() == 1
        assert await schedule.pop_due(25.0) == []

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_previous_entry(self, schedule):
        """Two schedules for one id leave exactly one entry, at the later time."""
        await schedule.schedule("m1", 10.0)
        await schedule.schedule("m1", 50.0)

        assert await schedule.count() == 1
        assert await schedule.due_at("m1") == 50.0
        assert await schedule.pop_due(20.0) == []
        assert await schedule.pop_due(50.0) == ["m1"]
        assert await schedule.pop_due(100.0) == []

    @pytest.mark.asyncio
    async def test_rescheduling_earlier_fires_once(self, schedule):
        await schedule.schedule("m1", 50.0)
        await schedule.schedule("m1", 10.0)

        assert await schedule.pop_due(100.0) == ["m1"]

    @pytest.mark.asyncio
    async def test_cancel(self, schedule):
        await schedule.schedule("m1", 10.0)

        assert await schedule.cancel("m1") is True
        assert await schedule.cancel("m1") is False
        assert await schedule.contains("m1") is False
        assert await schedule.pop_due(100.0) == []


class TestRedisRetrySchedule:
    """Test cases for the Redis-backed schedule."""

    @pytest.fixture
    def redis(self):
        redis_mock = MagicMock(spec=RedisClient)
        redis_mock.schedule_member = AsyncMock()
        redis_mock.remove_member = AsyncMock(return_value=True)
        redis_mock.claim_due_members = AsyncMock(return_value=["m1"])
        redis_mock.member_score = AsyncMock(return_value=42.0)
        redis_mock.count_members = AsyncMock(return_value=1)
        return redis_mock

    @pytest.mark.asyncio
    async def test_delegates_to_sorted_set(self, redis):
        schedule = RedisRetrySchedule(redis, key="retry:test")

        await schedule.schedule("m1", 42.0)
        redis.schedule_member.assert_called_once_with("retry:test", "m1", 42.0)

        assert await schedule.pop_due(100.0) == ["m1"]
        redis.claim_due_members.assert_called_once_with("retry:test", 100.0)

        assert await schedule.due_at("m1") == 42.0
        assert await schedule.contains("m1") is True
        assert await schedule.count() == 1
        assert await schedule.cancel("m1") is True


class TestRedisClientClaims:
    """Claiming due members only returns what this caller removed."""

    @pytest.mark.asyncio
    async def test_claim_skips_members_removed_elsewhere(self):
        client = RedisClient("redis://localhost:6379/0")
        pipe = MagicMock()
        pipe.__aenter__ = AsyncMock(return_value=pipe)
        pipe.__aexit__ = AsyncMock(return_value=False)
        pipe.execute = AsyncMock(return_value=[1, 0])
        client.client = MagicMock()
        client.client.zrangebyscore = AsyncMock(return_value=["m1", "m2"])
        client.client.pipeline.return_value = pipe

        claimed = await client.claim_due_members("retry:schedule", 100.0)

        assert claimed == ["m1"]
        client.client.zrangebyscore.assert_called_once_with("retry:schedule", 0, 100.0)
        client.client.pipeline.assert_called_once_with(transaction=False)
        assert [call.args for call in pipe.zrem.call_args_list] == [
            ("retry:schedule", "m1"),
            ("retry:schedule", "m2"),
        ]
        pipe.execute.assert_awaited_once()
        client.client.zrem.assert_not_called()

    @pytest.mark.asyncio
    async def test_claim_with_nothing_due_skips_pipeline(self):
        client = RedisClient("redis://localhost:6379/0")
        client.client = MagicMock()
        client.client.zrangebyscore = AsyncMock(return_value=[])

        assert await client.claim_due_members("retry:schedule", 100.0) == []
        client.client.pipeline.assert_not_called()

    @pytest.mark.asyncio
    async def test_schedule_member_uses_zadd(self):
        client = RedisClient("redis://localhost:6379/0")
        client.client = AsyncMock()

        await client.schedule_member("retry:schedule", "m1", 12.5)

        client.client.zadd.assert_called_once_with("retry:schedule", {"m1": 12.5})
