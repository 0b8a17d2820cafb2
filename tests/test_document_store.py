"""
Unit tests for the document stores.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from crm_messaging.core.document_store import MemoryDocumentStore, RedisDocumentStore
from crm_messaging.core.exceptions import DocumentNotFoundError
from crm_messaging.core.redis_client import RedisClient


class TestMemoryDocumentStore:
    """Test cases for the in-process store."""

    @pytest.mark.asyncio
    async def test_set_and_get_carries_id(self, store):
        await store.set("messages", "m1", {"status": "pending"})

        document = await store.get("messages", "m1")

        assert document == {"status": "pending", "id": "m1"}
        assert await store.get("messages", "missing") is None

    @pytest.mark.asyncio
    async def test_add_generates_id(self, store):
        document_id = await store.add("failed_messages", {"message_id": "m1"})

        assert document_id
        assert (await store.get("failed_messages", document_id))["message_id"] == "m1"

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, store):
        await store.set("messages", "m1", {"status": "pending", "attempts": 0})

        updated = await store.update("messages", "m1", {"status": "sent"})

        assert updated == {"status": "sent", "attempts": 0, "id": "m1"}

    @pytest.mark.asyncio
    async def test_update_missing_document_raises(self, store):
        with pytest.raises(DocumentNotFoundError):
            await store.update("messages", "missing", {"status": "sent"})

    @pytest.mark.asyncio
    async def test_query_filters_on_equality(self, store):
        await store.set("retry_records", "a", {"status": "retrying"})
        await store.set("retry_records", "b", {"status": "dlq"})
        await store.set("retry_records", "c", {"status": "retrying"})

        retrying = await store.query("retry_records", {"status": "retrying"})

        assert sorted(document["id"] for document in retrying) == ["a", "c"]
        assert await store.count("retry_records") == 3

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, store):
        await store.set("messages", "m1", {"metadata": {"k": "v"}})

        document = await store.get("messages", "m1")
        document["metadata"]["k"] = "changed"

        assert (await store.get("messages", "m1"))["metadata"]["k"] == "v"

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.set("messages", "m1", {})

        assert await store.delete("messages", "m1") is True
        assert await store.delete("messages", "m1") is False


class TestRedisDocumentStore:
    """Test cases for the Redis hash-backed store."""

    @pytest.fixture
    def redis(self):
        redis_mock = MagicMock(spec=RedisClient)
        redis_mock.hash_set_json = AsyncMock()
        redis_mock.hash_get_json = AsyncMock(return_value=None)
        redis_mock.hash_get_all_json = AsyncMock(return_value={})
        redis_mock.hash_delete = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        return redis_mock

    @pytest.mark.asyncio
    async def test_set_writes_collection_hash(self, redis):
        store = RedisDocumentStore(redis)

        await store.set("messages", "m1", {"status": "sent"})

        redis.hash_set_json.assert_called_once_with("doc:messages", "m1", {"status": "sent", "id": "m1"})

    @pytest.mark.asyncio
    async def test_update_missing_document_raises(self, redis):
        store = RedisDocumentStore(redis)

        with pytest.raises(DocumentNotFoundError):
            await store.update("messages", "m1", {"status": "sent"})

    @pytest.mark.asyncio
    async def test_update_merges_existing(self, redis):
        redis.hash_get_json.return_value = {"status": "pending", "id": "m1"}
        store = RedisDocumentStore(redis)

        updated = await store.update("messages", "m1", {"status": "sent"})

        assert updated["status"] == "sent"
        redis.hash_set_json.assert_called_once_with("doc:messages", "m1", {"status": "sent", "id": "m1"})

    @pytest.mark.asyncio
    async def test_query_filters(self, redis):
        redis.hash_get_all_json.return_value = {
            "a": {"status": "retrying", "id": "a"},
            "b": {"status": "dlq", "id": "b"},
        }
        store = RedisDocumentStore(redis)

        assert await store.query("retry_records", {"status": "dlq"}) == [{"status": "dlq", "id": "b"}]

    @pytest.mark.asyncio
    async def test_health_check_pings(self, redis):
        store = RedisDocumentStore(redis)

        assert await store.health_check() is True
        redis.ping.assert_called_once()
