"""
Unit tests for the RabbitMQ broker client.

aio_pika.connect is patched with mocks that record the declared topology.
"""
import asyncio
import json

import aio_pika
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from crm_messaging.core.broker import ROUTING_OUTBOUND, RabbitMQBrokerClient
from crm_messaging.core.exceptions import BrokerConnectionError, BrokerError
from crm_messaging.schemas.queue import InboundWebhookEnvelope


class FakeChannel:
    """Records declarations made on a channel."""

    def __init__(self):
        self.is_closed = False
        self.exchange = MagicMock()
        self.exchange.publish = AsyncMock()
        self.declared = {}
        self.queue_mocks = {}
        self.set_qos = AsyncMock()
        self.close = AsyncMock()
        self.declare_exchange = AsyncMock(return_value=self.exchange)

    async def declare_queue(self, name, durable=False, arguments=None, passive=False):
        queue = self.queue_mocks.get(name)
        if queue is None:
            queue = MagicMock()
            queue.name = name
            queue.bind = AsyncMock()
            queue.consume = AsyncMock(return_value=f"ctag-{name}")
            queue.cancel = AsyncMock()
            queue.purge = AsyncMock(return_value=MagicMock(message_count=4))
            queue.declaration_result = MagicMock(message_count=7, consumer_count=1)
            self.queue_mocks[name] = queue
        if not passive:
            self.declared[name] = {"durable": durable, "arguments": arguments}
        return queue

    async def get_queue(self, name):
        return self.queue_mocks[name]


def make_connection(channel):
    connection = MagicMock()
    connection.is_closed = False
    connection.channel = AsyncMock(return_value=channel)
    connection.close = AsyncMock()
    return connection


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def broker(test_settings, events):
    return RabbitMQBrokerClient(test_settings, events=events, sleep=AsyncMock())


class TestTopology:
    """Test cases for connection and topology declaration."""

    @pytest.mark.asyncio
    async def test_connect_declares_exchange_queues_and_dead_letter_queues(self, broker, channel, test_settings):
        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(return_value=make_connection(channel))):
            await broker.connect()

        assert broker.is_connected is True
        channel.set_qos.assert_awaited_once_with(prefetch_count=test_settings.RABBITMQ_PREFETCH_COUNT)
        channel.declare_exchange.assert_awaited_once_with(
            test_settings.RABBITMQ_EXCHANGE_MESSAGES, aio_pika.ExchangeType.TOPIC, durable=True
        )

        outbound = test_settings.RABBITMQ_QUEUE_OUTBOUND
        assert channel.declared[outbound] == {
            "durable": True,
            "arguments": {
                "x-message-ttl": 3600000,
                "x-dead-letter-exchange": test_settings.RABBITMQ_EXCHANGE_MESSAGES,
                "x-dead-letter-routing-key": f"{outbound}.dlq",
            },
        }
        assert channel.declared[f"{outbound}.dlq"] == {"durable": True, "arguments": {"x-message-ttl": 86400000}}
        assert len(channel.declared) == 6

        channel.queue_mocks[outbound].bind.assert_awaited_once_with(channel.exchange, routing_key=ROUTING_OUTBOUND)
        channel.queue_mocks[f"{outbound}.dlq"].bind.assert_awaited_once_with(
            channel.exchange, routing_key=f"{outbound}.dlq"
        )

    @pytest.mark.asyncio
    async def test_reconnect_uses_linear_delay_then_gives_up(self, broker, events):
        on_fatal = AsyncMock()
        broker.on_fatal = on_fatal

        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(side_effect=ConnectionError("down"))):
            with pytest.raises(BrokerConnectionError):
                await broker.connect()

        delays = [call.args[0] for call in broker._sleep.await_args_list]
        assert delays == [5.0, 10.0, 15.0, 20.0, 25.0]
        on_fatal.assert_awaited_once()
        assert len(events.by_kind("broker.connection_lost")) == 1

    @pytest.mark.asyncio
    async def test_reconnect_succeeds_on_later_attempt(self, broker, channel, events):
        connect = AsyncMock(side_effect=[ConnectionError("down"), ConnectionError("down"), make_connection(channel)])

        with patch("crm_messaging.core.broker.aio_pika.connect", new=connect):
            await broker.connect()

        assert broker.is_connected is True
        reconnected = events.by_kind("broker.reconnected")
        assert len(reconnected) == 1
        assert reconnected[0].data["attempt"] == 2

    @pytest.mark.asyncio
    async def test_close(self, broker, channel):
        connection = make_connection(channel)
        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(return_value=connection)):
            await broker.connect()

        await broker.close()

        channel.close.assert_awaited_once()
        connection.close.assert_awaited_once()
        assert broker.is_connected is False
        assert await broker.health_check() is False


class TestPublishing:
    """Test cases for publishing envelopes."""

    @pytest.mark.asyncio
    async def test_publish_outbound(self, broker, channel, text_envelope):
        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(return_value=make_connection(channel))):
            await broker.connect()

        assert await broker.publish_outbound(text_envelope) is True

        message = channel.exchange.publish.call_args.args[0]
        assert channel.exchange.publish.call_args.kwargs["routing_key"] == ROUTING_OUTBOUND
        assert json.loads(message.body)["id"] == "m1"
        assert message.message_id == "m1"
        assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
        assert message.headers["ticketId"] == "t1"

    @pytest.mark.asyncio
    async def test_publish_when_disconnected_tries_once(self, broker, events, text_envelope):
        connect = AsyncMock(side_effect=ConnectionError("down"))

        with patch("crm_messaging.core.broker.aio_pika.connect", new=connect):
            assert await broker.publish_outbound(text_envelope) is False

        assert connect.await_count == 1
        broker._sleep.assert_not_awaited()
        failures = events.by_kind("broker.publish_failed")
        assert len(failures) == 1
        assert failures[0].message_id == "m1"

    @pytest.mark.asyncio
    async def test_publish_error_returns_false(self, broker, channel, text_envelope):
        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(return_value=make_connection(channel))):
            await broker.connect()
        channel.exchange.publish.side_effect = RuntimeError("channel closed")

        assert await broker.publish_outbound(text_envelope) is False

    @pytest.mark.asyncio
    async def test_publish_webhook_routes_by_event(self, broker, channel):
        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(return_value=make_connection(channel))):
            await broker.connect()

        await broker.publish_webhook(InboundWebhookEnvelope(event="messages.upsert", instance_id="inst-1"))

        assert channel.exchange.publish.call_args.kwargs["routing_key"] == "webhook.messages.upsert"


class TestConsuming:
    """Test cases for consumers and acknowledgements."""

    @staticmethod
    def incoming(payload):
        message = MagicMock()
        message.body = json.dumps(payload).encode()
        message.message_id = payload.get("id")
        message.delivery_tag = 1
        message.ack = AsyncMock()
        message.nack = AsyncMock()
        return message

    @pytest.mark.asyncio
    async def test_consume_requires_connection(self, broker):
        with pytest.raises(BrokerError):
            await broker.consume("crm.messages.outbound", AsyncMock())

    @pytest.mark.asyncio
    async def test_successful_handler_acks(self, broker, channel, test_settings):
        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(return_value=make_connection(channel))):
            await broker.connect()
        handler = AsyncMock()
        queue_name = test_settings.RABBITMQ_QUEUE_OUTBOUND

        tag = await broker.consume(queue_name, handler)
        on_message = channel.queue_mocks[queue_name].consume.call_args.args[0]
        message = self.incoming({"id": "m1"})
        await on_message(message)

        assert tag == f"ctag-{queue_name}"
        handler.assert_awaited_once_with({"id": "m1"})
        message.ack.assert_awaited_once()
        message.nack.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_handler_nacks_without_requeue(self, broker, channel, test_settings, events):
        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(return_value=make_connection(channel))):
            await broker.connect()
        queue_name = test_settings.RABBITMQ_QUEUE_OUTBOUND

        await broker.consume(queue_name, AsyncMock(side_effect=ValueError("bad payload")))
        on_message = channel.queue_mocks[queue_name].consume.call_args.args[0]
        message = self.incoming({"id": "m1"})
        await on_message(message)

        message.nack.assert_awaited_once_with(requeue=False)
        message.ack.assert_not_called()
        assert events.by_kind("consumer.handler_failed")[0].error == "bad payload"

    @pytest.mark.asyncio
    async def test_cancel_consumer(self, broker, channel, test_settings):
        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(return_value=make_connection(channel))):
            await broker.connect()
        queue_name = test_settings.RABBITMQ_QUEUE_OUTBOUND
        tag = await broker.consume(queue_name, AsyncMock())

        assert await broker.cancel(tag) is True
        assert await broker.cancel(tag) is False
        channel.queue_mocks[queue_name].cancel.assert_awaited_once_with(tag)

    @pytest.mark.asyncio
    async def test_consumers_restored_after_reconnect(self, broker, test_settings):
        first, second = FakeChannel(), FakeChannel()
        first_connection = make_connection(first)
        connect = AsyncMock(side_effect=[first_connection, make_connection(second)])
        queue_name = test_settings.RABBITMQ_QUEUE_OUTBOUND

        with patch("crm_messaging.core.broker.aio_pika.connect", new=connect):
            await broker.connect()
            await broker.consume(queue_name, AsyncMock())
            first.is_closed = True
            await broker.reconnect()

        second.queue_mocks[queue_name].consume.assert_awaited_once()
        first_connection.close.assert_awaited_once()


class TestManagement:
    """Test cases for queue stats and purge."""

    @pytest.mark.asyncio
    async def test_queue_info_and_purge(self, broker, channel, test_settings):
        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(return_value=make_connection(channel))):
            await broker.connect()
        queue_name = test_settings.RABBITMQ_QUEUE_OUTBOUND

        info = await broker.queue_info(queue_name)
        assert info.message_count == 7
        assert info.consumer_count == 1

        assert await broker.purge_queue(queue_name) == 4

    @pytest.mark.asyncio
    async def test_management_requires_connection(self, broker):
        with pytest.raises(BrokerError):
            await broker.queue_info("crm.messages.outbound")
        with pytest.raises(BrokerError):
            await broker.purge_queue("crm.messages.outbound")


class TestReconnection:
    """Test cases for replacing a lost connection."""

    @pytest.mark.asyncio
    async def test_publish_replaces_stale_connection(self, broker, text_envelope):
        first, second = FakeChannel(), FakeChannel()
        first_connection, second_connection = make_connection(first), make_connection(second)
        connect = AsyncMock(side_effect=[first_connection, second_connection])

        with patch("crm_messaging.core.broker.aio_pika.connect", new=connect):
            await broker.connect()
            first.is_closed = True
            assert await broker.publish_outbound(text_envelope) is True

        first_connection.close.assert_awaited_once()
        first_connection.close_callbacks.discard.assert_called_once_with(broker._on_connection_closed)
        assert broker.connection is second_connection
        second.exchange.publish.assert_awaited_once()
        first.exchange.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_publishes_share_one_connection(self, broker, channel, text_envelope):
        connections = []

        async def slow_connect(url):
            await asyncio.sleep(0.01)
            connections.append(make_connection(channel))
            return connections[-1]

        with patch("crm_messaging.core.broker.aio_pika.connect", new=slow_connect):
            results = await asyncio.gather(
                broker.publish_outbound(text_envelope),
                broker.publish_outbound(text_envelope),
            )

        assert results == [True, True]
        assert len(connections) == 1
        assert broker.connection is connections[0]
        assert channel.exchange.publish.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_setup_closes_new_connection(self, broker, channel, events, text_envelope):
        channel.set_qos.side_effect = RuntimeError("channel refused")
        connection = make_connection(channel)

        with patch("crm_messaging.core.broker.aio_pika.connect", new=AsyncMock(return_value=connection)):
            assert await broker.publish_outbound(text_envelope) is False

        connection.close.assert_awaited_once()
        assert broker.connection is None
        assert len(events.by_kind("broker.publish_failed")) == 1

    @pytest.mark.asyncio
    async def test_unexpected_close_starts_background_reconnect(self, broker, channel, events):
        first_connection = make_connection(channel)
        second_channel = FakeChannel()
        connect = AsyncMock(side_effect=[first_connection, make_connection(second_channel)])

        with patch("crm_messaging.core.broker.aio_pika.connect", new=connect):
            await broker.connect()
            first_connection.is_closed = True
            broker._on_connection_closed(first_connection, ConnectionError("reset"))
            broker._on_connection_closed(first_connection, ConnectionError("reset"))
            await broker._reconnect_task

        assert connect.await_count == 2
        assert broker.is_connected is True
        assert len(events.by_kind("broker.reconnected")) == 1
