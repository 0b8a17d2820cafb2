"""
RabbitMQ client for the message pipeline.

Declares the topic exchange, the work queues and their dead-letter queues,
publishes JSON envelopes and runs acknowledging consumers. An unexpected
connection close starts a reconnect loop with linearly growing delay; when
it runs out of attempts the owner is told through ``on_fatal``.
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from crm_messaging.core.config import Settings, settings as default_settings
from crm_messaging.core.events import EventSink, PipelineEvent, Severity
from crm_messaging.core.exceptions import BrokerConnectionError, BrokerError
from crm_messaging.core.logging import get_logger
from crm_messaging.schemas.queue import InboundWebhookEnvelope, MessageEnvelope, QueueInfo

logger = get_logger(__name__)

ROUTING_OUTBOUND = "message.outbound"
ROUTING_INBOUND = "message.inbound"
ROUTING_WEBHOOK = "webhook.*"

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]
FatalCallback = Callable[[BrokerConnectionError], Awaitable[None]]


class RabbitMQBrokerClient:

    def __init__(
        self,
        config: Settings = default_settings,
        events: Optional[EventSink] = None,
        on_fatal: Optional[FatalCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.url = config.RABBITMQ_URL
        self.exchange_name = config.RABBITMQ_EXCHANGE_MESSAGES
        self.max_reconnect_attempts = config.RABBITMQ_MAX_RECONNECT_ATTEMPTS
        self.reconnect_delay = config.RABBITMQ_RECONNECT_DELAY_SECONDS
        self.events = events or EventSink()
        self.on_fatal = on_fatal
        self._sleep = sleep

        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None
        self.queues: Dict[str, AbstractQueue] = {}

        # queue name -> (handler, current consumer tag)
        self._consumers: Dict[str, Tuple[MessageHandler, str]] = {}
        self._closing = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()

    @property
    def bindings(self) -> Dict[str, str]:
        """Work queue name -> routing key bound on the exchange."""
        return {
            self.config.RABBITMQ_QUEUE_OUTBOUND: ROUTING_OUTBOUND,
            self.config.RABBITMQ_QUEUE_INBOUND: ROUTING_INBOUND,
            self.config.RABBITMQ_QUEUE_WEBHOOKS: ROUTING_WEBHOOK,
        }

    def dead_letter_name(self, queue_name: str) -> str:
        return f"{queue_name}{self.config.RABBITMQ_DLQ_SUFFIX}"

    @property
    def is_connected(self) -> bool:
        return (
            self.connection is not None
            and not self.connection.is_closed
            and self.channel is not None
            and not self.channel.is_closed
        )

    # Connection lifecycle

    async def _establish(self):
        async with self._connect_lock:
            # Another caller may have reconnected while this one waited.
            if self.is_connected:
                return
            await self._discard_connection()
            self.connection = await aio_pika.connect(self.url)
            self.connection.close_callbacks.add(self._on_connection_closed)
            try:
                self.channel = await self.connection.channel()
                await self.channel.set_qos(prefetch_count=self.config.RABBITMQ_PREFETCH_COUNT)
                await self.setup_topology()
                await self._restore_consumers()
            except Exception:
                await self._discard_connection()
                raise
            logger.info("Connected to RabbitMQ", exchange=self.exchange_name)

    async def _discard_connection(self):
        """Close a half-dead connection without triggering the reconnect loop."""
        connection, channel = self.connection, self.channel
        self.connection = None
        self.channel = None
        self.exchange = None
        self.queues = {}
        if connection is not None:
            connection.close_callbacks.discard(self._on_connection_closed)
        for resource in (channel, connection):
            if resource is None or resource.is_closed:
                continue
            try:
                await resource.close()
            except Exception as e:
                logger.warning(f"Error closing stale RabbitMQ resource: {e}")

    async def connect(self):
        """Connect and declare topology, falling back to the reconnect loop."""
        self._closing = False
        try:
            await self._establish()
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            await self.reconnect()

    async def reconnect(self):
        """
        Retry the connection with delay ``reconnect_delay * attempt``.

        Raises BrokerConnectionError once every attempt has failed.
        """
        for attempt in range(1, self.max_reconnect_attempts + 1):
            delay = self.reconnect_delay * attempt
            logger.warning(
                "Reconnecting to RabbitMQ",
                attempt=attempt,
                max_attempts=self.max_reconnect_attempts,
                delay=delay,
            )
            await self._sleep(delay)
            if self._closing:
                return
            try:
                await self._establish()
                self.events.emit(PipelineEvent(
                    kind="broker.reconnected",
                    detail="Reconnected to RabbitMQ",
                    data={"attempt": attempt},
                ))
                return
            except Exception as e:
                logger.error(f"Reconnect attempt {attempt} failed: {e}")

        error = BrokerConnectionError(
            f"RabbitMQ unreachable after {self.max_reconnect_attempts} reconnect attempts"
        )
        self.events.emit(PipelineEvent(
            kind="broker.connection_lost",
            severity=Severity.CRITICAL,
            detail=str(error),
        ))
        if self.on_fatal is not None:
            await self.on_fatal(error)
        raise error

    def _on_connection_closed(self, sender: Any, exc: Optional[BaseException] = None):
        if self._closing:
            return
        logger.warning(f"RabbitMQ connection closed: {exc}")
        self.channel = None
        self.exchange = None
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_in_background())

    async def _reconnect_in_background(self):
        try:
            await self.reconnect()
        except BrokerConnectionError as e:
            # already escalated through on_fatal
            logger.critical(f"Giving up on RabbitMQ: {e}")

    async def close(self):
        self._closing = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        try:
            if self.channel is not None and not self.channel.is_closed:
                await self.channel.close()
            if self.connection is not None and not self.connection.is_closed:
                await self.connection.close()
        finally:
            self.channel = None
            self.connection = None
            self.exchange = None
            self.queues = {}
            logger.info("RabbitMQ connection closed")

    async def health_check(self) -> bool:
        return self.is_connected

    # Topology

    async def setup_topology(self):
        """Declare the exchange, each work queue and its dead-letter queue."""
        self.exchange = await self.channel.declare_exchange(
            self.exchange_name,
            aio_pika.ExchangeType.TOPIC,
            durable=True,
        )
        for queue_name, routing_key in self.bindings.items():
            dlq_name = self.dead_letter_name(queue_name)

            dlq = await self.channel.declare_queue(
                dlq_name,
                durable=True,
                arguments={"x-message-ttl": self.config.RABBITMQ_DLQ_TTL_MS},
            )
            await dlq.bind(self.exchange, routing_key=dlq_name)

            queue = await self.channel.declare_queue(
                queue_name,
                durable=True,
                arguments={
                    "x-message-ttl": self.config.RABBITMQ_MESSAGE_TTL_MS,
                    "x-dead-letter-exchange": self.exchange_name,
                    "x-dead-letter-routing-key": dlq_name,
                },
            )
            await queue.bind(self.exchange, routing_key=routing_key)

            self.queues[queue_name] = queue
            self.queues[dlq_name] = dlq

    # Publishing

    async def publish(
        self,
        routing_key: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, Any]] = None,
        message_id: Optional[str] = None,
    ) -> bool:
        """
        Publish a JSON payload. Returns False if it could not be handed over.

        When disconnected a single reconnect attempt is made first.
        """
        if not self.is_connected:
            try:
                await self._establish()
            except Exception as e:
                self._report_publish_failure(routing_key, message_id, f"not connected: {e}")
                return False

        message = aio_pika.Message(
            body=json.dumps(payload, default=str).encode(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            headers=headers or {},
            message_id=message_id,
        )
        try:
            await self.exchange.publish(message, routing_key=routing_key)
        except Exception as e:
            self._report_publish_failure(routing_key, message_id, str(e))
            return False

        logger.debug("Message published", routing_key=routing_key, message_id=message_id)
        return True

    def _report_publish_failure(self, routing_key: str, message_id: Optional[str], error: str):
        self.events.emit(PipelineEvent(
            kind="broker.publish_failed",
            severity=Severity.WARNING,
            message_id=message_id,
            detail="Failed to publish message",
            error=error,
            data={"routing_key": routing_key},
        ))

    async def publish_outbound(self, envelope: MessageEnvelope) -> bool:
        return await self.publish(
            ROUTING_OUTBOUND,
            envelope.model_dump(mode="json"),
            headers={
                "ticketId": envelope.ticket_id,
                "contactId": envelope.contact_id,
                "type": envelope.type.value,
            },
            message_id=envelope.id,
        )

    async def publish_inbound(self, envelope: MessageEnvelope) -> bool:
        return await self.publish(
            ROUTING_INBOUND,
            envelope.model_dump(mode="json"),
            headers={"ticketId": envelope.ticket_id, "contactId": envelope.contact_id},
            message_id=envelope.id,
        )

    async def publish_webhook(self, webhook: InboundWebhookEnvelope) -> bool:
        return await self.publish(
            f"webhook.{webhook.event}",
            webhook.model_dump(mode="json"),
            headers={"event": webhook.event, "instance": webhook.instance_id},
        )

    # Consuming

    async def _get_queue(self, queue_name: str) -> AbstractQueue:
        queue = self.queues.get(queue_name)
        if queue is None:
            queue = await self.channel.get_queue(queue_name)
            self.queues[queue_name] = queue
        return queue

    def _wrap_handler(self, queue_name: str, handler: MessageHandler):
        async def on_message(message: AbstractIncomingMessage):
            try:
                payload = json.loads(message.body)
                await handler(payload)
            except Exception as e:
                logger.error(
                    f"Handler failed, dead-lettering delivery: {e}",
                    queue=queue_name,
                    delivery_tag=message.delivery_tag,
                )
                self.events.emit(PipelineEvent(
                    kind="consumer.handler_failed",
                    severity=Severity.WARNING,
                    message_id=message.message_id,
                    detail="Delivery negatively acknowledged",
                    error=str(e),
                    data={"queue": queue_name},
                ))
                await message.nack(requeue=False)
            else:
                await message.ack()

        return on_message

    async def consume(self, queue_name: str, handler: MessageHandler) -> str:
        """Register ``handler`` on ``queue_name`` and return the consumer tag."""
        if not self.is_connected:
            raise BrokerError("Cannot consume: not connected to RabbitMQ")
        queue = await self._get_queue(queue_name)
        consumer_tag = await queue.consume(self._wrap_handler(queue_name, handler))
        self._consumers[queue_name] = (handler, consumer_tag)
        logger.info("Consumer started", queue=queue_name, consumer_tag=consumer_tag)
        return consumer_tag

    async def _restore_consumers(self):
        for queue_name, (handler, _) in list(self._consumers.items()):
            queue = await self._get_queue(queue_name)
            consumer_tag = await queue.consume(self._wrap_handler(queue_name, handler))
            self._consumers[queue_name] = (handler, consumer_tag)
            logger.info("Consumer restored", queue=queue_name, consumer_tag=consumer_tag)

    async def cancel(self, consumer_tag: str) -> bool:
        for queue_name, (_, tag) in list(self._consumers.items()):
            if tag != consumer_tag:
                continue
            del self._consumers[queue_name]
            if self.is_connected:
                queue = await self._get_queue(queue_name)
                await queue.cancel(consumer_tag)
            logger.info("Consumer cancelled", queue=queue_name, consumer_tag=consumer_tag)
            return True
        return False

    # Management

    async def queue_info(self, queue_name: str) -> QueueInfo:
        if not self.is_connected:
            raise BrokerError("Not connected to RabbitMQ")
        queue = await self.channel.declare_queue(queue_name, passive=True)
        result = queue.declaration_result
        return QueueInfo(
            message_count=result.message_count or 0,
            consumer_count=result.consumer_count or 0,
        )

    async def purge_queue(self, queue_name: str) -> int:
        if not self.is_connected:
            raise BrokerError("Not connected to RabbitMQ")
        queue = await self._get_queue(queue_name)
        result = await queue.purge()
        purged = getattr(result, "message_count", 0) or 0
        logger.info("Queue purged", queue=queue_name, purged=purged)
        return purged
