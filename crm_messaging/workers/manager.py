"""
Pipeline manager.

Owns the broker client, retry manager, consumers and the background loops,
and is the single place that starts, stops and restarts them. Built once at
startup and passed to whoever needs it.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from crm_messaging.core.broker import RabbitMQBrokerClient
from crm_messaging.core.config import Settings, settings as default_settings
from crm_messaging.core.delivery_client import EvolutionClient
from crm_messaging.core.document_store import DocumentStore, MemoryDocumentStore, RedisDocumentStore
from crm_messaging.core.events import EventSink, PipelineEvent, RecordingEventSink, Severity
from crm_messaging.core.exceptions import BrokerConnectionError, BrokerError
from crm_messaging.core.logging import get_logger
from crm_messaging.core.queue_policies import policy_from_settings
from crm_messaging.core.redis_client import RedisClient
from crm_messaging.core.retry_schedule import MemoryRetrySchedule, RedisRetrySchedule, RetrySchedule
from crm_messaging.schemas.queue import QueueInfo, RetryStats
from crm_messaging.services.connectivity_service import ConnectivityMonitor
from crm_messaging.services.dedup_service import WebhookDeduplicationCache
from crm_messaging.services.retry_manager import RetryManager
from .base_consumer import BaseConsumer
from .inbound_consumer import InboundMessageConsumer
from .outbound_processor import OutboundQueueProcessor
from .webhook_consumer import WebhookConsumer

logger = get_logger(__name__)


class PipelineManager:

    def __init__(
        self,
        broker: RabbitMQBrokerClient,
        retry_manager: RetryManager,
        consumers: List[BaseConsumer],
        dedup: WebhookDeduplicationCache,
        connectivity: ConnectivityMonitor,
        events: EventSink,
        store: DocumentStore,
        config: Settings = default_settings,
        provider: Optional[EvolutionClient] = None,
        redis: Optional[RedisClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.broker = broker
        self.retry_manager = retry_manager
        self.consumers = consumers
        self.dedup = dedup
        self.connectivity = connectivity
        self.events = events
        self.store = store
        self.config = config
        self.provider = provider
        self.redis = redis
        self._sleep = sleep

        self.broker.on_fatal = self._on_broker_fatal
        self.is_initialized = False
        self.is_running = False
        self.started_at: Optional[float] = None
        self.restart_count = 0
        self._tasks: List[asyncio.Task] = []
        self._restarts: Set[asyncio.Task] = set()
        self._restart_lock = asyncio.Lock()
        self._shutting_down = False

    @classmethod
    def from_settings(cls, config: Settings = default_settings) -> "PipelineManager":
        """Wire every component from configuration."""
        events = RecordingEventSink(maxlen=config.EVENT_LOG_SIZE)

        redis = None
        if config.DOCUMENT_STORE_BACKEND == "redis" or config.RETRY_SCHEDULE_BACKEND == "redis":
            redis = RedisClient(config.REDIS_URL, max_connections=config.REDIS_MAX_CONNECTIONS)

        store: DocumentStore = (
            RedisDocumentStore(redis) if config.DOCUMENT_STORE_BACKEND == "redis" else MemoryDocumentStore()
        )
        schedule: RetrySchedule = (
            RedisRetrySchedule(redis) if config.RETRY_SCHEDULE_BACKEND == "redis" else MemoryRetrySchedule()
        )

        broker = RabbitMQBrokerClient(config, events=events)
        provider = EvolutionClient.from_settings(config)
        retry_manager = RetryManager(
            store, schedule, broker, events=events, policy=policy_from_settings(config), config=config
        )
        consumers = [
            OutboundQueueProcessor(
                broker, store, retry_manager, provider, events=events,
                queue_name=config.RABBITMQ_QUEUE_OUTBOUND,
                default_instance=config.EVOLUTION_DEFAULT_INSTANCE,
            ),
            InboundMessageConsumer(broker, store, events=events, queue_name=config.RABBITMQ_QUEUE_INBOUND),
            WebhookConsumer(broker, store, events=events, queue_name=config.RABBITMQ_QUEUE_WEBHOOKS),
        ]
        return cls(
            broker=broker,
            retry_manager=retry_manager,
            consumers=consumers,
            dedup=WebhookDeduplicationCache(config),
            connectivity=ConnectivityMonitor(config, events=events),
            events=events,
            store=store,
            config=config,
            provider=provider,
            redis=redis,
        )

    # Lifecycle

    async def initialize(self):
        """Connect the broker, declare topology and start the retry manager."""
        if self.is_initialized:
            return
        logger.info("Initializing message pipeline")
        await self.broker.connect()
        await self.retry_manager.start()
        self.is_initialized = True

    async def start(self):
        if self.is_running:
            return
        await self.initialize()
        for consumer in self.consumers:
            await consumer.start()

        self._tasks = [
            asyncio.create_task(self._health_loop()),
            asyncio.create_task(self._maintenance_loop()),
        ]
        if self.connectivity.endpoints:
            self._tasks.append(asyncio.create_task(self.connectivity.run_monitoring()))

        self.is_running = True
        self.started_at = time.time()
        logger.info("Message pipeline started", consumers=len(self.consumers))

    async def stop(self):
        logger.info("Stopping message pipeline")
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []

        for consumer in self.consumers:
            try:
                await consumer.stop()
            except Exception as e:
                logger.error(f"Error stopping consumer {consumer.queue_name}: {e}")

        await self.retry_manager.stop()
        await self.broker.close()
        self.is_running = False
        self.is_initialized = False
        logger.info("Message pipeline stopped")

    async def restart(self):
        async with self._restart_lock:
            logger.warning("Restarting message pipeline")
            self.restart_count += 1
            await self.stop()
            await self.start()
            self.events.emit(PipelineEvent(
                kind="pipeline.restarted",
                severity=Severity.WARNING,
                detail="Message pipeline restarted",
                data={"restart_count": self.restart_count},
            ))

    async def shutdown(self):
        """Stop the pipeline and release HTTP clients."""
        self._shutting_down = True
        restarts = [task for task in self._restarts if task is not asyncio.current_task()]
        for task in restarts:
            task.cancel()
        if restarts:
            await asyncio.gather(*restarts, return_exceptions=True)
        await self.stop()
        if self.provider is not None:
            await self.provider.close()
        await self.connectivity.close()

    async def _on_broker_fatal(self, error: BrokerConnectionError):
        self.events.emit(PipelineEvent(
            kind="pipeline.broker_fatal",
            severity=Severity.CRITICAL,
            detail="Broker connection lost for good, restarting pipeline",
            error=str(error),
        ))
        if self.is_running:
            self._schedule_restart()

    def _schedule_restart(self):
        # One supervisor at a time; it keeps going until a restart sticks.
        if self._shutting_down or any(not task.done() for task in self._restarts):
            return
        task = asyncio.create_task(self._restart_after_fatal())
        self._restarts.add(task)
        task.add_done_callback(self._restarts.discard)

    async def _restart_after_fatal(self):
        attempt = 0
        while not self._shutting_down:
            attempt += 1
            try:
                await self.restart()
                return
            except Exception as e:
                logger.critical(f"Pipeline restart failed: {e}", attempt=attempt)
                self.events.emit(PipelineEvent(
                    kind="pipeline.restart_failed",
                    severity=Severity.CRITICAL,
                    detail="Pipeline restart failed, retrying",
                    error=str(e),
                    data={"attempt": attempt},
                ))
            await self._sleep(self.config.PIPELINE_RESTART_DELAY_SECONDS)

    # Background loops

    async def perform_health_check(self):
        """Raise BrokerError when the pipeline cannot move messages."""
        if not await self.broker.health_check():
            raise BrokerError("Broker is not connected")
        if not self.retry_manager.is_running():
            raise BrokerError("Retry manager is not running")

    async def _health_loop(self):
        while True:
            await self._sleep(self.config.HEALTH_CHECK_INTERVAL_SECONDS)
            try:
                await self.perform_health_check()
            except BrokerError as e:
                logger.error(f"Health check failed: {e}")
                self._schedule_restart()
                return

    async def _maintenance_loop(self):
        while True:
            await self._sleep(self.config.DEDUP_CLEANUP_INTERVAL_SECONDS)
            self.dedup.cleanup_old_entries()
            self.connectivity.cleanup_old_status()

    # Status and operator actions

    async def get_status(self) -> Dict[str, Any]:
        return {
            "initialized": self.is_initialized,
            "running": self.is_running,
            "started_at": self.started_at,
            "restart_count": self.restart_count,
            "broker_connected": self.broker.is_connected,
            "retry_manager_running": self.retry_manager.is_running(),
            "consumers": {consumer.queue_name: consumer.is_running() for consumer in self.consumers},
        }

    async def get_queue_stats(self) -> Dict[str, Optional[QueueInfo]]:
        names = list(self.broker.bindings) + self.config.dead_letter_queues
        stats: Dict[str, Optional[QueueInfo]] = {}
        for name in names:
            try:
                stats[name] = await self.broker.queue_info(name)
            except Exception as e:
                logger.warning(f"Could not read stats for {name}: {e}")
                stats[name] = None
        return stats

    async def get_retry_stats(self) -> RetryStats:
        return await self.retry_manager.get_retry_stats()

    async def reprocess_dead_letter(self, message_id: str) -> bool:
        return await self.retry_manager.reprocess_dead_letter(message_id)

    async def purge_queue(self, queue_name: str) -> int:
        known = set(self.broker.bindings) | set(self.config.dead_letter_queues)
        if queue_name not in known:
            raise ValueError(f"Unknown queue: {queue_name}")
        return await self.broker.purge_queue(queue_name)
