"""
Pytest configuration and fixtures for messaging service tests.
"""
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

from crm_messaging.core.config import Settings
from crm_messaging.core.document_store import MemoryDocumentStore
from crm_messaging.core.events import RecordingEventSink
from crm_messaging.core.queue_policies import RetryPolicy
from crm_messaging.core.retry_schedule import MemoryRetrySchedule
from crm_messaging.schemas.queue import MessageEnvelope, MessageKind, QueueInfo
from crm_messaging.services.retry_manager import RetryManager
from crm_messaging.workers.outbound_processor import OutboundQueueProcessor


class FakeClock:
    """Manually advanced clock, callable like ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def test_settings():
    """Settings with in-memory backends and deterministic retries."""
    return Settings(
        ENVIRONMENT="testing",
        DEBUG=True,
        DOCUMENT_STORE_BACKEND="memory",
        RETRY_SCHEDULE_BACKEND="memory",
        RETRY_JITTER_ENABLED=False,
        EVOLUTION_API_URL="http://evolution.test",
        EVOLUTION_API_KEY="test-key",
        EVOLUTION_WEBHOOK_SECRET=None,
        CONNECTIVITY_ENDPOINTS=[],
        PIPELINE_RESTART_DELAY_SECONDS=0.01,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def schedule():
    return MemoryRetrySchedule()


@pytest.fixture
def events():
    return RecordingEventSink(maxlen=100)


@pytest.fixture
def policy():
    """Default policy without jitter: delays 5s, 10s, 20s..."""
    return RetryPolicy(
        max_retries=3,
        base_delay_seconds=5.0,
        backoff_multiplier=2.0,
        max_delay_seconds=300.0,
        jitter_enabled=False,
    )


@pytest.fixture
def mock_broker(test_settings):
    """Mock broker client that accepts every publish."""
    broker = MagicMock()
    broker.is_connected = True
    broker.bindings = {
        test_settings.RABBITMQ_QUEUE_OUTBOUND: "message.outbound",
        test_settings.RABBITMQ_QUEUE_INBOUND: "message.inbound",
        test_settings.RABBITMQ_QUEUE_WEBHOOKS: "webhook.*",
    }
    broker.connect = AsyncMock()
    broker.close = AsyncMock()
    broker.health_check = AsyncMock(return_value=True)
    broker.publish_outbound = AsyncMock(return_value=True)
    broker.publish_inbound = AsyncMock(return_value=True)
    broker.publish_webhook = AsyncMock(return_value=True)
    broker.consume = AsyncMock(side_effect=lambda queue_name, handler: f"ctag-{queue_name}")
    broker.cancel = AsyncMock(return_value=True)
    broker.queue_info = AsyncMock(return_value=QueueInfo(message_count=0, consumer_count=1))
    broker.purge_queue = AsyncMock(return_value=0)
    return broker


@pytest.fixture
def mock_provider():
    """Mock delivery provider that answers with a provider message id."""
    provider = MagicMock()
    provider.send_text = AsyncMock(return_value={"key": {"id": "PROVIDER-1"}, "status": "PENDING"})
    provider.send_media = AsyncMock(return_value={"key": {"id": "PROVIDER-2"}, "status": "PENDING"})
    provider.close = AsyncMock()
    return provider


@pytest.fixture
def retry_manager(store, schedule, mock_broker, events, policy, test_settings, clock):
    return RetryManager(
        store,
        schedule,
        mock_broker,
        events=events,
        policy=policy,
        config=test_settings,
        clock=clock,
        rng=lambda: 0.5,
        sleep=AsyncMock(),
    )


@pytest.fixture
def processor(mock_broker, store, retry_manager, mock_provider, events):
    return OutboundQueueProcessor(
        mock_broker,
        store,
        retry_manager,
        mock_provider,
        events=events,
        queue_name="crm.messages.outbound",
        default_instance="default",
    )


@pytest_asyncio.fixture
async def contact(store):
    """Contact c1 with a phone number."""
    document = {"name": "Maria", "phone": "5511999990000"}
    await store.set("contacts", "c1", document)
    return document


@pytest.fixture
def text_envelope():
    return MessageEnvelope(
        id="m1",
        type=MessageKind.TEXT,
        content="Hello from support",
        ticket_id="t1",
        contact_id="c1",
        user_id="agent-1",
        metadata={"instanceName": "inst-1", "remoteJid": "5511999990000@s.whatsapp.net"},
    )
