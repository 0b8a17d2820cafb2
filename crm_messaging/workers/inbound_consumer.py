from typing import Any, Dict, Optional

from crm_messaging.core.config import settings
from crm_messaging.core.document_store import DocumentStore
from crm_messaging.core.events import EventSink
from crm_messaging.schemas.queue import MessageEnvelope
from .base_consumer import BaseConsumer


class InboundMessageConsumer(BaseConsumer):
    """Stores messages received from contacts, once per provider id."""

    def __init__(
        self,
        broker,
        store: DocumentStore,
        events: Optional[EventSink] = None,
        queue_name: str = settings.RABBITMQ_QUEUE_INBOUND,
    ):
        super().__init__(queue_name, broker, store, events)

    async def process_message(self, message_data: Dict[str, Any]) -> None:
        envelope = MessageEnvelope.model_validate(message_data)
        if await self.message_repo.save_inbound(envelope):
            self.logger.info("Inbound message stored", message_id=envelope.id, contact_id=envelope.contact_id)
        else:
            self.logger.info("Inbound message already stored", message_id=envelope.id)
