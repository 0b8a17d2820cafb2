from typing import Any, Dict, Optional

from crm_messaging.core.document_store import DocumentStore
from crm_messaging.core.events import EventSink
from crm_messaging.services.base_service import BaseService


class BaseConsumer(BaseService):
    """Base class for all broker consumers."""

    def __init__(self, queue_name: str, broker, store: DocumentStore, events: Optional[EventSink] = None):
        super().__init__(store, events)
        self.queue_name = queue_name
        self.broker = broker
        self.consumer_tag: Optional[str] = None

    async def process_message(self, message_data: Dict[str, Any]) -> None:
        """
        Process a single message. Override in subclasses.

        Returning acknowledges the delivery; raising dead-letters it.
        """
        raise NotImplementedError("Subclasses must implement process_message")

    async def start(self):
        if self.consumer_tag:
            return
        self.consumer_tag = await self.broker.consume(self.queue_name, self.process_message)
        self.logger.info(f"Starting consumer for queue: {self.queue_name}")

    async def stop(self):
        if not self.consumer_tag:
            return
        try:
            await self.broker.cancel(self.consumer_tag)
        finally:
            self.consumer_tag = None
            self.logger.info(f"Stopped consumer for queue: {self.queue_name}")

    def is_running(self) -> bool:
        return self.consumer_tag is not None
