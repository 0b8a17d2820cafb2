from abc import ABC
from typing import Optional

from crm_messaging.core.document_store import DocumentStore
from crm_messaging.core.events import EventSink, PipelineEvent
from crm_messaging.core.logging import get_logger
from crm_messaging.repositories import (
    MessageRepository,
    ContactRepository,
    RetryRepository,
    DeadLetterRepository,
    NotificationRepository,
    WebhookRepository,
)


class BaseService(ABC):
    """Base service class with common functionality."""

    def __init__(self, store: DocumentStore, events: Optional[EventSink] = None):
        self.store = store
        self.events = events or EventSink()
        self.logger = get_logger(self.__class__.__name__)

        # Initialize repositories
        self.message_repo = MessageRepository(store)
        self.contact_repo = ContactRepository(store)
        self.retry_repo = RetryRepository(store)
        self.dead_letter_repo = DeadLetterRepository(store)
        self.notification_repo = NotificationRepository(store)
        self.webhook_repo = WebhookRepository(store)

    def emit(self, event: PipelineEvent):
        """Hand an event to the sink. A failing sink never breaks the caller."""
        try:
            self.events.emit(event)
        except Exception as e:
            self.logger.error(f"Error emitting {event.kind} event: {e}")
