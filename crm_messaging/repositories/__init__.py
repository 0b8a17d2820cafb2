from .base_repository import BaseRepository
from .message_repository import MessageRepository
from .contact_repository import ContactRepository
from .retry_repository import RetryRepository
from .dead_letter_repository import DeadLetterRepository
from .notification_repository import NotificationRepository
from .webhook_repository import WebhookRepository

__all__ = [
    "BaseRepository",
    "MessageRepository",
    "ContactRepository",
    "RetryRepository",
    "DeadLetterRepository",
    "NotificationRepository",
    "WebhookRepository",
]
