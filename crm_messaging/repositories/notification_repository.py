import time

from crm_messaging.schemas.queue import DeadLetterRecord
from .base_repository import BaseRepository


class NotificationRepository(BaseRepository):
    """Operator-facing notifications shown in the admin inbox."""

    collection = "admin_notifications"

    async def create_failure_notification(self, record: DeadLetterRecord) -> str:
        return await self.create({
            "type": "message_failure",
            "severity": "high",
            "title": "Message failed after multiple attempts",
            "message": (
                f"Message {record.message_id} failed {record.failure_count} times. "
                f"Reason: {record.failure_reason}"
            ),
            "data": {
                "message_id": record.message_id,
                "ticket_id": record.envelope.ticket_id,
                "contact_id": record.envelope.contact_id,
                "failure_count": record.failure_count,
                "failure_reason": record.failure_reason,
            },
            "timestamp": time.time(),
            "read": False,
        })
