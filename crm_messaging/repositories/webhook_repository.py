import time
from typing import Optional

from crm_messaging.schemas.queue import InboundWebhookEnvelope
from .base_repository import BaseRepository


class WebhookRepository(BaseRepository):
    """Processed and failed webhook events."""

    collection = "processed_webhooks"
    error_collection = "webhook_errors"

    async def get_by_webhook_id(self, webhook_id: str) -> Optional[dict]:
        return await self.get_by_id(webhook_id)

    async def mark_processed(self, webhook_id: str, webhook: InboundWebhookEnvelope) -> None:
        await self.upsert(webhook_id, {
            "event": webhook.event,
            "instance_id": webhook.instance_id,
            "data": webhook.data,
            "processed_at": time.time(),
        })

    async def record_error(self, webhook_id: str, webhook: InboundWebhookEnvelope, error: str) -> str:
        return await self.store.add(self.error_collection, {
            "webhook_id": webhook_id,
            "event": webhook.event,
            "instance_id": webhook.instance_id,
            "error": error,
            "timestamp": time.time(),
        })

    async def log_instance_event(self, webhook: InboundWebhookEnvelope) -> str:
        data = webhook.data if isinstance(webhook.data, dict) else {}
        return await self.store.add("instance_logs", {
            "instance_id": webhook.instance_id,
            "event": webhook.event,
            "state": data.get("state"),
            "timestamp": time.time(),
        })
