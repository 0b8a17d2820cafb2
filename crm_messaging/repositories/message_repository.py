import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from crm_messaging.schemas.queue import MessageEnvelope
from .base_repository import BaseRepository

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_RECEIVED = "received"


class MessageRepository(BaseRepository):
    """Message records keyed by envelope id."""

    collection = "messages"

    @staticmethod
    def _base_document(envelope: MessageEnvelope, direction: str) -> Dict[str, Any]:
        return {
            "message_id": envelope.id,
            "ticket_id": envelope.ticket_id,
            "contact_id": envelope.contact_id,
            "user_id": envelope.user_id,
            "type": envelope.type.value,
            "content": envelope.content,
            "direction": direction,
            "remote_jid": envelope.metadata.get("remoteJid", ""),
            "instance_name": envelope.metadata.get("instanceName"),
            "timestamp": datetime.fromtimestamp(envelope.timestamp / 1000, tz=timezone.utc).isoformat(),
        }

    async def is_sent(self, message_id: str) -> bool:
        document = await self.get_by_id(message_id)
        return bool(document) and document.get("status") == STATUS_SENT

    async def mark_pending(self, envelope: MessageEnvelope) -> None:
        """Record a freshly composed reply; never downgrades a sent message."""
        existing = await self.get_by_id(envelope.id)
        if existing and existing.get("status") == STATUS_SENT:
            return
        await self.upsert(envelope.id, {
            **self._base_document(envelope, "outbound"),
            "status": STATUS_PENDING,
            "updated_at": time.time(),
        })

    async def mark_sent(self, envelope: MessageEnvelope, provider_message_id: str,
                        response: Optional[Dict[str, Any]] = None) -> None:
        """Idempotent upsert of the sent record."""
        existing = await self.get_by_id(envelope.id) or self._base_document(envelope, "outbound")
        existing.update({
            "status": STATUS_SENT,
            "provider_message_id": provider_message_id,
            "sent_at": time.time(),
            "updated_at": time.time(),
            "attempts": envelope.attempt + 1,
        })
        if response is not None:
            existing["provider_response"] = response
        await self.upsert(envelope.id, existing)

    async def mark_failed(self, envelope: MessageEnvelope, attempts: int, error: str) -> None:
        existing = await self.get_by_id(envelope.id) or self._base_document(envelope, "outbound")
        if existing.get("status") == STATUS_SENT:
            return
        existing.update({
            "status": STATUS_FAILED,
            "attempts": attempts,
            "final_error": error,
            "failed_at": time.time(),
            "updated_at": time.time(),
        })
        await self.upsert(envelope.id, existing)

    async def save_inbound(self, envelope: MessageEnvelope) -> bool:
        """Store an inbound message once. Returns False for a duplicate."""
        if await self.get_by_id(envelope.id):
            return False
        await self.upsert(envelope.id, {
            **self._base_document(envelope, "inbound"),
            "status": STATUS_RECEIVED,
            "updated_at": time.time(),
        })
        return True

    async def update_delivery_status(self, provider_message_id: str, status: str) -> bool:
        """Apply a provider delivery acknowledgement (messages.update)."""
        document = await self.get_by_field("provider_message_id", provider_message_id)
        if not document:
            return False
        await self.update(document["id"], {"delivery_status": status, "updated_at": time.time()})
        return True
