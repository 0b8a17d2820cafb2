import hashlib
import json
from typing import Any, Dict, Optional

from crm_messaging.core.config import settings
from crm_messaging.core.document_store import DocumentStore
from crm_messaging.core.events import EventSink, PipelineEvent, Severity
from crm_messaging.schemas.queue import InboundWebhookEnvelope, MessageEnvelope, MessageKind
from .base_consumer import BaseConsumer

MESSAGE_TYPES = {
    "conversation": MessageKind.TEXT,
    "extendedTextMessage": MessageKind.TEXT,
    "imageMessage": MessageKind.IMAGE,
    "videoMessage": MessageKind.VIDEO,
    "audioMessage": MessageKind.AUDIO,
    "documentMessage": MessageKind.DOCUMENT,
}

# Evolution sends numeric acks on older versions and names on newer ones
DELIVERY_STATUSES = {
    0: "pending",
    1: "sent",
    2: "delivered",
    3: "read",
    "PENDING": "pending",
    "SERVER_ACK": "sent",
    "DELIVERY_ACK": "delivered",
    "READ": "read",
    "PLAYED": "read",
}


def webhook_id_for(webhook: InboundWebhookEnvelope) -> str:
    digest = hashlib.md5(json.dumps(webhook.data, sort_keys=True, default=str).encode()).hexdigest()
    return f"{webhook.event}_{webhook.instance_id}_{webhook.timestamp}_{digest[:16]}"


def extract_message_content(data: Dict[str, Any]) -> str:
    message = data.get("message") or {}
    if message.get("conversation"):
        return message["conversation"]
    if (message.get("extendedTextMessage") or {}).get("text"):
        return message["extendedTextMessage"]["text"]
    if "imageMessage" in message:
        return message["imageMessage"].get("caption") or "[Image]"
    if "videoMessage" in message:
        return message["videoMessage"].get("caption") or "[Video]"
    if "documentMessage" in message:
        return message["documentMessage"].get("title") or "[Document]"
    if "audioMessage" in message:
        return "[Audio]"
    return "[Unsupported message]"


class WebhookConsumer(BaseConsumer):
    """Applies provider webhook events taken from the webhook queue."""

    def __init__(
        self,
        broker,
        store: DocumentStore,
        events: Optional[EventSink] = None,
        queue_name: str = settings.RABBITMQ_QUEUE_WEBHOOKS,
    ):
        super().__init__(queue_name, broker, store, events)

    async def process_message(self, message_data: Dict[str, Any]) -> None:
        webhook = InboundWebhookEnvelope.model_validate(message_data)
        webhook_id = webhook_id_for(webhook)

        if await self.webhook_repo.get_by_webhook_id(webhook_id):
            self.logger.info("Webhook already processed", webhook_id=webhook_id)
            return

        try:
            await self.handle_event(webhook)
        except Exception as e:
            await self.webhook_repo.record_error(webhook_id, webhook, str(e))
            self.emit(PipelineEvent(
                kind="webhook.processing_failed",
                severity=Severity.WARNING,
                detail=f"Error processing {webhook.event} webhook",
                error=str(e),
                data={"webhook_id": webhook_id, "instance": webhook.instance_id},
            ))
            raise

        await self.webhook_repo.mark_processed(webhook_id, webhook)

    async def handle_event(self, webhook: InboundWebhookEnvelope):
        data = webhook.data if isinstance(webhook.data, dict) else {}

        if webhook.event == "messages.upsert":
            await self._handle_message_upsert(webhook, data)
        elif webhook.event == "messages.update":
            await self._handle_message_update(data)
        elif webhook.event == "connection.update":
            await self.webhook_repo.log_instance_event(webhook)
            self.logger.info("Instance connection updated", instance=webhook.instance_id, state=data.get("state"))
        else:
            self.logger.debug("Webhook event recorded", webhook_event=webhook.event)

    async def _handle_message_upsert(self, webhook: InboundWebhookEnvelope, data: Dict[str, Any]):
        key = data.get("key") or {}
        provider_message_id = key.get("id")
        if not provider_message_id:
            self.logger.warning("messages.upsert without a message key", instance=webhook.instance_id)
            return

        if key.get("fromMe"):
            await self.message_repo.update_delivery_status(provider_message_id, "delivered")
            return

        remote_jid = key.get("remoteJid", "")
        contact = await self.contact_repo.get_by_field("remoteJid", remote_jid)
        envelope = MessageEnvelope(
            id=provider_message_id,
            type=MESSAGE_TYPES.get(data.get("messageType"), MessageKind.TEXT),
            content=extract_message_content(data),
            ticket_id=(contact or {}).get("ticket_id", ""),
            contact_id=(contact or {}).get("id", remote_jid),
            metadata={
                "remoteJid": remote_jid,
                "instanceName": webhook.instance_id,
                "pushName": data.get("pushName"),
            },
        )
        if not await self.broker.publish_inbound(envelope):
            raise RuntimeError(f"Could not publish inbound message {provider_message_id}")

    async def _handle_message_update(self, data: Dict[str, Any]):
        provider_message_id = (data.get("key") or {}).get("id") or data.get("keyId")
        if not provider_message_id:
            return
        status = DELIVERY_STATUSES.get(data.get("status"), "pending")
        await self.message_repo.update_delivery_status(provider_message_id, status)
