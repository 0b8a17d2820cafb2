from typing import Any, Dict, Optional

from crm_messaging.core.config import settings
from crm_messaging.core.delivery_client import extract_provider_message_id
from crm_messaging.core.document_store import DocumentStore
from crm_messaging.core.events import EventSink, PipelineEvent, Severity
from crm_messaging.core.exceptions import (
    ContactNotFoundError,
    InvalidProviderResponseError,
    PermanentDeliveryError,
)
from crm_messaging.repositories import ContactRepository
from crm_messaging.schemas.queue import DeliveryResult, MessageEnvelope, MessageKind, RetryDecision
from crm_messaging.services.retry_manager import RetryManager
from .base_consumer import BaseConsumer


class OutboundQueueProcessor(BaseConsumer):
    """
    Drains the outbound queue and hands each envelope to the delivery provider.

    Every envelope ends this handler recorded as sent, scheduled for retry or
    dead-lettered. A delivery whose sent state cannot be stored is reported
    as a HIGH event instead of being sent again.
    """

    def __init__(
        self,
        broker,
        store: DocumentStore,
        retry_manager: RetryManager,
        provider,
        events: Optional[EventSink] = None,
        queue_name: str = settings.RABBITMQ_QUEUE_OUTBOUND,
        default_instance: str = settings.EVOLUTION_DEFAULT_INSTANCE,
        record_attempts: int = 3,
    ):
        super().__init__(queue_name, broker, store, events)
        self.retry_manager = retry_manager
        self.provider = provider
        self.default_instance = default_instance
        self.record_attempts = record_attempts

    async def process_message(self, message_data: Dict[str, Any]) -> None:
        envelope = MessageEnvelope.model_validate(message_data)
        await self.handle_envelope(envelope)

    async def handle_envelope(self, envelope: MessageEnvelope) -> DeliveryResult:
        log = self.logger.with_context(message_id=envelope.id, attempt=envelope.attempt)

        try:
            already_sent = await self.message_repo.is_sent(envelope.id)
        except Exception as e:
            log.warning(f"Could not read delivery state: {e}")
            return await self._retry_or_dead_letter(envelope, e)
        if already_sent:
            log.info("Message already sent, skipping redelivery")
            return DeliveryResult(status="skipped", message_id=envelope.id, attempts=envelope.attempt)

        try:
            number = await self._resolve_number(envelope)
            response = await self._send(envelope, number)
            provider_message_id = extract_provider_message_id(response)
            if not provider_message_id:
                raise InvalidProviderResponseError(
                    "Provider response carried no message id", message_id=envelope.id
                )
        except PermanentDeliveryError as e:
            log.error(f"Permanent delivery failure: {e}")
            await self.retry_manager.reject_permanently(envelope, e)
            return DeliveryResult(
                status="failed",
                message_id=envelope.id,
                attempts=envelope.attempt + 1,
                error=str(e),
            )
        except Exception as e:
            log.warning(f"Delivery attempt failed: {e}")
            return await self._retry_or_dead_letter(envelope, e)

        # The provider has accepted the message; never send it again from here.
        record_error = await self._record_sent(envelope, provider_message_id, response)
        self.emit(PipelineEvent(
            kind="message.sent",
            severity=Severity.INFO,
            message_id=envelope.id,
            detail="Message delivered to provider",
            data={"provider_message_id": provider_message_id, "attempts": envelope.attempt + 1},
        ))
        return DeliveryResult(
            status="sent",
            message_id=envelope.id,
            attempts=envelope.attempt + 1,
            provider_message_id=provider_message_id,
            error=record_error,
        )

    async def _retry_or_dead_letter(self, envelope: MessageEnvelope, error: Exception) -> DeliveryResult:
        decision = await self.retry_manager.schedule_retry(envelope, error, envelope.attempt)
        if decision is RetryDecision.DEAD_LETTERED:
            return DeliveryResult(
                status="failed",
                message_id=envelope.id,
                attempts=envelope.attempt + 1,
                error=str(error),
            )
        return DeliveryResult(
            status="retry",
            message_id=envelope.id,
            attempts=envelope.attempt + 1,
            next_retry_at=await self.retry_manager.schedule.due_at(envelope.id),
            error=str(error),
        )

    async def _record_sent(
        self, envelope: MessageEnvelope, provider_message_id: str, response: Dict[str, Any]
    ) -> Optional[str]:
        """
        Persist the sent state of a delivered message.

        Returns None once recorded, otherwise the last store error. An
        unrecorded delivery is reported as a HIGH event carrying the provider
        message id so it can be reconciled by hand.
        """
        log = self.logger.with_context(message_id=envelope.id, provider_message_id=provider_message_id)
        last_error: Optional[Exception] = None
        for attempt in range(1, self.record_attempts + 1):
            try:
                await self.message_repo.mark_sent(envelope, provider_message_id, response)
                last_error = None
                break
            except Exception as e:
                last_error = e
                log.warning(f"Could not record sent message (attempt {attempt}): {e}")

        if last_error is not None:
            log.error(f"Delivered message left unrecorded: {last_error}")
            self.emit(PipelineEvent(
                kind="message.record_failed",
                severity=Severity.HIGH,
                message_id=envelope.id,
                detail="Message was delivered but its sent state could not be stored",
                error=str(last_error),
                data={"provider_message_id": provider_message_id, "attempts": envelope.attempt + 1},
            ))
            return str(last_error)

        try:
            await self.retry_manager.record_success(envelope.id)
        except Exception as e:
            log.warning(f"Could not clear retry state after delivery: {e}")
        return None

    async def _resolve_number(self, envelope: MessageEnvelope) -> str:
        contact = await self.contact_repo.get_by_id(envelope.contact_id)
        if not contact:
            raise ContactNotFoundError(f"Contact not found: {envelope.contact_id}", message_id=envelope.id)
        number = ContactRepository.phone_number(contact)
        if not number:
            raise ContactNotFoundError(
                f"Contact {envelope.contact_id} has no phone number", message_id=envelope.id
            )
        return number

    async def _send(self, envelope: MessageEnvelope, number: str) -> Dict[str, Any]:
        instance = envelope.metadata.get("instanceName") or self.default_instance

        if envelope.type is MessageKind.TEXT:
            return await self.provider.send_text(instance, number, envelope.content)

        media = {
            "number": number,
            "mediatype": envelope.type.value,
            "media": envelope.content,
            "caption": envelope.media_caption,
        }
        for field in ("mimetype", "fileName"):
            if envelope.metadata.get(field):
                media[field] = envelope.metadata[field]
        return await self.provider.send_media(instance, media)
