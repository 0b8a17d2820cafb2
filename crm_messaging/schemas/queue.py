import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    return int(time.time() * 1000)


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"

    @property
    def is_media(self) -> bool:
        return self is not MessageKind.TEXT


class MessageEnvelope(BaseModel):
    """Canonical outbound message flowing through the broker."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: MessageKind = MessageKind.TEXT
    content: str = Field(..., description="Inline text, or media URL/base64 for media kinds")
    caption: Optional[str] = None
    ticket_id: str
    contact_id: str
    user_id: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms, description="Creation time, epoch ms")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = Field(default=0, ge=0, description="Failed delivery attempts so far")

    @property
    def media_caption(self) -> str:
        return self.caption or self.metadata.get("caption") or ""


class InboundWebhookEnvelope(BaseModel):
    """Webhook event as published to the webhook queue."""

    event: str
    instance_id: str
    data: Any = Field(default_factory=dict)
    timestamp: int = Field(default_factory=now_ms)


class RetryStatus(str, Enum):
    RETRYING = "retrying"
    DLQ = "dlq"
    ABANDONED = "abandoned"


class RetryRecord(BaseModel):
    message_id: str
    attempt: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[float] = None
    status: RetryStatus = RetryStatus.RETRYING
    first_failed_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    envelope: MessageEnvelope


class DeadLetterRecord(BaseModel):
    message_id: str
    envelope: MessageEnvelope
    failure_reason: str
    failure_count: int
    first_failed_at: float
    last_failed_at: float
    dlq_processed_at: float
    status: RetryStatus = RetryStatus.DLQ


class RetryDecision(str, Enum):
    SCHEDULED = "scheduled"
    DEAD_LETTERED = "dead_lettered"


class DeliveryResult(BaseModel):
    status: str  # sent|skipped|retry|failed
    message_id: str
    attempts: int = 0
    provider_message_id: Optional[str] = None
    next_retry_at: Optional[float] = None
    error: Optional[str] = None


class QueueInfo(BaseModel):
    message_count: int = 0
    consumer_count: int = 0


class RetryStats(BaseModel):
    pending: int = 0
    dlq: int = 0
    success: int = 0


class OutboundMessageRequest(BaseModel):
    """Reply composed by an agent, to be queued for delivery."""

    type: MessageKind = MessageKind.TEXT
    content: str = Field(..., min_length=1)
    caption: Optional[str] = None
    ticket_id: str
    contact_id: str
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_envelope(self) -> MessageEnvelope:
        return MessageEnvelope(**self.model_dump())


class OutboundMessageResponse(BaseModel):
    message_id: str
    status: str
    queued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
