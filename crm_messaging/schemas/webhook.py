from typing import Dict, Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class EvolutionWebhookPayload(BaseModel):
    """Schema for an incoming webhook event from the messaging provider."""

    model_config = ConfigDict(extra="allow")

    event: str = Field(..., description="Event type, e.g. messages.upsert")
    instance: str = Field(..., description="Provider instance that emitted the event")
    data: Any = Field(default_factory=dict)
    date_time: Optional[str] = None


class WebhookResponse(BaseModel):
    """Schema for webhook response."""

    status: str = Field(..., description="accepted | duplicate | rejected")
    message: str = Field(default="Webhook received")
    event: Optional[str] = None


class DeduplicationStats(BaseModel):
    total_events: int
    duplicates_filtered: int
    unique_events: int
    filter_rate: float
    cache_size: int
