from .queue import (
    MessageKind, MessageEnvelope, InboundWebhookEnvelope,
    RetryStatus, RetryRecord, DeadLetterRecord, RetryDecision,
    DeliveryResult, QueueInfo, RetryStats,
    OutboundMessageRequest, OutboundMessageResponse,
)
from .webhook import EvolutionWebhookPayload, WebhookResponse, DeduplicationStats
from .connectivity import ConnectivityStatus, EndpointValidation, MonitorStats, ConnectivityCheckRequest

__all__ = [
    # Queue
    "MessageKind", "MessageEnvelope", "InboundWebhookEnvelope",
    "RetryStatus", "RetryRecord", "DeadLetterRecord", "RetryDecision",
    "DeliveryResult", "QueueInfo", "RetryStats",
    "OutboundMessageRequest", "OutboundMessageResponse",

    # Webhook
    "EvolutionWebhookPayload", "WebhookResponse", "DeduplicationStats",

    # Connectivity
    "ConnectivityStatus", "EndpointValidation", "MonitorStats", "ConnectivityCheckRequest",
]
