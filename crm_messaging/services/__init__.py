from .retry_manager import RetryManager
from .dedup_service import WebhookDeduplicationCache
from .connectivity_service import ConnectivityMonitor

__all__ = [
    "RetryManager",
    "WebhookDeduplicationCache",
    "ConnectivityMonitor",
]
