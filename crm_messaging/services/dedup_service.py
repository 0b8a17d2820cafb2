import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from crm_messaging.core.config import Settings, settings as default_settings
from crm_messaging.core.logging import get_logger
from crm_messaging.schemas.webhook import DeduplicationStats

logger = get_logger(__name__)

CONNECTION_UPDATE = "connection.update"
PRESENCE_UPDATE = "presence.update"
MESSAGES_UPSERT = "messages.upsert"

NEVER_FILTER_EVENTS = frozenset({"chats.upsert"})
AGGRESSIVE_DEDUP_EVENTS = frozenset({CONNECTION_UPDATE, PRESENCE_UPDATE})


@dataclass
class DeduplicationEntry:
    hash: str
    first_seen: float
    count: int
    last_seen: float


def _md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def _canonical(data: Any) -> str:
    return json.dumps(data, sort_keys=True, default=str, separators=(",", ":"))


class WebhookDeduplicationCache:
    """
    Suppresses repeated webhook events inside an event-specific time window.

    Owned by one process and mutated only from the event loop.
    """

    def __init__(self, config: Settings = default_settings, clock: Callable[[], float] = time.monotonic):
        self.base_ttl = config.DEDUP_CACHE_TTL_SECONDS
        self.connection_update_ttl = config.DEDUP_CONNECTION_UPDATE_TTL_SECONDS
        self.message_ttl = config.DEDUP_MESSAGE_TTL_SECONDS
        self.max_cache_size = config.DEDUP_MAX_CACHE_SIZE
        self._clock = clock
        self._cache: Dict[str, DeduplicationEntry] = {}
        self._total_events = 0
        self._duplicates_filtered = 0
        self._unique_events = 0

    def event_key(self, event: str, instance: str, data: Any) -> str:
        payload = data if isinstance(data, dict) else {}
        if event == CONNECTION_UPDATE:
            return _md5(f"{event}:{instance}:{payload.get('state') or 'unknown'}")
        if event == PRESENCE_UPDATE:
            return _md5(f"{event}:{instance}:{payload.get('id') or 'unknown'}")
        if event == MESSAGES_UPSERT:
            key = payload.get("key")
            message_id = (key.get("id") if isinstance(key, dict) else None) or payload.get("messageId")
            if message_id:
                return _md5(f"{event}:{instance}:{message_id}")
            # no provider id: fall through to a full-payload key
        return _md5(f"{event}:{instance}:{_canonical(data)}")

    def ttl_for(self, event: str) -> float:
        if event == CONNECTION_UPDATE:
            return self.connection_update_ttl
        if event == MESSAGES_UPSERT:
            return self.message_ttl
        if event in AGGRESSIVE_DEDUP_EVENTS:
            return self.base_ttl
        return self.base_ttl / 2

    def should_process(self, event: str, instance: str, data: Any) -> bool:
        """Return True for the first occurrence of an event inside its window."""
        self._total_events += 1

        if event in NEVER_FILTER_EVENTS:
            self._unique_events += 1
            return True

        key = self.event_key(event, instance, data)
        now = self._clock()
        entry = self._cache.get(key)

        if entry is not None:
            ttl = self.ttl_for(event)
            if now - entry.first_seen < ttl:
                entry.count += 1
                entry.last_seen = now
                self._duplicates_filtered += 1
                logger.debug("Duplicate webhook filtered", webhook_event=event, instance=instance, count=entry.count)
                return False
            # window expired: start a fresh one
            entry.first_seen = now
            entry.count = 1
            entry.last_seen = now
        else:
            self._cache[key] = DeduplicationEntry(hash=key, first_seen=now, count=1, last_seen=now)
            if len(self._cache) > self.max_cache_size:
                self.cleanup_old_entries()

        self._unique_events += 1
        return True

    def cleanup_old_entries(self) -> int:
        """Drop entries not seen for more than twice the base TTL."""
        now = self._clock()
        cutoff = self.base_ttl * 2
        stale = [key for key, entry in self._cache.items() if now - entry.last_seen > cutoff]
        for key in stale:
            del self._cache[key]
        if stale:
            logger.info("Deduplication cache swept", removed=len(stale), cache_size=len(self._cache))
        return len(stale)

    def get_stats(self) -> DeduplicationStats:
        filter_rate = (self._duplicates_filtered / self._total_events * 100) if self._total_events else 0.0
        return DeduplicationStats(
            total_events=self._total_events,
            duplicates_filtered=self._duplicates_filtered,
            unique_events=self._unique_events,
            filter_rate=round(filter_rate, 2),
            cache_size=len(self._cache),
        )

    def reset_stats(self):
        self._total_events = 0
        self._duplicates_filtered = 0
        self._unique_events = 0
        logger.info("Deduplication stats reset")

    def clear_cache(self):
        self._cache.clear()
        logger.info("Deduplication cache cleared")

    def get_cache_info(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        now = self._clock()
        info = [
            {
                "hash": entry.hash[:8] + "...",
                "count": entry.count,
                "age": round(now - entry.first_seen, 3),
            }
            for entry in self._cache.values()
        ]
        info.sort(key=lambda item: item["count"], reverse=True)
        return info[:limit] if limit else info
