"""
Structured pipeline events.

Components report failures, alerts and state transitions as ``PipelineEvent``
values through an ``EventSink`` rather than logging inline, so callers and
tests can inspect what happened.
"""
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from crm_messaging.core.logging import get_logger


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class PipelineEvent:
    kind: str
    severity: Severity = Severity.INFO
    message_id: Optional[str] = None
    detail: str = ""
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        event = asdict(self)
        event["severity"] = self.severity.value
        return event


class EventSink:
    """Sink that writes each event to the structured log."""

    def __init__(self, name: str = "pipeline.events"):
        self.logger = get_logger(name)

    def emit(self, event: PipelineEvent) -> None:
        fields = {
            "kind": event.kind,
            "severity": event.severity.value,
            "message_id": event.message_id,
            "error": event.error,
            **event.data,
        }
        if event.severity is Severity.CRITICAL:
            self.logger.critical(event.detail or event.kind, **fields)
        elif event.severity is Severity.HIGH:
            self.logger.error(event.detail or event.kind, **fields)
        elif event.severity is Severity.WARNING:
            self.logger.warning(event.detail or event.kind, **fields)
        else:
            self.logger.info(event.detail or event.kind, **fields)


class RecordingEventSink(EventSink):
    """Logs events and keeps the most recent ones in memory."""

    def __init__(self, maxlen: int = 500, name: str = "pipeline.events"):
        super().__init__(name)
        self._events: Deque[PipelineEvent] = deque(maxlen=maxlen)

    def emit(self, event: PipelineEvent) -> None:
        self._events.append(event)
        super().emit(event)

    def recent(self, limit: Optional[int] = None) -> List[PipelineEvent]:
        events = list(self._events)
        return events[-limit:] if limit else events

    def by_kind(self, kind: str) -> List[PipelineEvent]:
        return [event for event in self._events if event.kind == kind]

    def clear(self) -> None:
        self._events.clear()
