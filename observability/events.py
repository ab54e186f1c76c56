"""
Sync Events
===========

Observability sink for non-fatal and per-stream events (lossy type
mappings, stream failures, schema drift). Events are logged, counted in
the metrics collector and kept for the run summary.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class SyncEvent:
    kind: str
    message: str
    level: str = "info"
    stream: Optional[str] = None
    details: Dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "level": self.level,
            "stream": self.stream,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class EventSink:
    """
    Thread-safe event recorder shared by all stream workers of a run.
    """

    def __init__(self, metrics=None, max_events: int = 10000):
        self.metrics = metrics
        self.max_events = max_events
        self._events: List[SyncEvent] = []
        self._lock = threading.Lock()

    def emit(self, kind: str, message: str, level: str = "info",
             stream: Optional[str] = None, **details) -> SyncEvent:
        event = SyncEvent(kind=kind, message=message, level=level, stream=stream, details=details)
        with self._lock:
            if len(self._events) < self.max_events:
                self._events.append(event)

        logger.log(LEVELS.get(level, logging.INFO), f"[{kind}] {message}", extra={"event": kind})
        if self.metrics is not None:
            self.metrics.record_counter("lakesync_sync_events_total", 1, {"kind": kind})
        return event

    def lossy_mapping(self, warning):
        """Callback for SchemaMapper: record a LossyMappingWarning."""
        self.emit(
            "lossy_mapping",
            str(warning),
            level="warning",
            source_type=warning.source_type,
            logical_type=warning.logical_type,
        )
        if self.metrics is not None:
            self.metrics.record_counter(
                "lakesync_lossy_mappings_total", 1, {"source_type": warning.source_type}
            )

    def events(self, kind: Optional[str] = None) -> List[SyncEvent]:
        with self._lock:
            return [e for e in self._events if kind is None or e.kind == kind]
