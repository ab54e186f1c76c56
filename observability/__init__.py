"""
Lakesync Observability Module
=============================

Provides metrics, events and structured logging for sync runs.

Components:
- metrics: Prometheus-compatible metrics collection
- events: Sink for lossy mappings and stream failures
- logging: Text or JSON logging with per-thread context

Usage:
    from observability import MetricsCollector, EventSink, configure_logging, log_context

    # Logging
    configure_logging(level="INFO", json_format=True)

    # Metrics
    metrics = MetricsCollector(backend="prometheus", pushgateway_url="localhost:9091")
    metrics.record_counter("lakesync_rows_read_total", 1000, {"stream": "shop.orders"})

    # Events
    events = EventSink(metrics)
    with log_context(stream="shop.orders"):
        events.emit("stream_failed", "upload rejected", level="error", stream="shop.orders")
"""

from .events import EventSink, SyncEvent
from .logging.structured_logger import JsonFormatter, configure_logging, log_context
from .metrics.collector import MetricsCollector

__version__ = "1.0.0"
__all__ = [
    "MetricsCollector",
    "EventSink",
    "SyncEvent",
    "JsonFormatter",
    "configure_logging",
    "log_context",
]
