"""
Metrics Collector
=================

Prometheus-compatible metrics collection for lakesync sync runs.

Supports:
- Prometheus registry with optional Pushgateway export
- In-memory metrics for testing and one-shot CLI runs
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    push_to_gateway,
)

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Collects and exports metrics for the replication pipeline.

    Supports two backends:
    - prometheus: metrics live in a private CollectorRegistry
    - memory: every observation is appended to a list (testing)
    """

    # Predefined metric definitions
    METRIC_DEFINITIONS = {
        # Source side
        "lakesync_rows_read_total": {
            "type": "counter",
            "description": "Rows read from the source",
            "labels": ["stream"]
        },
        "lakesync_lossy_mappings_total": {
            "type": "counter",
            "description": "Source types mapped with possible information loss",
            "labels": ["source_type"]
        },

        # Destination side
        "lakesync_rows_written_total": {
            "type": "counter",
            "description": "Rows written to uploaded files",
            "labels": ["stream"]
        },
        "lakesync_batches_uploaded_total": {
            "type": "counter",
            "description": "Files uploaded to the object store",
            "labels": ["stream"]
        },
        "lakesync_bytes_uploaded_total": {
            "type": "counter",
            "description": "Bytes uploaded to the object store",
            "labels": ["stream"]
        },
        "lakesync_upload_retries_total": {
            "type": "counter",
            "description": "Upload attempts retried after a transient failure",
            "labels": ["bucket"]
        },
        "lakesync_objects_deleted_total": {
            "type": "counter",
            "description": "Objects removed by full refresh replacement",
            "labels": ["stream"]
        },

        # Checkpoints and runs
        "lakesync_checkpoint_commits_total": {
            "type": "counter",
            "description": "Checkpoint commits",
            "labels": ["stream"]
        },
        "lakesync_stream_runs_total": {
            "type": "counter",
            "description": "Finished stream runs by terminal state",
            "labels": ["stream", "status"]
        },
        "lakesync_stream_duration_seconds": {
            "type": "histogram",
            "description": "Duration of stream runs",
            "labels": ["stream", "status"]
        },
        "lakesync_last_success_timestamp": {
            "type": "gauge",
            "description": "Unix time of the last completed stream run",
            "labels": ["stream"]
        },
        "lakesync_sync_events_total": {
            "type": "counter",
            "description": "Observability events by kind",
            "labels": ["kind"]
        },
    }

    def __init__(
        self,
        backend: str = "memory",
        pushgateway_url: Optional[str] = None,
        job_name: str = "lakesync"
    ):
        """
        Initialize metrics collector.

        Args:
            backend: 'prometheus' or 'memory'
            pushgateway_url: Prometheus Pushgateway URL
            job_name: Job name for Prometheus
        """
        if backend not in ("prometheus", "memory"):
            raise ValueError(f"Unknown metrics backend: {backend}")
        self.backend = backend
        self.job_name = job_name
        self.pushgateway_url = pushgateway_url

        self._memory_store: List[Dict] = []
        self._prometheus_metrics: Dict = {}
        self._registry = CollectorRegistry()
        self._lock = threading.Lock()

        if backend == "prometheus":
            self._init_prometheus_metrics()

    @classmethod
    def from_config(cls, config) -> "MetricsCollector":
        return cls(
            backend=config.backend,
            pushgateway_url=config.pushgateway_url,
            job_name=config.job_name,
        )

    def _init_prometheus_metrics(self):
        """Initialize Prometheus metric objects."""
        for name, definition in self.METRIC_DEFINITIONS.items():
            metric_type = definition["type"]
            description = definition["description"]
            labels = definition.get("labels", [])

            if metric_type == "counter":
                self._prometheus_metrics[name] = Counter(
                    name, description, labels, registry=self._registry
                )
            elif metric_type == "gauge":
                self._prometheus_metrics[name] = Gauge(
                    name, description, labels, registry=self._registry
                )
            elif metric_type == "histogram":
                self._prometheus_metrics[name] = Histogram(
                    name, description, labels, registry=self._registry
                )

    # =========================================
    # METRIC RECORDING METHODS
    # =========================================

    def _record(self, metric_name: str, metric_type: str, value: float, labels: Optional[Dict]):
        labels = labels or {}

        with self._lock:
            if self.backend == "prometheus":
                metric = self._prometheus_metrics.get(metric_name)
                if metric is None:
                    logger.debug(f"Unknown metric {metric_name}, dropped")
                    return
                bound = metric.labels(**labels)
                if metric_type == "counter":
                    bound.inc(value)
                elif metric_type == "gauge":
                    bound.set(value)
                else:
                    bound.observe(value)

            else:  # memory
                self._memory_store.append({
                    "metric_name": metric_name,
                    "metric_type": metric_type,
                    "value": value,
                    "labels": labels,
                    "timestamp": datetime.now(timezone.utc).isoformat()
                })

    def record_counter(self, metric_name: str, value: float = 1, labels: Optional[Dict] = None):
        """
        Increment a counter metric.

        Args:
            metric_name: Name of the metric
            value: Value to increment by
            labels: Label key-value pairs
        """
        self._record(metric_name, "counter", value, labels)

    def record_gauge(self, metric_name: str, value: float, labels: Optional[Dict] = None):
        """Set a gauge metric value."""
        self._record(metric_name, "gauge", value, labels)

    def record_histogram(self, metric_name: str, value: float, labels: Optional[Dict] = None):
        """Record a histogram observation."""
        self._record(metric_name, "histogram", value, labels)

    # =========================================
    # CONVENIENCE METHODS
    # =========================================

    def record_stream_run(
        self,
        stream: str,
        status: str,
        duration_seconds: float,
        rows_read: int = 0,
        rows_written: int = 0
    ):
        """Record metrics for a finished stream run."""
        labels = {"stream": stream, "status": status}
        self.record_counter("lakesync_stream_runs_total", 1, labels)
        self.record_histogram("lakesync_stream_duration_seconds", duration_seconds, labels)

        if rows_read > 0:
            self.record_counter("lakesync_rows_read_total", rows_read, {"stream": stream})
        if rows_written > 0:
            self.record_counter("lakesync_rows_written_total", rows_written, {"stream": stream})
        if status == "COMPLETED":
            self.record_gauge("lakesync_last_success_timestamp", time.time(), {"stream": stream})

    def record_upload(self, stream: str, byte_size: int):
        """Record one uploaded batch."""
        self.record_counter("lakesync_batches_uploaded_total", 1, {"stream": stream})
        self.record_counter("lakesync_bytes_uploaded_total", byte_size, {"stream": stream})

    # =========================================
    # EXPORT METHODS
    # =========================================

    def push_to_prometheus(self) -> bool:
        """Push metrics to Prometheus Pushgateway."""
        if self.backend != "prometheus":
            logger.warning("Metrics backend is not prometheus; nothing to push")
            return False

        if not self.pushgateway_url:
            logger.warning("Pushgateway URL not configured")
            return False

        try:
            push_to_gateway(
                self.pushgateway_url,
                job=self.job_name,
                registry=self._registry
            )
            logger.info("Metrics pushed to Prometheus Pushgateway")
            return True
        except OSError as e:
            logger.error(f"Failed to push metrics: {e}")
            return False

    def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(self._registry).decode('utf-8')

    def get_memory_metrics(self) -> List[Dict]:
        """Get in-memory metrics store."""
        with self._lock:
            return self._memory_store.copy()

    def total(self, metric_name: str, **labels) -> float:
        """Sum of in-memory observations of a metric matching the given labels."""
        return sum(
            m["value"] for m in self.get_memory_metrics()
            if m["metric_name"] == metric_name
            and all(m["labels"].get(k) == v for k, v in labels.items())
        )

    def clear_memory_metrics(self):
        """Clear in-memory metrics store."""
        with self._lock:
            self._memory_store.clear()
