import io
import json
import logging
import threading

import pytest

from lakesync.errors import LossyMappingWarning
from observability import EventSink, MetricsCollector, configure_logging, log_context
from observability.logging.structured_logger import current_context


@pytest.fixture
def log_stream():
    stream = io.StringIO()
    yield stream
    configure_logging(level="WARNING")


def test_json_logs_carry_context(log_stream):
    configure_logging(level="INFO", json_format=True, stream=log_stream)
    logger = logging.getLogger("lakesync.test")

    with log_context(stream="shop.orders", run_id="run-1"):
        logger.info("batch committed", extra={"batch": 3})
    logger.info("outside")

    first, second = [json.loads(line) for line in log_stream.getvalue().splitlines()]
    assert first["message"] == "batch committed"
    assert first["level"] == "INFO"
    assert first["context"] == {"stream": "shop.orders", "run_id": "run-1"}
    assert first["batch"] == 3
    assert "context" not in second or second["context"] == {}


def test_text_logs_include_stream(log_stream):
    configure_logging(level="DEBUG", stream=log_stream)

    with log_context(stream="shop.orders"):
        logging.getLogger("lakesync.test").debug("reading page")

    assert "stream=shop.orders" in log_stream.getvalue()
    assert "reading page" in log_stream.getvalue()


def test_reconfiguring_replaces_handlers(log_stream):
    configure_logging(level="INFO", stream=io.StringIO())
    configure_logging(level="INFO", stream=log_stream)

    logging.getLogger("lakesync.test").info("once")

    assert log_stream.getvalue().count("once") == 1


def test_log_to_file(tmp_path):
    path = tmp_path / "logs" / "sync.log"
    configure_logging(level="INFO", log_to_file=True, log_path=str(path), stream=io.StringIO())
    logging.getLogger("lakesync.test").info("written to file")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "written to file" in path.read_text()
    configure_logging(level="WARNING")


def test_log_context_is_per_thread_and_nested():
    seen = {}

    def worker():
        seen["worker"] = current_context()

    with log_context(stream="a"):
        with log_context(run_id="r1"):
            assert current_context() == {"stream": "a", "run_id": "r1"}
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()
        assert current_context() == {"stream": "a"}

    assert seen["worker"] == {}
    assert current_context() == {}


# =========================================
# METRICS
# =========================================

def test_memory_metrics_totals():
    metrics = MetricsCollector(backend="memory")
    metrics.record_counter("lakesync_rows_read_total", 10, {"stream": "a"})
    metrics.record_counter("lakesync_rows_read_total", 5, {"stream": "a"})
    metrics.record_counter("lakesync_rows_read_total", 7, {"stream": "b"})

    assert metrics.total("lakesync_rows_read_total", stream="a") == 15
    assert metrics.total("lakesync_rows_read_total") == 22

    metrics.clear_memory_metrics()
    assert metrics.get_memory_metrics() == []


def test_stream_run_metrics():
    metrics = MetricsCollector()
    metrics.record_stream_run("a", "COMPLETED", 1.5, rows_read=10, rows_written=10)

    assert metrics.total("lakesync_stream_runs_total", stream="a", status="COMPLETED") == 1
    assert metrics.total("lakesync_rows_written_total", stream="a") == 10
    assert metrics.total("lakesync_last_success_timestamp", stream="a") > 0


def test_prometheus_exposition():
    metrics = MetricsCollector(backend="prometheus")
    metrics.record_upload("shop.orders", 2048)
    metrics.record_histogram("lakesync_stream_duration_seconds", 0.4, {"stream": "shop.orders", "status": "COMPLETED"})

    text = metrics.get_prometheus_metrics()
    assert 'lakesync_bytes_uploaded_total{stream="shop.orders"} 2048.0' in text
    assert "lakesync_stream_duration_seconds_count" in text
    assert metrics.push_to_prometheus() is False


def test_unknown_backend():
    with pytest.raises(ValueError):
        MetricsCollector(backend="statsd")


# =========================================
# EVENTS
# =========================================

def test_events_are_recorded_and_counted():
    metrics = MetricsCollector()
    events = EventSink(metrics)

    events.emit("stream_failed", "upload rejected", level="error", stream="a", attempts=2)
    events.lossy_mapping(LossyMappingWarning("interval", "string", "interval stored as text"))

    failed = events.events("stream_failed")
    assert failed[0].stream == "a"
    assert failed[0].details == {"attempts": 2}
    assert failed[0].to_dict()["level"] == "error"
    assert events.events("lossy_mapping")[0].details["source_type"] == "interval"
    assert metrics.total("lakesync_sync_events_total") == 2
    assert metrics.total("lakesync_lossy_mappings_total", source_type="interval") == 1


def test_event_buffer_is_bounded():
    events = EventSink(max_events=2)
    for i in range(5):
        events.emit("noise", f"event {i}")
    assert len(events.events()) == 2
