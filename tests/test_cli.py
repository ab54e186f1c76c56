import json
import logging

import pytest

from lakesync import run_sync
from lakesync.config import StreamConfig, load_config, save_config
from lakesync.connectors import object_store
from lakesync.connectors.object_store import ObjectStoreUploader
from lakesync.errors import UploadError

from conftest import insert_orders


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_lakesync_handler", False):
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def config_path(tmp_path, sync_config, s3_client, monkeypatch):
    monkeypatch.setattr(object_store, "build_client", lambda config, timeout=30.0: s3_client)
    path = tmp_path / "sync.json"
    save_config(sync_config, str(path))
    return str(path)


def test_declare_writes_config(tmp_path, capsys):
    path = tmp_path / "configs" / "sync.json"
    argv = [
        "--config", str(path), "declare",
        "--source-url", "mysql+pymysql://etl:${DB_PASSWORD}@db/shop",
        "--bucket", "lake",
        "--endpoint-override", "http://localhost:9000",
        "--path-style",
        "--stream", "orders:incremental:updated_at",
        "--stream", "products",
    ]

    assert run_sync.main(argv) == 0
    assert "Configuration written" in capsys.readouterr().out

    data = json.loads(path.read_text())
    assert data["destination"]["path_style_access"] is True
    assert [s["name"] for s in data["streams"]] == ["orders", "products"]
    assert data["streams"][0]["cursor_field"] == "updated_at"

    assert run_sync.main(argv) == 1
    assert run_sync.main(argv + ["--force"]) == 0


def test_declare_rejects_invalid_stream(tmp_path, capsys):
    argv = [
        "--config", str(tmp_path / "sync.json"), "declare",
        "--source-url", "sqlite:///x.db",
        "--bucket", "lake",
        "--stream", "orders:incremental",
    ]
    assert run_sync.main(argv) == 1
    assert "Configuration error" in capsys.readouterr().out


def test_missing_config_exits_with_configuration_error(tmp_path, capsys):
    assert run_sync.main(["--config", str(tmp_path / "nope.json"), "run"]) == 1
    assert "not found" in capsys.readouterr().out


def test_check(config_path, capsys):
    assert run_sync.main(["--config", config_path, "check"]) == 0
    assert "All connections successful" in capsys.readouterr().out


def test_discover_json(config_path, capsys):
    assert run_sync.main(["--config", config_path, "discover", "--json"]) == 0
    streams = json.loads(capsys.readouterr().out)
    assert [s["name"] for s in streams] == ["audit_log", "customers", "orders"]
    assert streams[2]["primary_key"] == ["id"]


def test_run_then_inspect_and_reset(config_path, source_engine, s3_client, tmp_path, capsys):
    insert_orders(source_engine, [(i, f"c{i}", 1.0, i) for i in range(1, 4)])
    results_file = tmp_path / "results" / "sync_results.json"

    assert run_sync.main(["--config", config_path, "run", "--results-file", str(results_file)]) == 0
    out = capsys.readouterr().out
    assert "✓ orders" in out
    assert "Rows written: 3" in out

    results = json.loads(results_file.read_text())
    assert results["exit_code"] == 0
    assert results["streams"][0]["batches_uploaded"] == 2
    assert len(s3_client.keys("raw/orders/incremental/")) == 2

    assert run_sync.main(["--config", config_path, "checkpoints", "--json"]) == 0
    checkpoints = json.loads(capsys.readouterr().out)
    assert checkpoints[0]["stream_name"] == "orders"
    assert checkpoints[0]["version"] == 2

    key = s3_client.keys("raw/orders/incremental/")[0]
    assert run_sync.main(["--config", config_path, "preview", "--key", key, "--rows", "1"]) == 0
    assert "rows" in capsys.readouterr().out

    assert run_sync.main(["--config", config_path, "reset", "--stream", "orders"]) == 0
    assert run_sync.main(["--config", config_path, "reset", "--stream", "orders"]) == 1
    assert run_sync.main(["--config", config_path, "checkpoints"]) == 0
    assert "No checkpoints stored" in capsys.readouterr().out


def test_run_reports_partial_failure(config_path, source_engine, s3_client, tmp_path):
    config = load_config(config_path)
    config.streams.append(StreamConfig(name="missing_table"))
    save_config(config, config_path)
    insert_orders(source_engine, [(1, "c1", 1.0, 1)])

    exit_code = run_sync.main(
        ["--config", config_path, "run", "--results-file", str(tmp_path / "r.json")]
    )

    assert exit_code == 4


def test_run_single_stream_filter(config_path, capsys, tmp_path):
    assert run_sync.main(
        ["--config", config_path, "run", "--stream", "unknown", "--results-file", str(tmp_path / "r.json")]
    ) == 1
    assert "not configured" in capsys.readouterr().out


def test_unreachable_destination_before_the_run_exits_with_total_failure(config_path, monkeypatch, capsys, tmp_path):
    config = load_config(config_path)
    config.destination.create_bucket = True
    save_config(config, config_path)

    def unreachable(self):
        raise UploadError("destination unreachable")

    monkeypatch.setattr(ObjectStoreUploader, "ensure_bucket", unreachable)

    exit_code = run_sync.main(
        ["--config", config_path, "run", "--results-file", str(tmp_path / "r.json")]
    )

    assert exit_code == 5
    assert "✗ UploadError: destination unreachable" in capsys.readouterr().out


def test_unreadable_checkpoint_store_exits_with_total_failure(config_path, tmp_path, capsys):
    checkpoint_dir = tmp_path / "checkpoints"
    checkpoint_dir.mkdir(exist_ok=True)
    (checkpoint_dir / "broken.json").write_text("{not json")

    assert run_sync.main(["--config", config_path, "checkpoints"]) == 5
    assert "✗ CheckpointError" in capsys.readouterr().out


def test_malformed_source_url_is_a_configuration_error(config_path, capsys):
    config = load_config(config_path)
    config.source.url = "not a url"
    save_config(config, config_path)

    assert run_sync.main(["--config", config_path, "check"]) == 1
    assert "Invalid source url" in capsys.readouterr().out
