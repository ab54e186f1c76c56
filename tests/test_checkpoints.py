import json
import threading
import time

import pytest

from lakesync.checkpoints import (
    JsonFileCheckpointStore,
    SqlCheckpointStore,
    build_checkpoint_store,
)
from lakesync.config import CheckpointConfig
from lakesync.errors import CheckpointError, ConfigurationError, StaleCheckpointError
from lakesync.models import Checkpoint


@pytest.fixture(params=["file", "sql"])
def store(request, tmp_path):
    if request.param == "file":
        store = JsonFileCheckpointStore(str(tmp_path / "checkpoints"))
    else:
        store = SqlCheckpointStore(f"sqlite:///{tmp_path / 'state.db'}")
    yield store
    store.close()


def cursor(value):
    return {"fields": ["id"], "values": [value]}


def test_load_missing_returns_none(store):
    assert store.load("shop.orders") is None
    assert store.list() == []


def test_commit_increments_version_and_stamps_time(store):
    first = store.commit("shop.orders", Checkpoint("shop.orders", cursor(10)))
    assert first.version == 1
    assert first.last_committed_at is not None
    assert first.last_committed_at.tzinfo is not None

    second = store.commit("shop.orders", Checkpoint("shop.orders", cursor(20), version=first.version))
    assert second.version == 2

    loaded = store.load("shop.orders")
    assert loaded.version == 2
    assert loaded.last_cursor_value == cursor(20)


def test_stale_version_is_rejected_without_writing(store):
    stored = store.commit("shop.orders", Checkpoint("shop.orders", cursor(10)))
    store.commit("shop.orders", Checkpoint("shop.orders", cursor(20), version=stored.version))

    with pytest.raises(StaleCheckpointError) as exc_info:
        store.commit("shop.orders", Checkpoint("shop.orders", cursor(15), version=stored.version))

    assert exc_info.value.expected_version == 1
    assert store.load("shop.orders").last_cursor_value == cursor(20)


def test_first_commit_race_has_one_winner(store):
    store.commit("shop.orders", Checkpoint("shop.orders", cursor(1)))
    with pytest.raises(StaleCheckpointError):
        store.commit("shop.orders", Checkpoint("shop.orders", cursor(2)))


def test_schema_and_generation_survive(store):
    schema = {"columns": [{"name": "id", "type": "int64", "nullable": False}]}
    store.commit(
        "shop.products",
        Checkpoint("shop.products", cursor(5), schema=schema, generation="run-1", generation_complete=True),
    )

    loaded = store.load("shop.products")
    assert loaded.schema == schema
    assert loaded.generation == "run-1"
    assert loaded.generation_complete is True


def test_delete_and_list(store):
    store.commit("b.stream", Checkpoint("b.stream", cursor(1)))
    store.commit("a.stream", Checkpoint("a.stream", cursor(1)))

    assert [c.stream_name for c in store.list()] == ["a.stream", "b.stream"]
    assert store.delete("a.stream") is True
    assert store.delete("a.stream") is False
    assert [c.stream_name for c in store.list()] == ["b.stream"]


def test_concurrent_commits_with_same_version_have_one_winner(tmp_path):
    store = JsonFileCheckpointStore(str(tmp_path))
    base = store.commit("s", Checkpoint("s", cursor(0)))
    results = []

    def attempt(value):
        try:
            store.commit("s", Checkpoint("s", cursor(value), version=base.version))
            results.append("ok")
        except StaleCheckpointError:
            results.append("stale")

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(1, 9)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 1
    assert results.count("stale") == 7
    assert store.load("s").version == 2


class SlowReadStore(JsonFileCheckpointStore):
    def _read(self, path):
        current = super()._read(path)
        time.sleep(0.1)
        return current


def test_separate_store_instances_share_the_commit_lock(tmp_path):
    stores = [SlowReadStore(str(tmp_path)), SlowReadStore(str(tmp_path))]
    start = threading.Barrier(2)
    results = {}

    def attempt(name, store):
        start.wait()
        try:
            store.commit("s", Checkpoint("s", cursor(name)))
            results[name] = "ok"
        except StaleCheckpointError:
            results[name] = "stale"

    threads = [threading.Thread(target=attempt, args=(name, store)) for name, store in zip("AB", stores)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results.values()) == ["ok", "stale"]
    winner = next(name for name, result in results.items() if result == "ok")
    stored = JsonFileCheckpointStore(str(tmp_path)).load("s")
    assert stored.version == 1
    assert stored.last_cursor_value == cursor(winner)


def test_file_lock_timeout_raises_checkpoint_error(tmp_path):
    holder = JsonFileCheckpointStore(str(tmp_path))
    waiter = JsonFileCheckpointStore(str(tmp_path), lock_timeout=0.1)

    with holder._locked("s"):
        with pytest.raises(CheckpointError):
            waiter.commit("s", Checkpoint("s", cursor(1)))

    assert waiter.commit("s", Checkpoint("s", cursor(1))).version == 1


def test_list_ignores_leftover_temp_files(tmp_path):
    store = JsonFileCheckpointStore(str(tmp_path))
    store.commit("s", Checkpoint("s", cursor(1)))
    (tmp_path / ".tmp-crashed.json").write_text('{"stream_name": "s", ')
    (tmp_path / ".s-0000.json.tmp").write_text("{}")

    assert [c.stream_name for c in store.list()] == ["s"]


def test_file_store_writes_plain_json_without_temp_leftovers(tmp_path):
    store = JsonFileCheckpointStore(str(tmp_path))
    store.commit("shop/orders", Checkpoint("shop/orders", cursor(3)))

    assert not [p for p in tmp_path.iterdir() if p.name.endswith(".tmp")]
    files = list(tmp_path.glob("*.json"))
    assert len(files) == 1
    assert files[0].name.startswith("shop_orders-")
    with open(files[0]) as f:
        assert json.load(f)["stream_name"] == "shop/orders"


def test_build_checkpoint_store(tmp_path):
    assert isinstance(
        build_checkpoint_store(CheckpointConfig(backend="file", path=str(tmp_path))),
        JsonFileCheckpointStore,
    )
    sql_store = build_checkpoint_store(
        CheckpointConfig(backend="sql", url=f"sqlite:///{tmp_path / 'cp.db'}")
    )
    assert isinstance(sql_store, SqlCheckpointStore)
    sql_store.close()

    with pytest.raises(ConfigurationError):
        build_checkpoint_store(CheckpointConfig(backend="redis"))
