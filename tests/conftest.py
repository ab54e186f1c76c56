import hashlib
import io
import threading
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
import sqlalchemy as sa
from minio.error import S3Error

from lakesync.config import (
    CheckpointConfig,
    DestinationConfig,
    SourceConfig,
    StreamConfig,
    SyncConfig,
    SyncSettings,
)

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def s3_error(code):
    return S3Error(
        code=code,
        message=f"{code} (test)",
        resource="/lake",
        request_id="req-1",
        host_id="host-1",
        response=None,
    )


class FakeResponse:
    def __init__(self, data):
        self._data = data
        self.closed = False
        self.released = False

    def read(self):
        return self._data

    def close(self):
        self.closed = True

    def release_conn(self):
        self.released = True


class FakeS3Client:
    """In-memory stand-in for minio.Minio, covering the calls the uploader makes."""

    def __init__(self, buckets=("lake",)):
        self.buckets = set(buckets)
        self.objects = {}
        self.metadata = {}
        self.put_calls = []
        self.removed = []
        self.fail_upload = None
        self.transient_failures = 0
        self.stat_size_delta = 0
        self._lock = threading.Lock()

    def bucket_exists(self, bucket):
        return bucket in self.buckets

    def make_bucket(self, bucket, location=None):
        self.buckets.add(bucket)

    def fput_object(self, bucket, key, path, content_type=None, metadata=None):
        with self._lock:
            self.put_calls.append(key)
            if self.fail_upload is not None and self.fail_upload(key):
                raise s3_error("AccessDenied")
            if self.transient_failures:
                self.transient_failures -= 1
                raise s3_error("SlowDown")
        with open(path, "rb") as f:
            data = f.read()
        with self._lock:
            self.objects[key] = data
            self.metadata[key] = dict(metadata or {})
        return SimpleNamespace(
            bucket_name=bucket,
            object_name=key,
            etag=hashlib.md5(data).hexdigest(),
            version_id=None,
        )

    def stat_object(self, bucket, key):
        with self._lock:
            if key not in self.objects:
                raise s3_error("NoSuchKey")
            data = self.objects[key]
        return SimpleNamespace(size=len(data) + self.stat_size_delta, etag=hashlib.md5(data).hexdigest())

    def list_objects(self, bucket, prefix=None, recursive=False):
        with self._lock:
            keys = sorted(k for k in self.objects if k.startswith(prefix or ""))
        return [SimpleNamespace(object_name=k) for k in keys]

    def remove_object(self, bucket, key):
        with self._lock:
            self.objects.pop(key, None)
            self.removed.append(key)

    def get_object(self, bucket, key):
        with self._lock:
            if key not in self.objects:
                raise s3_error("NoSuchKey")
            return FakeResponse(self.objects[key])

    def keys(self, prefix=""):
        with self._lock:
            return sorted(k for k in self.objects if k.startswith(prefix))


def read_object(client, key):
    import pyarrow.parquet as pq

    return pq.read_table(io.BytesIO(client.objects[key]))


# =========================================
# SOURCE DATABASE
# =========================================

def create_source(url):
    engine = sa.create_engine(url)
    metadata = sa.MetaData()
    sa.Table(
        "orders",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("customer", sa.String(50), nullable=False),
        sa.Column("amount", sa.Float),
        sa.Column("updated_at", sa.DateTime),
    )
    sa.Table(
        "customers",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100)),
    )
    sa.Table(
        "audit_log",
        metadata,
        sa.Column("message", sa.Text),
        sa.Column("level", sa.String(10)),
    )
    metadata.create_all(engine)
    return engine


def insert_orders(engine, rows):
    """rows: iterable of (id, customer, amount, minutes after BASE_TIME or None)"""
    with engine.begin() as conn:
        for order_id, customer, amount, minutes in rows:
            conn.execute(
                sa.text(
                    "INSERT INTO orders (id, customer, amount, updated_at) "
                    "VALUES (:id, :customer, :amount, :updated_at)"
                ),
                {
                    "id": order_id,
                    "customer": customer,
                    "amount": amount,
                    "updated_at": (
                        (BASE_TIME + timedelta(minutes=minutes)).strftime("%Y-%m-%d %H:%M:%S.%f")
                        if minutes is not None else None
                    ),
                },
            )


def insert_customers(engine, rows):
    with engine.begin() as conn:
        for customer_id, name in rows:
            conn.execute(
                sa.text("INSERT INTO customers (id, name) VALUES (:id, :name)"),
                {"id": customer_id, "name": name},
            )


def insert_events(engine, rows):
    """Keyless table; rows: iterable of (minutes after BASE_TIME, message)"""
    with engine.begin() as conn:
        conn.execute(sa.text("CREATE TABLE IF NOT EXISTS events (ts DATETIME, msg VARCHAR(20))"))
        for minutes, message in rows:
            conn.execute(
                sa.text("INSERT INTO events (ts, msg) VALUES (:ts, :msg)"),
                {"ts": (BASE_TIME + timedelta(minutes=minutes)).strftime("%Y-%m-%d %H:%M:%S.%f"), "msg": message},
            )


@pytest.fixture
def source_url(tmp_path):
    return f"sqlite:///{tmp_path / 'source.db'}"


@pytest.fixture
def source_engine(source_url):
    engine = create_source(source_url)
    yield engine
    engine.dispose()


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def sync_config(tmp_path, source_url, source_engine):
    return SyncConfig(
        source=SourceConfig(url=source_url, page_size=3),
        destination=DestinationConfig(bucket="lake", prefix="raw"),
        streams=[StreamConfig(name="orders", sync_mode="incremental", cursor_field="updated_at")],
        checkpoint=CheckpointConfig(backend="file", path=str(tmp_path / "checkpoints")),
        settings=SyncSettings(
            max_batch_rows=2,
            spool_dir=str(tmp_path / "spool"),
            retry_base_delay=0.0,
            retry_max_attempts=2,
        ),
    )
