"""
Checkpoint Store
================

Durable per-stream sync progress with compare-and-swap commits.

Backends:
- file: one JSON document per stream, replaced atomically (rename) under
  an exclusive lock on a ``.lock`` file beside it (fcntl), so several
  processes may share the directory
- sql:  one row per stream in a ``sync_checkpoints`` table (SQLAlchemy)

A commit succeeds only if the caller's checkpoint carries the version
currently stored; otherwise StaleCheckpointError is raised and nothing is
written. Readers never observe a partially written checkpoint.
"""

import fcntl
import hashlib
import json
import logging
import os
import re
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import ArgumentError, IntegrityError, SQLAlchemyError

from .connectors.sql_connector import engine_connect_args
from .errors import CheckpointError, ConfigurationError, StaleCheckpointError
from .models import Checkpoint

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointStore(ABC):
    """Per-stream checkpoint persistence."""

    @abstractmethod
    def load(self, stream_name: str) -> Optional[Checkpoint]:
        """Return the committed checkpoint, or None if the stream never synced."""

    @abstractmethod
    def commit(self, stream_name: str, checkpoint: Checkpoint) -> Checkpoint:
        """
        Atomically replace the stored checkpoint.

        Args:
            stream_name: Stream key
            checkpoint: New state; its ``version`` must equal the stored version
                (0 when nothing is stored yet)

        Returns:
            The stored checkpoint (version incremented, commit time set)

        Raises:
            StaleCheckpointError: stored version differs from checkpoint.version
        """

    @abstractmethod
    def delete(self, stream_name: str) -> bool:
        """Remove a stream's checkpoint. Returns True if one existed."""

    @abstractmethod
    def list(self) -> List[Checkpoint]:
        """All stored checkpoints, sorted by stream name."""

    def close(self):
        pass


# =========================================
# FILE BACKEND
# =========================================

class JsonFileCheckpointStore(CheckpointStore):
    """
    Checkpoints as JSON files in a directory.

    Commits for the same stream are serialized by an in-process lock and an
    flock on ``<file>.lock``, which also holds across store instances and
    processes. The file itself is written to a temp file, fsynced and
    renamed over the old one, so a crash leaves either the old or the new
    record.
    """

    def __init__(self, directory: str, lock_timeout: float = 30.0):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.lock_timeout = lock_timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _path(self, stream_name: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", stream_name)
        digest = hashlib.sha1(stream_name.encode("utf-8")).hexdigest()[:8]
        return self.directory / f"{safe}-{digest}.json"

    def _lock_for(self, stream_name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(stream_name)
            if lock is None:
                lock = self._locks[stream_name] = threading.Lock()
            return lock

    @contextmanager
    def _locked(self, stream_name: str):
        """Hold the stream's thread lock and its file lock, or raise CheckpointError."""
        deadline = time.monotonic() + self.lock_timeout
        lock = self._lock_for(stream_name)
        if not lock.acquire(timeout=self.lock_timeout):
            raise CheckpointError(
                f"Timed out after {self.lock_timeout}s waiting for checkpoint lock of {stream_name}"
            )
        try:
            path = self._path(stream_name)
            lock_path = path.with_name(path.name + ".lock")
            with open(lock_path, "a") as handle:
                while True:
                    try:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() >= deadline:
                            raise CheckpointError(
                                f"Timed out after {self.lock_timeout}s waiting for {lock_path}"
                            )
                        time.sleep(0.02)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            lock.release()

    def _read(self, path: Path) -> Optional[Checkpoint]:
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return Checkpoint.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise CheckpointError(f"Unreadable checkpoint file {path}: {e}") from e

    def load(self, stream_name: str) -> Optional[Checkpoint]:
        return self._read(self._path(stream_name))

    def commit(self, stream_name: str, checkpoint: Checkpoint) -> Checkpoint:
        with self._locked(stream_name):
            path = self._path(stream_name)
            current = self._read(path)
            current_version = current.version if current else 0
            if checkpoint.version != current_version:
                raise StaleCheckpointError(stream_name, checkpoint.version, current_version)

            stored = replace(
                checkpoint,
                stream_name=stream_name,
                version=current_version + 1,
                last_committed_at=_utcnow(),
            )
            self._write_atomic(path, stored.to_dict())
            return stored

    def _write_atomic(self, path: Path, payload: Dict):
        fd, tmp_path = tempfile.mkstemp(dir=str(self.directory), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise CheckpointError(f"Failed to write checkpoint {path}: {e}") from e

        if hasattr(os, "O_DIRECTORY"):
            dir_fd = os.open(str(self.directory), os.O_RDONLY | os.O_DIRECTORY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)

    def delete(self, stream_name: str) -> bool:
        with self._locked(stream_name):
            path = self._path(stream_name)
            if not path.exists():
                return False
            path.unlink()
            logger.info(f"Deleted checkpoint for {stream_name}")
            return True

    def list(self) -> List[Checkpoint]:
        # dotfiles are temp files, never checkpoints
        checkpoints = [self._read(p) for p in self.directory.glob("*.json") if not p.name.startswith(".")]
        return sorted((c for c in checkpoints if c), key=lambda c: c.stream_name)


# =========================================
# SQL BACKEND
# =========================================

metadata = sa.MetaData()

checkpoints_table = sa.Table(
    "sync_checkpoints",
    metadata,
    sa.Column("stream_name", sa.String(512), primary_key=True),
    sa.Column("last_cursor_value", sa.Text, nullable=True),
    sa.Column("last_committed_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("version", sa.Integer, nullable=False),
    sa.Column("schema", sa.Text, nullable=True),
    sa.Column("generation", sa.String(64), nullable=True),
    sa.Column("generation_complete", sa.Boolean, nullable=False, default=False),
)


class SqlCheckpointStore(CheckpointStore):
    """
    Checkpoints in a relational table.

    The first commit INSERTs (a duplicate key means another writer won);
    later commits are ``UPDATE ... WHERE version = :expected``.
    """

    def __init__(self, url: str, timeout: float = 30.0, engine: Optional[sa.engine.Engine] = None):
        try:
            self.engine = engine or sa.create_engine(
                url,
                connect_args=engine_connect_args(url, timeout),
                pool_pre_ping=True,
                pool_timeout=timeout,
            )
        except ArgumentError as e:
            raise ConfigurationError(f"Invalid checkpoint url: {e}") from e
        try:
            metadata.create_all(self.engine, tables=[checkpoints_table], checkfirst=True)
        except SQLAlchemyError as e:
            raise CheckpointError(f"Cannot initialize checkpoint table: {e}") from e

    def _from_row(self, row) -> Checkpoint:
        committed_at = row.last_committed_at
        if committed_at is not None and committed_at.tzinfo is None:
            committed_at = committed_at.replace(tzinfo=timezone.utc)
        return Checkpoint(
            stream_name=row.stream_name,
            last_cursor_value=json.loads(row.last_cursor_value) if row.last_cursor_value else None,
            last_committed_at=committed_at,
            version=row.version,
            schema=json.loads(row.schema) if row.schema else None,
            generation=row.generation,
            generation_complete=bool(row.generation_complete),
        )

    def _values(self, checkpoint: Checkpoint) -> Dict:
        return {
            "last_cursor_value": (
                json.dumps(checkpoint.last_cursor_value, default=str)
                if checkpoint.last_cursor_value is not None else None
            ),
            "last_committed_at": checkpoint.last_committed_at,
            "version": checkpoint.version,
            "schema": json.dumps(checkpoint.schema) if checkpoint.schema is not None else None,
            "generation": checkpoint.generation,
            "generation_complete": checkpoint.generation_complete,
        }

    def load(self, stream_name: str) -> Optional[Checkpoint]:
        query = sa.select(checkpoints_table).where(checkpoints_table.c.stream_name == stream_name)
        try:
            with self.engine.connect() as conn:
                row = conn.execute(query).first()
        except SQLAlchemyError as e:
            raise CheckpointError(f"Failed to load checkpoint for {stream_name}: {e}") from e
        return self._from_row(row) if row else None

    def _current_version(self, conn, stream_name: str) -> Optional[int]:
        return conn.execute(
            sa.select(checkpoints_table.c.version)
            .where(checkpoints_table.c.stream_name == stream_name)
        ).scalar()

    def commit(self, stream_name: str, checkpoint: Checkpoint) -> Checkpoint:
        stored = replace(
            checkpoint,
            stream_name=stream_name,
            version=checkpoint.version + 1,
            last_committed_at=_utcnow(),
        )
        values = self._values(stored)
        try:
            with self.engine.begin() as conn:
                if checkpoint.version == 0:
                    conn.execute(
                        sa.insert(checkpoints_table).values(stream_name=stream_name, **values)
                    )
                else:
                    result = conn.execute(
                        sa.update(checkpoints_table)
                        .where(checkpoints_table.c.stream_name == stream_name)
                        .where(checkpoints_table.c.version == checkpoint.version)
                        .values(**values)
                    )
                    if result.rowcount != 1:
                        actual = self._current_version(conn, stream_name)
                        raise StaleCheckpointError(stream_name, checkpoint.version, actual)
        except IntegrityError as e:
            raise StaleCheckpointError(stream_name, checkpoint.version) from e
        except StaleCheckpointError:
            raise
        except SQLAlchemyError as e:
            raise CheckpointError(f"Failed to commit checkpoint for {stream_name}: {e}") from e
        return stored

    def delete(self, stream_name: str) -> bool:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    sa.delete(checkpoints_table).where(checkpoints_table.c.stream_name == stream_name)
                )
        except SQLAlchemyError as e:
            raise CheckpointError(f"Failed to delete checkpoint for {stream_name}: {e}") from e
        if result.rowcount:
            logger.info(f"Deleted checkpoint for {stream_name}")
        return bool(result.rowcount)

    def list(self) -> List[Checkpoint]:
        query = sa.select(checkpoints_table).order_by(checkpoints_table.c.stream_name)
        try:
            with self.engine.connect() as conn:
                return [self._from_row(row) for row in conn.execute(query)]
        except SQLAlchemyError as e:
            raise CheckpointError(f"Failed to list checkpoints: {e}") from e

    def close(self):
        self.engine.dispose()


def build_checkpoint_store(config, timeout: float = 30.0) -> CheckpointStore:
    """
    Create the configured checkpoint backend.

    Args:
        config: CheckpointConfig (backend, path, url)
        timeout: Per-call deadline in seconds
    """
    if config.backend == "file":
        return JsonFileCheckpointStore(config.path, lock_timeout=timeout)
    if config.backend == "sql":
        return SqlCheckpointStore(config.url, timeout=timeout)
    raise ConfigurationError(f"Unknown checkpoint backend: {config.backend!r}")
