"""
Sync Orchestrator
=================

Drives one SyncRun per configured stream:

    discover -> load checkpoint -> read -> write batch -> upload -> commit

Streams run in a bounded thread pool and share nothing but the checkpoint
store. Inside a stream, uploads run on a single background worker so the
next batch can be read while the previous one is uploaded; checkpoint
commits stay strictly in batch order.
"""

import json
import logging
import shutil
import threading
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from observability.logging.structured_logger import current_context, log_context

from .cancellation import CancellationToken
from .config import StreamConfig, SyncSettings
from .connectors.base import SourceConnector
from .connectors.object_store import ObjectStoreUploader
from .checkpoints import CheckpointStore
from .cursors import CursorToken
from .errors import (
    CheckpointRegressionError,
    ConfigurationError,
    InvalidStateTransition,
    SchemaDriftError,
    StreamNotFoundError,
    SyncError,
)
from .models import (
    STRING,
    TIMESTAMP,
    Checkpoint,
    Column,
    FileHandle,
    ObjectRef,
    Schema,
    Stream,
    SyncMode,
)
from .writer import ColumnarWriter

logger = logging.getLogger(__name__)

EXTRACTED_AT_COLUMN = "_lakesync_extracted_at"
RUN_ID_COLUMN = "_lakesync_run_id"

AUDIT_COLUMNS = (
    Column(EXTRACTED_AT_COLUMN, TIMESTAMP, nullable=False),
    Column(RUN_ID_COLUMN, STRING, nullable=False),
)

EXIT_OK = 0
EXIT_DISCOVERY_FAILURE = 3
EXIT_PARTIAL_FAILURE = 4
EXIT_TOTAL_FAILURE = 5


def new_run_id() -> str:
    """Sortable, unique run identifier."""
    return f"{datetime.now(timezone.utc):%Y%m%dT%H%M%S}Z-{uuid.uuid4().hex[:6]}"


# =========================================
# RUN STATE
# =========================================

class RunState(str, Enum):
    PENDING = "PENDING"
    DISCOVERING = "DISCOVERING"
    READING = "READING"
    WRITING = "WRITING"
    UPLOADING = "UPLOADING"
    CHECKPOINTING = "CHECKPOINTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Reading, writing, uploading and checkpointing overlap once uploads are
# pipelined, so these states may follow one another in any order.
ACTIVE_STATES = {RunState.READING, RunState.WRITING, RunState.UPLOADING, RunState.CHECKPOINTING}
TERMINAL_STATES = {RunState.COMPLETED, RunState.FAILED}


def transition_allowed(source: RunState, target: RunState) -> bool:
    if source in TERMINAL_STATES:
        return False
    if target == RunState.FAILED:
        return True
    if source == RunState.PENDING:
        return target == RunState.DISCOVERING
    if source == RunState.DISCOVERING:
        return target == RunState.READING
    if target == RunState.COMPLETED:
        return source in (RunState.READING, RunState.CHECKPOINTING)
    return source in ACTIVE_STATES and target in ACTIVE_STATES


class StreamRun:
    """
    Explicit state of one stream's sync run.

    Owned by the orchestrator and handed to the worker that executes it;
    the upload worker updates the upload counters and the committed
    checkpoint, the reader everything else.
    """

    def __init__(self, stream_name: str, run_id: str):
        self.stream_name = stream_name
        self.run_id = run_id
        self.state = RunState.PENDING
        self.history: List[Tuple[RunState, datetime]] = [(RunState.PENDING, datetime.now(timezone.utc))]
        self.sync_mode: Optional[str] = None
        self.destination_path: Optional[str] = None
        self.generation: Optional[str] = None
        self.attempts = 0
        self.rows_read = 0
        self.rows_written = 0
        self.batches_uploaded = 0
        self.bytes_uploaded = 0
        self.objects: List[ObjectRef] = []
        self.checkpoint: Optional[Checkpoint] = None
        self.error: Optional[BaseException] = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def transition(self, target: RunState):
        with self._lock:
            if self.state == target:
                return
            if not transition_allowed(self.state, target):
                raise InvalidStateTransition(f"{self.stream_name}: {self.state.value} -> {target.value}")
            self.state = target
            self.history.append((target, datetime.now(timezone.utc)))
            if target in TERMINAL_STATES:
                self.finished_at = datetime.now(timezone.utc)

    def fail(self, error: BaseException):
        self.error = error
        if self.state not in TERMINAL_STATES:
            self.transition(RunState.FAILED)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def duration_seconds(self) -> float:
        if not self.started_at:
            return 0.0
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> Dict:
        return {
            "stream": self.stream_name,
            "status": self.state.value,
            "sync_mode": self.sync_mode,
            "attempts": self.attempts,
            "rows_read": self.rows_read,
            "rows_written": self.rows_written,
            "batches_uploaded": self.batches_uploaded,
            "bytes_uploaded": self.bytes_uploaded,
            "destination_path": self.destination_path,
            "generation": self.generation,
            "objects": [o.key for o in self.objects],
            "last_checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
            "history": [s.value for s, _ in self.history],
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class SyncSummary:
    run_id: str
    runs: List[StreamRun] = field(default_factory=list)
    discovery_error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def completed(self) -> List[StreamRun]:
        return [r for r in self.runs if r.state == RunState.COMPLETED]

    @property
    def failed(self) -> List[StreamRun]:
        return [r for r in self.runs if r.state != RunState.COMPLETED]

    @property
    def exit_code(self) -> int:
        if self.discovery_error is not None:
            return EXIT_DISCOVERY_FAILURE
        if not self.failed:
            return EXIT_OK
        if not self.completed:
            return EXIT_TOTAL_FAILURE
        return EXIT_PARTIAL_FAILURE

    def run_for(self, stream_name: str) -> StreamRun:
        for run in self.runs:
            if run.stream_name == stream_name:
                return run
        raise KeyError(stream_name)

    def to_dict(self) -> Dict:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "exit_code": self.exit_code,
            "discovery_error": self.discovery_error,
            "streams": [r.to_dict() for r in self.runs],
        }


# =========================================
# UPLOAD STAGE
# =========================================

@dataclass
class _Batch:
    number: int
    file: Optional[FileHandle]
    start_cursor: Optional[CursorToken]
    end_cursor: Optional[CursorToken]
    final: bool = False

    def discard(self):
        if self.file is not None:
            Path(self.file.path).unlink(missing_ok=True)


class _UploadStage:
    """
    Single-worker upload/commit stage with a bounded number of batches in
    flight. ``depth`` counts the reader as one stage, so depth 1 uploads
    inline and depth 3 lets two flushed batches wait behind the reader.

    Once a batch fails, later batches are dropped without committing.
    """

    def __init__(self, process: Callable[[_Batch], None], depth: int, name: str):
        self.process = process
        self.max_in_flight = max(depth - 1, 0)
        self.executor = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"upload-{name}")
            if self.max_in_flight else None
        )
        self.pending: Deque[Future] = deque()
        self.failure: Optional[BaseException] = None
        self._context = current_context()

    def _run(self, batch: _Batch):
        if self.failure is not None:
            logger.info(f"Dropping batch {batch.number} after an earlier failure")
            batch.discard()
            return
        try:
            with log_context(**self._context):
                self.process(batch)
        except BaseException as e:
            if self.failure is None:
                self.failure = e
            raise

    def raise_if_failed(self):
        if self.failure is not None:
            raise self.failure

    def submit(self, batch: _Batch):
        self.raise_if_failed()
        if self.executor is None:
            self._run(batch)
            return
        while len(self.pending) >= self.max_in_flight:
            self.pending.popleft().result()
        self.pending.append(self.executor.submit(self._run, batch))

    def finish(self):
        while self.pending:
            self.pending.popleft().result()
        self.raise_if_failed()
        self.close()

    def abort(self):
        """Cancel queued batches; the one already uploading runs to completion."""
        for future in self.pending:
            future.cancel()
        self.pending.clear()
        self.close()

    def close(self):
        if self.executor is not None:
            self.executor.shutdown(wait=True, cancel_futures=True)


# =========================================
# ORCHESTRATOR
# =========================================

class SyncOrchestrator:
    """
    Replication orchestrator for a set of configured streams.

    Usage:
        orchestrator = SyncOrchestrator(connector, uploader, store, config.settings,
                                        prefix=config.destination.prefix)
        summary = orchestrator.run(config.streams)
        sys.exit(summary.exit_code)
    """

    def __init__(
        self,
        connector: SourceConnector,
        uploader: ObjectStoreUploader,
        checkpoint_store: CheckpointStore,
        settings: SyncSettings,
        prefix: str = "",
        metrics=None,
        events=None,
        run_id: Optional[str] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            connector: Source connector
            uploader: Object store uploader
            checkpoint_store: Shared checkpoint store
            settings: Run settings (concurrency, batching, pipeline depth, retries)
            prefix: Key prefix for every object written
            metrics: Optional MetricsCollector
            events: Optional EventSink
            run_id: Run identifier (generated when omitted)
        """
        self.connector = connector
        self.uploader = uploader
        self.checkpoint_store = checkpoint_store
        self.settings = settings
        self.prefix = prefix.strip("/")
        self.metrics = metrics
        self.events = events
        self.run_id = run_id or new_run_id()

    # -----------------------------------------
    # helpers
    # -----------------------------------------

    def _emit(self, kind: str, message: str, level: str = "info", stream: Optional[str] = None, **details):
        if self.events is not None:
            self.events.emit(kind, message, level=level, stream=stream, **details)

    def resolve_stream(self, catalog: Sequence[Stream], stream_config: StreamConfig) -> Stream:
        """
        Match a configured stream against the discovered catalog and apply
        its sync mode, cursor field and primary key.

        Raises:
            StreamNotFoundError: no discovered stream has that name
            ConfigurationError: ambiguous name or invalid cursor/primary key
        """
        name = stream_config.name
        matches = [s for s in catalog if s.qualified_name == name]
        if not matches:
            matches = [s for s in catalog if s.name == name]
        if not matches:
            raise StreamNotFoundError(f"Stream {name!r} not found in source catalog")
        if len(matches) > 1:
            raise ConfigurationError(
                f"Stream name {name!r} is ambiguous: {[s.qualified_name for s in matches]}"
            )
        return matches[0].configure(
            sync_mode=SyncMode(stream_config.sync_mode),
            cursor_field=stream_config.cursor_field,
            primary_key=stream_config.primary_key,
        )

    def destination_path(self, stream: Stream, stream_config: StreamConfig, generation: Optional[str]) -> str:
        """
        ``<prefix>/<namespace>/<target>/incremental`` or
        ``<prefix>/<namespace>/<target>/full_refresh/generation=<id>``
        """
        parts = [p for p in (self.prefix, stream.namespace, stream_config.target_name or stream.name) if p]
        base = "/".join(parts)
        if stream.sync_mode == SyncMode.INCREMENTAL:
            return f"{base}/incremental"
        return f"{base}/full_refresh/generation={generation}"

    # -----------------------------------------
    # run
    # -----------------------------------------

    def run(
        self,
        stream_configs: Sequence[StreamConfig],
        cancel_token: Optional[CancellationToken] = None,
    ) -> SyncSummary:
        """
        Sync every configured stream.

        Args:
            stream_configs: Streams to sync
            cancel_token: Cancels the whole run (checked between rows and batches)

        Returns:
            SyncSummary with one StreamRun per configured stream
        """
        cancel_token = cancel_token or CancellationToken()
        summary = SyncSummary(run_id=self.run_id)
        runs = [StreamRun(sc.name, self.run_id) for sc in stream_configs]
        summary.runs = runs

        logger.info("=" * 60)
        logger.info("STARTING SYNC RUN")
        logger.info(f"Run ID: {self.run_id}")
        logger.info(f"Streams: {len(runs)}, max concurrent: {self.settings.max_concurrent_streams}")
        logger.info("=" * 60)

        for run in runs:
            run.started_at = datetime.now(timezone.utc)
            run.transition(RunState.DISCOVERING)

        try:
            catalog = self.connector.discover()
        except Exception as e:
            logger.error(f"✗ Discovery failed: {e}")
            summary.discovery_error = f"{type(e).__name__}: {e}"
            for run in runs:
                run.fail(e)
            self._emit("discovery_failed", str(e), level="error")
            summary.finished_at = datetime.now(timezone.utc)
            return summary

        work = []
        for run, stream_config in zip(runs, stream_configs):
            try:
                stream = self.resolve_stream(catalog, stream_config)
            except SyncError as e:
                logger.error(f"✗ {stream_config.name}: {e}")
                self._finish_failed(run, e)
                continue
            run.stream_name = stream.qualified_name
            run.sync_mode = stream.sync_mode.value
            work.append((run, stream_config, stream))

        if work:
            with ThreadPoolExecutor(
                max_workers=self.settings.max_concurrent_streams,
                thread_name_prefix="lakesync-stream",
            ) as pool:
                futures = [
                    pool.submit(self._run_stream, run, stream_config, stream, cancel_token)
                    for run, stream_config, stream in work
                ]
                for future in as_completed(futures):
                    future.result()

        summary.finished_at = datetime.now(timezone.utc)
        self._log_summary(summary)
        return summary

    def _log_summary(self, summary: SyncSummary):
        total_rows = sum(r.rows_written for r in summary.runs)
        logger.info("=" * 60)
        logger.info("SYNC RUN COMPLETE")
        logger.info(f"  Streams: {len(summary.completed)} completed, {len(summary.failed)} failed")
        logger.info(f"  Total rows written: {total_rows}")
        logger.info("=" * 60)

    def _finish_failed(self, run: StreamRun, error: BaseException):
        run.fail(error)
        self._emit(
            "stream_failed",
            f"{run.stream_name}: {type(error).__name__}: {error}",
            level="error",
            stream=run.stream_name,
            last_checkpoint=run.checkpoint.last_cursor_value if run.checkpoint else None,
        )
        if self.metrics is not None:
            self.metrics.record_stream_run(
                run.stream_name, run.state.value, run.duration_seconds, run.rows_read, run.rows_written
            )

    def _run_stream(
        self,
        run: StreamRun,
        stream_config: StreamConfig,
        stream: Stream,
        cancel_token: CancellationToken,
    ):
        """Execute one stream run, retrying retriable failures from the last checkpoint."""
        with log_context(stream=stream.qualified_name, run_id=self.run_id):
            while True:
                run.attempts += 1
                # an attempt re-reads everything past the last committed batch
                run.rows_read = run.rows_written
                try:
                    self._sync_stream(run, stream_config, stream, cancel_token)
                except Exception as e:
                    retriable = getattr(e, "retriable", False) and not cancel_token.cancelled
                    if retriable and run.attempts <= self.settings.stream_retries:
                        logger.warning(
                            f"{stream.qualified_name}: attempt {run.attempts} failed ({e}); "
                            f"retrying from the last committed checkpoint"
                        )
                        continue
                    logger.error(f"  ✗ {stream.qualified_name} failed: {e}")
                    self._finish_failed(run, e)
                    return

                logger.info(
                    f"  ✓ {stream.qualified_name} complete: {run.rows_written} rows, "
                    f"{run.batches_uploaded} files"
                )
                if self.metrics is not None:
                    self.metrics.record_stream_run(
                        run.stream_name, run.state.value, run.duration_seconds, run.rows_read, run.rows_written
                    )
                return

    # -----------------------------------------
    # one stream
    # -----------------------------------------

    def _check_schema(self, stream: Stream, checkpoint: Optional[Checkpoint]):
        if checkpoint is None or checkpoint.schema is None:
            return
        if checkpoint.schema == stream.schema.to_dict():
            return
        drift = Schema.from_dict(checkpoint.schema).diff(stream.schema)
        if stream.sync_mode == SyncMode.FULL_REFRESH and checkpoint.generation_complete:
            # A new generation rewrites everything; the new shape starts clean
            self._emit(
                "schema_changed",
                f"{stream.qualified_name}: schema changed since last full refresh",
                level="warning",
                stream=stream.qualified_name,
                **drift,
            )
            return
        self._emit("schema_drift", f"{stream.qualified_name}: schema drift", level="error",
                   stream=stream.qualified_name, **drift)
        raise SchemaDriftError(
            f"Schema of {stream.qualified_name} changed since its last checkpoint "
            f"(new={drift['new_columns']} missing={drift['missing_columns']} "
            f"changed={[c['column'] for c in drift['type_changes']]}); "
            f"reset the stream to re-initialize",
            drift,
        )

    def _plan(self, stream: Stream, checkpoint: Optional[Checkpoint]) -> Tuple[Optional[str], Optional[Checkpoint]]:
        """
        Pick the generation and resume point.

        Returns:
            (generation, checkpoint to resume after)
        """
        if stream.sync_mode == SyncMode.INCREMENTAL:
            return None, checkpoint
        if checkpoint is not None and checkpoint.generation and not checkpoint.generation_complete:
            logger.info(f"Resuming full refresh generation {checkpoint.generation}")
            return checkpoint.generation, checkpoint
        return self.run_id, None

    def _writer_schema(self, stream: Stream) -> Schema:
        if self.settings.audit_columns:
            return stream.schema.extend(AUDIT_COLUMNS)
        return stream.schema

    def _sync_stream(
        self,
        run: StreamRun,
        stream_config: StreamConfig,
        stream: Stream,
        cancel_token: CancellationToken,
    ):
        name = stream.qualified_name
        checkpoint = self.checkpoint_store.load(name)
        run.checkpoint = checkpoint
        self._check_schema(stream, checkpoint)

        generation, resume_from = self._plan(stream, checkpoint)
        run.generation = generation
        destination = self.destination_path(stream, stream_config, generation)
        run.destination_path = destination
        run.transition(RunState.READING)

        resume_cursor = (
            CursorToken.from_json(resume_from.last_cursor_value, stream.schema) if resume_from else None
        )
        logger.info(
            f"Syncing {name} ({stream.sync_mode.value}) -> {destination}, "
            f"resume after {resume_cursor if resume_cursor is not None else 'beginning'}"
        )

        spool_dir = Path(self.settings.spool_dir) / self.run_id / f"{name}-{run.attempts}"
        writer = ColumnarWriter(
            self._writer_schema(stream),
            str(spool_dir),
            max_batch_rows=stream_config.max_batch_rows or self.settings.max_batch_rows,
            max_batch_bytes=stream_config.max_batch_bytes or self.settings.max_batch_bytes,
            compression=self.settings.compression,
            metadata={
                "lakesync.stream": name,
                "lakesync.run_id": self.run_id,
                "lakesync.sync_mode": stream.sync_mode.value,
                "lakesync.generation": generation or "",
            },
        )
        stage = _UploadStage(
            lambda batch: self._process_batch(run, stream, destination, generation, batch, cancel_token),
            self.settings.pipeline_depth,
            name,
        )
        audit = (datetime.now(timezone.utc), self.run_id) if self.settings.audit_columns else ()

        batch_number = 0
        batch_start = resume_cursor
        last_cursor = resume_cursor
        try:
            for record in self.connector.read(stream, resume_from, cancel_token):
                cancel_token.raise_if_cancelled()
                stage.raise_if_failed()
                if writer.is_full():
                    batch_number += 1
                    self._flush(run, stream, writer, stage, batch_number, batch_start, last_cursor, final=False)
                    batch_start = last_cursor
                writer.append(record.values + audit)
                last_cursor = record.cursor
                run.rows_read += 1

            cancel_token.raise_if_cancelled()
            if writer.row_count:
                batch_number += 1
                self._flush(run, stream, writer, stage, batch_number, batch_start, last_cursor, final=True)
            elif stream.sync_mode == SyncMode.FULL_REFRESH:
                # Nothing left to read: still close the generation
                stage.submit(_Batch(batch_number + 1, None, last_cursor, last_cursor, final=True))
            stage.finish()
        except BaseException:
            writer.discard()
            stage.abort()
            raise
        finally:
            shutil.rmtree(spool_dir, ignore_errors=True)

        run.transition(RunState.COMPLETED)

        if stream.sync_mode == SyncMode.FULL_REFRESH and self.settings.full_refresh_policy == "replace":
            self._remove_old_generations(run, stream, stream_config, generation)

    def _flush(
        self,
        run: StreamRun,
        stream: Stream,
        writer: ColumnarWriter,
        stage: _UploadStage,
        number: int,
        start: Optional[CursorToken],
        end: Optional[CursorToken],
        final: bool,
    ):
        run.transition(RunState.WRITING)
        seed = json.dumps(
            {
                "stream": stream.qualified_name,
                "generation": run.generation,
                "start": start.to_json(stream.schema) if start is not None else None,
                "end": end.to_json(stream.schema) if end is not None else None,
            },
            sort_keys=True,
            default=str,
        )
        handle = writer.flush(name_seed=seed)
        stage.submit(_Batch(number, handle, start, end, final=final))

    def _process_batch(
        self,
        run: StreamRun,
        stream: Stream,
        destination: str,
        generation: Optional[str],
        batch: _Batch,
        cancel_token: CancellationToken,
    ):
        """
        Upload one batch, then commit its checkpoint. Runs on the upload worker.

        Run counters only include batches whose checkpoint was committed, so a
        batch re-sent by a retry is counted once.
        """
        ref = None
        if batch.file is not None:
            run.transition(RunState.UPLOADING)
            try:
                ref = self.uploader.upload(batch.file, destination, cancel_token)
            finally:
                batch.discard()
            if self.metrics is not None:
                self.metrics.record_upload(stream.qualified_name, ref.size)

        run.transition(RunState.CHECKPOINTING)
        self._commit(run, stream, generation, batch)
        if ref is not None:
            run.objects.append(ref)
            run.batches_uploaded += 1
            run.bytes_uploaded += ref.size
            run.rows_written += batch.file.row_count
        if not batch.final:
            run.transition(RunState.READING)

    def _commit(self, run: StreamRun, stream: Stream, generation: Optional[str], batch: _Batch):
        previous = run.checkpoint
        cursor = batch.end_cursor

        same_lineage = previous is not None and previous.generation == generation
        if same_lineage and cursor is not None and previous.last_cursor_value:
            committed = CursorToken.from_json(previous.last_cursor_value, stream.schema)
            if committed.fields == cursor.fields and cursor < committed:
                raise CheckpointRegressionError(
                    f"{stream.qualified_name}: cursor {cursor} is behind committed {committed}"
                )

        checkpoint = Checkpoint(
            stream_name=stream.qualified_name,
            last_cursor_value=cursor.to_json(stream.schema) if cursor is not None else None,
            version=previous.version if previous is not None else 0,
            schema=stream.schema.to_dict(),
            generation=generation,
            generation_complete=bool(batch.final and stream.sync_mode == SyncMode.FULL_REFRESH),
        )
        stored = self.checkpoint_store.commit(stream.qualified_name, checkpoint)
        run.checkpoint = stored
        if self.metrics is not None:
            self.metrics.record_counter("lakesync_checkpoint_commits_total", 1, {"stream": stream.qualified_name})
        logger.info(
            f"Committed checkpoint v{stored.version} for {stream.qualified_name} at "
            f"{cursor if cursor is not None else 'start'} (batch {batch.number})"
        )

    def _remove_old_generations(
        self,
        run: StreamRun,
        stream: Stream,
        stream_config: StreamConfig,
        generation: str,
    ):
        current = self.destination_path(stream, stream_config, generation) + "/"
        root = current.rsplit("/generation=", 1)[0] + "/"
        try:
            stale = [k for k in self.uploader.list_objects(prefix=root) if not k.startswith(current)]
            if not stale:
                return
            removed = self.uploader.remove_objects(stale)
        except SyncError as e:
            logger.warning(f"{stream.qualified_name}: could not remove previous generations: {e}")
            self._emit(
                "cleanup_failed", f"{stream.qualified_name}: {e}", level="warning", stream=stream.qualified_name
            )
            return
        logger.info(f"{stream.qualified_name}: removed {removed} objects from previous generations")
        if self.metrics is not None:
            self.metrics.record_counter("lakesync_objects_deleted_total", removed, {"stream": stream.qualified_name})
