#!/usr/bin/env python3
"""
Sync Runner
===========

Operator CLI for lakesync.

Usage:
    lakesync declare --source-url mysql+pymysql://... --bucket lake --stream shop.orders:incremental:updated_at
    lakesync check                    # Test source and destination connections
    lakesync discover                 # List source streams and schemas
    lakesync run [--stream NAME]      # Run a sync
    lakesync checkpoints              # Show last durable checkpoint per stream
    lakesync reset --stream NAME      # Forget a stream's checkpoint
    lakesync preview --key KEY        # Print the head of an uploaded Parquet file

Exit codes: 0 success, 1 configuration error, 3 discovery failure,
4 partial stream failure, 5 total failure (also any source, destination or
checkpoint store error raised outside a stream run).
"""

import argparse
import json
import logging
import os
import signal
import sys
from typing import List, Optional

from observability import EventSink, MetricsCollector, configure_logging

from .cancellation import CancellationToken
from .checkpoints import build_checkpoint_store
from .config import (
    CheckpointConfig,
    DestinationConfig,
    SourceConfig,
    SyncConfig,
    SyncSettings,
    load_config,
    parse_stream_declaration,
    save_config,
)
from .connectors.object_store import ObjectStoreUploader
from .connectors.sql_connector import SQLConnector
from .engine import EXIT_TOTAL_FAILURE, SyncOrchestrator, SyncSummary
from .errors import ConfigurationError, SyncError
from .schema_mapper import SchemaMapper

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "configs/sync.json"
EXIT_CONFIG_ERROR = 1


def build_components(config: SyncConfig, metrics: Optional[MetricsCollector] = None):
    """
    Wire connector, uploader, checkpoint store and observability from config.

    Returns:
        (connector, uploader, checkpoint_store, metrics, events)
    """
    metrics = metrics or MetricsCollector.from_config(config.metrics)
    events = EventSink(metrics)
    policy = config.settings.retry_policy()
    timeout = config.settings.timeout_seconds

    connector = SQLConnector(
        config.source,
        mapper=SchemaMapper(on_warning=events.lossy_mapping),
        retry_policy=policy,
        timeout=timeout,
    )
    uploader = ObjectStoreUploader(config.destination, retry_policy=policy, timeout=timeout, metrics=metrics)
    store = build_checkpoint_store(config.checkpoint, timeout=timeout)
    return connector, uploader, store, metrics, events


# =========================================
# COMMANDS
# =========================================

def cmd_declare(args) -> int:
    """Write a configuration file from command-line options."""
    if os.path.exists(args.config) and not args.force:
        print(f"✗ {args.config} already exists (use --force to overwrite)")
        return EXIT_CONFIG_ERROR

    config = SyncConfig(
        source=SourceConfig(
            url=args.source_url,
            driver=args.driver,
            host=args.host,
            port=args.port,
            database=args.database,
            username=args.username,
            password=args.password,
            namespaces=args.namespace or [],
        ),
        destination=DestinationConfig(
            bucket=args.bucket,
            region=args.region,
            endpoint_override=args.endpoint_override,
            path_style_access=args.path_style,
            access_key=args.access_key,
            secret_key=args.secret_key,
            prefix=args.prefix,
            create_bucket=args.create_bucket,
        ),
        streams=[parse_stream_declaration(declaration) for declaration in args.stream or []],
        checkpoint=CheckpointConfig(
            backend=args.checkpoint_backend,
            path=args.checkpoint_path,
            url=args.checkpoint_url,
        ),
        settings=SyncSettings(
            max_concurrent_streams=args.max_concurrent_streams,
            max_batch_rows=args.batch_rows,
        ),
    )
    save_config(config, args.config)

    print(f"✓ Configuration written to {args.config}")
    print(f"    Streams: {', '.join(s.name for s in config.streams) or '(none)'}")
    print(f"    Destination: s3://{config.destination.bucket}/{config.destination.prefix}")
    if config.destination.endpoint_override:
        print(f"    Endpoint: {config.destination.endpoint_override} "
              f"({'path' if config.destination.path_style_access else 'virtual-host'} style)")
    return 0


def cmd_check(args, config: SyncConfig) -> int:
    """Test source and destination connections."""
    print("=" * 60)
    print("TESTING CONNECTIONS")
    print("=" * 60)

    connector, uploader, store, _, _ = build_components(config)
    success = True
    try:
        try:
            connector.check()
            print("\n✓ Source reachable")
        except SyncError as e:
            print(f"\n✗ Source unreachable: {e}")
            success = False

        try:
            uploader.check()
            print(f"✓ Bucket {config.destination.bucket} reachable")
        except SyncError as e:
            print(f"✗ Destination unreachable: {e}")
            success = False
    finally:
        connector.close()
        store.close()

    if success:
        print("\n✓ All connections successful!")
    return 0 if success else 1


def cmd_discover(args, config: SyncConfig) -> int:
    """List source streams with schema and primary key."""
    connector, _, store, _, events = build_components(config)
    try:
        streams = connector.discover()
    except Exception as e:
        print(f"✗ Discovery failed: {e}")
        return 3
    finally:
        connector.close()
        store.close()

    if args.json:
        print(json.dumps([
            {
                "name": s.qualified_name,
                "primary_key": list(s.primary_key),
                "schema": s.schema.to_dict(),
            }
            for s in streams
        ], indent=2))
        return 0

    print(f"Discovered {len(streams)} streams")
    for stream in streams:
        print(f"\n  {stream.qualified_name}")
        print(f"    Primary key: {', '.join(stream.primary_key) or '(none)'}")
        for column in stream.schema:
            print(f"    - {column.name}: {column.logical_type}{'' if column.nullable else ' NOT NULL'}")
    lossy = events.events("lossy_mapping")
    if lossy:
        print(f"\n  {len(lossy)} lossy type mapping(s):")
        for event in lossy:
            print(f"    ! {event.message}")
    return 0


def print_summary(summary: SyncSummary):
    print("\n" + "=" * 60)
    print("RESULTS SUMMARY")
    print("=" * 60)
    if summary.discovery_error:
        print(f"\n✗ Discovery failed: {summary.discovery_error}")
    for run in summary.runs:
        result = run.to_dict()
        status_icon = "✓" if result["status"] == "COMPLETED" else "✗"
        print(f"\n{status_icon} {result['stream']}")
        print(f"    Status: {result['status']}")
        print(f"    Mode: {result['sync_mode']}")
        print(f"    Rows read: {result['rows_read']:,}")
        print(f"    Rows written: {result['rows_written']:,}")
        print(f"    Files uploaded: {result['batches_uploaded']}")
        if result["destination_path"]:
            print(f"    Destination: {result['destination_path']}")
        checkpoint = result["last_checkpoint"]
        if checkpoint:
            print(f"    Last durable checkpoint: v{checkpoint['version']} "
                  f"{json.dumps(checkpoint['last_cursor_value'])} at {checkpoint['last_committed_at']}")
        else:
            print("    Last durable checkpoint: none")
        if result["error"]:
            print(f"    Error: {result['error']}")
    print(f"\nExit code: {summary.exit_code}")


def cmd_run(args, config: SyncConfig) -> int:
    """Execute a sync run."""
    streams = config.streams
    if args.stream:
        streams = [config.stream(name) for name in args.stream]
    if not streams:
        raise ConfigurationError("No streams configured")

    print("=" * 60)
    print("SYNC RUN")
    print("=" * 60)

    connector, uploader, store, metrics, events = build_components(config)
    cancel_token = CancellationToken()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        cancel_token.cancel(f"signal {signum}")

    previous_handlers = {
        signal.SIGINT: signal.signal(signal.SIGINT, signal_handler),
        signal.SIGTERM: signal.signal(signal.SIGTERM, signal_handler),
    }
    try:
        if config.destination.create_bucket:
            uploader.ensure_bucket()
        orchestrator = SyncOrchestrator(
            connector,
            uploader,
            store,
            config.settings,
            prefix=config.destination.prefix,
            metrics=metrics,
            events=events,
        )
        summary = orchestrator.run(streams, cancel_token)
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
        connector.close()
        store.close()

    print_summary(summary)

    if args.results_file:
        directory = os.path.dirname(args.results_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        results = summary.to_dict()
        results["events"] = [e.to_dict() for e in events.events()]
        with open(args.results_file, "w") as f:
            json.dump(results, f, indent=2, default=str)
        print(f"Results saved to: {args.results_file}")

    if config.metrics.backend == "prometheus" and config.metrics.pushgateway_url:
        metrics.push_to_prometheus()

    return summary.exit_code


def cmd_checkpoints(args, config: SyncConfig) -> int:
    """Print stored checkpoints."""
    store = build_checkpoint_store(config.checkpoint, timeout=config.settings.timeout_seconds)
    try:
        checkpoints = store.list()
    finally:
        store.close()
    if args.stream:
        checkpoints = [c for c in checkpoints if c.stream_name in args.stream]

    if args.json:
        print(json.dumps([c.to_dict() for c in checkpoints], indent=2, default=str))
        return 0

    if not checkpoints:
        print("No checkpoints stored")
        return 0
    for checkpoint in checkpoints:
        print(f"\n{checkpoint.stream_name}")
        print(f"    Version: {checkpoint.version}")
        print(f"    Cursor: {json.dumps(checkpoint.last_cursor_value)}")
        print(f"    Committed at: {checkpoint.last_committed_at.isoformat() if checkpoint.last_committed_at else '-'}")
        if checkpoint.generation:
            state = "complete" if checkpoint.generation_complete else "in progress"
            print(f"    Generation: {checkpoint.generation} ({state})")
    return 0


def cmd_reset(args, config: SyncConfig) -> int:
    """Delete a stream's checkpoint so the next run re-initializes it."""
    store = build_checkpoint_store(config.checkpoint, timeout=config.settings.timeout_seconds)
    try:
        deleted = store.delete(args.stream)
    finally:
        store.close()
    if deleted:
        print(f"✓ Checkpoint for {args.stream} deleted")
        return 0
    print(f"✗ No checkpoint stored for {args.stream}")
    return 1


def cmd_preview(args, config: SyncConfig) -> int:
    """Print the first rows of an uploaded Parquet object."""
    _, uploader, store, _, _ = build_components(config)
    store.close()
    try:
        df = uploader.read_parquet(args.key)
    except SyncError as e:
        print(f"✗ Cannot read {args.key}: {e}")
        return 1
    print(f"s3://{config.destination.bucket}/{args.key}: {len(df):,} rows, {len(df.columns)} columns")
    print(df.head(args.rows).to_string(index=False))
    return 0


# =========================================
# ARGUMENT PARSING
# =========================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lakesync", description="Relational to S3 Parquet replication")
    parser.add_argument("--config", default=DEFAULT_CONFIG, help="Path to the JSON configuration")
    parser.add_argument("--log-level", default=None, help="Override logging.level")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log records")
    commands = parser.add_subparsers(dest="command", required=True)

    declare = commands.add_parser("declare", help="Write a configuration file")
    declare.add_argument("--source-url", help="SQLAlchemy URL of the source")
    declare.add_argument("--driver", default="mysql+pymysql")
    declare.add_argument("--host")
    declare.add_argument("--port", type=int)
    declare.add_argument("--database")
    declare.add_argument("--username")
    declare.add_argument("--password", help="Prefer ${ENV_VAR} references")
    declare.add_argument("--namespace", action="append", help="Source schema to discover (repeatable)")
    declare.add_argument("--bucket", required=True)
    declare.add_argument("--region", default="us-east-1")
    declare.add_argument("--endpoint-override", help="e.g. http://localhost:9000")
    declare.add_argument("--path-style", action="store_true", help="Path-style bucket addressing")
    declare.add_argument("--access-key")
    declare.add_argument("--secret-key")
    declare.add_argument("--prefix", default="")
    declare.add_argument("--create-bucket", action="store_true")
    declare.add_argument("--checkpoint-backend", choices=["file", "sql"], default="file")
    declare.add_argument("--checkpoint-path", default="state/checkpoints")
    declare.add_argument("--checkpoint-url")
    declare.add_argument("--stream", action="append", help="name[:mode[:cursor_field]] (repeatable)")
    declare.add_argument("--max-concurrent-streams", type=int, default=4)
    declare.add_argument("--batch-rows", type=int, default=50000)
    declare.add_argument("--force", action="store_true", help="Overwrite an existing config")

    commands.add_parser("check", help="Test source and destination connections")

    discover = commands.add_parser("discover", help="List source streams")
    discover.add_argument("--json", action="store_true")

    run = commands.add_parser("run", help="Run a sync")
    run.add_argument("--stream", action="append", help="Only sync these configured streams")
    run.add_argument("--results-file", default="logs/sync_results.json")

    checkpoints = commands.add_parser("checkpoints", help="Show stored checkpoints")
    checkpoints.add_argument("--stream", action="append")
    checkpoints.add_argument("--json", action="store_true")

    reset = commands.add_parser("reset", help="Delete a stream's checkpoint")
    reset.add_argument("--stream", required=True)

    preview = commands.add_parser("preview", help="Print the head of an uploaded Parquet object")
    preview.add_argument("--key", required=True)
    preview.add_argument("--rows", type=int, default=10)

    return parser


COMMANDS = {
    "check": cmd_check,
    "discover": cmd_discover,
    "run": cmd_run,
    "checkpoints": cmd_checkpoints,
    "reset": cmd_reset,
    "preview": cmd_preview,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        if args.command == "declare":
            configure_logging(level=args.log_level or "INFO", json_format=args.json_logs)
            return cmd_declare(args)

        config = load_config(args.config)
        configure_logging(
            level=args.log_level or config.logging.level,
            json_format=args.json_logs or config.logging.json_format,
            log_to_file=config.logging.log_to_file,
            log_path=config.logging.log_path,
        )
        return COMMANDS[args.command](args, config)
    except ConfigurationError as e:
        print(f"✗ Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except SyncError as e:
        logger.error(f"{args.command} failed: {type(e).__name__}: {e}")
        print(f"✗ {type(e).__name__}: {e}")
        return EXIT_TOTAL_FAILURE


if __name__ == "__main__":
    sys.exit(main())
