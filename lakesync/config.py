"""
Sync Configuration
==================

JSON configuration for a replication job: source, destination, streams,
checkpoint store and run settings.

String values may reference environment variables as ``${VAR}`` or
``${VAR:-default}``; they are expanded when the file is loaded, so
secrets never need to be written to disk.
"""

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError
from .models import SyncMode
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

_ENV_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

CHECKPOINT_BACKENDS = ("file", "sql")
FULL_REFRESH_POLICIES = ("replace", "append")
METRICS_BACKENDS = ("memory", "prometheus")


def expand_env(value: Any, environ: Optional[Dict[str, str]] = None) -> Any:
    """
    Expand ``${VAR}`` references in strings, recursing into lists and dicts.

    Raises:
        ConfigurationError: a referenced variable is unset and has no default
    """
    environ = os.environ if environ is None else environ
    if isinstance(value, str):
        def substitute(match):
            name, default = match.group(1), match.group(2)
            if name in environ:
                return environ[name]
            if default is not None:
                return default
            raise ConfigurationError(f"Environment variable {name} is not set")
        return _ENV_RE.sub(substitute, value)
    if isinstance(value, list):
        return [expand_env(v, environ) for v in value]
    if isinstance(value, dict):
        return {k: expand_env(v, environ) for k, v in value.items()}
    return value


@dataclass
class SourceConfig:
    url: Optional[str] = None
    driver: str = "mysql+pymysql"
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    namespaces: List[str] = field(default_factory=list)
    tables: List[str] = field(default_factory=list)
    page_size: int = 10000


@dataclass
class DestinationConfig:
    bucket: str = ""
    region: Optional[str] = "us-east-1"
    endpoint_override: Optional[str] = None
    path_style_access: bool = False
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    session_token: Optional[str] = None
    prefix: str = ""
    create_bucket: bool = False
    verify_uploads: bool = True


@dataclass
class StreamConfig:
    name: str = ""
    sync_mode: str = SyncMode.FULL_REFRESH.value
    cursor_field: Optional[str] = None
    primary_key: Optional[List[str]] = None
    target_name: Optional[str] = None
    max_batch_rows: Optional[int] = None
    max_batch_bytes: Optional[int] = None


@dataclass
class CheckpointConfig:
    backend: str = "file"
    path: str = "state/checkpoints"
    url: Optional[str] = None


@dataclass
class SyncSettings:
    max_concurrent_streams: int = 4
    max_batch_rows: int = 50000
    max_batch_bytes: int = 64 * 1024 * 1024
    pipeline_depth: int = 2
    stream_retries: int = 1
    timeout_seconds: float = 30.0
    full_refresh_policy: str = "replace"
    audit_columns: bool = True
    spool_dir: str = "spool"
    compression: str = "snappy"
    retry_base_delay: float = 0.2
    retry_factor: float = 2.0
    retry_max_attempts: int = 5
    retry_max_delay: float = 30.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_delay=self.retry_base_delay,
            factor=self.retry_factor,
            max_attempts=self.retry_max_attempts,
            max_delay=self.retry_max_delay,
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json_format: bool = False
    log_to_file: bool = False
    log_path: str = "logs/sync.log"


@dataclass
class MetricsConfig:
    backend: str = "memory"
    pushgateway_url: Optional[str] = None
    job_name: str = "lakesync"


def _build(cls, data: Optional[Dict], section: str):
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{section}' must be an object")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{section}': {sorted(unknown)}")
    return cls(**data)


@dataclass
class SyncConfig:
    source: SourceConfig = field(default_factory=SourceConfig)
    destination: DestinationConfig = field(default_factory=DestinationConfig)
    streams: List[StreamConfig] = field(default_factory=list)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    settings: SyncSettings = field(default_factory=SyncSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @classmethod
    def from_dict(cls, data: Dict) -> "SyncConfig":
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise ConfigurationError(f"Unknown configuration sections: {sorted(unknown)}")
        streams = data.get("streams") or []
        if not isinstance(streams, list):
            raise ConfigurationError("'streams' must be a list")
        config = cls(
            source=_build(SourceConfig, data.get("source"), "source"),
            destination=_build(DestinationConfig, data.get("destination"), "destination"),
            streams=[_build(StreamConfig, s, f"streams[{i}]") for i, s in enumerate(streams)],
            checkpoint=_build(CheckpointConfig, data.get("checkpoint"), "checkpoint"),
            settings=_build(SyncSettings, data.get("settings"), "settings"),
            logging=_build(LoggingConfig, data.get("logging"), "logging"),
            metrics=_build(MetricsConfig, data.get("metrics"), "metrics"),
        )
        config.validate()
        return config

    def to_dict(self) -> Dict:
        return asdict(self)

    def validate(self):
        """Raise ConfigurationError on the first invalid setting."""
        source = self.source
        if not source.url and not source.host:
            raise ConfigurationError("source: either 'url' or 'host' is required")
        if source.page_size < 1:
            raise ConfigurationError("source.page_size must be positive")

        destination = self.destination
        if not destination.bucket:
            raise ConfigurationError("destination.bucket is required")
        if not destination.region and not destination.endpoint_override:
            raise ConfigurationError("destination: 'region' or 'endpoint_override' is required")

        seen = set()
        for stream in self.streams:
            if not stream.name:
                raise ConfigurationError("every stream needs a name")
            if stream.name in seen:
                raise ConfigurationError(f"stream {stream.name!r} is declared twice")
            seen.add(stream.name)
            try:
                mode = SyncMode(stream.sync_mode)
            except ValueError:
                raise ConfigurationError(
                    f"stream {stream.name!r}: unknown sync_mode {stream.sync_mode!r}"
                ) from None
            if mode == SyncMode.INCREMENTAL and not stream.cursor_field:
                raise ConfigurationError(f"stream {stream.name!r}: incremental sync requires cursor_field")
            for bound in ("max_batch_rows", "max_batch_bytes"):
                value = getattr(stream, bound)
                if value is not None and value < 1:
                    raise ConfigurationError(f"stream {stream.name!r}: {bound} must be positive")

        checkpoint = self.checkpoint
        if checkpoint.backend not in CHECKPOINT_BACKENDS:
            raise ConfigurationError(f"checkpoint.backend must be one of {CHECKPOINT_BACKENDS}")
        if checkpoint.backend == "sql" and not checkpoint.url:
            raise ConfigurationError("checkpoint.url is required for the sql backend")
        if checkpoint.backend == "file" and not checkpoint.path:
            raise ConfigurationError("checkpoint.path is required for the file backend")

        settings = self.settings
        if settings.max_concurrent_streams < 1:
            raise ConfigurationError("settings.max_concurrent_streams must be >= 1")
        if settings.max_batch_rows < 1 or settings.max_batch_bytes < 1:
            raise ConfigurationError("settings: batch bounds must be positive")
        if not 1 <= settings.pipeline_depth <= 3:
            raise ConfigurationError("settings.pipeline_depth must be between 1 and 3")
        if settings.stream_retries < 0:
            raise ConfigurationError("settings.stream_retries must be >= 0")
        if settings.timeout_seconds <= 0:
            raise ConfigurationError("settings.timeout_seconds must be positive")
        if settings.full_refresh_policy not in FULL_REFRESH_POLICIES:
            raise ConfigurationError(f"settings.full_refresh_policy must be one of {FULL_REFRESH_POLICIES}")
        try:
            settings.retry_policy()
        except ValueError as e:
            raise ConfigurationError(f"settings: invalid retry policy: {e}") from e

        if self.metrics.backend not in METRICS_BACKENDS:
            raise ConfigurationError(f"metrics.backend must be one of {METRICS_BACKENDS}")
        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"logging.level is invalid: {self.logging.level!r}")

    def stream(self, name: str) -> StreamConfig:
        for stream in self.streams:
            if stream.name == name:
                return stream
        raise ConfigurationError(f"Stream {name!r} is not configured")


def load_config(path: str, expand: bool = True) -> SyncConfig:
    """
    Load and validate a JSON configuration file.

    Args:
        path: Config file path
        expand: Expand ``${VAR}`` references

    Returns:
        SyncConfig
    """
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")
    if expand:
        data = expand_env(data)
    return SyncConfig.from_dict(data)


def save_config(config: SyncConfig, path: str):
    """Validate and write the configuration as JSON."""
    config.validate()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
    logger.info(f"Configuration written to {path}")


def parse_stream_declaration(declaration: str) -> StreamConfig:
    """
    Parse a ``name[:mode[:cursor_field]]`` command-line stream declaration.
    """
    parts = declaration.split(":")
    if not parts[0] or len(parts) > 3:
        raise ConfigurationError(f"Invalid stream declaration: {declaration!r}")
    stream = StreamConfig(name=parts[0])
    if len(parts) > 1 and parts[1]:
        stream.sync_mode = parts[1]
    if len(parts) > 2 and parts[2]:
        stream.cursor_field = parts[2]
    return stream
