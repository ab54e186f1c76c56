"""
Sync Errors
===========

Error taxonomy for the replication pipeline.

Errors flagged ``retriable`` may be retried by the orchestrator from the
last committed checkpoint. Everything else fails the affected stream.
"""


class SyncError(Exception):
    """Base class for all replication errors."""

    retriable = False


class SourceConnectionError(SyncError, ConnectionError):
    """Source is unreachable (after local retries)."""

    retriable = True


class SchemaDriftError(SyncError):
    """Source shape no longer matches the schema captured at discovery."""

    def __init__(self, message: str, drift: dict = None):
        super().__init__(message)
        self.drift = drift or {}


class RowSchemaMismatchError(SyncError):
    """A single row violates the active schema."""

    def __init__(self, message: str, column: str = None, row_number: int = None):
        super().__init__(message)
        self.column = column
        self.row_number = row_number


class UploadError(SyncError):
    """Destination rejected the write or stayed unreachable after retries."""

    def __init__(self, message: str, key: str = None, attempts: int = 0):
        super().__init__(message)
        self.key = key
        self.attempts = attempts


class CheckpointError(SyncError):
    """Checkpoint store failure (I/O, lock timeout, corrupt record)."""


class StaleCheckpointError(CheckpointError):
    """Compare-and-swap commit rejected: the stored checkpoint moved on."""

    retriable = True

    def __init__(self, stream_name: str, expected_version: int, actual_version: int = None):
        super().__init__(
            f"Stale checkpoint for {stream_name}: expected version {expected_version}, "
            f"store has {actual_version if actual_version is not None else 'a newer record'}"
        )
        self.stream_name = stream_name
        self.expected_version = expected_version
        self.actual_version = actual_version


class CheckpointRegressionError(CheckpointError):
    """Attempt to commit a cursor lower than the one already committed."""


class ConfigurationError(SyncError, ValueError):
    """Invalid configuration or stream declaration."""


class StreamNotFoundError(SyncError):
    """Configured stream does not exist in the source catalog."""


class SyncCancelledError(SyncError):
    """Run was cancelled (shutdown signal or caller request)."""


class InvalidStateTransition(SyncError):
    """Illegal SyncRun state transition."""


class LossyMappingWarning(UserWarning):
    """A source type was mapped to a logical type that may lose information."""

    def __init__(self, source_type: str, logical_type: str, reason: str = ""):
        message = f"Lossy mapping {source_type!r} -> {logical_type}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.source_type = source_type
        self.logical_type = logical_type
        self.reason = reason
