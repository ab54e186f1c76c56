"""
Sync Data Model
===============

Streams, schemas, rows, checkpoints and file/object handles shared by
every stage of the pipeline.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import ConfigurationError


class SyncMode(str, Enum):
    FULL_REFRESH = "full_refresh"
    INCREMENTAL = "incremental"


# =========================================
# LOGICAL TYPES
# =========================================

LOGICAL_KINDS = (
    "int64",
    "float64",
    "string",
    "boolean",
    "date",
    "timestamp",
    "decimal",
    "binary",
)

_DECIMAL_RE = re.compile(r"^decimal\s*\(\s*(\d+)\s*,\s*(\d+)\s*\)$")


@dataclass(frozen=True)
class LogicalType:
    """Canonical column type, independent of the source database."""

    kind: str
    precision: Optional[int] = None
    scale: Optional[int] = None

    def __post_init__(self):
        if self.kind not in LOGICAL_KINDS:
            raise ValueError(f"Unknown logical type: {self.kind!r}")
        if self.kind == "decimal":
            if self.precision is None or self.scale is None:
                raise ValueError("decimal requires precision and scale")
            if not 1 <= self.precision <= 76:
                raise ValueError(f"decimal precision out of range: {self.precision}")
            if not 0 <= self.scale <= self.precision:
                raise ValueError(f"decimal scale out of range: {self.scale}")
        elif self.precision is not None or self.scale is not None:
            raise ValueError(f"{self.kind} takes no precision/scale")

    @classmethod
    def parse(cls, text: str) -> "LogicalType":
        """Parse ``int64``, ``decimal(10,2)`` and friends."""
        value = text.strip().lower()
        match = _DECIMAL_RE.match(value)
        if match:
            return cls("decimal", int(match.group(1)), int(match.group(2)))
        return cls(value)

    @classmethod
    def decimal(cls, precision: int, scale: int) -> "LogicalType":
        return cls("decimal", precision, scale)

    def __str__(self) -> str:
        if self.kind == "decimal":
            return f"decimal({self.precision},{self.scale})"
        return self.kind


INT64 = LogicalType("int64")
FLOAT64 = LogicalType("float64")
STRING = LogicalType("string")
BOOLEAN = LogicalType("boolean")
DATE = LogicalType("date")
TIMESTAMP = LogicalType("timestamp")
BINARY = LogicalType("binary")


# =========================================
# SCHEMA
# =========================================

@dataclass(frozen=True)
class Column:
    name: str
    logical_type: LogicalType
    nullable: bool = True

    def to_dict(self) -> Dict:
        return {"name": self.name, "type": str(self.logical_type), "nullable": self.nullable}

    @classmethod
    def from_dict(cls, data: Dict) -> "Column":
        return cls(data["name"], LogicalType.parse(data["type"]), bool(data.get("nullable", True)))


@dataclass(frozen=True)
class Schema:
    """Ordered, immutable column list with unique names."""

    columns: Tuple[Column, ...]

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))
        seen = set()
        for column in self.columns:
            if column.name in seen:
                raise ValueError(f"Duplicate column name in schema: {column.name!r}")
            seen.add(column.name)

    def __len__(self) -> int:
        return len(self.columns)

    def __iter__(self):
        return iter(self.columns)

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.columns]

    def index_of(self, name: str) -> int:
        for i, column in enumerate(self.columns):
            if column.name == name:
                return i
        raise KeyError(name)

    def column(self, name: str) -> Column:
        return self.columns[self.index_of(name)]

    def __contains__(self, name: str) -> bool:
        return any(c.name == name for c in self.columns)

    def extend(self, extra: Sequence[Column]) -> "Schema":
        return Schema(self.columns + tuple(extra))

    def to_dict(self) -> Dict:
        return {"columns": [c.to_dict() for c in self.columns]}

    @classmethod
    def from_dict(cls, data: Dict) -> "Schema":
        return cls(tuple(Column.from_dict(c) for c in data["columns"]))

    def fingerprint(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def diff(self, other: "Schema") -> Dict:
        """
        Compare this (captured) schema against another (current) one.

        Returns:
            Dict with new_columns, missing_columns, type_changes and has_drift
        """
        mine = {c.name: c for c in self.columns}
        theirs = {c.name: c for c in other.columns}

        new_columns = [name for name in other.names if name not in mine]
        missing_columns = [name for name in self.names if name not in theirs]
        type_changes = []
        for name in self.names:
            if name not in theirs:
                continue
            old, new = mine[name], theirs[name]
            if old.logical_type != new.logical_type or old.nullable != new.nullable:
                type_changes.append({
                    "column": name,
                    "old": old.to_dict(),
                    "new": new.to_dict(),
                })

        order_changed = (
            not new_columns and not missing_columns and self.names != other.names
        )
        return {
            "new_columns": new_columns,
            "missing_columns": missing_columns,
            "type_changes": type_changes,
            "order_changed": order_changed,
            "has_drift": bool(new_columns or missing_columns or type_changes or order_changed),
        }


# =========================================
# STREAMS AND ROWS
# =========================================

@dataclass(frozen=True)
class Stream:
    """One logical source table."""

    name: str
    namespace: Optional[str]
    schema: Schema
    primary_key: Tuple[str, ...] = ()
    cursor_field: Optional[str] = None
    sync_mode: SyncMode = SyncMode.FULL_REFRESH

    def __post_init__(self):
        object.__setattr__(self, "primary_key", tuple(self.primary_key))
        object.__setattr__(self, "sync_mode", SyncMode(self.sync_mode))

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}" if self.namespace else self.name

    def configure(
        self,
        sync_mode: SyncMode,
        cursor_field: Optional[str] = None,
        primary_key: Optional[Sequence[str]] = None,
    ) -> "Stream":
        stream = replace(
            self,
            sync_mode=SyncMode(sync_mode),
            cursor_field=cursor_field,
            primary_key=tuple(primary_key) if primary_key is not None else self.primary_key,
        )
        stream.validate()
        return stream

    def validate(self):
        if self.sync_mode == SyncMode.INCREMENTAL:
            if not self.cursor_field:
                raise ConfigurationError(
                    f"Stream {self.qualified_name}: incremental sync requires a cursor_field"
                )
            if self.cursor_field not in self.schema:
                raise ConfigurationError(
                    f"Stream {self.qualified_name}: cursor_field {self.cursor_field!r} "
                    f"not in source schema {self.schema.names}"
                )
        for key in self.primary_key:
            if key not in self.schema:
                raise ConfigurationError(
                    f"Stream {self.qualified_name}: primary key column {key!r} not in schema"
                )


Row = Tuple[Any, ...]


@dataclass(frozen=True)
class SourceRecord:
    """A row plus the cursor reached once the row has been read."""

    values: Row
    cursor: Any  # CursorToken; typed loosely to avoid a circular import


# =========================================
# CHECKPOINTS
# =========================================

@dataclass(frozen=True)
class Checkpoint:
    """
    Durable sync progress for one stream.

    ``version`` is the compare-and-swap token: 0 means nothing has been
    committed yet. ``generation`` scopes a full refresh; incremental
    streams leave it empty.
    """

    stream_name: str
    last_cursor_value: Optional[Dict] = None
    last_committed_at: Optional[datetime] = None
    version: int = 0
    schema: Optional[Dict] = None
    generation: Optional[str] = None
    generation_complete: bool = False

    def to_dict(self) -> Dict:
        return {
            "stream_name": self.stream_name,
            "last_cursor_value": self.last_cursor_value,
            "last_committed_at": self.last_committed_at.isoformat() if self.last_committed_at else None,
            "version": self.version,
            "schema": self.schema,
            "generation": self.generation,
            "generation_complete": self.generation_complete,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Checkpoint":
        committed = data.get("last_committed_at")
        return cls(
            stream_name=data["stream_name"],
            last_cursor_value=data.get("last_cursor_value"),
            last_committed_at=datetime.fromisoformat(committed) if committed else None,
            version=int(data.get("version", 0)),
            schema=data.get("schema"),
            generation=data.get("generation"),
            generation_complete=bool(data.get("generation_complete", False)),
        )


# =========================================
# FILES AND OBJECTS
# =========================================

@dataclass(frozen=True)
class FileHandle:
    """An immutable, flushed columnar file waiting in the local spool."""

    path: str
    file_name: str
    row_count: int
    byte_size: int
    sha256: str
    schema: Schema
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ObjectRef:
    bucket: str
    key: str
    size: int
    etag: Optional[str] = None
    version_id: Optional[str] = None

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    def to_dict(self) -> Dict:
        return {
            "bucket": self.bucket,
            "key": self.key,
            "size": self.size,
            "etag": self.etag,
            "version_id": self.version_id,
        }
