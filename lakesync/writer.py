"""
Columnar Writer
===============

Buffers typed rows for one stream run and flushes them as Parquet files
(pyarrow) into a local spool directory.

- Every appended row is validated against the active Schema; nothing is
  coerced silently (ints widen to float64, naive timestamps are read as UTC)
- The Schema is embedded in the file metadata under ``lakesync.schema``
- Files are named ``part-<digest>.parquet`` and never overwritten in place
"""

import decimal
import hashlib
import json
import logging
import os
import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pyarrow as pa
import pyarrow.parquet as pq

from .errors import RowSchemaMismatchError
from .models import FileHandle, LogicalType, Schema

logger = logging.getLogger(__name__)

SCHEMA_METADATA_KEY = "lakesync.schema"

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_DECIMAL_CONTEXT = decimal.Context(prec=100)


def arrow_type(logical_type: LogicalType) -> pa.DataType:
    """Logical type -> Arrow type."""
    kind = logical_type.kind
    if kind == "int64":
        return pa.int64()
    if kind == "float64":
        return pa.float64()
    if kind == "string":
        return pa.string()
    if kind == "boolean":
        return pa.bool_()
    if kind == "date":
        return pa.date32()
    if kind == "timestamp":
        return pa.timestamp("us", tz="UTC")
    if kind == "binary":
        return pa.binary()
    if logical_type.precision <= 38:
        return pa.decimal128(logical_type.precision, logical_type.scale)
    return pa.decimal256(logical_type.precision, logical_type.scale)


def arrow_schema(schema: Schema, metadata: Optional[Dict[str, str]] = None) -> pa.Schema:
    """Arrow schema with the logical Schema embedded as JSON metadata."""
    fields = [pa.field(c.name, arrow_type(c.logical_type), nullable=c.nullable) for c in schema]
    file_metadata = {SCHEMA_METADATA_KEY: json.dumps(schema.to_dict(), sort_keys=True)}
    file_metadata.update({str(k): str(v) for k, v in (metadata or {}).items()})
    return pa.schema(fields, metadata=file_metadata)


def read_schema_metadata(path: str) -> Schema:
    """Recover the logical Schema embedded in a file written by this module."""
    metadata = pq.read_schema(path).metadata or {}
    raw = metadata.get(SCHEMA_METADATA_KEY.encode("utf-8"))
    if raw is None:
        raise ValueError(f"{path} carries no {SCHEMA_METADATA_KEY} metadata")
    return Schema.from_dict(json.loads(raw))


def _check_value(value: Any, logical_type: LogicalType):
    """
    Validate one non-null value.

    Returns:
        The value in the exact form handed to Arrow

    Raises:
        TypeError / ValueError describing the violation
    """
    kind = logical_type.kind

    if kind == "int64":
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"expected int, got {type(value).__name__}")
        if not INT64_MIN <= value <= INT64_MAX:
            raise ValueError(f"{value} out of int64 range")
        return value

    if kind == "float64":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"expected float, got {type(value).__name__}")
        return float(value)

    if kind == "string":
        if not isinstance(value, str):
            raise TypeError(f"expected str, got {type(value).__name__}")
        return value

    if kind == "boolean":
        if not isinstance(value, bool):
            raise TypeError(f"expected bool, got {type(value).__name__}")
        return value

    if kind == "date":
        if isinstance(value, datetime) or not isinstance(value, date):
            raise TypeError(f"expected date, got {type(value).__name__}")
        return value

    if kind == "timestamp":
        if not isinstance(value, datetime):
            raise TypeError(f"expected datetime, got {type(value).__name__}")
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if kind == "binary":
        if not isinstance(value, bytes):
            raise TypeError(f"expected bytes, got {type(value).__name__}")
        return value

    # decimal
    if isinstance(value, bool) or not isinstance(value, (decimal.Decimal, int)):
        raise TypeError(f"expected Decimal, got {type(value).__name__}")
    number = decimal.Decimal(value)
    if not number.is_finite():
        raise ValueError(f"{number} is not finite")
    quantum = decimal.Decimal(1).scaleb(-logical_type.scale)
    quantized = number.quantize(quantum, context=_DECIMAL_CONTEXT)
    if quantized != number:
        raise ValueError(f"{number} has more than {logical_type.scale} decimal places")
    if len(quantized.as_tuple().digits) > logical_type.precision:
        raise ValueError(f"{number} exceeds precision {logical_type.precision}")
    return quantized


def _estimate_size(value: Any) -> int:
    if value is None:
        return 1
    if isinstance(value, (str, bytes)):
        return len(value) + 4
    if isinstance(value, decimal.Decimal):
        return 16
    return 8


class ColumnarWriter:
    """
    Row buffer for one stream run. Not thread-safe: owned by a single worker.
    """

    def __init__(
        self,
        schema: Schema,
        spool_dir: str,
        max_batch_rows: int = 50000,
        max_batch_bytes: int = 64 * 1024 * 1024,
        compression: str = "snappy",
        metadata: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize writer.

        Args:
            schema: Active schema (fixed for the writer's lifetime)
            spool_dir: Local directory receiving flushed files
            max_batch_rows: Row bound of one batch
            max_batch_bytes: Estimated byte bound of one batch
            compression: Parquet codec
            metadata: Extra key/value pairs embedded in every file
        """
        if max_batch_rows < 1 or max_batch_bytes < 1:
            raise ValueError("batch bounds must be positive")
        self.schema = schema
        self.spool_dir = Path(spool_dir)
        self.spool_dir.mkdir(parents=True, exist_ok=True)
        self.max_batch_rows = max_batch_rows
        self.max_batch_bytes = max_batch_bytes
        self.compression = compression
        self.arrow_schema = arrow_schema(schema, metadata)
        self._types = [c.logical_type for c in schema]
        self._nullable = [c.nullable for c in schema]
        self._columns: List[List[Any]] = [[] for _ in schema.columns]
        self._row_count = 0
        self._estimated_bytes = 0
        self.rows_appended = 0
        self.files_written = 0

    @property
    def row_count(self) -> int:
        return self._row_count

    @property
    def estimated_bytes(self) -> int:
        return self._estimated_bytes

    def append(self, row: Sequence[Any]):
        """
        Validate and buffer one row.

        Raises:
            RowSchemaMismatchError: wrong arity, null in a non-nullable
                column, or a value of the wrong type
        """
        row_number = self.rows_appended + 1
        if len(row) != len(self._types):
            raise RowSchemaMismatchError(
                f"Row {row_number} has {len(row)} values, schema has {len(self._types)} columns",
                row_number=row_number,
            )

        checked = []
        size = 0
        for i, value in enumerate(row):
            name = self.schema.columns[i].name
            if value is None:
                if not self._nullable[i]:
                    raise RowSchemaMismatchError(
                        f"Row {row_number}: null in non-nullable column {name!r}",
                        column=name,
                        row_number=row_number,
                    )
                checked.append(None)
            else:
                try:
                    checked.append(_check_value(value, self._types[i]))
                except (TypeError, ValueError, decimal.InvalidOperation) as e:
                    raise RowSchemaMismatchError(
                        f"Row {row_number}: column {name!r} ({self._types[i]}): {e}",
                        column=name,
                        row_number=row_number,
                    ) from e
            size += _estimate_size(value)

        for column, value in zip(self._columns, checked):
            column.append(value)
        self._row_count += 1
        self._estimated_bytes += size
        self.rows_appended += 1

    def is_full(self) -> bool:
        return self._row_count >= self.max_batch_rows or self._estimated_bytes >= self.max_batch_bytes

    def discard(self):
        """Drop buffered rows without writing."""
        self._columns = [[] for _ in self.schema.columns]
        self._row_count = 0
        self._estimated_bytes = 0

    def flush(self, name_seed: Optional[str] = None) -> Optional[FileHandle]:
        """
        Write the buffered batch as one Parquet file.

        Args:
            name_seed: Stable batch identity; when given the file name is
                derived from it instead of the file content, so re-writing
                the same batch yields the same name

        Returns:
            FileHandle, or None if the buffer is empty
        """
        if self._row_count == 0:
            return None

        arrays = [
            pa.array(values, type=field.type)
            for values, field in zip(self._columns, self.arrow_schema)
        ]
        table = pa.Table.from_arrays(arrays, schema=self.arrow_schema)

        tmp_path = self.spool_dir / f".tmp-{uuid.uuid4().hex}.parquet"
        pq.write_table(table, str(tmp_path), compression=self.compression)

        sha = hashlib.sha256()
        with open(tmp_path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                sha.update(chunk)
        digest = sha.hexdigest()

        if name_seed is not None:
            name_digest = hashlib.sha256(name_seed.encode("utf-8")).hexdigest()
        else:
            name_digest = digest
        file_name = f"part-{name_digest[:24]}.parquet"
        final_path = self.spool_dir / file_name
        if final_path.exists():
            os.unlink(tmp_path)
            raise FileExistsError(f"Spool file already exists: {final_path}")
        os.replace(tmp_path, final_path)

        handle = FileHandle(
            path=str(final_path),
            file_name=file_name,
            row_count=self._row_count,
            byte_size=final_path.stat().st_size,
            sha256=digest,
            schema=self.schema,
        )
        self.files_written += 1
        logger.info(f"Flushed {handle.row_count} rows to {file_name} ({handle.byte_size} bytes)")
        self.discard()
        return handle
