"""
Cursor Tokens
=============

Comparable, JSON-serializable positions in a stream's read order.

A token holds the values of the stream's cursor columns for the last row
read: ``(cursor_field, *primary_key)`` for incremental streams, the
primary key for full refreshes, or a plain row offset when the table has
neither. An incremental stream without a primary key pairs the cursor
value with the number of rows already read at that value, so rows that
share a cursor value are never skipped on the next page or on resume.
"""

import base64
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from functools import total_ordering
from typing import Any, Dict, Optional, Sequence, Tuple

from .models import LogicalType, Schema, Stream, SyncMode

OFFSET_FIELD = "__offset__"


def cursor_fields(stream: Stream) -> Tuple[str, ...]:
    """Columns that define read order and resume position for a stream."""
    if stream.sync_mode == SyncMode.INCREMENTAL:
        if not stream.primary_key:
            return (stream.cursor_field, OFFSET_FIELD)
        tie_breakers = tuple(k for k in stream.primary_key if k != stream.cursor_field)
        return (stream.cursor_field,) + tie_breakers
    if stream.primary_key:
        return stream.primary_key
    return (OFFSET_FIELD,)


def _encode(value: Any, logical_type: LogicalType) -> Any:
    if value is None:
        return None
    if logical_type.kind in ("timestamp", "date"):
        return value.isoformat()
    if logical_type.kind == "decimal":
        return str(value)
    if logical_type.kind == "binary":
        return base64.b64encode(bytes(value)).decode("ascii")
    return value


def _decode(value: Any, logical_type: LogicalType) -> Any:
    if value is None:
        return None
    if logical_type.kind == "timestamp":
        return datetime.fromisoformat(value)
    if logical_type.kind == "date":
        return date.fromisoformat(value)
    if logical_type.kind == "decimal":
        return Decimal(value)
    if logical_type.kind == "binary":
        return base64.b64decode(value)
    if logical_type.kind == "float64":
        return float(value)
    return value


@total_ordering
@dataclass(frozen=True)
class CursorToken:
    fields: Tuple[str, ...]
    values: Tuple[Any, ...]

    @classmethod
    def from_row(cls, fields: Sequence[str], schema: Schema, row: Sequence[Any]) -> "CursorToken":
        return cls(tuple(fields), tuple(row[schema.index_of(f)] for f in fields))

    @classmethod
    def offset(cls, position: int) -> "CursorToken":
        return cls((OFFSET_FIELD,), (position,))

    @property
    def is_offset(self) -> bool:
        return self.fields == (OFFSET_FIELD,)

    def _check_comparable(self, other: "CursorToken"):
        if self.fields != other.fields:
            raise ValueError(f"Cursor tokens over different fields: {self.fields} vs {other.fields}")

    def __lt__(self, other: "CursorToken") -> bool:
        self._check_comparable(other)
        return self.values < other.values

    def __eq__(self, other) -> bool:
        if not isinstance(other, CursorToken):
            return NotImplemented
        return self.fields == other.fields and self.values == other.values

    def __hash__(self) -> int:
        return hash((self.fields, self.values))

    def to_json(self, schema: Schema) -> Dict:
        return {
            "fields": list(self.fields),
            "values": [
                v if f == OFFSET_FIELD else _encode(v, schema.column(f).logical_type)
                for f, v in zip(self.fields, self.values)
            ],
        }

    @classmethod
    def from_json(cls, data: Optional[Dict], schema: Schema) -> Optional["CursorToken"]:
        if not data:
            return None
        fields = tuple(data["fields"])
        return cls(
            fields,
            tuple(
                int(v) if f == OFFSET_FIELD else _decode(v, schema.column(f).logical_type)
                for f, v in zip(fields, data["values"])
            ),
        )

    def __str__(self) -> str:
        pairs = ", ".join(f"{f}={v}" for f, v in zip(self.fields, self.values))
        return f"<{pairs}>"
