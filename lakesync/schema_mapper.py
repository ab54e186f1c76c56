"""
Schema Mapper
=============

Maps source column types (SQLAlchemy type objects or raw type names) to
logical types. Mapping is total: anything unrecognized falls back to
``string`` and a LossyMappingWarning is handed to the observability sink,
so discovery never fails on an exotic column type.
"""

import logging
import re
import threading
from typing import Callable, Dict, Optional, Tuple, Union

import sqlalchemy as sa
from sqlalchemy.types import TypeEngine

from .errors import LossyMappingWarning
from .models import (
    BINARY,
    BOOLEAN,
    DATE,
    FLOAT64,
    INT64,
    STRING,
    TIMESTAMP,
    LogicalType,
)

logger = logging.getLogger(__name__)

MAX_DECIMAL_PRECISION = 76

# Type names (lowercase, without parameters) to logical types
TYPE_NAME_MAP = {
    # integers
    "tinyint": INT64,
    "smallint": INT64,
    "mediumint": INT64,
    "int": INT64,
    "integer": INT64,
    "bigint": INT64,
    "int2": INT64,
    "int4": INT64,
    "int8": INT64,
    "serial": INT64,
    "smallserial": INT64,
    "bigserial": INT64,
    "year": INT64,
    # floating point
    "float": FLOAT64,
    "float4": FLOAT64,
    "float8": FLOAT64,
    "real": FLOAT64,
    "double": FLOAT64,
    "double precision": FLOAT64,
    # text
    "char": STRING,
    "nchar": STRING,
    "varchar": STRING,
    "nvarchar": STRING,
    "character": STRING,
    "character varying": STRING,
    "text": STRING,
    "tinytext": STRING,
    "mediumtext": STRING,
    "longtext": STRING,
    "ntext": STRING,
    "clob": STRING,
    "string": STRING,
    "citext": STRING,
    "enum": STRING,
    "set": STRING,
    "uuid": STRING,
    "uniqueidentifier": STRING,
    # semi-structured documents pass through as text
    "json": STRING,
    "jsonb": STRING,
    # boolean
    "bool": BOOLEAN,
    "boolean": BOOLEAN,
    # temporal
    "date": DATE,
    "datetime": TIMESTAMP,
    "datetime2": TIMESTAMP,
    "smalldatetime": TIMESTAMP,
    "timestamp": TIMESTAMP,
    "timestamptz": TIMESTAMP,
    "timestamp with time zone": TIMESTAMP,
    "timestamp without time zone": TIMESTAMP,
    # binary
    "binary": BINARY,
    "varbinary": BINARY,
    "blob": BINARY,
    "tinyblob": BINARY,
    "mediumblob": BINARY,
    "longblob": BINARY,
    "bytea": BINARY,
    "raw": BINARY,
    "image": BINARY,
}

# Known types that have no faithful logical counterpart
LOSSY_TYPE_NAMES = {
    "time": (STRING, "time of day stored as ISO text"),
    "timetz": (STRING, "time of day stored as ISO text"),
    "time with time zone": (STRING, "time of day stored as ISO text"),
    "time without time zone": (STRING, "time of day stored as ISO text"),
    "interval": (STRING, "interval stored as text"),
    "money": (STRING, "currency stored as text"),
    "bit": (BINARY, "bit string stored as bytes"),
    "varbit": (BINARY, "bit string stored as bytes"),
    "geometry": (BINARY, "spatial value stored as WKB bytes"),
    "point": (BINARY, "spatial value stored as WKB bytes"),
}

DECIMAL_NAMES = ("decimal", "numeric", "number", "dec")

_PARAMS_RE = re.compile(r"\(([^)]*)\)")
_MODIFIERS = ("unsigned", "zerofill", "signed")

WarningCallback = Callable[[LossyMappingWarning], None]


class SchemaMapper:
    """
    Deterministic source type -> logical type mapping.

    Results are memoized per source type key, so one mapper instance always
    gives the same answer (and reports each lossy mapping once).
    """

    def __init__(self, on_warning: Optional[WarningCallback] = None):
        self.on_warning = on_warning
        self._cache: Dict[str, LogicalType] = {}
        self._lock = threading.Lock()

    def map(self, source_type: Union[TypeEngine, str]) -> LogicalType:
        """
        Map one source type.

        Args:
            source_type: SQLAlchemy type instance or a type name such as 'decimal(10,2)'

        Returns:
            LogicalType (never raises)
        """
        key = self._cache_key(source_type)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        if isinstance(source_type, TypeEngine):
            logical, reason = self._map_sqlalchemy(source_type)
        else:
            logical, reason = self._map_name(str(source_type))

        with self._lock:
            if key in self._cache:
                return self._cache[key]
            self._cache[key] = logical

        if reason:
            self._warn(key, logical, reason)
        return logical

    def _cache_key(self, source_type: Union[TypeEngine, str]) -> str:
        if isinstance(source_type, TypeEngine):
            return f"{type(source_type).__module__}.{source_type!r}"
        return " ".join(str(source_type).lower().split())

    def _warn(self, key: str, logical: LogicalType, reason: str):
        warning = LossyMappingWarning(key, str(logical), reason)
        logger.warning(str(warning))
        if self.on_warning is not None:
            self.on_warning(warning)

    # =========================================
    # SQLALCHEMY TYPES
    # =========================================

    def _map_sqlalchemy(self, type_: TypeEngine) -> Tuple[LogicalType, Optional[str]]:
        if isinstance(type_, sa.Boolean):
            return BOOLEAN, None
        if isinstance(type_, sa.Integer):
            if isinstance(type_, sa.BigInteger) and getattr(type_, "unsigned", False):
                return LogicalType.decimal(20, 0), None
            return INT64, None
        if isinstance(type_, sa.Float):
            return FLOAT64, None
        if isinstance(type_, sa.Numeric):
            return self._decimal(type_.precision, type_.scale, repr(type_))
        if isinstance(type_, sa.JSON):
            return STRING, None
        if isinstance(type_, sa.Uuid):
            return STRING, None
        if isinstance(type_, sa.String):
            return STRING, None
        if isinstance(type_, sa.DateTime):
            return TIMESTAMP, None
        if isinstance(type_, sa.Date):
            return DATE, None
        if isinstance(type_, sa.Time):
            return STRING, "time of day stored as ISO text"
        if isinstance(type_, sa.Interval):
            return STRING, "interval stored as text"
        if isinstance(type_, (sa.LargeBinary, sa.BINARY, sa.VARBINARY)):
            return BINARY, None
        if isinstance(type_, sa.types.NullType):
            return STRING, "type not reported by the driver"

        # Dialect-specific types: fall back to their SQL name
        visit_name = getattr(type_, "__visit_name__", None) or type(type_).__name__
        return self._map_name(str(visit_name))

    # =========================================
    # TYPE NAMES
    # =========================================

    def _map_name(self, type_name: str) -> Tuple[LogicalType, Optional[str]]:
        text = " ".join(type_name.lower().split())
        params_match = _PARAMS_RE.search(text)
        params = params_match.group(1) if params_match else ""
        base = _PARAMS_RE.sub("", text)
        words = [w for w in base.split() if w not in _MODIFIERS]
        base = " ".join(words)
        unsigned = "unsigned" in text.split()

        if base in DECIMAL_NAMES:
            parts = [p.strip() for p in params.split(",") if p.strip()]
            precision = int(parts[0]) if parts else None
            scale = int(parts[1]) if len(parts) > 1 else (0 if parts else None)
            return self._decimal(precision, scale, text)

        if base == "bigint" and unsigned:
            return LogicalType.decimal(20, 0), None

        if base == "tinyint" and params.strip() == "1":
            # MySQL convention for booleans; keep the integer value
            return INT64, None

        if base in TYPE_NAME_MAP:
            return TYPE_NAME_MAP[base], None

        if base in LOSSY_TYPE_NAMES:
            return LOSSY_TYPE_NAMES[base]

        if base.endswith("[]") or base.startswith("array"):
            return STRING, "array stored as JSON text"

        return STRING, f"unrecognized source type {type_name!r}"

    def _decimal(self, precision, scale, label: str) -> Tuple[LogicalType, Optional[str]]:
        if precision is None:
            return STRING, f"{label} has no declared precision; stored as text"
        scale = scale or 0
        if precision > MAX_DECIMAL_PRECISION or scale > precision:
            return STRING, f"{label} exceeds decimal({MAX_DECIMAL_PRECISION}) limits; stored as text"
        return LogicalType.decimal(precision, scale), None
