"""
SQL Source Connector
====================

Connector for extracting rows from relational databases through SQLAlchemy.

- Discovery: table reflection, column types mapped by the SchemaMapper
- Reading: keyset pagination ordered by the stream's cursor columns, one
  statement per page, restartable from any cursor it has yielded
- Drift: the live table shape is compared with the schema captured at
  discovery before reading and whenever a page fails
"""

import json
import logging
import uuid
from datetime import time, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.exc import ArgumentError, NoSuchTableError, SQLAlchemyError

from ..cancellation import CancellationToken
from ..cursors import OFFSET_FIELD, CursorToken, cursor_fields
from ..errors import ConfigurationError, SchemaDriftError, SourceConnectionError
from ..models import Checkpoint, Column, LogicalType, Row, Schema, SourceRecord, Stream, SyncMode
from ..retry import RetryPolicy
from ..schema_mapper import SchemaMapper
from .base import SourceConnector

logger = logging.getLogger(__name__)

DEFAULT_DRIVER = "mysql+pymysql"


def build_url(config) -> sa.engine.URL:
    """
    Connection URL from a SourceConfig.

    ``config.url`` wins when present; otherwise the URL is assembled from
    driver, host, port, database, username and password.
    """
    if config.url:
        try:
            return sa.engine.make_url(config.url)
        except ArgumentError as e:
            raise ConfigurationError(f"Invalid source url: {e}") from e
    return sa.engine.URL.create(
        drivername=config.driver or DEFAULT_DRIVER,
        username=config.username,
        password=config.password,
        host=config.host,
        port=config.port,
        database=config.database,
    )


def engine_connect_args(url, timeout: float) -> Dict[str, Any]:
    """
    Driver arguments enforcing a per-call deadline.

    Args:
        url: Connection URL (string or URL object)
        timeout: Seconds allowed for connect and for each statement
    """
    backend = sa.engine.make_url(url).get_backend_name()
    seconds = max(1, int(timeout))
    if backend == "mysql":
        return {"connect_timeout": seconds, "read_timeout": seconds, "write_timeout": seconds}
    if backend == "postgresql":
        return {
            "connect_timeout": seconds,
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    if backend == "sqlite":
        return {"timeout": timeout, "check_same_thread": False}
    return {}


def is_transient_db_error(error: BaseException) -> bool:
    """Connection-class failures worth retrying."""
    if isinstance(error, (sa.exc.OperationalError, sa.exc.InterfaceError, sa.exc.TimeoutError)):
        return True
    if isinstance(error, sa.exc.DBAPIError) and error.connection_invalidated:
        return True
    return isinstance(error, (ConnectionError, TimeoutError))


def normalize_value(value: Any, logical_type: LogicalType) -> Any:
    """Driver value -> the Python representation the writer expects."""
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (time, timedelta)):
        return value.isoformat() if isinstance(value, time) else str(value)
    if isinstance(value, (memoryview, bytearray)):
        return bytes(value)
    if logical_type.kind == "string" and not isinstance(value, str):
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return str(value)
    return value


def keyset_after(columns: Sequence[sa.ColumnElement], values: Sequence[Any]):
    """
    ``(c1, c2, ...) > (v1, v2, ...)`` expanded lexicographically, since row
    value comparison is not portable across dialects.
    """
    clauses = []
    for i, column in enumerate(columns):
        equal_prefix = [columns[j] == values[j] for j in range(i)]
        clauses.append(sa.and_(*equal_prefix, column > values[i]))
    return sa.or_(*clauses)


class SQLConnector(SourceConnector):
    """
    Relational source connector (MySQL, PostgreSQL, SQLite, ...).
    """

    def __init__(
        self,
        config,
        mapper: Optional[SchemaMapper] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        engine: Optional[sa.engine.Engine] = None,
    ):
        """
        Initialize SQL connector.

        Args:
            config: SourceConfig (url or host fields, namespaces, tables, page_size)
            mapper: Schema mapper shared with the orchestrator
            retry_policy: Backoff for transient database errors
            timeout: Per-call deadline in seconds
            engine: Pre-built engine (tests)
        """
        self.config = config
        self.mapper = mapper or SchemaMapper()
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.page_size = getattr(config, "page_size", 10000)
        self.url = build_url(config)
        try:
            self.engine = engine or sa.create_engine(
                self.url,
                connect_args=engine_connect_args(self.url, timeout),
                pool_pre_ping=True,
                pool_timeout=timeout,
            )
        except ArgumentError as e:
            raise ConfigurationError(f"Unsupported source url {self.url.drivername!r}: {e}") from e

    @property
    def namespaces(self) -> List[Optional[str]]:
        return list(getattr(self.config, "namespaces", None) or [None])

    def _call(self, fn, description: str, cancel_token: Optional[CancellationToken] = None):
        try:
            return self.retry_policy.call(
                fn,
                is_transient=is_transient_db_error,
                cancel_token=cancel_token,
                description=description,
            )
        except SQLAlchemyError as e:
            if is_transient_db_error(e):
                raise SourceConnectionError(
                    f"{description} failed after {self.retry_policy.max_attempts} attempts: {e}"
                ) from e
            raise

    def check(self):
        """Test the connection with ``SELECT 1``."""
        def ping():
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

        self._call(ping, f"connect to {self.url.render_as_string(hide_password=True)}")
        logger.info(f"Connected to source: {self.url.render_as_string(hide_password=True)}")

    # =========================================
    # DISCOVERY
    # =========================================

    def _schema_from_columns(self, columns: List[Dict]) -> Schema:
        return Schema(tuple(
            Column(c["name"], self.mapper.map(c["type"]), bool(c.get("nullable", True)))
            for c in columns
        ))

    def _discover(self) -> List[Stream]:
        inspector = sa.inspect(self.engine)
        wanted = set(getattr(self.config, "tables", None) or [])
        streams = []
        for namespace in self.namespaces:
            for table_name in sorted(inspector.get_table_names(schema=namespace)):
                if wanted and table_name not in wanted:
                    continue
                schema = self._schema_from_columns(inspector.get_columns(table_name, schema=namespace))
                pk = inspector.get_pk_constraint(table_name, schema=namespace) or {}
                streams.append(Stream(
                    name=table_name,
                    namespace=namespace,
                    schema=schema,
                    primary_key=tuple(pk.get("constrained_columns") or ()),
                ))
        return streams

    def discover(self) -> List[Stream]:
        streams = self._call(self._discover, "discover")
        logger.info(f"Discovered {len(streams)} streams")
        return streams

    def current_schema(self, stream: Stream) -> Schema:
        """Reflect the live table shape (empty schema if the table is gone)."""
        inspector = sa.inspect(self.engine)
        try:
            columns = inspector.get_columns(stream.name, schema=stream.namespace)
        except NoSuchTableError:
            return Schema(())
        return self._schema_from_columns(columns)

    def detect_drift(self, stream: Stream) -> Dict:
        """Diff between the captured schema and the live table."""
        return stream.schema.diff(self.current_schema(stream))

    def _raise_if_drifted(self, stream: Stream):
        drift = self.detect_drift(stream)
        if drift["has_drift"]:
            raise SchemaDriftError(
                f"Schema drift on {stream.qualified_name}: "
                f"new={drift['new_columns']} missing={drift['missing_columns']} "
                f"changed={[c['column'] for c in drift['type_changes']]}",
                drift,
            )

    # =========================================
    # READING
    # =========================================

    def _page_query(
        self,
        table: sa.Table,
        stream: Stream,
        fields: Sequence[str],
        after: Optional[CursorToken],
    ):
        columns = [table.c[name] for name in stream.schema.names]
        query = sa.select(*columns)

        if fields == (OFFSET_FIELD,):
            # no key at all: stable total order over every column, resumed by position
            query = query.order_by(*columns)
            if after is not None:
                query = query.offset(after.values[0])
            return query.limit(self.page_size)

        order = [table.c[name] for name in fields]
        if stream.sync_mode == SyncMode.INCREMENTAL:
            query = query.where(table.c[stream.cursor_field].isnot(None))
        if after is not None:
            query = query.where(keyset_after(order, after.values))
        return query.order_by(*order).limit(self.page_size)

    def _grouped_page_query(
        self,
        table: sa.Table,
        stream: Stream,
        after: Optional[CursorToken],
        within_group: bool,
    ):
        """
        Page query for an incremental stream without a primary key.

        Rows sharing a cursor value are ordered by every column. The rest of
        the group at ``after`` is read by position first, then the rows with a
        greater cursor value.
        """
        columns = [table.c[name] for name in stream.schema.names]
        cursor = table.c[stream.cursor_field]
        query = sa.select(*columns).where(cursor.isnot(None))
        if after is None:
            return query.order_by(cursor, *columns).limit(self.page_size)
        value, position = after.values
        if within_group:
            return query.where(cursor == value).order_by(*columns).offset(position).limit(self.page_size)
        return query.where(cursor > value).order_by(cursor, *columns).limit(self.page_size)

    def _fetch_page(self, query, stream: Stream, cancel_token: Optional[CancellationToken]) -> List[Row]:
        def fetch():
            with self.engine.connect() as conn:
                result = conn.execute(query)
                keys = list(result.keys())
                if keys != stream.schema.names:
                    raise SchemaDriftError(
                        f"Result columns {keys} differ from captured schema {stream.schema.names}",
                        {"has_drift": True, "result_columns": keys},
                    )
                return [tuple(row) for row in result.fetchall()]

        try:
            return self._call(fetch, f"read page of {stream.qualified_name}", cancel_token)
        except (SQLAlchemyError, SourceConnectionError):
            self._raise_if_drifted(stream)
            raise

    def _reflect_table(self, stream: Stream) -> sa.Table:
        return sa.Table(stream.name, sa.MetaData(), autoload_with=self.engine, schema=stream.namespace)

    def read(
        self,
        stream: Stream,
        from_checkpoint: Optional[Checkpoint] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[SourceRecord]:
        self._call(lambda: self._raise_if_drifted(stream), f"inspect {stream.qualified_name}", cancel_token)
        table = self._call(lambda: self._reflect_table(stream), f"reflect {stream.qualified_name}", cancel_token)

        fields = cursor_fields(stream)
        token = None
        if from_checkpoint is not None:
            token = CursorToken.from_json(from_checkpoint.last_cursor_value, stream.schema)
            if token is not None and token.fields != fields:
                logger.warning(
                    f"{stream.qualified_name}: stored cursor fields {token.fields} differ from "
                    f"{fields}; reading from the beginning"
                )
                token = None

        logger.info(f"Reading {stream.qualified_name} ({stream.sync_mode.value}) after {token}")
        types = [c.logical_type for c in stream.schema.columns]
        offset = token.values[0] if token is not None and token.is_offset else 0
        grouped = len(fields) == 2 and fields[1] == OFFSET_FIELD
        cursor_index = stream.schema.index_of(stream.cursor_field) if grouped else None
        within_group = grouped and token is not None
        page_number = 0

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            if grouped:
                query = self._grouped_page_query(table, stream, token, within_group)
            else:
                query = self._page_query(table, stream, fields, token)
            rows = self._fetch_page(query, stream, cancel_token)
            page_number += 1
            logger.debug(f"{stream.qualified_name}: page {page_number} returned {len(rows)} rows")

            for raw in rows:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                values = tuple(normalize_value(v, t) for v, t in zip(raw, types))
                if fields == (OFFSET_FIELD,):
                    offset += 1
                    token = CursorToken.offset(offset)
                elif grouped:
                    value = values[cursor_index]
                    same = token is not None and token.values[0] == value
                    token = CursorToken(fields, (value, token.values[1] + 1 if same else 1))
                else:
                    token = CursorToken.from_row(fields, stream.schema, values)
                yield SourceRecord(values, token)

            if len(rows) < self.page_size:
                if within_group:
                    # group exhausted, move on to greater cursor values
                    within_group = False
                    continue
                return
            within_group = grouped

    def close(self):
        """Close database connection."""
        if self.engine:
            self.engine.dispose()
            logger.info("Source connection closed")
