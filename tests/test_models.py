from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from lakesync.cursors import OFFSET_FIELD, CursorToken, cursor_fields
from lakesync.errors import ConfigurationError
from lakesync.models import (
    DATE,
    INT64,
    STRING,
    TIMESTAMP,
    Checkpoint,
    Column,
    LogicalType,
    Schema,
    Stream,
    SyncMode,
)


def orders_schema():
    return Schema((
        Column("id", INT64, nullable=False),
        Column("customer", STRING),
        Column("amount", LogicalType.decimal(10, 2)),
        Column("updated_at", TIMESTAMP),
    ))


def test_logical_type_parse_and_str():
    assert LogicalType.parse("decimal(12, 3)") == LogicalType.decimal(12, 3)
    assert str(LogicalType.decimal(12, 3)) == "decimal(12,3)"
    assert LogicalType.parse("TIMESTAMP") == TIMESTAMP


def test_logical_type_rejects_bad_parameters():
    with pytest.raises(ValueError):
        LogicalType("uuid")
    with pytest.raises(ValueError):
        LogicalType("decimal", 5, 6)
    with pytest.raises(ValueError):
        LogicalType("int64", 5, 0)


def test_schema_rejects_duplicate_columns():
    with pytest.raises(ValueError):
        Schema((Column("id", INT64), Column("id", STRING)))


def test_schema_round_trip_keeps_order_and_fingerprint():
    schema = orders_schema()
    restored = Schema.from_dict(schema.to_dict())

    assert restored == schema
    assert restored.names == ["id", "customer", "amount", "updated_at"]
    assert restored.fingerprint() == schema.fingerprint()


def test_schema_diff_reports_drift():
    captured = orders_schema()
    current = Schema((
        Column("id", INT64, nullable=False),
        Column("customer", STRING),
        Column("amount", LogicalType.decimal(12, 2)),
        Column("status", STRING),
    ))

    drift = captured.diff(current)

    assert drift["new_columns"] == ["status"]
    assert drift["missing_columns"] == ["updated_at"]
    assert [c["column"] for c in drift["type_changes"]] == ["amount"]
    assert drift["has_drift"] is True


def test_schema_diff_detects_reorder_only():
    captured = orders_schema()
    current = Schema(tuple(reversed(captured.columns)))

    drift = captured.diff(current)

    assert drift["order_changed"] is True
    assert drift["has_drift"] is True
    assert captured.diff(orders_schema())["has_drift"] is False


def test_stream_configure_validates_cursor_and_keys():
    stream = Stream("orders", "shop", orders_schema(), primary_key=("id",))

    configured = stream.configure(SyncMode.INCREMENTAL, cursor_field="updated_at")
    assert configured.qualified_name == "shop.orders"
    assert configured.primary_key == ("id",)

    with pytest.raises(ConfigurationError):
        stream.configure(SyncMode.INCREMENTAL)
    with pytest.raises(ConfigurationError):
        stream.configure(SyncMode.INCREMENTAL, cursor_field="missing")
    with pytest.raises(ConfigurationError):
        stream.configure(SyncMode.FULL_REFRESH, primary_key=["nope"])


def test_checkpoint_dict_round_trip():
    checkpoint = Checkpoint(
        stream_name="shop.orders",
        last_cursor_value={"fields": ["id"], "values": [7]},
        last_committed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        version=3,
        generation="g1",
        generation_complete=True,
    )
    assert Checkpoint.from_dict(checkpoint.to_dict()) == checkpoint


# =========================================
# CURSORS
# =========================================

def test_cursor_fields_per_mode():
    base = Stream("orders", None, orders_schema(), primary_key=("id",))

    assert cursor_fields(base.configure(SyncMode.INCREMENTAL, "updated_at")) == ("updated_at", "id")
    assert cursor_fields(base.configure(SyncMode.INCREMENTAL, "id")) == ("id",)
    assert cursor_fields(base) == ("id",)
    assert cursor_fields(Stream("log", None, orders_schema())) == (OFFSET_FIELD,)
    keyless = Stream("log", None, orders_schema()).configure(SyncMode.INCREMENTAL, "updated_at")
    assert cursor_fields(keyless) == ("updated_at", OFFSET_FIELD)


def test_cursor_tokens_order_lexicographically():
    fields = ("updated_at", "id")
    t = datetime(2024, 1, 1, 12, 0)
    earlier = CursorToken(fields, (t, 9))
    later = CursorToken(fields, (t, 10))

    assert earlier < later
    assert later > earlier
    with pytest.raises(ValueError):
        earlier < CursorToken(("id",), (1,))


def test_cursor_json_round_trip_restores_types():
    schema = Schema((
        Column("day", DATE),
        Column("amount", LogicalType.decimal(10, 2)),
        Column("updated_at", TIMESTAMP),
    ))
    token = CursorToken(
        ("updated_at", "day", "amount"),
        (datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc), date(2024, 5, 1), Decimal("10.50")),
    )

    data = token.to_json(schema)
    assert data["values"] == ["2024-05-01T08:30:00+00:00", "2024-05-01", "10.50"]
    assert CursorToken.from_json(data, schema) == token


def test_offset_token():
    token = CursorToken.offset(40)
    assert token.is_offset
    assert CursorToken.from_json(token.to_json(orders_schema()), orders_schema()) == token
    assert CursorToken.from_json(None, orders_schema()) is None


def test_position_within_cursor_value_round_trips():
    token = CursorToken(("updated_at", OFFSET_FIELD), (datetime(2024, 1, 1, 12, 0), 3))

    data = token.to_json(orders_schema())
    assert data["values"] == ["2024-01-01T12:00:00", 3]
    assert CursorToken.from_json(data, orders_schema()) == token
    assert token < CursorToken(token.fields, (datetime(2024, 1, 1, 12, 0), 4))
