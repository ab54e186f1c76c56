import pytest
import sqlalchemy as sa
from sqlalchemy.dialects import mysql, postgresql

from lakesync.errors import LossyMappingWarning
from lakesync.models import BINARY, BOOLEAN, DATE, FLOAT64, INT64, STRING, TIMESTAMP, LogicalType
from lakesync.schema_mapper import SchemaMapper


@pytest.mark.parametrize(
    "source_type, expected",
    [
        ("INT", INT64),
        ("bigint", INT64),
        ("int(11) unsigned", INT64),
        ("VARCHAR(255)", STRING),
        ("double precision", FLOAT64),
        ("tinyint(1)", INT64),
        ("DATE", DATE),
        ("datetime(6)", TIMESTAMP),
        ("timestamp with time zone", TIMESTAMP),
        ("longblob", BINARY),
        ("boolean", BOOLEAN),
        ("jsonb", STRING),
        ("DECIMAL(10, 2)", LogicalType.decimal(10, 2)),
        ("numeric(5)", LogicalType.decimal(5, 0)),
        ("bigint unsigned", LogicalType.decimal(20, 0)),
    ],
)
def test_type_names(source_type, expected):
    warnings = []
    assert SchemaMapper(on_warning=warnings.append).map(source_type) == expected
    assert warnings == []


@pytest.mark.parametrize(
    "source_type, expected",
    [
        (sa.Integer(), INT64),
        (sa.BigInteger(), INT64),
        (sa.Boolean(), BOOLEAN),
        (sa.Float(), FLOAT64),
        (sa.Numeric(12, 4), LogicalType.decimal(12, 4)),
        (sa.String(20), STRING),
        (sa.Text(), STRING),
        (sa.JSON(), STRING),
        (sa.DateTime(), TIMESTAMP),
        (sa.Date(), DATE),
        (sa.LargeBinary(), BINARY),
        (mysql.BIGINT(unsigned=True), LogicalType.decimal(20, 0)),
        (postgresql.UUID(), STRING),
        (postgresql.JSONB(), STRING),
    ],
)
def test_sqlalchemy_types(source_type, expected):
    assert SchemaMapper().map(source_type) == expected


def test_unknown_type_falls_back_to_string_with_warning():
    warnings = []
    mapper = SchemaMapper(on_warning=warnings.append)

    assert mapper.map("hyperloglog") == STRING
    assert len(warnings) == 1
    assert isinstance(warnings[0], LossyMappingWarning)
    assert warnings[0].source_type == "hyperloglog"
    assert warnings[0].logical_type == "string"


def test_lossy_known_types():
    warnings = []
    mapper = SchemaMapper(on_warning=warnings.append)

    assert mapper.map("time") == STRING
    assert mapper.map(sa.Interval()) == STRING
    assert mapper.map("geometry") == BINARY
    assert len(warnings) == 3


def test_decimal_without_precision_or_too_wide_is_text():
    warnings = []
    mapper = SchemaMapper(on_warning=warnings.append)

    assert mapper.map("numeric") == STRING
    assert mapper.map("decimal(90,2)") == STRING
    assert mapper.map(sa.Numeric()) == STRING
    assert len(warnings) == 3


def test_mapping_is_deterministic_and_warns_once():
    warnings = []
    mapper = SchemaMapper(on_warning=warnings.append)

    first = mapper.map("INTERVAL")
    second = mapper.map("interval")
    assert first == second == STRING
    assert len(warnings) == 1
