"""Tests for row-to-record conversion."""

from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from decimal import Decimal
from enum import Enum, IntEnum

import pytest

from fluentdb import DescriptorCache, MappingError, mapped_column
from fluentdb.mapper import ResultMapper


class Color(str, Enum):
    RED = "red"
    BLUE = "blue"


class Priority(IntEnum):
    LOW = 1
    HIGH = 2


@dataclass
class Measurement:
    label: str
    count: int
    active: bool
    amount: Decimal
    ratio: float
    day: date
    taken_at: datetime | None = None
    at: time | None = None
    payload: bytes | None = None
    color: Color = Color.RED
    priority: Priority = Priority.LOW
    note: str = mapped_column(transient=True, default="n/a")
    id: int = mapped_column(primary_key=True, generated=True)


cache = DescriptorCache()
DESC = cache.resolve(Measurement)


def row(**overrides):
    base = {
        "label": "probe",
        "count": 3,
        "active": 1,
        "amount": "12.50",
        "ratio": 0.5,
        "day": "2024-03-01",
        "id": 1,
    }
    base.update(overrides)
    return base


def test_map_basic_row():
    """Test a row with driver-native values maps onto the record."""
    m = ResultMapper().map(row(), DESC)
    assert isinstance(m, Measurement)
    assert m.label == "probe"
    assert m.count == 3
    assert m.active is True
    assert m.amount == Decimal("12.50")
    assert m.ratio == 0.5
    assert m.day == date(2024, 3, 1)
    assert m.id == 1


def test_column_lookup_is_case_insensitive():
    upper = {k.upper(): v for k, v in row().items()}
    m = ResultMapper().map(upper, DESC)
    assert m.label == "probe"


def test_missing_optional_columns_get_defaults():
    """Test absent nullable/defaulted columns use their zero value."""
    m = ResultMapper().map(row(), DESC)
    assert m.taken_at is None
    assert m.payload is None
    assert m.color is Color.RED
    assert m.priority is Priority.LOW


def test_transient_fields_get_defaults():
    m = ResultMapper().map(row(), DESC)
    assert m.note == "n/a"


def test_missing_required_column():
    data = row()
    del data["label"]
    with pytest.raises(MappingError) as exc_info:
        ResultMapper().map(data, DESC)
    assert exc_info.value.column == "label"


def test_null_into_non_nullable():
    with pytest.raises(MappingError, match="NULL"):
        ResultMapper().map(row(count=None), DESC)


def test_null_into_nullable():
    m = ResultMapper().map(row(taken_at=None), DESC)
    assert m.taken_at is None


# ========== Coercions ==========


class TestIntegers:
    def test_from_numeric_string(self):
        assert ResultMapper().map(row(count=" 42 "), DESC).count == 42

    def test_from_integral_float(self):
        assert ResultMapper().map(row(count=3.0), DESC).count == 3

    def test_from_integral_decimal(self):
        assert ResultMapper().map(row(count=Decimal("7")), DESC).count == 7

    def test_from_bool(self):
        assert ResultMapper().map(row(count=True), DESC).count == 1

    def test_fractional_float_fails(self):
        with pytest.raises(MappingError):
            ResultMapper().map(row(count=3.5), DESC)

    def test_text_fails_and_names_column(self):
        """Test a failed conversion never defaults to zero."""
        with pytest.raises(MappingError) as exc_info:
            ResultMapper().map(row(count="abc"), DESC)
        assert exc_info.value.column == "count"
        assert "count" in str(exc_info.value)


class TestDecimals:
    def test_decimal_from_float_keeps_short_form(self):
        assert ResultMapper().map(row(amount=0.1), DESC).amount == Decimal("0.1")

    def test_decimal_from_int(self):
        assert ResultMapper().map(row(amount=5), DESC).amount == Decimal(5)

    def test_float_from_string(self):
        assert ResultMapper().map(row(ratio="0.25"), DESC).ratio == 0.25

    def test_float_from_decimal(self):
        assert ResultMapper().map(row(ratio=Decimal("1.5")), DESC).ratio == 1.5

    def test_bad_decimal(self):
        with pytest.raises(MappingError):
            ResultMapper().map(row(amount="twelve"), DESC)


class TestBooleans:
    @pytest.mark.parametrize("raw", [True, 1, "true", "1", "Y", "yes", "T"])
    def test_truthy(self, raw):
        assert ResultMapper().map(row(active=raw), DESC).active is True

    @pytest.mark.parametrize("raw", [False, 0, "false", "0", "n", "No", "f"])
    def test_falsy(self, raw):
        assert ResultMapper().map(row(active=raw), DESC).active is False

    def test_unknown_string(self):
        with pytest.raises(MappingError):
            ResultMapper().map(row(active="maybe"), DESC)


class TestStrings:
    def test_from_bytes(self):
        assert ResultMapper().map(row(label=b"raw"), DESC).label == "raw"

    def test_from_number(self):
        assert ResultMapper().map(row(label=12), DESC).label == "12"

    def test_no_trim_by_default(self):
        assert ResultMapper().map(row(label="  x  "), DESC).label == "  x  "

    def test_trim_right(self):
        assert ResultMapper("right").map(row(label="  x  "), DESC).label == "  x"

    def test_trim_both(self):
        assert ResultMapper("both").map(row(label="  x  "), DESC).label == "x"

    def test_invalid_trim_policy(self):
        with pytest.raises(ValueError):
            ResultMapper("left")


class TestTemporal:
    def test_datetime_from_iso_string(self):
        m = ResultMapper().map(row(taken_at="2024-03-01T10:20:30+00:00"), DESC)
        assert m.taken_at == datetime(2024, 3, 1, 10, 20, 30, tzinfo=UTC)

    def test_datetime_from_space_separated(self):
        m = ResultMapper().map(row(taken_at="2024-03-01 10:20:30"), DESC)
        assert m.taken_at == datetime(2024, 3, 1, 10, 20, 30)

    def test_datetime_from_epoch(self):
        m = ResultMapper().map(row(taken_at=0), DESC)
        assert m.taken_at == datetime(1970, 1, 1, tzinfo=UTC)

    def test_date_from_datetime_string(self):
        assert ResultMapper().map(row(day="2024-03-01T23:59:00"), DESC).day == date(2024, 3, 1)

    def test_time_from_string(self):
        assert ResultMapper().map(row(at="08:15:00"), DESC).at == time(8, 15)

    def test_bad_date(self):
        with pytest.raises(MappingError):
            ResultMapper().map(row(day="not a date"), DESC)


class TestOtherTypes:
    def test_binary(self):
        assert ResultMapper().map(row(payload=memoryview(b"\x00\x01")), DESC).payload == b"\x00\x01"

    def test_binary_from_text_fails(self):
        with pytest.raises(MappingError):
            ResultMapper().map(row(payload="abc"), DESC)

    def test_str_enum(self):
        assert ResultMapper().map(row(color="blue"), DESC).color is Color.BLUE

    def test_int_enum(self):
        assert ResultMapper().map(row(priority=2), DESC).priority is Priority.HIGH

    def test_unknown_enum_value(self):
        with pytest.raises(MappingError):
            ResultMapper().map(row(color="green"), DESC)
