"""Unit tests for staged file parsing."""

from __future__ import annotations

import gzip
from dataclasses import replace

import pytest

from core.errors import MalformedRecord
from core.types import ColumnMapping, FormatSpec
from ingest.format_parser import parse_object_rows
from tests.fixture_paths import fixture_path
from tests.pipe_factories import ORDERS_FORMAT

_EVENTS_FORMAT = FormatSpec(
    format_type="jsonl",
    columns=(
        ColumnMapping(name="event_id", type="string", required=True, field="id"),
        ColumnMapping(name="count", type="integer", field="count"),
        ColumnMapping(name="active", type="boolean", field="active"),
    ),
)


def test_parses_csv_fixture_with_header() -> None:
    """CSV rows should be converted to declared column types."""
    payload = fixture_path("stage/orders_20231210.csv").read_bytes()

    parsed = parse_object_rows("orders_20231210.csv", payload, ORDERS_FORMAT)

    assert len(parsed.rows) == 3 and parsed.rows_rejected == 0
    assert parsed.rows[0] == (1001, "acme", 19.99, "2023-12-10")


def test_missing_required_value_names_line_and_column() -> None:
    """A blank required field should reject the file with its location."""
    payload = fixture_path("malformed/orders_missing_amount.csv").read_bytes()

    with pytest.raises(MalformedRecord) as raised:
        parse_object_rows("orders_missing_amount.csv", payload, ORDERS_FORMAT)

    assert raised.value.line_number == 3
    assert "amount" in raised.value.column
    assert "orders_missing_amount.csv" in str(raised.value)


def test_skip_row_policy_counts_rejections() -> None:
    """Opting into skip_row should keep valid rows and count bad ones."""
    payload = fixture_path("malformed/orders_missing_amount.csv").read_bytes()
    file_format = replace(ORDERS_FORMAT, on_error="skip_row")

    parsed = parse_object_rows("orders_missing_amount.csv", payload, file_format)

    assert len(parsed.rows) == 2 and parsed.rows_rejected == 1
    assert parsed.first_rejection is not None and "line 3" in parsed.first_rejection


def test_column_count_mismatch_is_malformed() -> None:
    """Rows with extra fields should be rejected by default."""
    payload = b"order_id,customer,amount,order_date\n1,acme,1.0,2023-12-10,extra\n"

    with pytest.raises(MalformedRecord, match="expected 4 fields, found 5"):
        parse_object_rows("orders.csv", payload, ORDERS_FORMAT)


def test_column_count_mismatch_can_be_disabled() -> None:
    """Missing trailing optional fields are allowed when checks are off."""
    payload = b"order_id,customer,amount,order_date\n1,acme,1.0\n"
    file_format = replace(ORDERS_FORMAT, error_on_column_count_mismatch=False)

    parsed = parse_object_rows("orders.csv", payload, file_format)

    assert parsed.rows == ((1, "acme", 1.0, None),)


def test_invalid_integer_is_malformed() -> None:
    """Type conversion failures should name the offending value."""
    payload = b"order_id,customer,amount,order_date\nabc,acme,1.0,2023-12-10\n"

    with pytest.raises(MalformedRecord, match="cannot convert 'abc' to integer"):
        parse_object_rows("orders.csv", payload, ORDERS_FORMAT)


def test_gzip_detected_by_suffix() -> None:
    """Gzip payloads should be decompressed under auto compression."""
    payload = gzip.compress(fixture_path("stage/orders_20231211.csv").read_bytes())

    parsed = parse_object_rows("orders_20231211.csv.gz", payload, ORDERS_FORMAT)

    assert len(parsed.rows) == 2


def test_corrupt_gzip_is_malformed() -> None:
    """A truncated gzip stream should reject the whole file."""
    payload = gzip.compress(b"order_id\n1\n")[:12]

    with pytest.raises(MalformedRecord, match="gzip"):
        parse_object_rows("orders.csv.gz", payload, ORDERS_FORMAT)


def test_invalid_encoding_reports_line() -> None:
    """Undecodable bytes should point at their line."""
    payload = b"order_id,customer,amount,order_date\n1,\xff\xfe,1.0,2023-12-10\n"

    with pytest.raises(MalformedRecord) as raised:
        parse_object_rows("orders.csv", payload, ORDERS_FORMAT)

    assert raised.value.line_number == 2


def test_parses_jsonl_fields() -> None:
    """JSONL objects should map fields onto columns."""
    payload = b'{"id": "e1", "count": 3, "active": true}\n\n{"id": "e2", "active": "no"}\n'

    parsed = parse_object_rows("events.jsonl", payload, _EVENTS_FORMAT)

    assert parsed.rows == (("e1", 3, 1), ("e2", None, 0))


def test_invalid_jsonl_line_is_malformed() -> None:
    """Broken JSON lines should reject the file under abort_file."""
    payload = b'{"id": "e1"}\n{"id": \n'

    with pytest.raises(MalformedRecord) as raised:
        parse_object_rows("events.jsonl", payload, _EVENTS_FORMAT)

    assert raised.value.line_number == 2


def test_integer_outside_64_bit_range_is_malformed() -> None:
    """Integers SQLite cannot store should be rejected at their line and column."""
    payload = (
        b"order_id,customer,amount,order_date\n"
        b"1,alice,1.0,2023-12-10\n"
        b"99999999999999999999,bob,2.0,2023-12-10\n"
    )

    with pytest.raises(MalformedRecord, match="to integer") as raised:
        parse_object_rows("orders.csv", payload, ORDERS_FORMAT)

    assert raised.value.line_number == 3 and "order_id" in raised.value.column


def test_out_of_range_integer_is_skipped_under_skip_row() -> None:
    """skip_row should reject only the row with the oversized integer."""
    payload = (
        b"order_id,customer,amount,order_date\n"
        b"1,alice,1.0,2023-12-10\n"
        b"-99999999999999999999,bob,2.0,2023-12-10\n"
        b"3,carol,3.0,2023-12-10\n"
    )
    file_format = replace(ORDERS_FORMAT, on_error="skip_row")

    parsed = parse_object_rows("orders.csv", payload, file_format)

    assert [row[0] for row in parsed.rows] == [1, 3] and parsed.rows_rejected == 1


@pytest.mark.parametrize("raw_amount", ["nan", "inf", "-Infinity", "1e999"])
def test_non_finite_float_is_malformed(raw_amount: str) -> None:
    """NaN and infinite values should not pass as floats."""
    payload = f"order_id,customer,amount,order_date\n1,alice,{raw_amount},2023-12-10\n".encode()

    with pytest.raises(MalformedRecord, match="to float") as raised:
        parse_object_rows("orders.csv", payload, ORDERS_FORMAT)

    assert raised.value.line_number == 2 and "amount" in raised.value.column


def test_jsonl_float_overflow_is_malformed() -> None:
    """A JSON integer too large for a float column should be malformed."""
    file_format = FormatSpec(
        format_type="jsonl",
        columns=(ColumnMapping(name="amount", type="float", required=True),),
    )
    payload = ('{"amount": 1' + "0" * 400 + "}\n").encode()

    with pytest.raises(MalformedRecord, match="to float") as raised:
        parse_object_rows("amounts.jsonl", payload, file_format)

    assert raised.value.line_number == 1


def test_jsonl_integer_beyond_digit_limit_is_malformed() -> None:
    """Oversized JSON integer literals should reject their line."""
    payload = ('{"id": "e1", "count": ' + "7" * 5000 + "}\n").encode()

    with pytest.raises(MalformedRecord) as raised:
        parse_object_rows("events.jsonl", payload, _EVENTS_FORMAT)

    assert raised.value.line_number == 1
