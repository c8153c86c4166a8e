"""Staged file parsing per pipe file format.

This module decodes one object's bytes and converts every row into
typed values in destination column order. Under the default
``abort_file`` policy the first bad row rejects the whole object.
"""

from __future__ import annotations

import csv
import gzip
import io
import json
import math
import zlib
from datetime import date

from core.constants import FALSE_LITERALS, GZIP_MAGIC, GZIP_SUFFIXES, TRUE_LITERALS
from core.errors import MalformedRecord
from core.types import ColumnMapping, FormatSpec, ParsedRows

WHOLE_FILE_COLUMN = "*"
SQLITE_INTEGER_MIN = -(2**63)
SQLITE_INTEGER_MAX = 2**63 - 1


def parse_object_rows(object_key: str, payload: bytes, file_format: FormatSpec) -> ParsedRows:
    """Parse one staged object into destination rows.

    Args:
        object_key: Object key used in error messages.
        payload: Raw object bytes.
        file_format: Pipe file format.

    Returns:
        Converted rows and rejected-row accounting.

    Raises:
        MalformedRecord: If the object cannot be decoded, or a row is bad
            under the ``abort_file`` policy.
    """
    decompressed = _decompress_payload(object_key, payload, file_format)
    text = _decode_payload(object_key, decompressed, file_format)
    if file_format.format_type == "jsonl":
        row_results = _iter_jsonl_rows(object_key, text, file_format)
    else:
        row_results = _iter_csv_rows(object_key, text, file_format)
    rows: list[tuple[object, ...]] = []
    rows_rejected = 0
    first_rejection: str | None = None
    for row_result in row_results:
        if isinstance(row_result, MalformedRecord):
            if file_format.on_error == "abort_file":
                raise row_result
            rows_rejected += 1
            first_rejection = first_rejection or f"{type(row_result).__name__}: {row_result}"
            continue
        rows.append(row_result)
    return ParsedRows(
        rows=tuple(rows), rows_rejected=rows_rejected, first_rejection=first_rejection
    )


def _decompress_payload(object_key: str, payload: bytes, file_format: FormatSpec) -> bytes:
    if file_format.compression == "none":
        return payload
    is_gzip = file_format.compression == "gzip" or (
        object_key.lower().endswith(GZIP_SUFFIXES) or payload.startswith(GZIP_MAGIC)
    )
    if not is_gzip:
        return payload
    try:
        return gzip.decompress(payload)
    except (OSError, EOFError, zlib.error) as error:
        raise MalformedRecord(
            object_key, 0, WHOLE_FILE_COLUMN, f"invalid gzip stream: {error}"
        ) from error


def _decode_payload(object_key: str, payload: bytes, file_format: FormatSpec) -> str:
    try:
        return payload.decode(file_format.encoding)
    except UnicodeDecodeError as error:
        line_number = payload[: error.start].count(b"\n") + 1
        raise MalformedRecord(
            object_key,
            line_number,
            WHOLE_FILE_COLUMN,
            f"invalid {file_format.encoding} byte sequence",
        ) from error
    except LookupError as error:
        raise MalformedRecord(
            object_key, 0, WHOLE_FILE_COLUMN, f"unknown encoding '{file_format.encoding}'"
        ) from error


def _iter_csv_rows(object_key: str, text: str, file_format: FormatSpec):
    """Yield converted CSV rows, or MalformedRecord for rejected rows."""
    reader = csv.reader(
        io.StringIO(text, newline=""),
        delimiter=file_format.delimiter,
        quotechar=file_format.quote_char,
        strict=True,
    )
    expected_fields = max(column.position or 0 for column in file_format.columns)
    records_seen = 0
    while True:
        try:
            fields = next(reader)
        except StopIteration:
            return
        except csv.Error as error:
            # The reader cannot resynchronize after a quoting error.
            yield MalformedRecord(object_key, reader.line_num, WHOLE_FILE_COLUMN, str(error))
            return
        records_seen += 1
        if records_seen <= file_format.skip_header or not fields:
            continue
        line_number = reader.line_num
        if file_format.error_on_column_count_mismatch and len(fields) != expected_fields:
            yield MalformedRecord(
                object_key,
                line_number,
                str(min(len(fields), expected_fields) + 1),
                f"expected {expected_fields} fields, found {len(fields)}",
            )
            continue
        try:
            yield tuple(
                _convert_csv_field(object_key, line_number, fields, column, file_format)
                for column in file_format.columns
            )
        except MalformedRecord as error:
            yield error


def _convert_csv_field(
    object_key: str,
    line_number: int,
    fields: list[str],
    column: ColumnMapping,
    file_format: FormatSpec,
) -> object:
    position = column.position or 0
    raw_value = fields[position - 1] if 0 < position <= len(fields) else None
    if raw_value is not None and raw_value in file_format.null_if:
        raw_value = None
    return _convert_value(object_key, line_number, f"{position} ({column.name})", column, raw_value)


def _iter_jsonl_rows(object_key: str, text: str, file_format: FormatSpec):
    """Yield converted JSONL rows, or MalformedRecord for rejected rows."""
    for line_number, line in enumerate(text.splitlines(), 1):
        if line_number <= file_format.skip_header or not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as error:
            yield MalformedRecord(
                object_key, line_number, WHOLE_FILE_COLUMN, f"invalid JSON: {error.msg}"
            )
            continue
        except ValueError as error:
            # Integer literals beyond the interpreter digit limit.
            yield MalformedRecord(
                object_key, line_number, WHOLE_FILE_COLUMN, f"invalid JSON: {error}"
            )
            continue
        if not isinstance(payload, dict):
            yield MalformedRecord(
                object_key, line_number, WHOLE_FILE_COLUMN, "expected a JSON object"
            )
            continue
        try:
            yield tuple(
                _convert_value(
                    object_key,
                    line_number,
                    column.field or column.name,
                    column,
                    _jsonl_value(payload.get(column.field or column.name), file_format),
                )
                for column in file_format.columns
            )
        except MalformedRecord as error:
            yield error


def _jsonl_value(value: object, file_format: FormatSpec) -> object:
    if isinstance(value, str) and value in file_format.null_if:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return value


def _convert_value(
    object_key: str,
    line_number: int,
    column_label: str,
    column: ColumnMapping,
    raw_value: object,
) -> object:
    """Convert one raw field into the column's declared type."""
    if raw_value is None:
        if column.required:
            raise MalformedRecord(object_key, line_number, column_label, "missing required value")
        return None
    try:
        if column.type == "integer":
            return _to_integer(raw_value)
        if column.type == "float":
            return _to_float(raw_value)
        if column.type == "boolean":
            return _to_boolean(raw_value)
        if column.type == "date":
            return date.fromisoformat(str(raw_value).strip()).isoformat()
    except (TypeError, ValueError, OverflowError) as error:
        raise MalformedRecord(
            object_key,
            line_number,
            column_label,
            f"cannot convert {raw_value!r} to {column.type}",
        ) from error
    return raw_value if isinstance(raw_value, str) else str(raw_value)


def _to_integer(raw_value: object) -> int:
    if isinstance(raw_value, bool):
        raise ValueError("boolean is not an integer")
    if isinstance(raw_value, float):
        if not raw_value.is_integer():
            raise ValueError("fractional value")
        value = int(raw_value)
    elif isinstance(raw_value, int):
        value = raw_value
    else:
        value = int(str(raw_value).strip())
    if not SQLITE_INTEGER_MIN <= value <= SQLITE_INTEGER_MAX:
        raise ValueError("outside the 64-bit integer range")
    return value


def _to_float(raw_value: object) -> float:
    if isinstance(raw_value, bool):
        raise ValueError("boolean is not a number")
    value = float(raw_value.strip() if isinstance(raw_value, str) else raw_value)
    if not math.isfinite(value):
        raise ValueError("not a finite number")
    return value


def _to_boolean(raw_value: object) -> int:
    if isinstance(raw_value, bool):
        return int(raw_value)
    normalized = str(raw_value).strip().lower()
    if normalized in TRUE_LITERALS:
        return 1
    if normalized in FALSE_LITERALS:
        return 0
    raise ValueError(f"not a boolean literal: {raw_value!r}")
