"""Typed pipe-definition parsing for declarative Landfall pipes.

This module loads and validates YAML pipe files used by CLI and SDK
workflows. One strict schema describes the stage, destination table,
file format, and load tuning of every pipe.
"""

from __future__ import annotations

import re
from dataclasses import replace
from pathlib import Path
from typing import Mapping, Sequence, cast

import yaml

from core.config import LandfallConfig
from core.constants import (
    LOADED_AT_COLUMN,
    SOURCE_GENERATION_COLUMN,
    SOURCE_KEY_COLUMN,
    SUPPORTED_COLUMN_TYPES,
    SUPPORTED_COMPRESSIONS,
    SUPPORTED_FORMAT_TYPES,
    SUPPORTED_ON_ERROR_POLICIES,
)
from core.errors import LandfallPipeSpecError
from core.s3_uri import parse_s3_uri
from core.types import (
    ColumnMapping,
    ColumnType,
    Compression,
    FormatSpec,
    FormatType,
    LoadTuning,
    OnErrorPolicy,
    PipeDefinition,
)

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ROOT_KEYS = {"version", "pipes"}
_PIPE_KEYS = {"name", "source", "table", "pattern", "notification_queue", "file_format", "load"}
_FORMAT_KEYS = {
    "type",
    "delimiter",
    "quote_char",
    "skip_header",
    "columns",
    "on_error",
    "error_on_column_count_mismatch",
    "null_if",
    "compression",
    "encoding",
}
_COLUMN_KEYS = {"name", "type", "required", "position", "field"}
_LOAD_KEYS = {"batch_max_files", "batch_max_wait_seconds", "max_concurrency", "max_attempts"}
_RESERVED_TABLES = {"ingestion_records", "ingestion_events"}
_RESERVED_COLUMNS = {SOURCE_KEY_COLUMN, SOURCE_GENERATION_COLUMN, LOADED_AT_COLUMN}


def load_pipe_file(spec_path: str, config: LandfallConfig) -> tuple[PipeDefinition, ...]:
    """Load and validate a YAML pipe file from disk.

    Args:
        spec_path: File path to YAML pipe file.
        config: Runtime config supplying default load tuning.

    Returns:
        Validated pipe definitions in file order.

    Raises:
        LandfallPipeSpecError: If file is invalid or schema checks fail.
    """
    payload = _load_yaml_payload(spec_path)
    return parse_pipe_payload(payload, config)


def parse_pipe_payload(payload: object, config: LandfallConfig) -> tuple[PipeDefinition, ...]:
    """Validate an already-decoded pipe file payload."""
    root_mapping = _expect_mapping(payload, "pipe file root")
    _validate_keys(root_mapping, _ROOT_KEYS, "pipe file root")
    _parse_version(root_mapping)
    raw_pipes = root_mapping.get("pipes")
    if raw_pipes is None:
        raise LandfallPipeSpecError(
            "Pipe file missing required field 'pipes'. Add a non-empty list of pipes."
        )
    pipe_rows = _expect_sequence(raw_pipes, "pipe file pipes")
    if len(pipe_rows) == 0:
        raise LandfallPipeSpecError("Pipe file field 'pipes' must include at least one pipe.")
    default_tuning = LoadTuning(
        batch_max_files=config.batch_max_files,
        batch_max_wait_seconds=config.batch_max_wait_seconds,
        max_concurrency=config.max_concurrency,
        max_attempts=config.max_attempts,
    )
    pipes = tuple(
        _parse_pipe(pipe_value, index, default_tuning) for index, pipe_value in enumerate(pipe_rows)
    )
    _validate_unique_names(pipes)
    return pipes


def select_pipe(pipes: Sequence[PipeDefinition], pipe_name: str | None) -> PipeDefinition:
    """Pick one pipe by name, or the only pipe when no name is given.

    Raises:
        LandfallPipeSpecError: If the name is unknown or ambiguous.
    """
    if pipe_name is None:
        if len(pipes) == 1:
            return pipes[0]
        raise LandfallPipeSpecError(
            "Pipe file defines multiple pipes. Pass --pipe with one of: "
            f"{', '.join(pipe.name for pipe in pipes)}."
        )
    for pipe in pipes:
        if pipe.name == pipe_name:
            return pipe
    raise LandfallPipeSpecError(
        f"Unknown pipe '{pipe_name}'. Defined pipes: {', '.join(pipe.name for pipe in pipes)}."
    )


def _load_yaml_payload(spec_path: str) -> object:
    spec_file = Path(spec_path).expanduser().resolve()
    if not spec_file.exists():
        raise LandfallPipeSpecError(
            f"Pipe file does not exist at {spec_file}. Provide a valid YAML file path."
        )
    try:
        payload = cast(object, yaml.safe_load(spec_file.read_text(encoding="utf-8")))
    except OSError as error:
        raise LandfallPipeSpecError(
            f"Failed to read pipe file at {spec_file}: {error}. Check file permissions and retry."
        ) from error
    except yaml.YAMLError as error:
        raise LandfallPipeSpecError(
            f"Failed to parse YAML pipe file at {spec_file}: {error}. Fix YAML syntax and retry."
        ) from error
    if payload is None:
        raise LandfallPipeSpecError(
            f"Pipe file at {spec_file} is empty. Define 'version' and 'pipes'."
        )
    return payload


def _parse_pipe(pipe_value: object, pipe_index: int, default_tuning: LoadTuning) -> PipeDefinition:
    context = f"pipe #{pipe_index + 1}"
    pipe_mapping = _expect_mapping(pipe_value, context)
    _validate_keys(pipe_mapping, _PIPE_KEYS, context)
    name = _required_identifier(pipe_mapping, "name", context)
    context = f"pipe '{name}'"
    source_uri = _required_string(pipe_mapping, "source", context)
    if source_uri.startswith("s3://"):
        parse_s3_uri(source_uri, domain="pipe")
    target_table = _required_identifier(pipe_mapping, "table", context)
    if target_table.lower() in _RESERVED_TABLES or target_table.lower().startswith("sqlite_"):
        raise LandfallPipeSpecError(
            f"Invalid {context}: table name '{target_table}' is reserved by the ledger."
        )
    pattern = _optional_string(pipe_mapping, "pattern", context)
    if pattern is not None:
        _validate_pattern(pattern, context)
    raw_format = pipe_mapping.get("file_format")
    if raw_format is None:
        raise LandfallPipeSpecError(f"Invalid {context}: missing required field 'file_format'.")
    file_format = _parse_format(_expect_mapping(raw_format, f"{context} file_format"), context)
    tuning = _parse_tuning(pipe_mapping.get("load"), default_tuning, context)
    return PipeDefinition(
        name=name,
        source_uri=source_uri,
        target_table=target_table,
        file_format=file_format,
        tuning=tuning,
        pattern=pattern,
        notification_queue=_optional_string(pipe_mapping, "notification_queue", context),
    )


def _parse_format(format_mapping: Mapping[str, object], pipe_context: str) -> FormatSpec:
    context = f"{pipe_context} file_format"
    _validate_keys(format_mapping, _FORMAT_KEYS, context)
    format_type = cast(
        FormatType,
        _choice(format_mapping, "type", SUPPORTED_FORMAT_TYPES, "csv", context),
    )
    defaults = FormatSpec()
    delimiter = _optional_string(format_mapping, "delimiter", context, strip=False)
    quote_char = _optional_string(format_mapping, "quote_char", context, strip=False)
    for field_name, value in (("delimiter", delimiter), ("quote_char", quote_char)):
        if value is not None and len(value) != 1:
            raise LandfallPipeSpecError(
                f"Invalid {context}: '{field_name}' must be a single character."
            )
    raw_columns = format_mapping.get("columns")
    if raw_columns is None:
        raise LandfallPipeSpecError(f"Invalid {context}: missing required field 'columns'.")
    column_rows = _expect_sequence(raw_columns, f"{context} columns")
    if len(column_rows) == 0:
        raise LandfallPipeSpecError(f"Invalid {context}: 'columns' must list at least one column.")
    columns = tuple(
        _parse_column(column_value, index, format_type, context)
        for index, column_value in enumerate(column_rows)
    )
    _validate_unique_columns(columns, context)
    return FormatSpec(
        format_type=format_type,
        delimiter=delimiter or defaults.delimiter,
        quote_char=quote_char or defaults.quote_char,
        skip_header=_optional_int(format_mapping, "skip_header", 0, 0, context),
        columns=columns,
        on_error=cast(
            OnErrorPolicy,
            _choice(format_mapping, "on_error", SUPPORTED_ON_ERROR_POLICIES, "abort_file", context),
        ),
        error_on_column_count_mismatch=_optional_bool(
            format_mapping, "error_on_column_count_mismatch", True, context
        ),
        null_if=_parse_null_if(format_mapping.get("null_if"), context),
        compression=cast(
            Compression,
            _choice(format_mapping, "compression", SUPPORTED_COMPRESSIONS, "auto", context),
        ),
        encoding=_optional_string(format_mapping, "encoding", context) or defaults.encoding,
    )


def _parse_column(
    column_value: object,
    column_index: int,
    format_type: FormatType,
    format_context: str,
) -> ColumnMapping:
    context = f"{format_context} column #{column_index + 1}"
    column_mapping = _expect_mapping(column_value, context)
    _validate_keys(column_mapping, _COLUMN_KEYS, context)
    name = _required_identifier(column_mapping, "name", context)
    if name in _RESERVED_COLUMNS:
        raise LandfallPipeSpecError(
            f"Invalid {context}: column name '{name}' is reserved for load metadata."
        )
    column_type = cast(
        ColumnType,
        _choice(column_mapping, "type", SUPPORTED_COLUMN_TYPES, "string", context),
    )
    if format_type == "csv":
        position = _optional_int(column_mapping, "position", column_index + 1, 1, context)
        return ColumnMapping(
            name=name,
            type=column_type,
            required=_optional_bool(column_mapping, "required", False, context),
            position=position,
        )
    return ColumnMapping(
        name=name,
        type=column_type,
        required=_optional_bool(column_mapping, "required", False, context),
        field=_optional_string(column_mapping, "field", context) or name,
    )


def _parse_tuning(raw_load: object, default_tuning: LoadTuning, pipe_context: str) -> LoadTuning:
    if raw_load is None:
        return default_tuning
    context = f"{pipe_context} load"
    load_mapping = _expect_mapping(raw_load, context)
    _validate_keys(load_mapping, _LOAD_KEYS, context)
    raw_wait = load_mapping.get("batch_max_wait_seconds", default_tuning.batch_max_wait_seconds)
    if isinstance(raw_wait, bool) or not isinstance(raw_wait, (int, float)) or raw_wait < 0:
        raise LandfallPipeSpecError(
            f"Invalid {context}: 'batch_max_wait_seconds' must be a number >= 0."
        )
    return replace(
        default_tuning,
        batch_max_files=_optional_int(
            load_mapping, "batch_max_files", default_tuning.batch_max_files, 1, context
        ),
        batch_max_wait_seconds=float(raw_wait),
        max_concurrency=_optional_int(
            load_mapping, "max_concurrency", default_tuning.max_concurrency, 1, context
        ),
        max_attempts=_optional_int(
            load_mapping, "max_attempts", default_tuning.max_attempts, 1, context
        ),
    )


def _parse_version(root_mapping: Mapping[str, object]) -> int:
    raw_version = root_mapping.get("version")
    if not isinstance(raw_version, int):
        raise LandfallPipeSpecError("Pipe file field 'version' must be an integer. Set version: 1.")
    if raw_version != 1:
        raise LandfallPipeSpecError(f"Unsupported pipe file version {raw_version}. Use version: 1.")
    return raw_version


def _parse_null_if(raw_value: object, context: str) -> tuple[str, ...]:
    if raw_value is None:
        return ("",)
    values = _expect_sequence(raw_value, f"{context} null_if")
    if not all(isinstance(value, str) for value in values):
        raise LandfallPipeSpecError(f"Invalid {context}: 'null_if' must be a list of strings.")
    return tuple(cast(Sequence[str], values))


def _expect_mapping(value: object, context: str) -> Mapping[str, object]:
    if isinstance(value, Mapping):
        normalized_mapping = {}
        for key, payload in value.items():
            if not isinstance(key, str):
                raise LandfallPipeSpecError(
                    f"Invalid {context}: expected string keys, got {type(key).__name__}."
                )
            normalized_mapping[key] = payload
        return normalized_mapping
    raise LandfallPipeSpecError(
        f"Invalid {context}: expected object mapping, got {type(value).__name__}."
    )


def _expect_sequence(value: object, context: str) -> Sequence[object]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return value
    raise LandfallPipeSpecError(f"Invalid {context}: expected list, got {type(value).__name__}.")


def _required_string(mapping: Mapping[str, object], field_name: str, context: str) -> str:
    value = _optional_string(mapping, field_name, context)
    if value is None:
        raise LandfallPipeSpecError(f"Invalid {context}: missing required field '{field_name}'.")
    return value


def _required_identifier(mapping: Mapping[str, object], field_name: str, context: str) -> str:
    value = _required_string(mapping, field_name, context)
    if not _IDENTIFIER_PATTERN.match(value):
        raise LandfallPipeSpecError(
            f"Invalid {context}: '{field_name}' value '{value}' must be an identifier "
            "made of letters, digits, and underscores."
        )
    return value


def _optional_string(
    mapping: Mapping[str, object],
    field_name: str,
    context: str,
    strip: bool = True,
) -> str | None:
    raw_value = mapping.get(field_name)
    if raw_value is None:
        return None
    if isinstance(raw_value, str):
        normalized_value = raw_value.strip() if strip else raw_value
        return normalized_value if normalized_value else None
    raise LandfallPipeSpecError(
        f"Invalid {context}: field '{field_name}' must be a string when provided."
    )


def _optional_int(
    mapping: Mapping[str, object],
    field_name: str,
    default_value: int,
    minimum: int,
    context: str,
) -> int:
    raw_value = mapping.get(field_name)
    if raw_value is None:
        return default_value
    if isinstance(raw_value, bool) or not isinstance(raw_value, int) or raw_value < minimum:
        raise LandfallPipeSpecError(
            f"Invalid {context}: field '{field_name}' must be an integer >= {minimum}."
        )
    return raw_value


def _optional_bool(
    mapping: Mapping[str, object],
    field_name: str,
    default_value: bool,
    context: str,
) -> bool:
    raw_value = mapping.get(field_name)
    if raw_value is None:
        return default_value
    if not isinstance(raw_value, bool):
        raise LandfallPipeSpecError(f"Invalid {context}: field '{field_name}' must be a boolean.")
    return raw_value


def _choice(
    mapping: Mapping[str, object],
    field_name: str,
    choices: tuple[str, ...],
    default_value: str,
    context: str,
) -> str:
    raw_value = _optional_string(mapping, field_name, context)
    if raw_value is None:
        return default_value
    normalized_value = raw_value.lower()
    if normalized_value not in choices:
        raise LandfallPipeSpecError(
            f"Invalid {context}: unsupported {field_name} '{raw_value}'. "
            f"Use one of: {', '.join(choices)}."
        )
    return normalized_value


def _validate_pattern(pattern: str, context: str) -> None:
    try:
        re.compile(pattern)
    except re.error as error:
        raise LandfallPipeSpecError(
            f"Invalid {context}: pattern '{pattern}' is not a valid regex: {error}."
        ) from error


def _validate_keys(mapping: Mapping[str, object], allowed_keys: set[str], context: str) -> None:
    unknown_keys = sorted(set(mapping) - allowed_keys)
    if unknown_keys:
        raise LandfallPipeSpecError(f"Invalid {context}: unknown fields {', '.join(unknown_keys)}.")


def _validate_unique_columns(columns: tuple[ColumnMapping, ...], context: str) -> None:
    names = [column.name.lower() for column in columns]
    if len(set(names)) != len(names):
        raise LandfallPipeSpecError(f"Invalid {context}: column names must be unique.")


def _validate_unique_names(pipes: tuple[PipeDefinition, ...]) -> None:
    names = [pipe.name for pipe in pipes]
    if len(set(names)) != len(names):
        raise LandfallPipeSpecError("Pipe file defines duplicate pipe names. Use unique names.")
