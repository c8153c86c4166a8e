"""Shared typed models.

This module defines immutable data models used by the registry,
scheduler, loader, and status layers to keep interfaces explicit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from core.constants import (
    DEFAULT_BATCH_MAX_FILES,
    DEFAULT_BATCH_MAX_WAIT_SECONDS,
    DEFAULT_CSV_DELIMITER,
    DEFAULT_CSV_QUOTE_CHAR,
    DEFAULT_ENCODING,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_CONCURRENCY,
)

IngestionState = Literal["pending", "loading", "committed", "failed", "quarantined"]
FailureClass = Literal["transient", "permanent"]
FormatType = Literal["csv", "jsonl"]
ColumnType = Literal["string", "integer", "float", "boolean", "date"]
OnErrorPolicy = Literal["abort_file", "skip_row"]
Compression = Literal["auto", "none", "gzip"]


@dataclass(frozen=True)
class ObjectEvent:
    """Notification that one object generation exists in the stage.

    Attributes:
        object_key: Key relative to the pipe stage.
        generation: Identifier distinguishing successive uploads to the key.
        size: Object size in bytes.
        content_hash: Content digest when the source provides one.
        observed_at: UTC time the event was produced or observed.
    """

    object_key: str
    generation: str
    size: int
    content_hash: str | None
    observed_at: datetime


@dataclass(frozen=True)
class ObjectRef:
    """Idempotency key of one staged object generation."""

    object_key: str
    generation: str


@dataclass(frozen=True)
class IngestionRecord:
    """Registry ledger row for one object generation.

    Attributes:
        pipe_name: Pipe that admitted the object.
        target_table: Destination table for the object's rows.
        object_key: Key relative to the pipe stage.
        generation: Object generation.
        state: Current lifecycle state.
        attempt_count: Number of load claims made so far.
        first_seen_at: UTC time the first event was admitted.
        last_attempt_at: UTC time of the latest load claim.
        updated_at: UTC time of the latest transition.
        next_attempt_at: Earliest UTC retry time for failed records.
        size: Object size in bytes.
        content_hash: Content digest when known.
        row_count_loaded: Rows committed for this object.
        rows_rejected: Rows skipped under ``skip_row`` policy.
        error_detail: Latest failure description.
    """

    pipe_name: str
    target_table: str
    object_key: str
    generation: str
    state: IngestionState
    attempt_count: int
    first_seen_at: datetime
    last_attempt_at: datetime | None
    updated_at: datetime
    next_attempt_at: datetime | None = None
    size: int = 0
    content_hash: str | None = None
    row_count_loaded: int = 0
    rows_rejected: int = 0
    error_detail: str | None = None

    @property
    def ref(self) -> ObjectRef:
        """Idempotency key of this record."""
        return ObjectRef(object_key=self.object_key, generation=self.generation)


@dataclass(frozen=True)
class TransitionEvent:
    """One append-only registry transition log entry."""

    object_key: str
    generation: str
    from_state: IngestionState | None
    to_state: IngestionState
    occurred_at: datetime
    detail: str | None


@dataclass(frozen=True)
class TransitionDetails:
    """Optional field updates applied with a state transition."""

    error_detail: str | None = None
    row_count_loaded: int | None = None
    rows_rejected: int | None = None
    next_attempt_at: datetime | None = None
    increment_attempt: bool = False


@dataclass(frozen=True)
class ColumnMapping:
    """Mapping of one source field onto a destination column.

    Attributes:
        name: Destination column name.
        type: Declared column type used for value conversion.
        required: Whether an empty or null value rejects the row.
        position: One-based CSV field position.
        field: JSONL object field name.
    """

    name: str
    type: ColumnType = "string"
    required: bool = False
    position: int | None = None
    field: str | None = None


@dataclass(frozen=True)
class FormatSpec:
    """Immutable file format declaration for a pipe.

    Attributes:
        format_type: ``csv`` or ``jsonl``.
        delimiter: CSV field delimiter.
        quote_char: CSV quote character.
        skip_header: Leading lines skipped before data rows.
        columns: Ordered destination column mappings.
        on_error: ``abort_file`` rejects the whole object on the first bad
            row; ``skip_row`` rejects only the bad rows.
        error_on_column_count_mismatch: Reject CSV rows whose field count
            differs from the declared field count.
        null_if: Field values treated as null.
        compression: ``auto`` detects gzip by suffix or magic bytes.
        encoding: Text encoding of the staged files.
    """

    format_type: FormatType = "csv"
    delimiter: str = DEFAULT_CSV_DELIMITER
    quote_char: str = DEFAULT_CSV_QUOTE_CHAR
    skip_header: int = 0
    columns: tuple[ColumnMapping, ...] = ()
    on_error: OnErrorPolicy = "abort_file"
    error_on_column_count_mismatch: bool = True
    null_if: tuple[str, ...] = ("",)
    compression: Compression = "auto"
    encoding: str = DEFAULT_ENCODING


@dataclass(frozen=True)
class LoadTuning:
    """Batching, concurrency, and retry limits for one pipe."""

    batch_max_files: int = DEFAULT_BATCH_MAX_FILES
    batch_max_wait_seconds: float = DEFAULT_BATCH_MAX_WAIT_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


@dataclass(frozen=True)
class PipeDefinition:
    """Declarative pipe from a stage to a destination table.

    Attributes:
        name: Pipe identifier.
        source_uri: Local stage directory or ``s3://bucket/prefix``.
        target_table: Destination table name.
        file_format: Format used to parse staged files.
        tuning: Batching, concurrency, and retry limits.
        pattern: Optional regex that object keys must match.
        notification_queue: Optional SQS queue URL carrying S3 events.
    """

    name: str
    source_uri: str
    target_table: str
    file_format: FormatSpec
    tuning: LoadTuning = field(default_factory=LoadTuning)
    pattern: str | None = None
    notification_queue: str | None = None


@dataclass(frozen=True)
class LoadTask:
    """Micro-batch of objects loaded together into one table."""

    pipe_name: str
    target_table: str
    objects: tuple[ObjectRef, ...]
    file_format: FormatSpec


@dataclass(frozen=True)
class ParsedRows:
    """Rows parsed from one object plus rejected-row accounting."""

    rows: tuple[tuple[object, ...], ...]
    rows_rejected: int
    first_rejection: str | None = None


@dataclass(frozen=True)
class ObjectLoadError:
    """Failure captured while loading one object of a task."""

    object_key: str
    generation: str
    error: Exception


@dataclass(frozen=True)
class LoadResult:
    """Outcome of one load task."""

    rows_loaded: int
    rows_rejected: int
    errors: tuple[ObjectLoadError, ...]
    committed: tuple[ObjectRef, ...] = ()


@dataclass(frozen=True)
class RetryDecision:
    """Retry manager outcome for one failed object."""

    failure_class: FailureClass
    record: IngestionRecord
    retry_delay_seconds: float | None


@dataclass(frozen=True)
class PipeStatus:
    """Operator-facing health summary for one pipe."""

    pipe_name: str
    pending_count: int
    loading_count: int
    failed_count: int
    committed_count: int
    quarantined_count: int
    last_committed_at: datetime | None
    last_error: str | None
