"""Landfall exception hierarchy.

This module defines traceable domain errors with clear boundaries.
Each subsystem raises a specific error type for debuggability, and the
ingest taxonomy drives retry classification.
"""

from __future__ import annotations


class LandfallError(Exception):
    """Base exception for all Landfall failures."""


class LandfallConfigError(LandfallError):
    """Raised for invalid runtime configuration."""


class LandfallIngestError(LandfallError):
    """Raised for source reading and load failures."""


class LandfallStoreError(LandfallError):
    """Raised for ledger and destination table failures."""


class LandfallDependencyError(LandfallError):
    """Raised when an optional runtime dependency is missing."""


class LandfallPipeSpecError(LandfallError):
    """Raised for invalid or unsupported pipe definitions."""


class TransientIOFailure(LandfallIngestError):
    """Raised for retryable failures such as timeouts or lock contention."""


class ObjectUnavailable(LandfallIngestError):
    """Raised when an object generation can no longer be read."""


class MalformedRecord(LandfallIngestError):
    """Raised when a row in a staged file cannot be parsed."""

    def __init__(self, object_key: str, line_number: int, column: str, reason: str) -> None:
        self.object_key = object_key
        self.line_number = line_number
        self.column = column
        self.reason = reason
        super().__init__(
            f"Malformed record in {object_key} at line {line_number}, column {column}: {reason}"
        )


class SchemaMismatch(LandfallStoreError):
    """Raised when a destination table does not match the declared columns."""


class InvalidTransition(LandfallStoreError):
    """Raised when a registry compare-and-swap transition is rejected."""


class RecordNotFound(LandfallStoreError):
    """Raised when a registry lookup misses."""
