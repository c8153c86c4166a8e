"""Shared argument and output helpers for Landfall CLI commands."""

from __future__ import annotations

import argparse

from core.types import IngestionRecord, PipeStatus


def add_pipe_arguments(parser: argparse.ArgumentParser) -> None:
    """Register the shared pipe-file selection arguments."""
    parser.add_argument("pipe_file", help="YAML pipe file")
    parser.add_argument("--pipe", help="Pipe name when the file defines several pipes")


def print_pipe_status(status: PipeStatus) -> None:
    """Print one pipe status as a tab-separated line."""
    last_committed = status.last_committed_at.isoformat() if status.last_committed_at else "-"
    print(
        f"{status.pipe_name}\t"
        f"pending={status.pending_count}\t"
        f"loading={status.loading_count}\t"
        f"failed={status.failed_count}\t"
        f"committed={status.committed_count}\t"
        f"quarantined={status.quarantined_count}\t"
        f"last_committed_at={last_committed}\t"
        f"last_error={status.last_error or '-'}"
    )


def print_record(record: IngestionRecord) -> None:
    """Print one ingestion record as a tab-separated line."""
    print(
        f"{record.pipe_name}\t"
        f"{record.object_key}\t"
        f"{record.generation}\t"
        f"{record.state}\t"
        f"attempts={record.attempt_count}\t"
        f"rows={record.row_count_loaded}\t"
        f"rejected={record.rows_rejected}\t"
        f"updated_at={record.updated_at.isoformat()}\t"
        f"error={record.error_detail or '-'}"
    )
