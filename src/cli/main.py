"""Landfall CLI entry points.
This module exposes pipe commands for loading, inspection, and export.
It maps argparse commands onto SDK calls.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from cli.notify_command import add_notify_command, run_notify_command
from cli.output import add_pipe_arguments, print_pipe_status, print_record
from cli.watch_command import add_watch_command, run_watch_command
from core.config import LandfallConfig
from core.constants import DEFAULT_IDLE_TIMEOUT_SECONDS
from core.errors import LandfallError
from store.pipe_sdk import LandfallClient


def build_parser() -> argparse.ArgumentParser:
    """Build the top-level CLI parser.

    Returns:
        Configured argument parser.
    """
    parser = argparse.ArgumentParser(prog="landfall", description="Landfall file-ingestion CLI")
    parser.add_argument("--data-root", help="Override LANDFALL_DATA_ROOT for this command")
    subparsers = parser.add_subparsers(dest="command", required=True)
    _add_load_command(subparsers)
    add_watch_command(subparsers)
    add_notify_command(subparsers)
    _add_status_command(subparsers)
    _add_history_command(subparsers)
    _add_reprocess_command(subparsers)
    _add_export_table_command(subparsers)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the Landfall CLI.

    Args:
        argv: Optional argument vector.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    client = _build_client(args.data_root)
    try:
        return _dispatch(parser, client, args)
    except LandfallError as error:
        print(f"error: {error}", file=sys.stderr)
        return 1


def _dispatch(
    parser: argparse.ArgumentParser,
    client: LandfallClient,
    args: argparse.Namespace,
) -> int:
    if args.command == "load":
        return _run_load_command(client, args)
    if args.command == "watch":
        return run_watch_command(client, args)
    if args.command == "notify":
        return run_notify_command(client, args)
    if args.command == "status":
        return _run_status_command(client, args)
    if args.command == "history":
        return _run_history_command(parser, client, args)
    if args.command == "reprocess":
        return _run_reprocess_command(client, args)
    if args.command == "export-table":
        return _run_export_table_command(client, args)
    parser.error(f"Unsupported command: {args.command}")
    return 2


def _build_client(data_root: str | None) -> LandfallClient:
    """Build SDK client with optional data-root override.

    Args:
        data_root: Optional override path.

    Returns:
        Configured SDK client.
    """
    config = LandfallConfig.from_env()
    if data_root:
        config = replace(config, data_root=Path(data_root).expanduser().resolve())
    return LandfallClient(config)


def _run_load_command(client: LandfallClient, args: argparse.Namespace) -> int:
    """Handle load command.

    Args:
        client: SDK client.
        args: Parsed CLI args.

    Returns:
        Exit code; 1 when any pipe has quarantined objects.
    """
    statuses = client.load(args.pipe_file, args.pipe, timeout=args.timeout)
    for status in statuses:
        print_pipe_status(status)
    return 1 if any(status.quarantined_count for status in statuses) else 0


def _run_status_command(client: LandfallClient, args: argparse.Namespace) -> int:
    """Handle status command."""
    for status in client.status(args.pipe_file, args.pipe):
        print_pipe_status(status)
    return 0


def _run_history_command(
    parser: argparse.ArgumentParser,
    client: LandfallClient,
    args: argparse.Namespace,
) -> int:
    """Handle history command."""
    since = None
    if args.since:
        try:
            since = datetime.fromisoformat(args.since)
        except ValueError:
            parser.error(f"--since must be an ISO-8601 timestamp, got {args.since!r}")
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
    for record in client.history(args.pipe_file, args.table, since):
        print_record(record)
    return 0


def _run_reprocess_command(client: LandfallClient, args: argparse.Namespace) -> int:
    """Handle reprocess command."""
    records = client.reprocess(
        args.pipe_file,
        args.pipe,
        args.object_key,
        args.generation,
        timeout=args.timeout,
    )
    for record in records:
        print_record(record)
    return 0 if all(record.state == "committed" for record in records) else 1


def _run_export_table_command(client: LandfallClient, args: argparse.Namespace) -> int:
    """Handle export-table command."""
    output_path = client.export_table(args.table, args.output)
    print(output_path)
    return 0


def _add_load_command(subparsers: Any) -> None:
    """Register load subcommand."""
    parser = subparsers.add_parser("load", help="List stages once and load new objects")
    add_pipe_arguments(parser)
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_IDLE_TIMEOUT_SECONDS,
        help="Seconds to wait for loads and retries to settle",
    )


def _add_status_command(subparsers: Any) -> None:
    """Register status subcommand."""
    parser = subparsers.add_parser("status", help="Show per-pipe record counts")
    add_pipe_arguments(parser)


def _add_history_command(subparsers: Any) -> None:
    """Register history subcommand."""
    parser = subparsers.add_parser("history", help="List ingestion records for a table")
    parser.add_argument("pipe_file", help="YAML pipe file")
    parser.add_argument("--table", required=True, help="Destination table name")
    parser.add_argument("--since", help="Only records updated since this ISO-8601 time")


def _add_reprocess_command(subparsers: Any) -> None:
    """Register reprocess subcommand."""
    parser = subparsers.add_parser("reprocess", help="Reload a quarantined object")
    add_pipe_arguments(parser)
    parser.add_argument("object_key", help="Quarantined object key")
    parser.add_argument("--generation", help="Only this object generation")
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_IDLE_TIMEOUT_SECONDS,
        help="Seconds to wait for the reload to settle",
    )


def _add_export_table_command(subparsers: Any) -> None:
    """Register export-table subcommand."""
    parser = subparsers.add_parser("export-table", help="Export a table to Parquet")
    parser.add_argument("table", help="Destination table name")
    parser.add_argument("--output", required=True, help="Output .parquet file path")
