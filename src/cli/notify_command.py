"""Notification command wiring for Landfall CLI."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

from cli.output import add_pipe_arguments
from core.constants import DEFAULT_IDLE_TIMEOUT_SECONDS
from core.errors import LandfallIngestError
from store.pipe_sdk import LandfallClient


def add_notify_command(subparsers: Any) -> None:
    """Register notify subcommand."""
    parser = subparsers.add_parser(
        "notify",
        help="Admit S3 event notifications from files, stdin, or the pipe's SQS queue",
    )
    add_pipe_arguments(parser)
    parser.add_argument(
        "payload_files",
        nargs="*",
        help="Notification JSON files; '-' reads one document from stdin",
    )
    parser.add_argument(
        "--from-queue",
        action="store_true",
        help="Receive notifications from the pipe's notification_queue",
    )
    parser.add_argument(
        "--max-batches",
        type=int,
        default=1,
        help="SQS receive batches to consume with --from-queue",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_IDLE_TIMEOUT_SECONDS,
        help="Seconds to wait for admitted objects to settle",
    )


def run_notify_command(client: LandfallClient, args: argparse.Namespace) -> int:
    """Admit notifications and print how many were consumed."""
    if args.from_queue:
        consumed = client.consume_queue(
            args.pipe_file, args.pipe, max_batches=args.max_batches, timeout=args.timeout
        )
        print(f"messages_consumed={consumed}")
        return 0
    if not args.payload_files:
        raise LandfallIngestError(
            "No notifications given. Pass payload files, '-' for stdin, or --from-queue."
        )
    payloads = [_read_payload(path) for path in args.payload_files]
    admitted = client.notify(args.pipe_file, args.pipe, payloads, timeout=args.timeout)
    print(f"events_admitted={admitted}")
    return 0


def _read_payload(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as error:
        raise LandfallIngestError(
            f"Failed to read notification file {path}: {error}. Check the path and retry."
        ) from error
