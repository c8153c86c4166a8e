"""Watch command wiring for Landfall CLI."""

from __future__ import annotations

import argparse
from typing import Any

from cli.output import add_pipe_arguments
from core.constants import DEFAULT_WATCH_INTERVAL_SECONDS
from store.pipe_sdk import LandfallClient


def add_watch_command(subparsers: Any) -> None:
    """Register watch subcommand."""
    parser = subparsers.add_parser(
        "watch",
        help="Continuously admit new objects from stages or notification queues",
    )
    add_pipe_arguments(parser)
    parser.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_WATCH_INTERVAL_SECONDS,
        help="Seconds between stage listings",
    )
    parser.add_argument(
        "--max-polls",
        type=int,
        help="Stop after this many polling rounds instead of running until interrupted",
    )


def run_watch_command(client: LandfallClient, args: argparse.Namespace) -> int:
    """Poll until interrupted and print each round's admitted count."""
    try:
        total = client.watch(
            args.pipe_file,
            args.pipe,
            interval_seconds=args.interval,
            max_polls=args.max_polls,
            on_poll=lambda admitted: print(f"admitted={admitted}", flush=True),
        )
    except KeyboardInterrupt:
        print("watch_stopped=interrupted")
        return 130
    print(f"total_admitted={total}")
    return 0
