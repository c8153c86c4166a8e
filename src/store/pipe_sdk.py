"""Python SDK for pipe operations.

This module exposes high-level APIs for loading stages, admitting
notifications, inspecting pipe health, and exporting destination tables.
Each call opens a coordinator over the ledger for the pipes it touches.
"""

from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Sequence

from core.config import LandfallConfig
from core.constants import DEFAULT_IDLE_TIMEOUT_SECONDS, DEFAULT_WATCH_INTERVAL_SECONDS
from core.errors import LandfallIngestError
from core.pipe_spec import load_pipe_file, select_pipe
from core.types import IngestionRecord, PipeDefinition, PipeStatus
from ingest.coordinator import IngestionCoordinator
from store.database import LedgerDatabase
from store.table_export import export_table_parquet
from store.table_store import TableStore


class LandfallClient:
    """Primary SDK entry point for pipe workflows."""

    def __init__(self, config: LandfallConfig | None = None) -> None:
        """Create SDK client.

        Args:
            config: Optional runtime configuration.
        """
        self._config = config or LandfallConfig.from_env()

    @property
    def config(self) -> LandfallConfig:
        return self._config

    def with_data_root(self, data_root: str) -> "LandfallClient":
        """Clone the client with a different local data root.

        Args:
            data_root: New data root path.

        Returns:
            New SDK client instance.
        """
        resolved_root = Path(data_root).expanduser().resolve()
        return LandfallClient(replace(self._config, data_root=resolved_root))

    def load(
        self,
        pipe_file: str,
        pipe_name: str | None = None,
        timeout: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
    ) -> tuple[PipeStatus, ...]:
        """List stages once and load every new or unfinished object.

        Args:
            pipe_file: Path to YAML pipe file.
            pipe_name: One pipe to load, or every pipe when None.
            timeout: Seconds to wait for loads and retries to settle.

        Returns:
            Status of each loaded pipe after the run.

        Raises:
            LandfallIngestError: If loading does not settle within ``timeout``.
        """
        pipes = self._pipes(pipe_file, pipe_name)
        with IngestionCoordinator(self._config, pipes) as coordinator:
            coordinator.poll_stage()
            _wait_settled(coordinator, timeout)
            return tuple(coordinator.status(pipe.name) for pipe in pipes)

    def watch(
        self,
        pipe_file: str,
        pipe_name: str | None = None,
        interval_seconds: float = DEFAULT_WATCH_INTERVAL_SECONDS,
        max_polls: int | None = None,
        on_poll: Callable[[int], None] | None = None,
    ) -> int:
        """Keep admitting new objects until interrupted.

        Pipes with a notification queue consume it; the others list their
        stage every ``interval_seconds``.

        Args:
            pipe_file: Path to YAML pipe file.
            pipe_name: One pipe to watch, or every pipe when None.
            interval_seconds: Pause between stage listings.
            max_polls: Stop after this many polling rounds.
            on_poll: Callback receiving the admitted count of each round.

        Returns:
            Total events or messages consumed.
        """
        pipes = self._pipes(pipe_file, pipe_name)
        total = 0
        polls = 0
        with IngestionCoordinator(self._config, pipes) as coordinator:
            while max_polls is None or polls < max_polls:
                consumed = 0
                for pipe in pipes:
                    if pipe.notification_queue:
                        consumed += coordinator.poll_queue(pipe.name)
                    else:
                        consumed += coordinator.poll_stage(pipe.name)
                total += consumed
                polls += 1
                if on_poll is not None:
                    on_poll(consumed)
                if max_polls is None or polls < max_polls:
                    time.sleep(interval_seconds)
            coordinator.wait_idle(DEFAULT_IDLE_TIMEOUT_SECONDS)
        return total

    def notify(
        self,
        pipe_file: str,
        pipe_name: str | None,
        payloads: Sequence[str],
        timeout: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
    ) -> int:
        """Admit raw S3 notification documents and load their objects.

        Returns:
            Number of events admitted.
        """
        pipe = select_pipe(load_pipe_file(pipe_file, self._config), pipe_name)
        with IngestionCoordinator(self._config, (pipe,)) as coordinator:
            admitted = sum(coordinator.submit_notification(pipe.name, body) for body in payloads)
            _wait_settled(coordinator, timeout)
        return admitted

    def consume_queue(
        self,
        pipe_file: str,
        pipe_name: str | None = None,
        max_batches: int = 1,
        timeout: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
    ) -> int:
        """Receive up to ``max_batches`` SQS batches and load their objects.

        Returns:
            Number of messages consumed.
        """
        pipe = select_pipe(load_pipe_file(pipe_file, self._config), pipe_name)
        consumed = 0
        with IngestionCoordinator(self._config, (pipe,)) as coordinator:
            for _ in range(max_batches):
                consumed += coordinator.poll_queue(pipe.name)
            _wait_settled(coordinator, timeout)
        return consumed

    def status(self, pipe_file: str, pipe_name: str | None = None) -> tuple[PipeStatus, ...]:
        """Return health summaries for one or every pipe."""
        pipes = self._pipes(pipe_file, pipe_name)
        coordinator = IngestionCoordinator(self._config, pipes)
        return tuple(coordinator.status(pipe.name) for pipe in pipes)

    def history(
        self,
        pipe_file: str,
        table: str,
        since: datetime | None = None,
    ) -> tuple[IngestionRecord, ...]:
        """Return ingestion records of every pipe loading into ``table``."""
        coordinator = IngestionCoordinator(self._config, load_pipe_file(pipe_file, self._config))
        return coordinator.history(table, since)

    def reprocess(
        self,
        pipe_file: str,
        pipe_name: str | None,
        object_key: str,
        generation: str | None = None,
        timeout: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
    ) -> tuple[IngestionRecord, ...]:
        """Reload quarantined generations of one object key.

        Returns:
            Final records of the reprocessed generations.
        """
        pipe = select_pipe(load_pipe_file(pipe_file, self._config), pipe_name)
        with IngestionCoordinator(self._config, (pipe,)) as coordinator:
            reopened = coordinator.reprocess(pipe.name, object_key, generation)
            _wait_settled(coordinator, timeout)
            registry = coordinator.registry(pipe.name)
            return tuple(registry.get(record.object_key, record.generation) for record in reopened)

    def export_table(self, table: str, output_path: str) -> Path:
        """Write one destination table to a Parquet file."""
        table_store = TableStore(LedgerDatabase(self._config.ledger_path))
        return export_table_parquet(table_store, table, output_path)

    def _pipes(self, pipe_file: str, pipe_name: str | None) -> tuple[PipeDefinition, ...]:
        pipes = load_pipe_file(pipe_file, self._config)
        if pipe_name is None:
            return pipes
        return (select_pipe(pipes, pipe_name),)


def _wait_settled(coordinator: IngestionCoordinator, timeout: float) -> None:
    if not coordinator.wait_idle(timeout):
        raise LandfallIngestError(
            f"Loads did not settle within {timeout:g} seconds. "
            "Run 'landfall status' to inspect pending work, or raise the timeout."
        )
