"""Read-only status projections over the file registry."""

from __future__ import annotations

from datetime import datetime
from typing import Mapping

from core.errors import LandfallIngestError
from core.types import IngestionRecord, PipeStatus
from store.file_registry import FileRegistry


class StatusSurface:
    """Operator queries across the registries of all loaded pipes."""

    def __init__(self, registries: Mapping[str, FileRegistry]) -> None:
        self._registries = dict(registries)

    def history(
        self,
        table: str,
        since: datetime | None = None,
    ) -> tuple[IngestionRecord, ...]:
        """Return records of every pipe loading into ``table``.

        Args:
            table: Destination table name.
            since: Only records updated at or after this UTC time.

        Returns:
            Records ordered by first-seen time.
        """
        records: list[IngestionRecord] = []
        for registry in self._registries.values():
            if registry.target_table == table:
                records.extend(registry.list_since(since))
        return tuple(sorted(records, key=lambda record: record.first_seen_at))

    def pipe_status(self, pipe_name: str) -> PipeStatus:
        """Summarize one pipe's record counts and latest outcome.

        Raises:
            LandfallIngestError: If the pipe is unknown.
        """
        registry = self._registries.get(pipe_name)
        if registry is None:
            raise LandfallIngestError(
                f"Unknown pipe '{pipe_name}'. Known pipes: {', '.join(sorted(self._registries))}."
            )
        counts = registry.count_by_state()
        return PipeStatus(
            pipe_name=pipe_name,
            pending_count=counts["pending"],
            loading_count=counts["loading"],
            failed_count=counts["failed"],
            committed_count=counts["committed"],
            quarantined_count=counts["quarantined"],
            last_committed_at=registry.latest_committed_at(),
            last_error=registry.latest_error(),
        )
