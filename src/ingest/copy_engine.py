"""Load task execution against the destination table.

This module claims each object of a load task, reads and parses it, and
commits its rows in the same transaction as the LOADING -> COMMITTED
transition. Failures are returned per object for the retry manager.
"""

from __future__ import annotations

import sqlite3
import threading

from core.logging_config import get_logger
from core.types import (
    IngestionRecord,
    LoadResult,
    LoadTask,
    ObjectLoadError,
    ObjectRef,
    TransitionDetails,
)
from ingest.format_parser import parse_object_rows
from store.file_registry import FileRegistry
from store.object_store import ObjectStore
from store.table_store import TableStore

_LOGGER = get_logger(__name__)


class CopyEngine:
    """Loader for one pipe's staged objects."""

    def __init__(
        self,
        registry: FileRegistry,
        table_store: TableStore,
        object_store: ObjectStore,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._registry = registry
        self._table_store = table_store
        self._object_store = object_store
        self._cancel_event = cancel_event or threading.Event()

    def load(self, task: LoadTask) -> LoadResult:
        """Load every object of a task, one transaction per object.

        Objects not claimable (already committed, quarantined, or claimed
        by another worker) are skipped. Once cancellation is requested,
        remaining objects are left unclaimed.

        Args:
            task: Batch of objects for one destination table.

        Returns:
            Loaded and rejected row totals plus per-object failures.
        """
        rows_loaded = 0
        rows_rejected = 0
        committed: list[ObjectRef] = []
        errors: list[ObjectLoadError] = []
        for index, ref in enumerate(task.objects):
            if self._cancel_event.is_set():
                _LOGGER.info(
                    "load_task_cancelled",
                    pipe_name=task.pipe_name,
                    remaining_objects=len(task.objects) - index,
                )
                break
            try:
                record = self._load_object(task, ref)
            except Exception as error:
                errors.append(ObjectLoadError(ref.object_key, ref.generation, error))
                continue
            if record is None:
                continue
            rows_loaded += record.row_count_loaded
            rows_rejected += record.rows_rejected
            committed.append(ref)
        return LoadResult(
            rows_loaded=rows_loaded,
            rows_rejected=rows_rejected,
            errors=tuple(errors),
            committed=tuple(committed),
        )

    def _load_object(self, task: LoadTask, ref: ObjectRef) -> IngestionRecord | None:
        claimed = self._registry.claim(ref)
        if claimed is None:
            _LOGGER.debug(
                "object_not_claimable",
                pipe_name=task.pipe_name,
                object_key=ref.object_key,
                generation=ref.generation,
            )
            return None
        payload = self._object_store.read_object(ref)
        parsed = parse_object_rows(ref.object_key, payload, task.file_format)
        columns = task.file_format.columns

        def insert_rows(connection: sqlite3.Connection, record: IngestionRecord) -> None:
            self._table_store.insert_object_rows(connection, record, columns, parsed.rows)

        record = self._registry.transition(
            ref.object_key,
            ref.generation,
            "loading",
            "committed",
            TransitionDetails(
                row_count_loaded=len(parsed.rows),
                rows_rejected=parsed.rows_rejected,
                error_detail=parsed.first_rejection,
            ),
            side_effect=insert_rows,
        )
        _LOGGER.info(
            "object_committed",
            pipe_name=task.pipe_name,
            target_table=task.target_table,
            object_key=ref.object_key,
            generation=ref.generation,
            attempt_count=record.attempt_count,
            row_count_loaded=record.row_count_loaded,
            rows_rejected=record.rows_rejected,
        )
        return record
