"""Runtime wiring of registry, scheduler, loader, and retry policy.

This module assembles the per-pipe components around one shared ledger
and scheduler. It admits events, recovers unfinished records at startup,
routes load failures to the retry manager, and exposes operator queries.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from types import TracebackType
from typing import Mapping, Sequence

from core.config import LandfallConfig
from core.constants import INTERRUPTED_LOAD_DETAIL
from core.errors import LandfallError, LandfallIngestError
from core.logging_config import get_logger
from core.s3_uri import parse_s3_uri
from core.types import (
    IngestionRecord,
    LoadTask,
    ObjectEvent,
    ObjectRef,
    PipeDefinition,
    PipeStatus,
    TransitionDetails,
)
from ingest.copy_engine import CopyEngine
from ingest.deduplicator import EventDeduplicator
from ingest.event_sources import (
    KeyFilter,
    ListingEventSource,
    SqsNotificationSource,
    parse_s3_notification,
)
from ingest.retry_manager import RetryManager
from ingest.scheduler import Clock, LoadScheduler
from ingest.status import StatusSurface
from store.aws_clients import create_aws_client
from store.database import LedgerDatabase
from store.file_registry import FileRegistry
from store.object_store import ObjectStore, S3ObjectStore, open_object_store
from store.table_store import TableStore

_LOGGER = get_logger(__name__)


class _PipeRuntime:
    """Components bound to one pipe."""

    def __init__(
        self,
        pipe: PipeDefinition,
        registry: FileRegistry,
        object_store: ObjectStore,
        engine: CopyEngine,
        retry_manager: RetryManager,
    ) -> None:
        self.pipe = pipe
        self.registry = registry
        self.object_store = object_store
        self.engine = engine
        self.retry_manager = retry_manager
        self.deduplicator = EventDeduplicator(registry)
        prefix = object_store.location.prefix if isinstance(object_store, S3ObjectStore) else ""
        self.key_filter = KeyFilter(prefix, pipe.pattern)
        self.sqs_source: SqsNotificationSource | None = None


class IngestionCoordinator:
    """Event-driven loader for a set of pipes sharing one ledger."""

    def __init__(
        self,
        config: LandfallConfig,
        pipes: Sequence[PipeDefinition],
        object_stores: Mapping[str, ObjectStore] | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Wire components for every pipe.

        Args:
            config: Runtime config with ledger location and retry backoff.
            pipes: Pipe definitions to serve.
            object_stores: Optional stage adapters by pipe name, replacing
                the adapters derived from each pipe's source URI.
            clock: Optional monotonic clock for the scheduler.
        """
        self._config = config
        self._database = LedgerDatabase(config.ledger_path)
        self._table_store = TableStore(self._database)
        self._cancel_event = threading.Event()
        self._scheduler = LoadScheduler(self._handle_task, clock or time.monotonic)
        self._runtimes: dict[str, _PipeRuntime] = {}
        for pipe in pipes:
            registry = FileRegistry(self._database, pipe.name, pipe.target_table)
            object_store = (object_stores or {}).get(pipe.name) or open_object_store(
                pipe.source_uri, config
            )
            self._runtimes[pipe.name] = _PipeRuntime(
                pipe=pipe,
                registry=registry,
                object_store=object_store,
                engine=CopyEngine(registry, self._table_store, object_store, self._cancel_event),
                retry_manager=RetryManager(
                    registry,
                    max_attempts=pipe.tuning.max_attempts,
                    backoff_base_seconds=config.backoff_base_seconds,
                    backoff_cap_seconds=config.backoff_cap_seconds,
                ),
            )
            self._scheduler.register_pipe(pipe)
        self._status = StatusSurface(
            {name: runtime.registry for name, runtime in self._runtimes.items()}
        )

    def __enter__(self) -> "IngestionCoordinator":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.shutdown(cancel=exc_type is not None)

    @property
    def table_store(self) -> TableStore:
        return self._table_store

    @property
    def pipe_names(self) -> tuple[str, ...]:
        return tuple(self._runtimes)

    def registry(self, pipe_name: str) -> FileRegistry:
        """Return the registry of one pipe."""
        return self._runtime(pipe_name).registry

    def start(self, recover: bool = True) -> None:
        """Recover unfinished records, then start the scheduler."""
        if recover:
            self.recover()
        self._scheduler.start()

    def recover(self) -> int:
        """Requeue records left unfinished by a previous process.

        LOADING records first move to FAILED with an interrupted detail;
        the attempt they were in is not counted again. Interrupted records
        that already spent max_attempts move to QUARANTINED instead.

        Returns:
            Number of records requeued.
        """
        requeued = 0
        now = datetime.now(timezone.utc)
        for runtime in self._runtimes.values():
            registry = runtime.registry
            pipe_requeued = 0
            max_attempts = runtime.pipe.tuning.max_attempts
            for record in registry.list_by_state("loading"):
                exhausted = record.attempt_count >= max_attempts
                registry.transition(
                    record.object_key,
                    record.generation,
                    "loading",
                    "quarantined" if exhausted else "failed",
                    TransitionDetails(error_detail=INTERRUPTED_LOAD_DETAIL),
                )
                if exhausted:
                    _LOGGER.warning(
                        "object_quarantined",
                        pipe_name=runtime.pipe.name,
                        object_key=record.object_key,
                        generation=record.generation,
                        attempt_count=record.attempt_count,
                        error_detail=INTERRUPTED_LOAD_DETAIL,
                    )
            for state in ("pending", "failed"):
                for record in registry.list_by_state(state):
                    self._requeue(runtime.pipe.name, record, now)
                    pipe_requeued += 1
            if pipe_requeued:
                _LOGGER.info(
                    "recovery_requeued",
                    pipe_name=runtime.pipe.name,
                    requeued=pipe_requeued,
                )
            requeued += pipe_requeued
        return requeued

    def submit(self, pipe_name: str, events: Sequence[ObjectEvent]) -> int:
        """Admit events for one pipe and queue new ones for loading.

        Returns:
            Number of events admitted; duplicates and filtered keys are
            not counted.
        """
        runtime = self._runtime(pipe_name)
        admitted = 0
        for event in events:
            if not runtime.key_filter.matches(event.object_key):
                continue
            record = runtime.deduplicator.admit_record(event)
            if record is None:
                continue
            self._scheduler.enqueue(pipe_name, record.ref)
            admitted += 1
        return admitted

    def submit_notification(self, pipe_name: str, body: str) -> int:
        """Admit the events of one raw S3 notification document."""
        runtime = self._runtime(pipe_name)
        location = (
            runtime.object_store.location
            if isinstance(runtime.object_store, S3ObjectStore)
            else None
        )
        return self.submit(pipe_name, parse_s3_notification(body, location))

    def poll_stage(self, pipe_name: str | None = None) -> int:
        """List stages and admit any new object generations.

        Args:
            pipe_name: Pipe to poll, or every pipe when None.

        Returns:
            Number of events admitted.
        """
        names = (pipe_name,) if pipe_name else tuple(self._runtimes)
        admitted = 0
        for name in names:
            runtime = self._runtime(name)
            source = ListingEventSource(runtime.object_store, runtime.key_filter)
            admitted += self.submit(name, source.poll())
        return admitted

    def poll_queue(self, pipe_name: str) -> int:
        """Receive one batch of SQS notifications for a pipe.

        Returns:
            Number of messages consumed.

        Raises:
            LandfallIngestError: If the pipe has no queue or no S3 stage.
        """
        runtime = self._runtime(pipe_name)
        if runtime.sqs_source is None:
            runtime.sqs_source = self._build_sqs_source(runtime)
        return runtime.sqs_source.poll(lambda events: self.submit(pipe_name, events))

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until every queued object reached a resting state."""
        return self._scheduler.wait_idle(timeout)

    def shutdown(self, cancel: bool = False) -> None:
        """Stop loading; with ``cancel`` leave unclaimed objects PENDING."""
        if cancel:
            self._cancel_event.set()
        self._scheduler.shutdown(cancel=cancel)

    def status(self, pipe_name: str) -> PipeStatus:
        return self._status.pipe_status(pipe_name)

    def history(self, table: str, since: datetime | None = None) -> tuple[IngestionRecord, ...]:
        return self._status.history(table, since)

    def reprocess(
        self,
        pipe_name: str,
        object_key: str,
        generation: str | None = None,
    ) -> tuple[IngestionRecord, ...]:
        """Return quarantined records of one key to PENDING and queue them.

        Args:
            pipe_name: Pipe owning the records.
            object_key: Quarantined object key.
            generation: One generation, or every quarantined generation
                of the key when None.

        Returns:
            Reopened records.

        Raises:
            LandfallIngestError: If no quarantined record matches.
        """
        runtime = self._runtime(pipe_name)
        refs = [
            record.ref
            for record in runtime.registry.list_by_state("quarantined")
            if record.object_key == object_key
            and (generation is None or record.generation == generation)
        ]
        if not refs:
            raise LandfallIngestError(
                f"No quarantined record for '{object_key}' in pipe '{pipe_name}'. "
                "Check 'landfall history' for the object's state."
            )
        reopened = tuple(
            runtime.registry.reopen_quarantined(ref, "manual reprocess") for ref in refs
        )
        for record in reopened:
            self._scheduler.enqueue(pipe_name, record.ref)
        _LOGGER.info(
            "reprocess_requested",
            pipe_name=pipe_name,
            object_key=object_key,
            records=len(reopened),
        )
        return reopened

    def _handle_task(self, task: LoadTask) -> None:
        runtime = self._runtime(task.pipe_name)
        result = runtime.engine.load(task)
        for failure in result.errors:
            ref = ObjectRef(failure.object_key, failure.generation)
            try:
                decision = runtime.retry_manager.handle_failure(ref, failure.error)
            except LandfallError as error:
                _LOGGER.error(
                    "failure_recording_failed",
                    pipe_name=task.pipe_name,
                    object_key=ref.object_key,
                    generation=ref.generation,
                    load_error=f"{type(failure.error).__name__}: {failure.error}",
                    error=str(error),
                )
                continue
            if decision.retry_delay_seconds is not None:
                self._scheduler.schedule_retry(task.pipe_name, ref, decision.retry_delay_seconds)

    def _requeue(self, pipe_name: str, record: IngestionRecord, now: datetime) -> None:
        if record.state == "failed" and record.next_attempt_at and record.next_attempt_at > now:
            delay = (record.next_attempt_at - now).total_seconds()
            self._scheduler.schedule_retry(pipe_name, record.ref, delay)
            return
        self._scheduler.enqueue(pipe_name, record.ref)

    def _build_sqs_source(self, runtime: _PipeRuntime) -> SqsNotificationSource:
        pipe = runtime.pipe
        if not pipe.notification_queue:
            raise LandfallIngestError(
                f"Pipe '{pipe.name}' has no notification_queue. "
                "Add the SQS queue URL to the pipe definition."
            )
        if not pipe.source_uri.startswith("s3://"):
            raise LandfallIngestError(
                f"Pipe '{pipe.name}' reads notifications but its source is not an S3 stage."
            )
        location = parse_s3_uri(pipe.source_uri, domain="ingest")
        return SqsNotificationSource(
            create_aws_client("sqs", self._config),
            pipe.notification_queue,
            location,
            runtime.key_filter,
        )

    def _runtime(self, pipe_name: str) -> _PipeRuntime:
        runtime = self._runtimes.get(pipe_name)
        if runtime is None:
            raise LandfallIngestError(
                f"Unknown pipe '{pipe_name}'. Known pipes: {', '.join(self._runtimes)}."
            )
        return runtime
