"""Micro-batching load scheduler with per-table worker pools.

This module groups admitted objects into load tasks per destination
table, cutting a batch when it reaches ``batch_max_files`` or its oldest
object has waited ``batch_max_wait_seconds``. One coordinating thread
owns batching and delayed retries and hands tasks to a bounded worker
pool per table without waiting for them to finish.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import Counter, deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from core.errors import LandfallIngestError
from core.logging_config import get_logger
from core.types import LoadTask, ObjectRef, PipeDefinition

_LOGGER = get_logger(__name__)

TaskHandler = Callable[[LoadTask], None]
Clock = Callable[[], float]


@dataclass(frozen=True)
class _QueuedObject:
    pipe_name: str
    ref: ObjectRef
    enqueued_at: float


class _TableLane:
    """FIFO batch queue and worker pool for one destination table."""

    def __init__(self, target_table: str, max_concurrency: int) -> None:
        self.target_table = target_table
        self.max_concurrency = max_concurrency
        self.queue: deque[_QueuedObject] = deque()
        self.pipe_depths: Counter[str] = Counter()
        self.in_flight = 0
        self.executor = ThreadPoolExecutor(
            max_workers=max_concurrency,
            thread_name_prefix=f"landfall-load-{target_table}",
        )

    def push(self, item: _QueuedObject) -> None:
        self.queue.append(item)
        self.pipe_depths[item.pipe_name] += 1

    def take(self, pipe_name: str, limit: int) -> list[_QueuedObject]:
        """Remove and return up to ``limit`` queued objects of one pipe in FIFO order."""
        selected: list[_QueuedObject] = []
        kept: deque[_QueuedObject] = deque()
        for item in self.queue:
            if item.pipe_name == pipe_name and len(selected) < limit:
                selected.append(item)
            else:
                kept.append(item)
        self.queue = kept
        self.pipe_depths[pipe_name] -= len(selected)
        if self.pipe_depths[pipe_name] <= 0:
            del self.pipe_depths[pipe_name]
        return selected

    def clear(self) -> None:
        self.queue.clear()
        self.pipe_depths.clear()


class LoadScheduler:
    """Batches queued objects into load tasks and dispatches them."""

    def __init__(self, task_handler: TaskHandler, clock: Clock = time.monotonic) -> None:
        self._task_handler = task_handler
        self._clock = clock
        self._condition = threading.Condition()
        self._pipes: dict[str, PipeDefinition] = {}
        self._lanes: dict[str, _TableLane] = {}
        self._queued: set[tuple[str, ObjectRef]] = set()
        self._retries: list[tuple[float, int, str, ObjectRef]] = []
        self._retry_sequence = itertools.count()
        self._thread: threading.Thread | None = None
        self._stopping = False

    def register_pipe(self, pipe: PipeDefinition) -> None:
        """Make a pipe's objects schedulable.

        The first pipe registered for a table sets that table's worker
        pool size.
        """
        with self._condition:
            self._pipes[pipe.name] = pipe
            if pipe.target_table not in self._lanes:
                self._lanes[pipe.target_table] = _TableLane(
                    pipe.target_table, pipe.tuning.max_concurrency
                )

    def enqueue(self, pipe_name: str, ref: ObjectRef) -> bool:
        """Queue one object for batching.

        Returns:
            False when the object is already queued or waiting for a retry.

        Raises:
            LandfallIngestError: If the pipe is unknown or the scheduler
                was shut down.
        """
        with self._condition:
            self._require_running()
            pipe = self._require_pipe(pipe_name)
            queue_key = (pipe_name, ref)
            if queue_key in self._queued:
                return False
            self._queued.add(queue_key)
            self._lanes[pipe.target_table].push(_QueuedObject(pipe_name, ref, self._clock()))
            self._condition.notify_all()
            return True

    def schedule_retry(self, pipe_name: str, ref: ObjectRef, delay_seconds: float) -> None:
        """Queue one object again once ``delay_seconds`` have elapsed.

        After shutdown the retry is dropped; the FAILED record is picked up
        by recovery on the next start.
        """
        with self._condition:
            if self._stopping:
                _LOGGER.info(
                    "retry_dropped",
                    pipe_name=pipe_name,
                    object_key=ref.object_key,
                    generation=ref.generation,
                )
                return
            self._require_pipe(pipe_name)
            queue_key = (pipe_name, ref)
            if queue_key in self._queued:
                return
            self._queued.add(queue_key)
            due_at = self._clock() + max(delay_seconds, 0.0)
            heapq.heappush(self._retries, (due_at, next(self._retry_sequence), pipe_name, ref))
            self._condition.notify_all()

    def start(self) -> None:
        """Start the coordinating thread."""
        with self._condition:
            self._require_running()
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._run, name="landfall-scheduler", daemon=True
            )
            self._thread.start()

    def is_idle(self) -> bool:
        """Return whether nothing is queued, delayed, or loading."""
        with self._condition:
            return self._is_idle_locked()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until all queued, delayed, and in-flight work finished.

        Returns:
            True when idle, False when the timeout elapsed first.
        """
        with self._condition:
            return self._condition.wait_for(self._is_idle_locked, timeout=timeout)

    def shutdown(self, cancel: bool = False) -> None:
        """Stop scheduling and wait for in-flight tasks.

        Args:
            cancel: Drop queued objects instead of dispatching them. Dropped
                objects stay PENDING or FAILED in the registry and are
                recovered on the next start.
        """
        with self._condition:
            if self._stopping:
                return
            self._stopping = True
            dropped_retries = len(self._retries)
            for _, _, pipe_name, ref in self._retries:
                self._queued.discard((pipe_name, ref))
            self._retries.clear()
            if cancel:
                dropped = sum(len(lane.queue) for lane in self._lanes.values())
                for lane in self._lanes.values():
                    lane.clear()
                self._queued.clear()
            else:
                dropped = 0
                self._flush_all_locked()
            self._condition.notify_all()
            thread = self._thread
        if thread is not None:
            thread.join()
        for lane in self._lanes.values():
            lane.executor.shutdown(wait=True)
        _LOGGER.info(
            "scheduler_stopped",
            cancelled=cancel,
            dropped_objects=dropped,
            dropped_retries=dropped_retries,
        )

    def _run(self) -> None:
        with self._condition:
            while not self._stopping:
                now = self._clock()
                self._promote_due_retries(now)
                wake_after = self._dispatch_ready(now)
                self._condition.wait(timeout=wake_after)

    def _promote_due_retries(self, now: float) -> None:
        while self._retries and self._retries[0][0] <= now:
            _, _, pipe_name, ref = heapq.heappop(self._retries)
            lane = self._lanes[self._pipes[pipe_name].target_table]
            lane.push(_QueuedObject(pipe_name, ref, now))

    def _dispatch_ready(self, now: float) -> float | None:
        """Dispatch every ready batch and return seconds until the next deadline."""
        wake_after: float | None = None
        if self._retries:
            wake_after = max(self._retries[0][0] - now, 0.0)
        for lane in self._lanes.values():
            while lane.queue and lane.in_flight < lane.max_concurrency:
                head = lane.queue[0]
                tuning = self._pipes[head.pipe_name].tuning
                waited = now - head.enqueued_at
                pipe_depth = lane.pipe_depths[head.pipe_name]
                if pipe_depth < tuning.batch_max_files and waited < tuning.batch_max_wait_seconds:
                    remaining = tuning.batch_max_wait_seconds - waited
                    wake_after = remaining if wake_after is None else min(wake_after, remaining)
                    break
                self._dispatch_locked(lane, head.pipe_name, tuning.batch_max_files)
        return wake_after

    def _flush_all_locked(self) -> None:
        for lane in self._lanes.values():
            while lane.queue:
                pipe = self._pipes[lane.queue[0].pipe_name]
                self._dispatch_locked(lane, pipe.name, pipe.tuning.batch_max_files)

    def _dispatch_locked(self, lane: _TableLane, pipe_name: str, batch_max_files: int) -> None:
        selected = [item.ref for item in lane.take(pipe_name, batch_max_files)]
        for ref in selected:
            self._queued.discard((pipe_name, ref))
        pipe = self._pipes[pipe_name]
        task = LoadTask(
            pipe_name=pipe_name,
            target_table=pipe.target_table,
            objects=tuple(selected),
            file_format=pipe.file_format,
        )
        lane.in_flight += 1
        _LOGGER.info(
            "load_task_dispatched",
            pipe_name=pipe_name,
            target_table=pipe.target_table,
            object_count=len(selected),
            in_flight=lane.in_flight,
        )
        future = lane.executor.submit(self._task_handler, task)
        future.add_done_callback(lambda done: self._on_task_done(lane, task, done))

    def _on_task_done(self, lane: _TableLane, task: LoadTask, future: Future[None]) -> None:
        error = future.exception()
        if error is not None:
            _LOGGER.error(
                "load_task_crashed",
                pipe_name=task.pipe_name,
                target_table=task.target_table,
                object_count=len(task.objects),
                error=f"{type(error).__name__}: {error}",
            )
        with self._condition:
            lane.in_flight -= 1
            self._condition.notify_all()

    def _is_idle_locked(self) -> bool:
        return not self._queued and all(lane.in_flight == 0 for lane in self._lanes.values())

    def _require_running(self) -> None:
        if self._stopping:
            raise LandfallIngestError(
                "Load scheduler is shut down. Create a new coordinator to load more objects."
            )

    def _require_pipe(self, pipe_name: str) -> PipeDefinition:
        pipe = self._pipes.get(pipe_name)
        if pipe is None:
            raise LandfallIngestError(
                f"Pipe '{pipe_name}' is not registered with the scheduler. "
                "Register the pipe before enqueueing its objects."
            )
        return pipe
