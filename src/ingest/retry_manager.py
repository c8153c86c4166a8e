"""Failure classification, retry backoff, and quarantine.

This module turns a failed load attempt into exactly one registry
transition: FAILED with a scheduled retry for transient errors, or
QUARANTINED with the error recorded for permanent ones.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from core.errors import TransientIOFailure
from core.logging_config import get_logger
from core.types import FailureClass, ObjectRef, RetryDecision, TransitionDetails
from store.file_registry import CLAIMABLE_STATES, FileRegistry

_LOGGER = get_logger(__name__)
_MAX_BACKOFF_EXPONENT = 62


def classify(error: BaseException) -> FailureClass:
    """Classify an error as transient or permanent.

    I/O-shaped errors are retried; everything else, including unknown
    exception types, is permanent.
    """
    if isinstance(error, (TransientIOFailure, TimeoutError, ConnectionError)):
        return "transient"
    if isinstance(error, OSError):
        return "transient"
    return "permanent"


def format_error_detail(error: BaseException) -> str:
    """Render an error as ``"<ErrorType>: <message>"``."""
    return f"{type(error).__name__}: {error}"


class RetryManager:
    """Retry and quarantine policy for one pipe."""

    def __init__(
        self,
        registry: FileRegistry,
        max_attempts: int,
        backoff_base_seconds: float,
        backoff_cap_seconds: float,
    ) -> None:
        self._registry = registry
        self._max_attempts = max_attempts
        self._backoff_base_seconds = backoff_base_seconds
        self._backoff_cap_seconds = backoff_cap_seconds

    def backoff_delay(self, attempt: int) -> float:
        """Return ``min(cap, base * 2 ** attempt)`` in seconds."""
        exponent = min(max(attempt, 0), _MAX_BACKOFF_EXPONENT)
        return min(self._backoff_cap_seconds, self._backoff_base_seconds * (2**exponent))

    def handle_failure(self, ref: ObjectRef, error: BaseException) -> RetryDecision:
        """Record one failed attempt and decide whether to retry.

        Args:
            ref: Object whose load failed.
            error: Error raised while loading it.

        Returns:
            Decision with the updated record. ``retry_delay_seconds`` is set
            when the object should be enqueued again after that delay.

        Raises:
            InvalidTransition: If another worker moved the record concurrently.
        """
        record = self._registry.get(ref.object_key, ref.generation)
        failure_class = classify(error)
        detail = format_error_detail(error)
        if record.state in CLAIMABLE_STATES:
            # The claim never landed, so the object was never read.
            noted = self._registry.record_error(ref, detail)
            delay = self.backoff_delay(record.attempt_count)
            _LOGGER.warning(
                "load_failed_before_claim",
                pipe_name=record.pipe_name,
                object_key=record.object_key,
                generation=record.generation,
                retry_delay_seconds=delay,
                error_detail=detail,
            )
            return RetryDecision(failure_class, noted, delay)
        if record.state != "loading":
            return RetryDecision(failure_class, record, None)
        if failure_class == "transient" and record.attempt_count < self._max_attempts:
            delay = self.backoff_delay(record.attempt_count)
            failed = self._registry.transition(
                ref.object_key,
                ref.generation,
                "loading",
                "failed",
                TransitionDetails(
                    error_detail=detail,
                    next_attempt_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
                ),
            )
            _log_retry(record.pipe_name, ref, failed.attempt_count, delay, detail)
            return RetryDecision("transient", failed, delay)
        quarantined = self._registry.transition(
            ref.object_key,
            ref.generation,
            "loading",
            "quarantined",
            TransitionDetails(error_detail=detail),
        )
        _LOGGER.warning(
            "object_quarantined",
            pipe_name=record.pipe_name,
            object_key=ref.object_key,
            generation=ref.generation,
            attempt_count=quarantined.attempt_count,
            error_detail=detail,
        )
        return RetryDecision("permanent", quarantined, None)


def _log_retry(
    pipe_name: str,
    ref: ObjectRef,
    attempt_count: int,
    delay: float,
    detail: str,
) -> None:
    _LOGGER.info(
        "retry_scheduled",
        pipe_name=pipe_name,
        object_key=ref.object_key,
        generation=ref.generation,
        attempt_count=attempt_count,
        retry_delay_seconds=delay,
        error_detail=detail,
    )
