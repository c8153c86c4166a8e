"""Exactly-once admission of object events.

This module decides whether a delivered event names an object generation
the pipe has not seen before. The registry insert-if-absent is the only
authority, so concurrent deliveries of one event admit it exactly once.
"""

from __future__ import annotations

from core.logging_config import get_logger
from core.types import IngestionRecord, ObjectEvent
from store.file_registry import FileRegistry

_LOGGER = get_logger(__name__)


class EventDeduplicator:
    """Admission gate in front of one pipe's registry."""

    def __init__(self, registry: FileRegistry) -> None:
        self._registry = registry

    def admit(self, event: ObjectEvent) -> bool:
        """Admit an event when its key and generation are new.

        Args:
            event: Delivered notification event.

        Returns:
            True exactly once per ``(object_key, generation)``; False for
            every duplicate delivery.
        """
        return self.admit_record(event) is not None

    def admit_record(self, event: ObjectEvent) -> IngestionRecord | None:
        """Admit an event and return its new PENDING record, or None."""
        record, created = self._registry.upsert_pending(event)
        if not created:
            _LOGGER.debug(
                "event_duplicate",
                pipe_name=self._registry.pipe_name,
                object_key=event.object_key,
                generation=event.generation,
                state=record.state,
            )
            return None
        _LOGGER.info(
            "event_admitted",
            pipe_name=self._registry.pipe_name,
            object_key=event.object_key,
            generation=event.generation,
            size=event.size,
        )
        return record
