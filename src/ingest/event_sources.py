"""Object event sources for pipes.

This module produces ObjectEvents from two places: a listing of the pipe
stage and S3 event notifications delivered through SQS. Both sources
filter keys by the pipe's prefix and optional regex pattern.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence
from urllib.parse import unquote_plus

from core.constants import DEFAULT_SQS_MAX_MESSAGES, DEFAULT_SQS_WAIT_SECONDS
from core.errors import LandfallIngestError
from core.logging_config import get_logger
from core.s3_uri import S3Location
from core.types import ObjectEvent
from store.object_store import ObjectStore, normalize_etag

_LOGGER = get_logger(__name__)

EventSink = Callable[[Sequence[ObjectEvent]], object]


class KeyFilter:
    """Prefix and regex filter for object keys."""

    def __init__(self, prefix: str = "", pattern: str | None = None) -> None:
        self._prefix = prefix
        self._pattern = re.compile(pattern) if pattern else None

    def matches(self, object_key: str) -> bool:
        """Return whether a key belongs to the pipe."""
        if not object_key.startswith(self._prefix):
            return False
        if self._pattern is None:
            return True
        return self._pattern.fullmatch(object_key) is not None


class ListingEventSource:
    """Event source that lists the stage on every poll."""

    def __init__(self, object_store: ObjectStore, key_filter: KeyFilter | None = None) -> None:
        self._object_store = object_store
        self._key_filter = key_filter or KeyFilter()

    def poll(self) -> list[ObjectEvent]:
        """List current object generations that pass the key filter."""
        events = [
            event
            for event in self._object_store.list_objects()
            if self._key_filter.matches(event.object_key)
        ]
        _LOGGER.debug("stage_listed", stage_uri=self._object_store.stage_uri, events=len(events))
        return events


def parse_s3_notification(
    body: str | Mapping[str, Any],
    location: S3Location | None = None,
) -> list[ObjectEvent]:
    """Parse an S3 event notification into object events.

    Accepts the raw S3 event document or one wrapped in an SNS envelope.
    Only ``ObjectCreated:*`` records produce events; test events and other
    event types yield nothing.

    Args:
        body: JSON text or decoded notification document.
        location: When given, records for other buckets or keys outside
            the prefix are dropped.

    Returns:
        Events in notification order, keys URL-decoded.

    Raises:
        LandfallIngestError: If the body is not a valid notification.
    """
    document = _decode_document(body)
    if document.get("Type") == "Notification" and "Message" in document:
        document = _decode_document(document["Message"])
    records = document.get("Records")
    if records is None:
        if document.get("Event") == "s3:TestEvent":
            return []
        raise LandfallIngestError(
            "S3 notification has no 'Records' field. Check the bucket notification target."
        )
    if not isinstance(records, list):
        raise LandfallIngestError("S3 notification field 'Records' must be a list.")
    events: list[ObjectEvent] = []
    for record in records:
        event = _event_from_record(record, location)
        if event is not None:
            events.append(event)
    return events


class SqsNotificationSource:
    """Long-polling consumer of S3 notifications from one SQS queue."""

    def __init__(
        self,
        sqs_client: Any,
        queue_url: str,
        location: S3Location,
        key_filter: KeyFilter | None = None,
        wait_seconds: int = DEFAULT_SQS_WAIT_SECONDS,
        max_messages: int = DEFAULT_SQS_MAX_MESSAGES,
    ) -> None:
        self._client = sqs_client
        self._queue_url = queue_url
        self._location = location
        self._key_filter = key_filter or KeyFilter(location.prefix)
        self._wait_seconds = wait_seconds
        self._max_messages = max_messages

    def poll(self, sink: EventSink) -> int:
        """Receive one batch of messages and hand their events to ``sink``.

        A message is deleted only after ``sink`` returned for its events, so
        a crash before admission leaves it for redelivery. Unparseable
        messages are left on the queue for its redrive policy.

        Returns:
            Number of messages deleted.
        """
        response = self._client.receive_message(
            QueueUrl=self._queue_url,
            MaxNumberOfMessages=self._max_messages,
            WaitTimeSeconds=self._wait_seconds,
        )
        deleted = 0
        for message in response.get("Messages", []):
            try:
                events = parse_s3_notification(message.get("Body", ""), self._location)
            except LandfallIngestError as error:
                _LOGGER.warning(
                    "notification_unparseable",
                    queue_url=self._queue_url,
                    message_id=message.get("MessageId"),
                    error=str(error),
                )
                continue
            sink([event for event in events if self._key_filter.matches(event.object_key)])
            self._client.delete_message(
                QueueUrl=self._queue_url,
                ReceiptHandle=message["ReceiptHandle"],
            )
            deleted += 1
        return deleted


def _decode_document(body: object) -> Mapping[str, Any]:
    if isinstance(body, Mapping):
        return body
    if not isinstance(body, (str, bytes)):
        raise LandfallIngestError(
            f"S3 notification must be JSON text or an object, got {type(body).__name__}."
        )
    try:
        document = json.loads(body)
    except json.JSONDecodeError as error:
        raise LandfallIngestError(f"S3 notification is not valid JSON: {error.msg}.") from error
    if not isinstance(document, dict):
        raise LandfallIngestError("S3 notification must decode to a JSON object.")
    return document


def _event_from_record(
    record: object,
    location: S3Location | None,
) -> ObjectEvent | None:
    if not isinstance(record, Mapping):
        raise LandfallIngestError("S3 notification record must be a JSON object.")
    event_name = str(record.get("eventName", ""))
    if not event_name.startswith("ObjectCreated:"):
        return None
    s3_section = _section(record, "s3")
    bucket = str(_section(s3_section, "bucket").get("name", ""))
    object_section = _section(s3_section, "object")
    raw_key = object_section.get("key")
    if not raw_key:
        raise LandfallIngestError("S3 notification record is missing 's3.object.key'.")
    object_key = unquote_plus(str(raw_key))
    if location is not None and (
        bucket != location.bucket or not object_key.startswith(location.prefix)
    ):
        return None
    generation = _record_generation(object_section)
    if generation is None:
        raise LandfallIngestError(
            f"S3 notification record for '{object_key}' has no eTag, versionId, or sequencer."
        )
    etag = object_section.get("eTag")
    return ObjectEvent(
        object_key=object_key,
        generation=generation,
        size=_object_size(object_key, object_section.get("size", 0)),
        content_hash=normalize_etag(str(etag)) if etag else None,
        observed_at=_parse_event_time(record.get("eventTime")),
    )


def _section(parent: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = parent.get(name) or {}
    if not isinstance(value, Mapping):
        raise LandfallIngestError(
            f"S3 notification field '{name}' must be a JSON object, got {type(value).__name__}."
        )
    return value


def _object_size(object_key: str, raw_size: object) -> int:
    message = f"S3 notification record for '{object_key}' has an invalid size {raw_size!r}."
    if isinstance(raw_size, bool) or not isinstance(raw_size, (int, str)):
        raise LandfallIngestError(message)
    try:
        size = int(raw_size)
    except ValueError as error:
        raise LandfallIngestError(message) from error
    if size < 0:
        raise LandfallIngestError(message)
    return size


def _record_generation(object_section: Mapping[str, Any]) -> str | None:
    etag = object_section.get("eTag")
    if etag:
        return normalize_etag(str(etag))
    for field_name in ("versionId", "sequencer"):
        value = object_section.get(field_name)
        if value:
            return str(value)
    return None


def _parse_event_time(value: object) -> datetime:
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)
