"""Unit tests for listing and notification event sources."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from core.errors import LandfallIngestError
from core.s3_uri import parse_s3_uri
from ingest.event_sources import (
    KeyFilter,
    ListingEventSource,
    SqsNotificationSource,
    parse_s3_notification,
)
from store.object_store import LocalObjectStore
from tests.fixture_paths import fixture_path
from tests.pipe_factories import FakeSqsClient

_LOCATION = parse_s3_uri("s3://landing-bucket/orders/", domain="ingest")


def _notification_text() -> str:
    return fixture_path("notifications/s3_object_created.json").read_text(encoding="utf-8")


def test_parse_keeps_only_object_created_records() -> None:
    """Removal events should not produce object events."""
    events = parse_s3_notification(_notification_text())

    assert [event.object_key for event in events] == [
        "orders/orders_20231210.csv",
        "orders/daily orders(2).csv",
    ]


def test_parse_uses_unquoted_etag_as_generation() -> None:
    """Generations should be bare ETags."""
    events = parse_s3_notification(_notification_text())

    assert events[0].generation == "9b2cf535f27731c974343645a3985328"
    assert events[0].size == 128


def test_parse_unwraps_sns_envelope() -> None:
    """SNS-delivered notifications should be unwrapped."""
    envelope = json.dumps({"Type": "Notification", "Message": _notification_text()})

    events = parse_s3_notification(envelope)

    assert len(events) == 2


def test_parse_filters_other_buckets() -> None:
    """Records outside the stage location should be dropped."""
    other = parse_s3_uri("s3://other-bucket/orders/", domain="ingest")

    assert parse_s3_notification(_notification_text(), other) == []


def test_parse_ignores_test_event() -> None:
    """S3 test events carry no records and produce nothing."""
    body = json.dumps({"Service": "Amazon S3", "Event": "s3:TestEvent"})

    assert parse_s3_notification(body) == []


def test_parse_rejects_invalid_json() -> None:
    """Broken notification bodies should raise an ingest error."""
    with pytest.raises(LandfallIngestError, match="not valid JSON"):
        parse_s3_notification("{not json")


def test_key_filter_applies_prefix_and_full_regex() -> None:
    """Patterns must match the whole key."""
    key_filter = KeyFilter("orders/", r"orders/orders_[0-9]{8}\.csv")

    assert key_filter.matches("orders/orders_20231210.csv")
    assert not key_filter.matches("orders/orders_20231210.csv.bak")
    assert not key_filter.matches("returns/orders_20231210.csv")


def test_listing_source_filters_stage(tmp_path: Path) -> None:
    """Listing should yield only keys that pass the filter."""
    (tmp_path / "orders_20231210.csv").write_text("1\n", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("x\n", encoding="utf-8")
    source = ListingEventSource(LocalObjectStore(tmp_path), KeyFilter("", r".*\.csv"))

    events = source.poll()

    assert [event.object_key for event in events] == ["orders_20231210.csv"]


def test_sqs_source_deletes_after_sink_returns() -> None:
    """Messages should be deleted only once their events were handed off."""
    client = FakeSqsClient([_notification_text()])
    source = SqsNotificationSource(client, "queue-url", _LOCATION)
    received: list[str] = []

    deleted = source.poll(lambda events: received.extend(event.object_key for event in events))

    assert deleted == 1 and client.deleted == ["r-0"]
    assert len(received) == 2


def test_sqs_source_keeps_message_when_sink_fails() -> None:
    """A failed admission should leave the message for redelivery."""
    client = FakeSqsClient([_notification_text()])
    source = SqsNotificationSource(client, "queue-url", _LOCATION)

    def failing_sink(events: object) -> None:
        raise LandfallIngestError("ledger unavailable")

    with pytest.raises(LandfallIngestError):
        source.poll(failing_sink)

    assert client.deleted == []


def test_sqs_source_skips_unparseable_message() -> None:
    """Unparseable messages stay on the queue for its redrive policy."""
    client = FakeSqsClient(["{broken", _notification_text()])
    source = SqsNotificationSource(client, "queue-url", _LOCATION)

    deleted = source.poll(lambda events: None)

    assert deleted == 1 and client.deleted == ["r-1"]


def _created_record(object_section: object) -> dict[str, object]:
    return {
        "eventName": "ObjectCreated:Put",
        "s3": {"bucket": {"name": "landing-bucket"}, "object": object_section},
    }


@pytest.mark.parametrize(
    "record",
    [
        _created_record({"key": "orders/a.csv", "eTag": "abc", "size": "abc"}),
        _created_record({"key": "orders/a.csv", "eTag": "abc", "size": [1]}),
        _created_record("orders/a.csv"),
        {"eventName": "ObjectCreated:Put", "s3": ["landing-bucket"]},
    ],
)
def test_parse_rejects_malformed_record_fields(record: dict[str, object]) -> None:
    """Wrongly typed record fields should raise an ingest error."""
    body = json.dumps({"Records": [record]})

    with pytest.raises(LandfallIngestError, match="S3 notification"):
        parse_s3_notification(body, _LOCATION)


def test_sqs_source_skips_message_with_bad_size() -> None:
    """A record with a non-numeric size must not stop the consumer."""
    bad_body = json.dumps(
        {"Records": [_created_record({"key": "orders/a.csv", "eTag": "abc", "size": "abc"})]}
    )
    client = FakeSqsClient([bad_body, _notification_text()])
    source = SqsNotificationSource(client, "queue-url", _LOCATION)

    deleted = source.poll(lambda events: None)

    assert deleted == 1 and client.deleted == ["r-1"]
