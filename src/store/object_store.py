"""Object store adapters for pipe stages.

This module reads staged objects from a local directory or an S3 prefix.
Both adapters list current object generations and read one exact
generation, mapping failures onto the retry taxonomy.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from core.config import LandfallConfig
from core.errors import LandfallIngestError, ObjectUnavailable, TransientIOFailure
from core.s3_uri import S3Location, parse_s3_uri
from core.types import ObjectEvent, ObjectRef
from store.aws_clients import create_aws_client

_S3_MISSING_CODES = {"NoSuchKey", "NotFound", "404", "PreconditionFailed", "412"}
_S3_TRANSIENT_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
    "500",
    "503",
}


class ObjectStore(Protocol):
    """Stage contract required by event sources and the copy engine."""

    @property
    def stage_uri(self) -> str: ...

    def list_objects(self) -> list[ObjectEvent]: ...

    def read_object(self, ref: ObjectRef) -> bytes: ...


class LocalObjectStore:
    """Directory-backed stage; generations are file modification times."""

    def __init__(self, root: Path) -> None:
        self._root = root.expanduser().resolve()

    @property
    def stage_uri(self) -> str:
        return str(self._root)

    def list_objects(self) -> list[ObjectEvent]:
        """List current files as events, sorted by key.

        Raises:
            LandfallIngestError: If the stage directory does not exist.
        """
        if not self._root.is_dir():
            raise LandfallIngestError(
                f"Stage directory {self._root} does not exist. "
                "Create it or fix the pipe's source path."
            )
        observed_at = datetime.now(timezone.utc)
        events: list[ObjectEvent] = []
        for file_path in sorted(self._root.rglob("*")):
            if not file_path.is_file() or file_path.name.startswith("."):
                continue
            stat_result = file_path.stat()
            events.append(
                ObjectEvent(
                    object_key=file_path.relative_to(self._root).as_posix(),
                    generation=str(stat_result.st_mtime_ns),
                    size=stat_result.st_size,
                    content_hash=None,
                    observed_at=observed_at,
                )
            )
        return events

    def read_object(self, ref: ObjectRef) -> bytes:
        """Read one exact file generation.

        Raises:
            ObjectUnavailable: If the file is gone, superseded, or unreadable.
            TransientIOFailure: For other I/O errors.
        """
        file_path = (self._root / ref.object_key).resolve()
        if not file_path.is_relative_to(self._root):
            raise ObjectUnavailable(f"Object key '{ref.object_key}' escapes stage {self._root}.")
        try:
            current_generation = str(file_path.stat().st_mtime_ns)
            if current_generation != ref.generation:
                raise ObjectUnavailable(
                    f"Object {ref.object_key} generation {ref.generation} was superseded "
                    f"by generation {current_generation}."
                )
            return file_path.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as error:
            raise ObjectUnavailable(
                f"Object {ref.object_key} no longer exists: {error}."
            ) from error
        except PermissionError as error:
            raise ObjectUnavailable(f"Object {ref.object_key} is not readable: {error}.") from error
        except OSError as error:
            raise TransientIOFailure(f"Failed to read object {ref.object_key}: {error}.") from error


class S3ObjectStore:
    """S3 prefix stage; generations are object ETags."""

    def __init__(self, location: S3Location, s3_client: Any) -> None:
        self._location = location
        self._client = s3_client

    @property
    def stage_uri(self) -> str:
        return f"s3://{self._location.bucket}/{self._location.prefix}"

    @property
    def location(self) -> S3Location:
        return self._location

    def list_objects(self) -> list[ObjectEvent]:
        """List objects under the stage prefix as events, sorted by key."""
        paginator = self._client.get_paginator("list_objects_v2")
        pages = paginator.paginate(Bucket=self._location.bucket, Prefix=self._location.prefix)
        events: list[ObjectEvent] = []
        try:
            for page in pages:
                for obj in page.get("Contents", []):
                    key = obj["Key"]
                    if key.endswith("/"):
                        continue
                    etag = normalize_etag(obj["ETag"])
                    events.append(
                        ObjectEvent(
                            object_key=key,
                            generation=etag,
                            size=int(obj.get("Size", 0)),
                            content_hash=etag,
                            observed_at=_as_utc(obj.get("LastModified")),
                        )
                    )
        except Exception as error:
            raise _translate_s3_error(error, self.stage_uri) from error
        return sorted(events, key=lambda event: event.object_key)

    def read_object(self, ref: ObjectRef) -> bytes:
        """Read one exact object generation using an ETag precondition.

        Raises:
            ObjectUnavailable: If the object is gone or was overwritten.
            TransientIOFailure: For throttling, 5xx, and connection errors.
        """
        try:
            response = self._client.get_object(
                Bucket=self._location.bucket,
                Key=ref.object_key,
                IfMatch=f'"{ref.generation}"',
            )
            return response["Body"].read()
        except Exception as error:
            raise _translate_s3_error(
                error, f"s3://{self._location.bucket}/{ref.object_key}"
            ) from error


def open_object_store(source_uri: str, config: LandfallConfig) -> ObjectStore:
    """Build the object store adapter for a pipe source URI."""
    if source_uri.startswith("s3://"):
        location = parse_s3_uri(source_uri, domain="ingest")
        return S3ObjectStore(location, create_aws_client("s3", config))
    return LocalObjectStore(Path(source_uri))


def normalize_etag(raw_etag: str) -> str:
    """Strip surrounding quotes from an S3 ETag."""
    return raw_etag.strip().strip('"')


def _as_utc(value: object) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def _translate_s3_error(error: Exception, uri: str) -> Exception:
    """Map boto3/botocore failures onto the retry taxonomy."""
    from botocore.exceptions import BotoCoreError, ClientError

    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        if code in _S3_MISSING_CODES:
            return ObjectUnavailable(f"Object {uri} is unavailable ({code}).")
        if code in _S3_TRANSIENT_CODES:
            return TransientIOFailure(f"S3 request for {uri} failed transiently ({code}).")
        return ObjectUnavailable(f"S3 request for {uri} was rejected ({code}): {error}.")
    if isinstance(error, (BotoCoreError, ConnectionError, TimeoutError)):
        return TransientIOFailure(f"S3 request for {uri} failed: {error}.")
    return LandfallIngestError(f"Unexpected S3 failure for {uri}: {error}.")
