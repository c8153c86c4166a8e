"""S3 URI parsing helpers.

This module centralizes S3 URI parsing for stage and notification layers.
It keeps URI validation behavior consistent across the codebase.
"""

from __future__ import annotations

from dataclasses import dataclass

from core.errors import LandfallIngestError, LandfallPipeSpecError


@dataclass(frozen=True)
class S3Location:
    """Parsed S3 location model."""

    bucket: str
    prefix: str


def parse_s3_uri(uri: str, domain: str) -> S3Location:
    """Parse and validate an S3 stage URI.

    Args:
        uri: URI in format ``s3://bucket/prefix`` or ``s3://bucket``.
        domain: Error domain string ("ingest" or "pipe").

    Returns:
        Parsed bucket and prefix pair. The prefix may be empty.

    Raises:
        LandfallIngestError: For ingest-domain parse failures.
        LandfallPipeSpecError: For pipe-definition parse failures.
    """
    if not uri.startswith("s3://"):
        _raise_uri_error(uri, domain)
    stripped_uri = uri.removeprefix("s3://")
    bucket, _, prefix = stripped_uri.partition("/")
    if not bucket:
        _raise_uri_error(uri, domain)
    return S3Location(bucket=bucket, prefix=prefix)


def _raise_uri_error(uri: str, domain: str) -> None:
    """Raise a domain-specific invalid URI error.

    Raises:
        LandfallIngestError: For ingest domain.
        LandfallPipeSpecError: For pipe domain.
    """
    message = (
        f"Invalid S3 URI '{uri}': expected s3://bucket/prefix. "
        "Provide at least a bucket name."
    )
    if domain == "ingest":
        raise LandfallIngestError(message)
    raise LandfallPipeSpecError(message)
