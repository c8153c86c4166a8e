"""boto3 client construction shared by S3 stages and SQS queues."""

from __future__ import annotations

from typing import Any

from core.config import LandfallConfig
from core.errors import LandfallDependencyError


def create_aws_client(service_name: str, config: LandfallConfig) -> Any:
    """Create a boto3 client for one AWS service.

    Args:
        service_name: boto3 service identifier, e.g. ``s3`` or ``sqs``.
        config: Runtime config with optional session settings.

    Returns:
        Boto3 client.

    Raises:
        LandfallDependencyError: If boto3 is missing.
    """
    try:
        import boto3
    except ImportError as error:
        raise LandfallDependencyError(
            f"{service_name.upper()} support requires boto3, but it is not installed. "
            "Install boto3 to use s3:// stages and notification queues."
        ) from error
    session_kwargs: dict[str, str] = {}
    if config.s3_profile:
        session_kwargs["profile_name"] = config.s3_profile
    if config.s3_region:
        session_kwargs["region_name"] = config.s3_region
    session = boto3.session.Session(**session_kwargs)
    return session.client(service_name)
