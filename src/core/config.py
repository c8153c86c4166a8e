"""Runtime configuration model for Landfall.

This module owns all environment variable parsing and validation.
Other modules consume a typed config object instead of raw env reads.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path

from core.constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_CAP_SECONDS,
    DEFAULT_BATCH_MAX_FILES,
    DEFAULT_BATCH_MAX_WAIT_SECONDS,
    DEFAULT_DATA_ROOT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_CONCURRENCY,
    LEDGER_FILE_NAME,
)
from core.errors import LandfallConfigError


@dataclass(frozen=True)
class LandfallConfig:
    """Validated runtime configuration.

    Attributes:
        data_root: Local root directory for the ledger database.
        s3_region: Optional default AWS region for S3 and SQS clients.
        s3_profile: Optional AWS profile for boto3 session initialization.
        batch_max_files: Maximum objects per load task.
        batch_max_wait_seconds: Maximum time a pending object waits for a batch.
        max_concurrency: Parallel load tasks allowed per target table.
        max_attempts: Load attempts before a transient failure is quarantined.
        backoff_base_seconds: Base delay for exponential retry backoff.
        backoff_cap_seconds: Upper bound for one retry delay.
    """

    data_root: Path
    s3_region: str | None
    s3_profile: str | None
    batch_max_files: int = DEFAULT_BATCH_MAX_FILES
    batch_max_wait_seconds: float = DEFAULT_BATCH_MAX_WAIT_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS

    @classmethod
    def from_env(cls) -> "LandfallConfig":
        """Build config from process environment variables.

        Returns:
            A validated config object.

        Raises:
            LandfallConfigError: If environment values are invalid.
        """
        data_root_value = os.getenv("LANDFALL_DATA_ROOT", str(DEFAULT_DATA_ROOT))
        return cls(
            data_root=Path(data_root_value).expanduser().resolve(),
            s3_region=os.getenv("LANDFALL_S3_REGION"),
            s3_profile=os.getenv("LANDFALL_S3_PROFILE"),
            batch_max_files=_read_positive_int(
                "LANDFALL_BATCH_MAX_FILES", DEFAULT_BATCH_MAX_FILES
            ),
            batch_max_wait_seconds=_read_non_negative_float(
                "LANDFALL_BATCH_MAX_WAIT_SECONDS", DEFAULT_BATCH_MAX_WAIT_SECONDS
            ),
            max_concurrency=_read_positive_int(
                "LANDFALL_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY
            ),
            max_attempts=_read_positive_int("LANDFALL_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            backoff_base_seconds=_read_non_negative_float(
                "LANDFALL_BACKOFF_BASE_SECONDS", DEFAULT_BACKOFF_BASE_SECONDS
            ),
            backoff_cap_seconds=_read_non_negative_float(
                "LANDFALL_BACKOFF_CAP_SECONDS", DEFAULT_BACKOFF_CAP_SECONDS
            ),
        )

    @property
    def ledger_path(self) -> Path:
        """Path of the SQLite ledger holding the registry and tables."""
        return self.data_root / LEDGER_FILE_NAME


def _read_positive_int(env_name: str, default_value: int) -> int:
    """Parse a positive integer environment value.

    Args:
        env_name: Environment variable name.
        default_value: Value used when the variable is unset.

    Returns:
        Parsed integer.

    Raises:
        LandfallConfigError: If value is not an integer >= 1.
    """
    raw_value = os.getenv(env_name)
    if raw_value is None:
        return default_value
    try:
        parsed_value = int(raw_value)
    except ValueError as error:
        raise LandfallConfigError(
            f"Invalid {env_name} value: expected integer, got '{raw_value}'. "
            f"Set {env_name} to a positive whole number."
        ) from error
    if parsed_value < 1:
        raise LandfallConfigError(
            f"Invalid {env_name} value {parsed_value}: expected value >= 1."
        )
    return parsed_value


def _read_non_negative_float(env_name: str, default_value: float) -> float:
    """Parse a non-negative float environment value.

    Raises:
        LandfallConfigError: If value is not a number >= 0.
    """
    raw_value = os.getenv(env_name)
    if raw_value is None:
        return default_value
    try:
        parsed_value = float(raw_value)
    except ValueError as error:
        raise LandfallConfigError(
            f"Invalid {env_name} value: expected number, got '{raw_value}'. "
            f"Set {env_name} to a numeric value in seconds."
        ) from error
    if parsed_value < 0:
        raise LandfallConfigError(f"Invalid {env_name} value {parsed_value}: expected value >= 0.")
    return parsed_value
