"""Public SDK surface for Landfall.

This module provides a stable import path for SDK users.
It re-exports the primary client and typed models.
"""

from __future__ import annotations

from core.config import LandfallConfig
from core.pipe_spec import load_pipe_file
from core.types import (
    ColumnMapping,
    FormatSpec,
    IngestionRecord,
    LoadResult,
    LoadTuning,
    ObjectEvent,
    PipeDefinition,
    PipeStatus,
)
from ingest.coordinator import IngestionCoordinator
from ingest.event_sources import parse_s3_notification
from store.pipe_sdk import LandfallClient

__all__ = [
    "ColumnMapping",
    "FormatSpec",
    "IngestionCoordinator",
    "IngestionRecord",
    "LandfallClient",
    "LandfallConfig",
    "LoadResult",
    "LoadTuning",
    "ObjectEvent",
    "PipeDefinition",
    "PipeStatus",
    "load_pipe_file",
    "parse_s3_notification",
]
