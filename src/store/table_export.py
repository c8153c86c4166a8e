"""Parquet export for destination tables.

This module converts committed table rows into an Apache Arrow table
and writes it as one Parquet file for downstream consumers.
"""

from __future__ import annotations

from pathlib import Path

from core.errors import LandfallDependencyError, LandfallStoreError
from core.logging_config import get_logger
from store.table_store import TableStore

_LOGGER = get_logger(__name__)


def export_table_parquet(table_store: TableStore, table: str, output_path: str) -> Path:
    """Export all rows of a destination table to Parquet.

    Args:
        table_store: Destination table store.
        table: Table to export.
        output_path: Target ``.parquet`` file path.

    Returns:
        Resolved path of the written file.

    Raises:
        LandfallDependencyError: If pyarrow is missing.
        LandfallStoreError: If the table is missing or the write fails.
    """
    try:
        import pyarrow as pa
        import pyarrow.parquet as pq
    except ImportError as error:
        raise LandfallDependencyError(
            "Parquet export requires pyarrow, but it is not installed. "
            "Install pyarrow to export destination tables."
        ) from error
    column_names, rows = table_store.read_rows(table)
    arrow_table = pa.table(
        {name: [row[index] for row in rows] for index, name in enumerate(column_names)}
    )
    target_path = Path(output_path).expanduser().resolve()
    target_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        pq.write_table(arrow_table, str(target_path))
    except (OSError, pa.ArrowException) as error:
        raise LandfallStoreError(
            f"Failed to write Parquet export at {target_path}: {error}. "
            "Check write permissions and available disk space."
        ) from error
    _LOGGER.info("table_exported", table=table, row_count=len(rows), output_path=str(target_path))
    return target_path
