"""Destination table store backed by the SQLite ledger.

This module creates destination tables from declared column mappings,
validates existing table schemas, and bulk-inserts parsed rows inside a
caller-supplied transaction so inserts commit together with the registry.
"""

from __future__ import annotations

import re
import sqlite3
from datetime import datetime, timezone
from typing import Sequence

from core.constants import LOADED_AT_COLUMN, SOURCE_GENERATION_COLUMN, SOURCE_KEY_COLUMN
from core.errors import LandfallStoreError, SchemaMismatch
from core.types import ColumnMapping, ColumnType, IngestionRecord
from store.database import LedgerDatabase

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SQL_TYPES: dict[ColumnType, str] = {
    "string": "TEXT",
    "integer": "INTEGER",
    "float": "REAL",
    "boolean": "INTEGER",
    "date": "TEXT",
}
_METADATA_COLUMNS = (
    (SOURCE_KEY_COLUMN, "TEXT"),
    (SOURCE_GENERATION_COLUMN, "TEXT"),
    (LOADED_AT_COLUMN, "TEXT"),
)


class TableStore:
    """Transactional bulk-insert target for parsed rows."""

    def __init__(self, database: LedgerDatabase) -> None:
        self._database = database

    def insert_object_rows(
        self,
        connection: sqlite3.Connection,
        record: IngestionRecord,
        columns: Sequence[ColumnMapping],
        rows: Sequence[tuple[object, ...]],
    ) -> int:
        """Insert one object's rows using the caller's open transaction.

        Args:
            connection: Connection holding the registry write transaction.
            record: Registry record the rows belong to.
            columns: Declared destination columns.
            rows: Converted values in column order.

        Returns:
            Number of inserted rows.

        Raises:
            SchemaMismatch: If the existing table does not match the columns.
        """
        ensure_table(connection, record.target_table, columns)
        column_names = [column.name for column in columns] + [
            name for name, _ in _METADATA_COLUMNS
        ]
        placeholders = ", ".join("?" for _ in column_names)
        statement = (
            f"INSERT INTO {_quote(record.target_table)} "
            f"({', '.join(_quote(name) for name in column_names)}) VALUES ({placeholders})"
        )
        loaded_at = datetime.now(timezone.utc).isoformat(timespec="microseconds")
        metadata_values = (record.object_key, record.generation, loaded_at)
        connection.executemany(statement, [tuple(row) + metadata_values for row in rows])
        return len(rows)

    def table_exists(self, table: str) -> bool:
        """Return whether a destination table exists."""
        with self._database.read() as connection:
            return _table_exists(connection, table)

    def count_rows(self, table: str, object_key: str | None = None) -> int:
        """Count rows in a table, optionally for one source object.

        Returns:
            Row count, or 0 when the table has not been created yet.
        """
        _validate_identifier(table)
        with self._database.read() as connection:
            if not _table_exists(connection, table):
                return 0
            if object_key is None:
                row = connection.execute(f"SELECT COUNT(*) FROM {_quote(table)}").fetchone()
            else:
                row = connection.execute(
                    f"SELECT COUNT(*) FROM {_quote(table)} WHERE {_quote(SOURCE_KEY_COLUMN)} = ?",
                    (object_key,),
                ).fetchone()
        return int(row[0])

    def read_rows(self, table: str) -> tuple[tuple[str, ...], list[tuple[object, ...]]]:
        """Read all rows of a table in insertion order.

        Returns:
            Column names and row tuples.

        Raises:
            LandfallStoreError: If the table does not exist.
        """
        _validate_identifier(table)
        with self._database.read() as connection:
            if not _table_exists(connection, table):
                raise LandfallStoreError(
                    f"Destination table '{table}' not found in {self._database.path}. "
                    "Load at least one file into the table first."
                )
            cursor = connection.execute(f"SELECT * FROM {_quote(table)} ORDER BY rowid")
            column_names = tuple(description[0] for description in cursor.description)
            rows = [tuple(row) for row in cursor.fetchall()]
        return column_names, rows


def ensure_table(
    connection: sqlite3.Connection,
    table: str,
    columns: Sequence[ColumnMapping],
) -> None:
    """Create the table when missing, else verify it matches the columns.

    Raises:
        SchemaMismatch: If an expected column is missing or typed differently.
    """
    _validate_identifier(table)
    expected = [(column.name, _SQL_TYPES[column.type]) for column in columns]
    expected += list(_METADATA_COLUMNS)
    if not _table_exists(connection, table):
        column_sql = ", ".join(f"{_quote(name)} {sql_type}" for name, sql_type in expected)
        connection.execute(f"CREATE TABLE {_quote(table)} ({column_sql})")
        return
    existing = {
        str(row["name"]).lower(): str(row["type"]).upper()
        for row in connection.execute(f"PRAGMA table_info({_quote(table)})").fetchall()
    }
    for name, sql_type in expected:
        existing_type = existing.get(name.lower())
        if existing_type is None:
            raise SchemaMismatch(
                f"Destination table '{table}' has no column '{name}'. "
                "Align the pipe's columns with the table definition."
            )
        if existing_type != sql_type:
            raise SchemaMismatch(
                f"Destination table '{table}' column '{name}' is {existing_type}, "
                f"expected {sql_type}. Align the pipe's column types with the table."
            )


def _table_exists(connection: sqlite3.Connection, table: str) -> bool:
    row = connection.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def _validate_identifier(name: str) -> None:
    if not _IDENTIFIER_PATTERN.match(name):
        raise LandfallStoreError(
            f"Invalid table identifier '{name}': use letters, digits, and underscores."
        )


def _quote(identifier: str) -> str:
    return f'"{identifier}"'
