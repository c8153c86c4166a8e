"""SQLite ledger connection management.

This module opens short-lived SQLite connections against the ledger file
that holds both the file registry and the destination tables. Keeping
them in one database lets a row insert and its COMMITTED transition share
a single transaction.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from core.constants import SQLITE_TIMEOUT_SECONDS
from core.errors import LandfallStoreError, TransientIOFailure

_REGISTRY_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS ingestion_records (
        pipe_name TEXT NOT NULL,
        target_table TEXT NOT NULL,
        object_key TEXT NOT NULL,
        generation TEXT NOT NULL,
        state TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        first_seen_at TEXT NOT NULL,
        last_attempt_at TEXT,
        updated_at TEXT NOT NULL,
        next_attempt_at TEXT,
        size INTEGER NOT NULL DEFAULT 0,
        content_hash TEXT,
        row_count_loaded INTEGER NOT NULL DEFAULT 0,
        rows_rejected INTEGER NOT NULL DEFAULT 0,
        error_detail TEXT,
        PRIMARY KEY (pipe_name, object_key, generation)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_records_state ON ingestion_records(pipe_name, state)",
    "CREATE INDEX IF NOT EXISTS idx_records_table ON ingestion_records(target_table, updated_at)",
    """
    CREATE TABLE IF NOT EXISTS ingestion_events (
        event_id INTEGER PRIMARY KEY AUTOINCREMENT,
        pipe_name TEXT NOT NULL,
        object_key TEXT NOT NULL,
        generation TEXT NOT NULL,
        from_state TEXT,
        to_state TEXT NOT NULL,
        occurred_at TEXT NOT NULL,
        detail TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_events_ref
    ON ingestion_events(pipe_name, object_key, generation)
    """,
)
_TRANSIENT_SQLITE_MARKERS = ("locked", "busy")


class LedgerDatabase:
    """Connection factory for the SQLite ledger file."""

    def __init__(self, ledger_path: Path) -> None:
        self._ledger_path = ledger_path.expanduser().resolve()
        self._ledger_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def path(self) -> Path:
        """Ledger file location."""
        return self._ledger_path

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection for read-only queries."""
        connection = self._connect()
        try:
            yield connection
        except sqlite3.Error as error:
            raise _translate_sqlite_error(error, self._ledger_path) from error
        finally:
            connection.close()

    @contextmanager
    def write(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside one immediate write transaction.

        The transaction commits when the block exits normally and rolls
        back on any exception, which is re-raised unchanged unless it is a
        raw SQLite error.
        """
        connection = self._connect()
        try:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.rollback()
                raise
            connection.commit()
        except sqlite3.Error as error:
            raise _translate_sqlite_error(error, self._ledger_path) from error
        finally:
            connection.close()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._ledger_path.as_posix(),
            timeout=SQLITE_TIMEOUT_SECONDS,
            isolation_level=None,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA synchronous=NORMAL")
        return connection

    def _ensure_schema(self) -> None:
        connection = self._connect()
        try:
            connection.execute("PRAGMA journal_mode=WAL")
            for statement in _REGISTRY_SCHEMA:
                connection.execute(statement)
        except sqlite3.Error as error:
            raise LandfallStoreError(
                f"Failed to initialize ledger at {self._ledger_path}: {error}. "
                "Check the data root permissions and retry."
            ) from error
        finally:
            connection.close()


def _translate_sqlite_error(error: sqlite3.Error, ledger_path: Path) -> Exception:
    """Map SQLite failures onto the retry taxonomy."""
    message = str(error).lower()
    if isinstance(error, sqlite3.OperationalError) and any(
        marker in message for marker in _TRANSIENT_SQLITE_MARKERS
    ):
        return TransientIOFailure(f"Ledger at {ledger_path} is busy: {error}.")
    return LandfallStoreError(f"Ledger operation failed at {ledger_path}: {error}.")
