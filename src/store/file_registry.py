"""Durable file registry with compare-and-swap state transitions.

This module is the single source of truth for which object generations a
pipe has seen and how far each one got. Every mutation runs inside one
immediate SQLite transaction, so racing workers and duplicate deliveries
resolve to exactly one winner.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Callable

from core.errors import InvalidTransition, RecordNotFound
from core.types import (
    IngestionRecord,
    IngestionState,
    ObjectEvent,
    ObjectRef,
    TransitionDetails,
    TransitionEvent,
)
from store.database import LedgerDatabase

SideEffect = Callable[[sqlite3.Connection, IngestionRecord], None]

ALLOWED_STATE_TRANSITIONS: dict[IngestionState, tuple[IngestionState, ...]] = {
    "pending": ("loading",),
    "loading": ("committed", "failed", "quarantined"),
    "failed": ("loading", "quarantined"),
    "committed": (),
    "quarantined": (),
}
CLAIMABLE_STATES: tuple[IngestionState, ...] = ("pending", "failed")


def validate_transition(current: IngestionState, next_state: IngestionState) -> None:
    """Validate one lifecycle transition against allowed state machine edges."""
    allowed_states = ALLOWED_STATE_TRANSITIONS[current]
    if next_state not in allowed_states:
        raise InvalidTransition(
            f"Invalid ingestion state transition {current!r} -> {next_state!r}. "
            f"Allowed: {', '.join(allowed_states) or 'none'}."
        )


class FileRegistry:
    """Registry view scoped to one pipe and its destination table."""

    def __init__(self, database: LedgerDatabase, pipe_name: str, target_table: str) -> None:
        self._database = database
        self._pipe_name = pipe_name
        self._target_table = target_table

    @property
    def pipe_name(self) -> str:
        return self._pipe_name

    @property
    def target_table(self) -> str:
        return self._target_table

    def upsert_pending(self, event: ObjectEvent) -> tuple[IngestionRecord, bool]:
        """Insert a PENDING record for an event unless its key already exists.

        Args:
            event: Notification event for one object generation.

        Returns:
            The stored record and whether this call created it.
        """
        timestamp = _format_time(_utc_now())
        with self._database.write() as connection:
            cursor = connection.execute(
                """
                INSERT OR IGNORE INTO ingestion_records (
                    pipe_name, target_table, object_key, generation, state,
                    attempt_count, first_seen_at, updated_at, size, content_hash
                ) VALUES (?, ?, ?, ?, 'pending', 0, ?, ?, ?, ?)
                """,
                (
                    self._pipe_name,
                    self._target_table,
                    event.object_key,
                    event.generation,
                    timestamp,
                    timestamp,
                    event.size,
                    event.content_hash,
                ),
            )
            created = cursor.rowcount == 1
            if created:
                self._append_event(
                    connection, event.object_key, event.generation, None, "pending", None, timestamp
                )
            record = self._select(connection, event.object_key, event.generation)
        if record is None:
            raise RecordNotFound(
                f"Registry row for {event.object_key}@{event.generation} vanished after insert."
            )
        return record, created

    def transition(
        self,
        object_key: str,
        generation: str,
        from_state: IngestionState,
        to_state: IngestionState,
        details: TransitionDetails | None = None,
        side_effect: SideEffect | None = None,
    ) -> IngestionRecord:
        """Move a record between states when it is still in ``from_state``.

        Args:
            object_key: Object key of the record.
            generation: Object generation of the record.
            from_state: State the caller expects the record to be in.
            to_state: Target state.
            details: Field updates applied together with the state change.
            side_effect: Callback run inside the same transaction with the
                updated record; an exception rolls everything back.

        Returns:
            Updated record.

        Raises:
            InvalidTransition: If the edge is illegal or the current state
                differs from ``from_state``.
            RecordNotFound: If no such record exists.
        """
        validate_transition(from_state, to_state)
        with self._database.write() as connection:
            current = self._require(connection, object_key, generation)
            if current.state != from_state:
                raise InvalidTransition(
                    f"Cannot move {object_key}@{generation} from {from_state!r} to "
                    f"{to_state!r}: current state is {current.state!r}."
                )
            return self._apply(connection, current, to_state, details, side_effect)

    def claim(self, ref: ObjectRef) -> IngestionRecord | None:
        """Claim a PENDING or FAILED record for loading.

        Returns:
            The LOADING record with its attempt count incremented, or None
            when the record is not claimable.
        """
        with self._database.write() as connection:
            current = self._require(connection, ref.object_key, ref.generation)
            if current.state not in CLAIMABLE_STATES:
                return None
            return self._apply(
                connection,
                current,
                "loading",
                TransitionDetails(increment_attempt=True),
                None,
            )

    def reopen_quarantined(self, ref: ObjectRef, detail: str) -> IngestionRecord:
        """Return a QUARANTINED record to PENDING for operator reprocessing.

        Raises:
            InvalidTransition: If the record is not quarantined.
            RecordNotFound: If no such record exists.
        """
        timestamp = _format_time(_utc_now())
        with self._database.write() as connection:
            current = self._require(connection, ref.object_key, ref.generation)
            if current.state != "quarantined":
                raise InvalidTransition(
                    f"Cannot reprocess {ref.object_key}@{ref.generation}: "
                    f"state is {current.state!r}, expected 'quarantined'."
                )
            connection.execute(
                """
                UPDATE ingestion_records
                SET state = 'pending', attempt_count = 0, next_attempt_at = NULL,
                    updated_at = ?
                WHERE pipe_name = ? AND object_key = ? AND generation = ?
                """,
                (timestamp, self._pipe_name, ref.object_key, ref.generation),
            )
            self._append_event(
                connection,
                ref.object_key,
                ref.generation,
                "quarantined",
                "pending",
                detail,
                timestamp,
            )
            return self._require(connection, ref.object_key, ref.generation)

    def record_error(self, ref: ObjectRef, detail: str) -> IngestionRecord:
        """Store an error detail on a PENDING or FAILED record without moving it.

        Returns:
            The current record, unchanged when it is no longer claimable.

        Raises:
            RecordNotFound: If no such record exists.
        """
        timestamp = _format_time(_utc_now())
        with self._database.write() as connection:
            current = self._require(connection, ref.object_key, ref.generation)
            if current.state not in CLAIMABLE_STATES:
                return current
            connection.execute(
                """
                UPDATE ingestion_records SET error_detail = ?, updated_at = ?
                WHERE pipe_name = ? AND object_key = ? AND generation = ? AND state = ?
                """,
                (
                    detail,
                    timestamp,
                    self._pipe_name,
                    ref.object_key,
                    ref.generation,
                    current.state,
                ),
            )
            return self._require(connection, ref.object_key, ref.generation)

    def get(self, object_key: str, generation: str) -> IngestionRecord:
        """Load one record.

        Raises:
            RecordNotFound: If no such record exists.
        """
        with self._database.read() as connection:
            return self._require(connection, object_key, generation)

    def list_by_state(self, state: IngestionState) -> tuple[IngestionRecord, ...]:
        """List records in one state, oldest first."""
        with self._database.read() as connection:
            rows = connection.execute(
                """
                SELECT * FROM ingestion_records
                WHERE pipe_name = ? AND state = ?
                ORDER BY first_seen_at, rowid
                """,
                (self._pipe_name, state),
            ).fetchall()
        return tuple(_record_from_row(row) for row in rows)

    def list_since(self, since: datetime | None) -> tuple[IngestionRecord, ...]:
        """List records touched at or after ``since``, oldest first."""
        query = "SELECT * FROM ingestion_records WHERE pipe_name = ?"
        parameters: tuple[object, ...] = (self._pipe_name,)
        if since is not None:
            query += " AND updated_at >= ?"
            parameters += (_format_time(since),)
        with self._database.read() as connection:
            rows = connection.execute(
                query + " ORDER BY first_seen_at, rowid", parameters
            ).fetchall()
        return tuple(_record_from_row(row) for row in rows)

    def count_by_state(self) -> dict[IngestionState, int]:
        """Count records per state."""
        counts: dict[IngestionState, int] = {state: 0 for state in ALLOWED_STATE_TRANSITIONS}
        with self._database.read() as connection:
            rows = connection.execute(
                """
                SELECT state, COUNT(*) AS record_count FROM ingestion_records
                WHERE pipe_name = ? GROUP BY state
                """,
                (self._pipe_name,),
            ).fetchall()
        for row in rows:
            counts[row["state"]] = int(row["record_count"])
        return counts

    def latest_committed_at(self) -> datetime | None:
        """Return the most recent COMMITTED transition time."""
        with self._database.read() as connection:
            row = connection.execute(
                """
                SELECT MAX(updated_at) AS latest FROM ingestion_records
                WHERE pipe_name = ? AND state = 'committed'
                """,
                (self._pipe_name,),
            ).fetchone()
        return _parse_time(row["latest"]) if row and row["latest"] else None

    def latest_error(self) -> str | None:
        """Return the error detail of the most recently failed record."""
        with self._database.read() as connection:
            row = connection.execute(
                """
                SELECT error_detail FROM ingestion_records
                WHERE pipe_name = ? AND error_detail IS NOT NULL
                    AND state != 'committed'
                ORDER BY updated_at DESC, rowid DESC LIMIT 1
                """,
                (self._pipe_name,),
            ).fetchone()
        return str(row["error_detail"]) if row else None

    def events(self, ref: ObjectRef) -> tuple[TransitionEvent, ...]:
        """Return the transition log of one record in order."""
        with self._database.read() as connection:
            rows = connection.execute(
                """
                SELECT * FROM ingestion_events
                WHERE pipe_name = ? AND object_key = ? AND generation = ?
                ORDER BY event_id
                """,
                (self._pipe_name, ref.object_key, ref.generation),
            ).fetchall()
        return tuple(
            TransitionEvent(
                object_key=row["object_key"],
                generation=row["generation"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                occurred_at=_parse_time(row["occurred_at"]),
                detail=row["detail"],
            )
            for row in rows
        )

    def _apply(
        self,
        connection: sqlite3.Connection,
        current: IngestionRecord,
        to_state: IngestionState,
        details: TransitionDetails | None,
        side_effect: SideEffect | None,
    ) -> IngestionRecord:
        details = details or TransitionDetails()
        now = _utc_now()
        timestamp = _format_time(now)
        assignments = ["state = ?", "updated_at = ?"]
        parameters: list[object] = [to_state, timestamp]
        if details.increment_attempt:
            assignments += ["attempt_count = attempt_count + 1", "last_attempt_at = ?"]
            parameters.append(timestamp)
        if details.error_detail is not None or to_state == "committed":
            assignments.append("error_detail = ?")
            parameters.append(details.error_detail)
        if details.row_count_loaded is not None:
            assignments.append("row_count_loaded = ?")
            parameters.append(details.row_count_loaded)
        if details.rows_rejected is not None:
            assignments.append("rows_rejected = ?")
            parameters.append(details.rows_rejected)
        assignments.append("next_attempt_at = ?")
        parameters.append(
            _format_time(details.next_attempt_at) if details.next_attempt_at else None
        )
        parameters += [self._pipe_name, current.object_key, current.generation, current.state]
        cursor = connection.execute(
            f"""
            UPDATE ingestion_records SET {', '.join(assignments)}
            WHERE pipe_name = ? AND object_key = ? AND generation = ? AND state = ?
            """,
            parameters,
        )
        if cursor.rowcount != 1:
            raise InvalidTransition(
                f"Concurrent update detected for {current.object_key}@{current.generation}."
            )
        self._append_event(
            connection,
            current.object_key,
            current.generation,
            current.state,
            to_state,
            details.error_detail,
            timestamp,
        )
        updated = self._require(connection, current.object_key, current.generation)
        if side_effect is not None:
            side_effect(connection, updated)
        return updated

    def _append_event(
        self,
        connection: sqlite3.Connection,
        object_key: str,
        generation: str,
        from_state: IngestionState | None,
        to_state: IngestionState,
        detail: str | None,
        timestamp: str,
    ) -> None:
        connection.execute(
            """
            INSERT INTO ingestion_events (
                pipe_name, object_key, generation, from_state, to_state, occurred_at, detail
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (self._pipe_name, object_key, generation, from_state, to_state, timestamp, detail),
        )

    def _select(
        self,
        connection: sqlite3.Connection,
        object_key: str,
        generation: str,
    ) -> IngestionRecord | None:
        row = connection.execute(
            """
            SELECT * FROM ingestion_records
            WHERE pipe_name = ? AND object_key = ? AND generation = ?
            """,
            (self._pipe_name, object_key, generation),
        ).fetchone()
        return _record_from_row(row) if row else None

    def _require(
        self,
        connection: sqlite3.Connection,
        object_key: str,
        generation: str,
    ) -> IngestionRecord:
        record = self._select(connection, object_key, generation)
        if record is None:
            raise RecordNotFound(
                f"No ingestion record for {object_key}@{generation} in pipe '{self._pipe_name}'."
            )
        return record


def _record_from_row(row: sqlite3.Row) -> IngestionRecord:
    """Convert one ledger row into a typed record."""
    return IngestionRecord(
        pipe_name=row["pipe_name"],
        target_table=row["target_table"],
        object_key=row["object_key"],
        generation=row["generation"],
        state=row["state"],
        attempt_count=int(row["attempt_count"]),
        first_seen_at=_parse_time(row["first_seen_at"]),
        last_attempt_at=_parse_time(row["last_attempt_at"]) if row["last_attempt_at"] else None,
        updated_at=_parse_time(row["updated_at"]),
        next_attempt_at=_parse_time(row["next_attempt_at"]) if row["next_attempt_at"] else None,
        size=int(row["size"]),
        content_hash=row["content_hash"],
        row_count_loaded=int(row["row_count_loaded"]),
        rows_rejected=int(row["rows_rejected"]),
        error_detail=row["error_detail"],
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: datetime) -> str:
    # Fixed-width UTC text keeps lexical order equal to time order.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value)
