"""
Per-build append-only event log.

Sequence numbers are assigned by a single writer: the next number is read from the
table and inserted under one writer lock inside one ``BEGIN IMMEDIATE`` transaction,
so numbers are gapless and strictly increasing per build even when several in-flight
tasks commit concurrently. A rolled-back commit rolls its sequence number back too.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timezone

from build_orchestrator.domain import ids
from build_orchestrator.domain.events import Event, EventKind, redact_payload
from build_orchestrator.domain.models import JSONValue, iso_utc
from build_orchestrator.persistence.state_db import RowValue, StateDB, row_text

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

WallClock = Callable[[], datetime]


class EventLogError(RuntimeError):
    """Raised when an append would break per-build ordering."""


class EventLog:
    def __init__(
        self,
        db: StateDB,
        *,
        clock: WallClock | None = None,
        redact: bool = True,
    ) -> None:
        self._db = db
        self._db.ensure_schema()
        self._clock = clock if clock is not None else _utc_now
        self._redact = redact
        self._writer_lock = threading.Lock()

    def append(
        self,
        build_id: str,
        kind: EventKind | str,
        payload: Mapping[str, JSONValue] | None = None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> Event:
        """Append one event, assigning the next sequence number for ``build_id``."""
        ids.validate_build_id(build_id)
        body = dict(payload or {})
        if self._redact:
            body = redact_payload(body)
        with self._writer_lock, self._db.transaction(conn=conn) as tx:
            event = Event(
                sequence_number=self._last_sequence(build_id, tx) + 1,
                timestamp=self._clock(),
                build_id=build_id,
                kind=EventKind(kind),
                payload=body,
            )
            self._insert(event, tx)
        return event

    def append_event(self, event: Event, *, conn: sqlite3.Connection | None = None) -> Event:
        """Append a pre-numbered event; accepted only when it is exactly the next one."""
        with self._writer_lock, self._db.transaction(conn=conn) as tx:
            expected = self._last_sequence(event.build_id, tx) + 1
            if event.sequence_number != expected:
                raise EventLogError(
                    f"event for build {event.build_id} has sequence_number "
                    f"{event.sequence_number}; expected {expected}"
                )
            self._insert(event, tx)
        return event

    def query(self, build_id: str, since_seq: int = 0, *, limit: int | None = None) -> list[Event]:
        """Events with ``sequence_number > since_seq`` in ascending order."""
        ids.validate_build_id(build_id)
        if since_seq < 0:
            raise ValueError("since_seq must be >= 0")
        sql = """
            SELECT sequence_number, timestamp, build_id, kind, payload_json
            FROM events
            WHERE build_id = ? AND sequence_number > ?
            ORDER BY sequence_number ASC
        """
        params: tuple[str | int, ...] = (build_id, since_seq)
        if limit is not None:
            if limit <= 0:
                raise ValueError("limit must be > 0")
            sql += " LIMIT ?"
            params = (*params, limit)
        return [_event_from_row(row) for row in self._db.query_all(sql, params)]

    def last_sequence(self, build_id: str) -> int:
        ids.validate_build_id(build_id)
        with self._db.connection() as conn:
            return self._last_sequence(build_id, conn)

    def kinds(self, build_id: str) -> list[EventKind]:
        return [event.kind for event in self.query(build_id)]

    def _last_sequence(self, build_id: str, conn: sqlite3.Connection) -> int:
        row = self._db.query_one(
            "SELECT COALESCE(MAX(sequence_number), 0) AS last FROM events WHERE build_id = ?",
            (build_id,),
            conn=conn,
        )
        value = 0 if row is None else row["last"]
        if not isinstance(value, int):
            raise EventLogError("events.sequence_number must be an integer")
        return value

    def _insert(self, event: Event, conn: sqlite3.Connection) -> None:
        try:
            self._db.execute(
                """
                INSERT INTO events (build_id, sequence_number, timestamp, kind, payload_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.build_id,
                    event.sequence_number,
                    iso_utc(event.timestamp),
                    event.kind.value,
                    event.payload_json(),
                ),
                conn=conn,
            )
        except sqlite3.IntegrityError as exc:
            raise EventLogError(
                f"cannot append event {event.sequence_number} for build {event.build_id}: {exc}"
            ) from exc


def _event_from_row(row: dict[str, RowValue]) -> Event:
    return Event.from_dict(
        {
            "sequence_number": row["sequence_number"],
            "timestamp": row_text(row, "timestamp", "events.timestamp"),
            "build_id": row_text(row, "build_id", "events.build_id"),
            "kind": row_text(row, "kind", "events.kind"),
            "payload": json.loads(row_text(row, "payload_json", "events.payload_json")),
        }
    )


def _utc_now() -> datetime:
    return datetime.now(UTC)


__all__ = ["EventLog", "EventLogError"]
