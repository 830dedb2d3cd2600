"""
Escalation record persistence.

Records live in the state DB; when an escalation directory is configured every record
is also written as an operator-facing JSON artifact at
``<escalation_dir>/<build_id>/<escalation_id>.json`` and rewritten when resolved.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from build_orchestrator.domain import ids
from build_orchestrator.domain.models import EscalationRecord, iso_utc
from build_orchestrator.persistence.state_db import StateDB, row_text
from build_orchestrator.utils.fs import atomic_write

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

WallClock = Callable[[], datetime]


class EscalationNotFoundError(LookupError):
    pass


class EscalationStore:
    def __init__(
        self,
        db: StateDB,
        *,
        escalation_dir: str | Path | None = None,
        clock: WallClock | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._db.ensure_schema()
        self._escalation_dir = Path(escalation_dir) if escalation_dir is not None else None
        self._clock = clock if clock is not None else _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def escalation_dir(self) -> Path | None:
        return self._escalation_dir

    def artifact_path(self, record: EscalationRecord) -> Path | None:
        if self._escalation_dir is None:
            return None
        return self._escalation_dir / record.build_id / f"{record.id}.json"

    def save(
        self, record: EscalationRecord, *, conn: sqlite3.Connection | None = None
    ) -> EscalationRecord:
        artifact = self.artifact_path(record)
        self._db.execute(
            """
            INSERT INTO escalations (
                id, build_id, trigger_kind, is_open, created_at, artifact_path, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                is_open=excluded.is_open,
                artifact_path=excluded.artifact_path,
                payload_json=excluded.payload_json
            """,
            (
                record.id,
                record.build_id,
                record.trigger.value,
                1 if record.is_open else 0,
                iso_utc(record.timestamp),
                None if artifact is None else str(artifact),
                record.to_json(),
            ),
            conn=conn,
        )
        if artifact is not None:
            atomic_write(artifact, record.to_json() + "\n")
            self._logger.info(
                "persistence_escalation_artifact_written",
                build_id=record.build_id,
                escalation_id=record.id,
                path=str(artifact),
            )
        return record

    def get(self, escalation_id: str) -> EscalationRecord | None:
        ids.validate_escalation_id(escalation_id)
        row = self._db.query_one(
            "SELECT payload_json FROM escalations WHERE id = ?", (escalation_id,)
        )
        if row is None:
            return None
        return EscalationRecord.from_json(row_text(row, "payload_json", "escalations.payload_json"))

    def list(
        self, *, build_id: str | None = None, open_only: bool = False
    ) -> list[EscalationRecord]:
        """Records newest first, optionally for one build and only unresolved ones."""
        clauses: list[str] = []
        params: list[str | int] = []
        if build_id is not None:
            ids.validate_build_id(build_id)
            clauses.append("build_id = ?")
            params.append(build_id)
        if open_only:
            clauses.append("is_open = 1")
        sql = "SELECT payload_json FROM escalations"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id DESC"
        return [
            EscalationRecord.from_json(row_text(row, "payload_json", "escalations.payload_json"))
            for row in self._db.query_all(sql, tuple(params))
        ]

    def open_for_build(self, build_id: str) -> list[EscalationRecord]:
        return self.list(build_id=build_id, open_only=True)

    def resolve(
        self,
        escalation_id: str,
        *,
        actor: str,
        note: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> EscalationRecord:
        record = self.get(escalation_id)
        if record is None:
            raise EscalationNotFoundError(f"escalation not found: {escalation_id}")
        if not record.is_open:
            return record
        resolved_at = max(self._clock(), record.timestamp)
        updated = replace(record, resolved_at=resolved_at, resolved_by=actor, resolution_note=note)
        return self.save(updated, conn=conn)


def _utc_now() -> datetime:
    return datetime.now(UTC)


__all__ = ["EscalationNotFoundError", "EscalationStore"]
