"""
Checkpoint store

Purpose
- Durable, versioned snapshots of full build state used for crash recovery and for
  restoring a build after an operator clears an escalation.

Record layout
- ``{schema_version, checkpoint_id, build_id, created_at, sha256, build}``.
  ``schema_version`` is read before anything else; older records are upgraded on read
  by the registered migrators, newer records are rejected.
- ``sha256`` is the digest of the canonical JSON of ``build`` as written and is
  verified before migration.
- After migration, fields the current model does not know are dropped and missing
  optional fields take their defaults. Stored rows are never rewritten.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Final

import structlog

from build_orchestrator.constants import BUILD_SCHEMA_VERSION, CHECKPOINT_SCHEMA_VERSION
from build_orchestrator.domain import ids
from build_orchestrator.domain.models import (
    AtomicTask,
    Build,
    EscalationLevel,
    Phase,
    _as_datetime,
    iso_utc,
)
from build_orchestrator.persistence.state_db import RowValue, StateDB, row_text
from build_orchestrator.utils.hashing import canonical_json, payload_digest

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

WallClock = Callable[[], datetime]
CheckpointMigrator = Callable[[dict[str, Any]], dict[str, Any]]


class CheckpointError(RuntimeError):
    """Base class for checkpoint store failures."""


class CheckpointNotFoundError(CheckpointError, LookupError):
    pass


class CheckpointIntegrityError(CheckpointError):
    """Stored digest does not match the stored build payload."""


class CheckpointSchemaError(CheckpointError):
    """Record version is unknown, newer than supported, or cannot be migrated."""


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    """
    Which checkpoints survive a prune.

    A checkpoint is removed when it falls outside the newest ``keep_last`` of its build
    or is older than ``max_age_days`` (``0`` disables the age rule). The newest
    checkpoint of every build is always kept.
    """

    keep_last: int = 20
    max_age_days: float = 0.0

    def __post_init__(self) -> None:
        if self.keep_last < 1:
            raise ValueError("keep_last must be >= 1")
        if self.max_age_days < 0:
            raise ValueError("max_age_days must be >= 0")

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> RetentionPolicy:
        section = config.get("checkpoints", {})
        checkpoints = section if isinstance(section, Mapping) else {}
        return cls(
            keep_last=int(checkpoints.get("keep_last", 20)),
            max_age_days=float(checkpoints.get("max_age_days", 0.0)),
        )


@dataclass(frozen=True, slots=True)
class CheckpointInfo:
    checkpoint_id: str
    build_id: str
    schema_version: int
    created_at: datetime
    sha256: str

    def to_dict(self) -> dict[str, object]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "build_id": self.build_id,
            "schema_version": self.schema_version,
            "created_at": iso_utc(self.created_at),
            "sha256": self.sha256,
        }


def _migrate_v1_to_v2(record: dict[str, Any]) -> dict[str, Any]:
    # v1 stored a boolean ``escalated`` flag and had no budget accounting.
    build = dict(record["build"])
    escalated = bool(build.pop("escalated", False))
    if escalated and "escalation_level" not in build:
        build["escalation_level"] = EscalationLevel.ESCALATED.value
    build.setdefault("cost_spent_usd", 0.0)
    build.setdefault("elapsed_seconds", 0.0)
    build["schema_version"] = 2
    upgraded = dict(record)
    upgraded["build"] = build
    upgraded["schema_version"] = 2
    return upgraded


DEFAULT_MIGRATORS: Final[Mapping[int, CheckpointMigrator]] = MappingProxyType(
    {1: _migrate_v1_to_v2}
)

_BUILD_FIELDS: Final[frozenset[str]] = frozenset(item.name for item in fields(Build))
_PHASE_FIELDS: Final[frozenset[str]] = frozenset(item.name for item in fields(Phase))
_TASK_FIELDS: Final[frozenset[str]] = frozenset(item.name for item in fields(AtomicTask))


class CheckpointStore:
    """Append-only checkpoint rows in the state DB with migrate-on-read restore."""

    def __init__(
        self,
        db: StateDB,
        *,
        migrators: Mapping[int, CheckpointMigrator] | None = None,
        clock: WallClock | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._db.ensure_schema()
        self._migrators = dict(DEFAULT_MIGRATORS if migrators is None else migrators)
        self._clock = clock if clock is not None else _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def save(self, build: Build, *, conn: sqlite3.Connection | None = None) -> str:
        checkpoint_id = ids.generate_checkpoint_id()
        created_at = self._clock()
        build_payload = build.to_dict()
        digest = payload_digest(build_payload)
        record = {
            "schema_version": CHECKPOINT_SCHEMA_VERSION,
            "checkpoint_id": checkpoint_id,
            "build_id": build.id,
            "created_at": iso_utc(created_at),
            "sha256": digest,
            "build": build_payload,
        }
        self._db.execute(
            """
            INSERT INTO checkpoints (id, build_id, schema_version, created_at, sha256, payload_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                checkpoint_id,
                build.id,
                CHECKPOINT_SCHEMA_VERSION,
                record["created_at"],
                digest,
                canonical_json(record),
            ),
            conn=conn,
        )
        return checkpoint_id

    def restore(self, checkpoint_id: str) -> Build:
        ids.validate_checkpoint_id(checkpoint_id)
        row = self._db.query_one(
            "SELECT payload_json FROM checkpoints WHERE id = ?", (checkpoint_id,)
        )
        if row is None:
            raise CheckpointNotFoundError(f"checkpoint not found: {checkpoint_id}")
        return self.decode(row_text(row, "payload_json", "checkpoints.payload_json"))

    def latest(self, build_id: str) -> Build | None:
        checkpoint_id = self.latest_checkpoint_id(build_id)
        if checkpoint_id is None:
            return None
        return self.restore(checkpoint_id)

    def latest_checkpoint_id(self, build_id: str) -> str | None:
        ids.validate_build_id(build_id)
        row = self._db.query_one(
            "SELECT id FROM checkpoints WHERE build_id = ? ORDER BY seq DESC LIMIT 1",
            (build_id,),
        )
        return None if row is None else row_text(row, "id", "checkpoints.id")

    def list_checkpoints(self, build_id: str) -> list[CheckpointInfo]:
        """Checkpoints of ``build_id``, newest first."""
        ids.validate_build_id(build_id)
        rows = self._db.query_all(
            """
            SELECT id, build_id, schema_version, created_at, sha256
            FROM checkpoints
            WHERE build_id = ?
            ORDER BY seq DESC
            """,
            (build_id,),
        )
        return [_info_from_row(row) for row in rows]

    def prune(self, policy: RetentionPolicy) -> int:
        """Delete checkpoints outside ``policy``; returns the number removed."""
        cutoff = (
            self._clock() - timedelta(days=policy.max_age_days)
            if policy.max_age_days > 0
            else None
        )
        removed = 0
        with self._db.transaction() as conn:
            build_rows = self._db.query_all(
                "SELECT DISTINCT build_id FROM checkpoints ORDER BY build_id", conn=conn
            )
            for build_row in build_rows:
                build_id = row_text(build_row, "build_id", "checkpoints.build_id")
                rows = self._db.query_all(
                    "SELECT seq, created_at FROM checkpoints WHERE build_id = ? ORDER BY seq DESC",
                    (build_id,),
                    conn=conn,
                )
                for rank, row in enumerate(rows):
                    if rank == 0:
                        continue
                    created_at = row_text(row, "created_at", "checkpoints.created_at")
                    expired = cutoff is not None and _as_datetime(created_at, "created_at") < cutoff
                    if rank >= policy.keep_last or expired:
                        removed += self._db.execute(
                            "DELETE FROM checkpoints WHERE seq = ?", (row["seq"],), conn=conn
                        )
        if removed:
            self._logger.info(
                "persistence_checkpoints_pruned",
                removed=removed,
                keep_last=policy.keep_last,
                max_age_days=policy.max_age_days,
            )
        return removed

    def decode(self, raw: str) -> Build:
        """Parse, verify, migrate and load one stored checkpoint record."""
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CheckpointIntegrityError(f"checkpoint payload is not valid JSON: {exc}") from exc
        if not isinstance(record, dict):
            raise CheckpointIntegrityError("checkpoint payload must be a JSON object")

        version = record.get("schema_version")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise CheckpointSchemaError(f"invalid checkpoint schema_version: {version!r}")
        if version > CHECKPOINT_SCHEMA_VERSION:
            raise CheckpointSchemaError(
                f"checkpoint schema_version {version} is newer than supported "
                f"({CHECKPOINT_SCHEMA_VERSION})"
            )

        build_payload = record.get("build")
        if not isinstance(build_payload, dict):
            raise CheckpointIntegrityError("checkpoint record has no build object")
        expected = record.get("sha256")
        actual = payload_digest(build_payload)
        if expected != actual:
            raise CheckpointIntegrityError(
                f"checkpoint {record.get('checkpoint_id')!r} digest mismatch: "
                f"stored={expected!r} computed={actual}"
            )

        while version < CHECKPOINT_SCHEMA_VERSION:
            migrator = self._migrators.get(version)
            if migrator is None:
                raise CheckpointSchemaError(f"no migrator registered for schema_version {version}")
            record = migrator(record)
            next_version = record.get("schema_version")
            if not isinstance(next_version, int) or next_version <= version:
                raise CheckpointSchemaError(
                    f"migrator for schema_version {version} did not advance the version"
                )
            version = next_version

        build_data = _drop_unknown_fields(record["build"])
        build_data["schema_version"] = BUILD_SCHEMA_VERSION
        try:
            return Build.from_dict(build_data)
        except ValueError as exc:
            raise CheckpointSchemaError(f"checkpoint build payload is invalid: {exc}") from exc


def _drop_unknown_fields(build: Mapping[str, Any]) -> dict[str, Any]:
    cleaned = {key: value for key, value in build.items() if key in _BUILD_FIELDS}
    phases: list[object] = []
    for phase in cleaned.get("phases", ()):
        if not isinstance(phase, Mapping):
            phases.append(phase)
            continue
        phase_data = {key: value for key, value in phase.items() if key in _PHASE_FIELDS}
        phase_data["tasks"] = [
            {key: value for key, value in task.items() if key in _TASK_FIELDS}
            if isinstance(task, Mapping)
            else task
            for task in phase_data.get("tasks", ())
        ]
        phases.append(phase_data)
    if "phases" in cleaned:
        cleaned["phases"] = phases
    return cleaned


def _info_from_row(row: dict[str, RowValue]) -> CheckpointInfo:
    version = row.get("schema_version")
    if not isinstance(version, int):
        raise CheckpointSchemaError("checkpoints.schema_version must be an integer")
    return CheckpointInfo(
        checkpoint_id=row_text(row, "id", "checkpoints.id"),
        build_id=row_text(row, "build_id", "checkpoints.build_id"),
        schema_version=version,
        created_at=_as_datetime(
            row_text(row, "created_at", "checkpoints.created_at"), "checkpoints.created_at"
        ),
        sha256=row_text(row, "sha256", "checkpoints.sha256"),
    )


def _utc_now() -> datetime:
    return datetime.now(UTC)


__all__ = [
    "DEFAULT_MIGRATORS",
    "CheckpointError",
    "CheckpointInfo",
    "CheckpointIntegrityError",
    "CheckpointMigrator",
    "CheckpointNotFoundError",
    "CheckpointSchemaError",
    "CheckpointStore",
    "RetentionPolicy",
]
