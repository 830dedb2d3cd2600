"""Persistence plane: SQLite state DB, builds, checkpoints, event log, escalation records."""

from build_orchestrator.persistence.builds import BuildStore
from build_orchestrator.persistence.checkpoints import (
    CheckpointError,
    CheckpointInfo,
    CheckpointIntegrityError,
    CheckpointNotFoundError,
    CheckpointSchemaError,
    CheckpointStore,
    RetentionPolicy,
)
from build_orchestrator.persistence.escalations import EscalationNotFoundError, EscalationStore
from build_orchestrator.persistence.event_log import EventLog, EventLogError
from build_orchestrator.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "BuildStore",
    "CheckpointError",
    "CheckpointInfo",
    "CheckpointIntegrityError",
    "CheckpointNotFoundError",
    "CheckpointSchemaError",
    "CheckpointStore",
    "EscalationNotFoundError",
    "EscalationStore",
    "EventLog",
    "EventLogError",
    "RetentionPolicy",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
