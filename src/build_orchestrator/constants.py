"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 2
BUILD_SCHEMA_VERSION: Final[int] = 2
CHECKPOINT_SCHEMA_VERSION: Final[int] = 2
EVENT_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
ESCALATIONS_DIR: Final[PurePosixPath] = PurePosixPath("state/escalations")
LOGS_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Retry bound: one original dispatch plus at most one retry.
MAX_RETRIES_PER_TASK: Final[int] = 1
MAX_DISPATCHES_PER_TASK: Final[int] = MAX_RETRIES_PER_TASK + 1

# Hook priorities; lower runs first.
DEFAULT_HOOK_PRIORITY: Final[int] = 100

# Lifecycle hook phase names, in the order a build reaches them.
HOOK_PHASE_NAMES: Final[tuple[str, ...]] = (
    "before-build",
    "before-task",
    "after-task",
    "on-task-error",
    "on-handoff",
    "build-complete",
)

__all__ = [
    "BUILD_SCHEMA_VERSION",
    "CHECKPOINT_SCHEMA_VERSION",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_HOOK_PRIORITY",
    "ESCALATIONS_DIR",
    "EVENT_SCHEMA_VERSION",
    "HOOK_PHASE_NAMES",
    "LOGS_DIR",
    "MAX_DISPATCHES_PER_TASK",
    "MAX_RETRIES_PER_TASK",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
]
