"""
Domain layer

Purpose
- Domain types shared across planes: Build, Phase, AtomicTask, EscalationRecord, Event.

Contracts
- Domain objects are serializable and versioned (canonical JSON, ISO-8601 UTC timestamps).
- No IO side effects; persistence lives in ``build_orchestrator.persistence``.
"""

from build_orchestrator.domain.events import Event, EventKind
from build_orchestrator.domain.models import (
    AtomicTask,
    Build,
    BuildStatus,
    Capability,
    EscalationLevel,
    EscalationRecord,
    EscalationTrigger,
    InvalidTransitionError,
    Phase,
    PhaseStatus,
    TaskRef,
    TaskStatus,
)

__all__ = [
    "AtomicTask",
    "Build",
    "BuildStatus",
    "Capability",
    "EscalationLevel",
    "EscalationRecord",
    "EscalationTrigger",
    "Event",
    "EventKind",
    "InvalidTransitionError",
    "Phase",
    "PhaseStatus",
    "TaskRef",
    "TaskStatus",
]
