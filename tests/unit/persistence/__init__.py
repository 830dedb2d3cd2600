"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Final

from build_orchestrator.domain import ids
from build_orchestrator.domain.models import (
    AtomicTask,
    Build,
    Capability,
    EscalationRecord,
    EscalationTrigger,
    Phase,
)

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


def _randbytes(seed: int):
    byte_value = (seed % 251) + 1

    def _provider(size: int) -> bytes:
        return bytes([byte_value]) * size

    return _provider


class StepClock:
    """Deterministic clock that advances ``step`` seconds per call."""

    def __init__(self, start: datetime = _BASE_TS, step: float = 1.0) -> None:
        self.current = start
        self.step = timedelta(seconds=step)

    def __call__(self) -> datetime:
        value = self.current
        self.current = value + self.step
        return value


def make_build_id(seed: int) -> str:
    return ids.generate_build_id(
        timestamp_ms=1_700_000_000_000 + seed,
        randbytes=_randbytes(seed),
    )


def make_build(seed: int, *, phase_count: int = 2, tasks_per_phase: int = 2) -> Build:
    phases: list[Phase] = []
    for phase_index in range(phase_count):
        tasks = tuple(
            AtomicTask(
                id=f"task-{phase_index}-{task_index}",
                description=f"Task {task_index} of phase {phase_index}",
                capability=Capability.BACKEND,
                input=(f"task-{phase_index}-{task_index - 1}",) if task_index else (),
                output=("result",),
            )
            for task_index in range(tasks_per_phase)
        )
        phases.append(
            Phase(
                id=f"phase-{phase_index}",
                name=f"Phase {phase_index}",
                capability=Capability.BACKEND,
                tasks=tasks,
                dependencies=(phase_index - 1,) if phase_index else (),
            )
        )
    return Build(
        id=make_build_id(seed),
        graph_id=f"graph-{seed}",
        title=f"Build {seed}",
        phases=tuple(phases),
        created_at=fixed_now(seed),
        updated_at=fixed_now(seed),
    )


def make_escalation(
    build: Build,
    seed: int,
    *,
    trigger: EscalationTrigger = EscalationTrigger.RETRY_EXHAUSTED,
) -> EscalationRecord:
    return EscalationRecord(
        id=ids.generate_escalation_id(
            timestamp_ms=1_700_000_000_000 + seed,
            randbytes=_randbytes(seed),
        ),
        build_id=build.id,
        trigger=trigger,
        reason=f"task failed twice ({seed})",
        last_error="output-contract: declared output 'result' is empty",
        required_action="Inspect the failing task and clear the escalation",
        timestamp=fixed_now(seed),
        task_id=build.phases[0].tasks[0].id,
        phase_id=build.phases[0].id,
    )
