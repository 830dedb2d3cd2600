"""Dependency resolver: ready-task selection, phase-order checks, and blocked-graph diagnosis."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final

from build_orchestrator.domain.models import Build, PhaseStatus, TaskRef, TaskStatus
from build_orchestrator.planning.task_graph import TaskGraph, task_node_key

_IN_FLIGHT_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    {TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED}
)


@dataclass(frozen=True, slots=True)
class ReadyResult:
    """Single highest-priority ready task, or ``ok=False`` when none is ready."""

    task_ref: TaskRef | None
    ok: bool


@dataclass(frozen=True, slots=True)
class PhaseOrderViolation:
    phase_index: int
    phase_id: str
    dependency_index: int

    @property
    def kind(self) -> str:
        return "self" if self.dependency_index == self.phase_index else "forward"

    def describe(self) -> str:
        return (
            f"phase {self.phase_id!r} (index {self.phase_index}) has a {self.kind} dependency "
            f"on phase index {self.dependency_index}"
        )


@dataclass(frozen=True, slots=True)
class BlockedReport:
    """Why no task can make progress while work remains queued."""

    stuck_tasks: tuple[str, ...]
    cycles: tuple[tuple[str, ...], ...]
    phase_violations: tuple[PhaseOrderViolation, ...] = ()
    unresolved_references: tuple[str, ...] = ()

    def describe(self) -> str:
        parts: list[str] = []
        if self.phase_violations:
            parts.append("; ".join(item.describe() for item in self.phase_violations))
        if self.cycles:
            parts.append("cycle(s): " + ", ".join(" -> ".join(path) for path in self.cycles[:3]))
        if self.unresolved_references:
            parts.append("unresolved input references: " + ", ".join(self.unresolved_references))
        if not parts:
            parts.append("no task is ready")
        stuck = ", ".join(self.stuck_tasks[:10])
        suffix = "..." if len(self.stuck_tasks) > 10 else ""
        return f"{'; '.join(parts)} (stuck: {stuck}{suffix})"


def task_in_degree(build: Build, ref: TaskRef) -> int:
    """Count unsatisfied predecessor phases and tasks of ``ref``."""
    phase = build.phases[ref.phase_index]
    task = phase.task(ref.task_id)

    count = 0
    for dep in phase.dependencies:
        if dep >= len(build.phases) or build.phases[dep].status is not PhaseStatus.PASSED:
            count += 1

    if not phase.concurrent:
        position = phase.task_index(task.id)
        count += sum(
            1 for earlier in phase.tasks[:position] if earlier.status is not TaskStatus.VALIDATED
        )

    for reference in task.input:
        upstream = build.resolve_input(ref, reference)
        if upstream is None or build.task(upstream).status is not TaskStatus.VALIDATED:
            count += 1
    return count


def ready_tasks(build: Build, *, exclude: Iterable[TaskRef] = ()) -> tuple[TaskRef, ...]:
    """All ready tasks, lowest phase index first, then declaration order."""
    excluded = frozenset(exclude)
    ready: list[TaskRef] = []
    for ref, task in build.iter_tasks():
        if ref in excluded or not task.dispatchable:
            continue
        if task_in_degree(build, ref) == 0:
            ready.append(ref)
    return tuple(ready)


def next_ready(build: Build, *, exclude: Iterable[TaskRef] = ()) -> ReadyResult:
    candidates = ready_tasks(build, exclude=exclude)
    if not candidates:
        return ReadyResult(task_ref=None, ok=False)
    return ReadyResult(task_ref=candidates[0], ok=True)


def phase_order_violations(build: Build) -> tuple[PhaseOrderViolation, ...]:
    """Dependencies that do not point at a strictly earlier phase."""
    violations: list[PhaseOrderViolation] = []
    for index, phase in enumerate(build.phases):
        for dep in phase.dependencies:
            if dep >= index:
                violations.append(
                    PhaseOrderViolation(phase_index=index, phase_id=phase.id, dependency_index=dep)
                )
    return tuple(violations)


def unresolved_references(build: Build) -> tuple[str, ...]:
    missing: list[str] = []
    for ref, task in build.iter_tasks():
        for reference in task.input:
            if build.resolve_input(ref, reference) is None:
                missing.append(f"{task_node_key(build, ref)} -> {reference}")
    return tuple(missing)


def diagnose(build: Build) -> BlockedReport:
    """Report cycles, phase-order violations and unresolved references, regardless of state."""
    stuck = tuple(
        task_node_key(build, ref)
        for ref, task in build.iter_tasks()
        if task.status is TaskStatus.QUEUED
    )
    phase_cycles = TaskGraph.for_phases(build.phases).detect_cycles()
    task_cycles = TaskGraph.for_build(build).detect_cycles()
    return BlockedReport(
        stuck_tasks=stuck,
        cycles=tuple(dict.fromkeys(phase_cycles + task_cycles)),
        phase_violations=phase_order_violations(build),
        unresolved_references=unresolved_references(build),
    )


def find_blocked(build: Build, *, in_flight: Iterable[TaskRef] = ()) -> BlockedReport | None:
    """
    Return a report when the build can no longer progress on its own.

    That is: nothing is ready, nothing is in flight, and at least one task is still queued.
    """
    if any(True for _ in in_flight):
        return None
    if any(task.status in _IN_FLIGHT_STATUSES for _ref, task in build.iter_tasks()):
        return None
    if ready_tasks(build):
        return None
    if not any(task.status is TaskStatus.QUEUED for _ref, task in build.iter_tasks()):
        return None
    return diagnose(build)


__all__ = [
    "BlockedReport",
    "PhaseOrderViolation",
    "ReadyResult",
    "diagnose",
    "find_blocked",
    "next_ready",
    "phase_order_violations",
    "ready_tasks",
    "task_in_degree",
    "unresolved_references",
]
