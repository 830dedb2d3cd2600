"""Unit tests for ready-task selection and blocked-graph diagnosis."""

from __future__ import annotations

from datetime import datetime, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from build_orchestrator.control_plane.resolver import (
    diagnose,
    find_blocked,
    next_ready,
    phase_order_violations,
    ready_tasks,
    task_in_degree,
    unresolved_references,
)
from build_orchestrator.domain import ids
from build_orchestrator.domain.models import (
    AtomicTask,
    Build,
    Capability,
    Phase,
    PhaseStatus,
    TaskRef,
    TaskStatus,
)

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_TS = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)
_BUILD_ID = ids.generate_build_id(timestamp_ms=2_000, randbytes=lambda size: b"\x05" * size)


def _task(task_id: str, *inputs: str) -> AtomicTask:
    return AtomicTask(
        id=task_id,
        description=f"task {task_id}",
        capability=Capability.BACKEND,
        input=inputs,
        output=("result",),
    )


def _phase(
    phase_id: str,
    *tasks: AtomicTask,
    dependencies: tuple[int, ...] = (),
    concurrent: bool = False,
) -> Phase:
    return Phase(
        id=phase_id,
        name=phase_id.title(),
        capability=Capability.BACKEND,
        tasks=tasks,
        dependencies=dependencies,
        concurrent=concurrent,
    )


def _build(*phases: Phase) -> Build:
    return Build(
        id=_BUILD_ID,
        graph_id="resolver",
        title="Resolver",
        phases=phases,
        created_at=_TS,
        updated_at=_TS,
    )


def _validate(build: Build, ref: TaskRef) -> None:
    build.task(ref).status = TaskStatus.VALIDATED
    phase = build.phases[ref.phase_index]
    if phase.all_validated:
        phase.status = PhaseStatus.PASSED


def test_sequential_phase_runs_tasks_in_declaration_order() -> None:
    build = _build(_phase("design", _task("a"), _task("b"), _task("c")))

    assert ready_tasks(build) == (TaskRef(0, "a"),)
    assert task_in_degree(build, TaskRef(0, "c")) == 2

    _validate(build, TaskRef(0, "a"))
    assert ready_tasks(build) == (TaskRef(0, "b"),)


def test_concurrent_phase_exposes_every_independent_task() -> None:
    build = _build(_phase("fanout", _task("a"), _task("b"), _task("c", "a"), concurrent=True))

    assert ready_tasks(build) == (TaskRef(0, "a"), TaskRef(0, "b"))
    assert ready_tasks(build, exclude=[TaskRef(0, "a")]) == (TaskRef(0, "b"),)

    _validate(build, TaskRef(0, "a"))
    assert ready_tasks(build) == (TaskRef(0, "b"), TaskRef(0, "c"))


def test_dependent_phase_waits_for_the_upstream_phase_to_pass() -> None:
    build = _build(
        _phase("design", _task("schema")),
        _phase("backend", _task("api", "design/schema"), dependencies=(0,)),
        _phase("docs", _task("guide")),
    )

    assert ready_tasks(build) == (TaskRef(0, "schema"), TaskRef(2, "guide"))
    assert next_ready(build).task_ref == TaskRef(0, "schema")

    build.phases[0].tasks[0].status = TaskStatus.VALIDATED
    assert TaskRef(1, "api") not in ready_tasks(build)

    build.phases[0].status = PhaseStatus.PASSED
    assert TaskRef(1, "api") in ready_tasks(build)


def test_failed_task_is_ready_again_only_within_the_retry_bound() -> None:
    build = _build(_phase("design", _task("a")))
    task = build.phases[0].tasks[0]
    task.status = TaskStatus.FAILED
    task.attempts = 1
    assert ready_tasks(build) == (TaskRef(0, "a"),)

    task.attempts = 2
    assert ready_tasks(build) == ()
    assert next_ready(build).ok is False


def test_mutual_phase_dependency_is_blocked_without_false_ready_tasks() -> None:
    build = _build(
        _phase("alpha", _task("a1"), dependencies=(1,)),
        _phase("beta", _task("b1"), dependencies=(0,)),
    )

    assert ready_tasks(build) == ()
    assert [item.kind for item in phase_order_violations(build)] == ["forward"]

    report = find_blocked(build)
    assert report is not None
    assert ("alpha", "beta", "alpha") in report.cycles
    assert set(report.stuck_tasks) == {"alpha/a1", "beta/b1"}
    assert "forward dependency" in report.describe()


def test_task_input_cycle_is_reported_and_never_ready() -> None:
    build = _build(
        _phase("loop", _task("a", "b"), _task("b", "a"), _task("free"), concurrent=True)
    )

    assert ready_tasks(build) == (TaskRef(0, "free"),)
    assert find_blocked(build) is None

    _validate(build, TaskRef(0, "free"))
    report = find_blocked(build)
    assert report is not None
    assert report.cycles == (("loop/a", "loop/b", "loop/a"),)
    assert "cycle(s): loop/a -> loop/b -> loop/a" in report.describe()


def test_find_blocked_ignores_builds_with_work_in_flight() -> None:
    build = _build(_phase("design", _task("a"), _task("b")))
    build.phases[0].tasks[0].status = TaskStatus.IN_PROGRESS

    assert ready_tasks(build) == ()
    assert find_blocked(build) is None
    assert find_blocked(build, in_flight=[TaskRef(0, "a")]) is None


def test_unresolved_references_are_diagnosed() -> None:
    build = _build(_phase("design", _task("a", "ghost"), _task("b", "nowhere/x")))

    assert unresolved_references(build) == ("design/a -> ghost", "design/b -> nowhere/x")
    assert "unresolved input references" in diagnose(build).describe()
    assert ready_tasks(build) == ()


@st.composite
def _acyclic_build(draw: st.DrawFn) -> Build:
    phase_count = draw(st.integers(min_value=1, max_value=4))
    phases: list[Phase] = []
    declared: list[tuple[str, str]] = []
    for phase_index in range(phase_count):
        phase_id = f"p{phase_index}"
        task_count = draw(st.integers(min_value=1, max_value=3))
        tasks: list[AtomicTask] = []
        for task_index in range(task_count):
            task_id = f"t{task_index}"
            candidates = [f"{owner}/{name}" for owner, name in declared] + [
                f"t{earlier}" for earlier in range(task_index)
            ]
            inputs = (
                draw(st.lists(st.sampled_from(candidates), unique=True, max_size=2))
                if candidates
                else []
            )
            tasks.append(_task(task_id, *inputs))
        dependencies = (
            draw(st.lists(st.integers(0, phase_index - 1), unique=True, max_size=2))
            if phase_index
            else []
        )
        phases.append(
            _phase(
                phase_id,
                *tasks,
                dependencies=tuple(sorted(dependencies)),
                concurrent=draw(st.booleans()),
            )
        )
        declared.extend((phase_id, task.id) for task in tasks)
    return _build(*phases)


@given(build=_acyclic_build())
@settings(max_examples=80, derandomize=True, deadline=None)
def test_property_next_ready_visits_every_task_once_after_its_dependencies(build: Build) -> None:
    visited: list[TaskRef] = []
    while True:
        result = next_ready(build)
        if not result.ok:
            break
        ref = result.task_ref
        assert ref is not None
        phase = build.phases[ref.phase_index]
        task = build.task(ref)

        for dep in phase.dependencies:
            assert build.phases[dep].all_validated
        if not phase.concurrent:
            position = phase.task_index(task.id)
            assert all(item.status is TaskStatus.VALIDATED for item in phase.tasks[:position])
        for reference in task.input:
            upstream = build.resolve_input(ref, reference)
            assert upstream is not None
            assert build.task(upstream).status is TaskStatus.VALIDATED

        visited.append(ref)
        _validate(build, ref)

    assert sorted(visited, key=lambda ref: (ref.phase_index, ref.task_id)) == [
        ref for ref, _task in build.iter_tasks()
    ]
    assert len(set(visited)) == len(visited)
    assert find_blocked(build) is None
