"""Unit tests for the built-in feature hooks and their config wiring."""

from __future__ import annotations

from build_orchestrator.agents.client import AgentResult
from build_orchestrator.config.schema import default_config, merge_config
from build_orchestrator.control_plane.features import (
    AgentMemoryHook,
    AuditTrailHook,
    CostTrackingHook,
    HandoffNotesHook,
    feature_flags,
    install_feature_hooks,
)
from build_orchestrator.control_plane.hooks import (
    HandoffInfo,
    HookContext,
    HookPhase,
    HookRegistry,
)
from build_orchestrator.domain.models import Build, TaskRef, TaskStatus
from build_orchestrator.planning.graph_input import build_from_document

from . import sequential_document


def _build() -> Build:
    return build_from_document(sequential_document(2))


def _task_context(
    build: Build, phase: HookPhase, *, cost: float = 0.0, validated: bool = True
) -> HookContext:
    ref = TaskRef(0, "task-0")
    task = build.task(ref)
    if validated:
        task.status = TaskStatus.VALIDATED
    return HookContext(
        phase=phase,
        build=build,
        task_ref=ref,
        task=task,
        result=AgentResult(task_id=task.id, output={"result": "done"}, cost_usd=cost),
    )


def test_feature_flags_follow_config() -> None:
    config = merge_config(default_config(), {"features": {"audit_trail": {"enabled": False}}})
    assert feature_flags(config) == {
        "agent_memory": False,
        "audit_trail": False,
        "cost_tracking": True,
        "handoff_notes": True,
    }


def test_install_registers_every_feature_with_its_priority() -> None:
    registry = HookRegistry()
    tokens = install_feature_hooks(registry, default_config())

    assert set(tokens) == {"agent_memory", "audit_trail", "cost_tracking", "handoff_notes"}
    assert [item.name for item in registry.registrations] == [
        "audit_trail",
        "cost_tracking",
        "handoff_notes",
        "agent_memory",
    ]

    resolved = registry.resolve(feature_flags(default_config()))
    assert resolved.hook_names(HookPhase.AFTER_TASK) == ("audit_trail", "cost_tracking")
    assert resolved.hook_names(HookPhase.BEFORE_TASK) == ("audit_trail", "handoff_notes")


def test_feature_without_phases_is_not_registered() -> None:
    config = merge_config(default_config(), {"features": {"cost_tracking": {"phases": []}}})
    tokens = install_feature_hooks(HookRegistry(), config)
    assert "cost_tracking" not in tokens


def test_audit_trail_records_each_phase() -> None:
    hook = AuditTrailHook()
    build = _build()

    hook.handle(HookPhase.BEFORE_BUILD, HookContext(phase=HookPhase.BEFORE_BUILD, build=build))
    hook.handle(HookPhase.AFTER_TASK, _task_context(build, HookPhase.AFTER_TASK))

    assert [entry["phase"] for entry in hook.entries] == ["before-build", "after-task"]
    assert hook.entries[1]["task"] == "phase-0/task-0"


def test_cost_tracking_totals_by_capability() -> None:
    hook = CostTrackingHook(warn_threshold_usd=1.0)
    build = _build()

    hook.handle(HookPhase.AFTER_TASK, _task_context(build, HookPhase.AFTER_TASK, cost=0.75))
    hook.handle(HookPhase.AFTER_TASK, _task_context(build, HookPhase.AFTER_TASK, cost=0.5))
    hook.handle(HookPhase.BUILD_COMPLETE, HookContext(phase=HookPhase.BUILD_COMPLETE, build=build))

    assert hook.totals(build.id) == {"backend": 1.25}
    assert hook.total(build.id) == 1.25


def test_handoff_notes_are_handed_to_later_tasks() -> None:
    hook = HandoffNotesHook(max_notes=1)
    build = _build()
    build.phases[0].tasks[0].output_value = {"result": "schema.sql"}

    for _ in range(2):
        hook.handle(
            HookPhase.ON_HANDOFF,
            HookContext(
                phase=HookPhase.ON_HANDOFF,
                build=build,
                handoff=HandoffInfo(
                    from_phase_id="phase-0",
                    to_phase_id="phase-1",
                    from_phase_index=0,
                    to_phase_index=1,
                ),
            ),
        )
    context = HookContext(phase=HookPhase.BEFORE_TASK, build=build)
    hook.handle(HookPhase.BEFORE_TASK, context)

    notes = hook.notes(build.id)
    assert len(notes) == 1
    assert "outputs: result" in notes[0]
    assert "next: phase-1" in notes[0]
    assert context.auxiliary["handoff_notes"] == list(notes)


def test_agent_memory_recalls_validated_outputs_for_the_same_capability() -> None:
    hook = AgentMemoryHook(max_entries=5)
    build = _build()

    hook.handle(
        HookPhase.AFTER_TASK, _task_context(build, HookPhase.AFTER_TASK, validated=False)
    )
    assert hook.recall(build.id, "backend") == ()

    hook.handle(HookPhase.AFTER_TASK, _task_context(build, HookPhase.AFTER_TASK))
    context = _task_context(build, HookPhase.BEFORE_TASK)
    hook.handle(HookPhase.BEFORE_TASK, context)

    assert context.auxiliary["memory"] == [
        {"task": "phase-0/task-0", "output": {"result": "done"}}
    ]
