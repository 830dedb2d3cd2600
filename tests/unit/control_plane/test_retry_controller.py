"""Unit tests for the bounded retry and escalation decisions."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from build_orchestrator.agents.client import (
    AgentError,
    CapabilityUnavailableError,
    ExternalDependencyError,
)
from build_orchestrator.control_plane.escalation import (
    FailureKind,
    RetryAction,
    RetryController,
    TaskFailure,
    classify_error,
    required_action_for,
)
from build_orchestrator.domain import ids
from build_orchestrator.domain.models import (
    AtomicTask,
    Build,
    BuildStatus,
    Capability,
    EscalationLevel,
    EscalationTrigger,
    Phase,
    PhaseStatus,
    TaskRef,
    TaskStatus,
)
from build_orchestrator.utils.concurrency import StallTimeoutError
from build_orchestrator.verification_plane.gates import (
    GatePolicy,
    GateReport,
    GateResult,
    ValidationImpossibleError,
)

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_TS = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def _build() -> Build:
    tasks = tuple(
        AtomicTask(
            id=task_id,
            description=f"Write {task_id}",
            capability=Capability.BACKEND,
            output=("result",),
        )
        for task_id in ("first", "second")
    )
    build = Build(
        id=ids.generate_build_id(timestamp_ms=3_000, randbytes=lambda size: b"\x07" * size),
        graph_id="retry",
        title="Retry",
        phases=(
            Phase(
                id="backend",
                name="Backend",
                capability=Capability.BACKEND,
                tasks=tasks,
                concurrent=True,
            ),
        ),
        created_at=_TS,
        updated_at=_TS,
        status=BuildStatus.RUNNING,
    )
    build.phases[0].status = PhaseStatus.RUNNING
    return build


def _failed_attempt(build: Build, ref: TaskRef) -> None:
    task = build.task(ref)
    task.attempts += 1
    task.status = TaskStatus.FAILED


def _gate_failure(message: str = "declared output 'result' is empty") -> TaskFailure:
    report = GateReport(
        task_id="first",
        policy=GatePolicy.FAIL_FAST,
        results=(GateResult(gate_id="output_contract", passed=False, errors=(message,)),),
    )
    return TaskFailure.from_gate_report(report)


def test_first_gate_failure_is_retried_with_feedback() -> None:
    build = _build()
    ref = TaskRef(0, "first")
    _failed_attempt(build, ref)
    controller = RetryController()

    decision = controller.on_failure(build, ref, _gate_failure())
    controller.apply(build, decision)

    assert decision.action is RetryAction.RETRY
    request = decision.retry_request
    assert request is not None
    assert request.attempt == 2
    assert request.gate_failures == ("output_contract: declared output 'result' is empty",)
    assert request.classification.category == "output_contract"
    task = build.task(ref)
    assert task.escalation is EscalationLevel.AGENT_RETRY
    assert task.dispatchable
    assert build.escalation_level is EscalationLevel.AGENT_RETRY
    assert build.status is BuildStatus.RUNNING


def test_second_failure_of_the_same_task_escalates() -> None:
    build = _build()
    ref = TaskRef(0, "first")
    controller = RetryController()
    _failed_attempt(build, ref)
    controller.apply(build, controller.on_failure(build, ref, _gate_failure("first problem")))
    _failed_attempt(build, ref)

    decision = controller.on_failure(build, ref, _gate_failure("second problem"))
    controller.apply(build, decision)

    assert decision.action is RetryAction.ESCALATE
    assert decision.trigger is EscalationTrigger.RETRY_EXHAUSTED
    assert "second problem" in decision.reason
    assert build.status is BuildStatus.ESCALATED
    assert build.escalation_level is EscalationLevel.ESCALATED
    assert build.phases[0].status is PhaseStatus.FAILED
    assert not build.task(ref).dispatchable

    record = controller.record_for_decision(build, decision, now=_TS)
    assert record.build_id == build.id
    assert record.task_id == "first"
    assert record.phase_id == "backend"
    assert "second problem" in record.reason
    assert record.required_action == required_action_for(EscalationTrigger.RETRY_EXHAUSTED)


def test_failures_across_distinct_tasks_escalate_the_phase() -> None:
    build = _build()
    controller = RetryController()
    first = TaskRef(0, "first")
    second = TaskRef(0, "second")
    _failed_attempt(build, first)
    controller.apply(build, controller.on_failure(build, first, _gate_failure()))
    _failed_attempt(build, second)

    decision = controller.on_failure(build, second, _gate_failure())

    assert decision.trigger is EscalationTrigger.PHASE_REPEATED_FAILURE
    assert "first, second" in decision.reason


def test_interrupted_attempts_do_not_count_against_the_phase() -> None:
    build = _build()
    controller = RetryController()
    first = TaskRef(0, "first")
    second = TaskRef(0, "second")
    interrupted = TaskFailure(kind=FailureKind.INTERRUPTED, message="restart")
    _failed_attempt(build, first)
    controller.apply(build, controller.on_failure(build, first, interrupted))
    _failed_attempt(build, second)

    decision = controller.on_failure(build, second, _gate_failure())

    assert build.phases[0].failed_task_ids == ()
    assert decision.should_retry


@pytest.mark.parametrize(
    ("exc", "kind", "trigger"),
    [
        (
            CapabilityUnavailableError(Capability.SECURITY),
            FailureKind.CAPABILITY_UNAVAILABLE,
            EscalationTrigger.CAPABILITY_UNAVAILABLE,
        ),
        (
            ExternalDependencyError("registry", "connection refused"),
            FailureKind.EXTERNAL_DEPENDENCY,
            EscalationTrigger.EXTERNAL_DEPENDENCY,
        ),
        (
            ValidationImpossibleError("no criteria"),
            FailureKind.VALIDATION_IMPOSSIBLE,
            EscalationTrigger.VALIDATION_IMPOSSIBLE,
        ),
    ],
)
def test_fatal_failures_escalate_without_retry(
    exc: Exception, kind: FailureKind, trigger: EscalationTrigger
) -> None:
    build = _build()
    ref = TaskRef(0, "first")
    _failed_attempt(build, ref)
    failure = TaskFailure.from_exception(exc)

    decision = RetryController().on_failure(build, ref, failure)

    assert failure.kind is kind
    assert decision.action is RetryAction.ESCALATE
    assert decision.trigger is trigger


def test_stalls_and_agent_errors_take_the_retry_path() -> None:
    build = _build()
    ref = TaskRef(0, "first")
    _failed_attempt(build, ref)
    controller = RetryController()

    stalled = TaskFailure.from_exception(StallTimeoutError(5.0, 5.2))
    assert stalled.kind is FailureKind.STALLED
    assert controller.on_failure(build, ref, stalled).should_retry

    agent_error = TaskFailure.from_exception(AgentError("bad response"))
    assert agent_error.kind is FailureKind.AGENT_ERROR
    unexpected = TaskFailure.from_exception(KeyError("missing"))
    assert unexpected.message.startswith("KeyError")


def test_validation_impossible_gate_report_is_fatal() -> None:
    report = GateReport(
        task_id="first",
        policy=GatePolicy.AGGREGATE,
        results=(GateResult(gate_id="criteria", passed=False, impossible=True),),
    )
    assert TaskFailure.from_gate_report(report).kind is FailureKind.VALIDATION_IMPOSSIBLE


def test_block_and_escalate_build_record_the_reason() -> None:
    build = _build()
    controller = RetryController()

    controller.block_build(build, "budget exhausted")
    assert build.status is BuildStatus.BLOCKED
    assert build.escalation_level is EscalationLevel.BLOCKED
    assert build.last_error == "budget exhausted"

    controller.escalate_build(build, "operator needed")
    assert build.status is BuildStatus.ESCALATED
    controller.escalate_build(build, "operator needed")
    assert build.escalation_level is EscalationLevel.ESCALATED


def test_retry_bound_is_fixed() -> None:
    with pytest.raises(ValueError, match="fixed at 1"):
        RetryController(max_retries_per_task=2)
    with pytest.raises(ValueError, match="phase_failure_limit"):
        RetryController(phase_failure_limit=1)


@pytest.mark.parametrize(
    ("message", "category"),
    [
        ("stalled: no progress for 5.000s", "stalled"),
        ("SyntaxError: unexpected token", "syntax"),
        ("request timed out", "timeout"),
        ("429 too many requests", "rate_limit"),
        ("missing declared output 'routes'", "output_contract"),
        ("the moon is in the wrong phase", "unknown"),
    ],
)
def test_classify_error(message: str, category: str) -> None:
    assert classify_error(message).category == category
