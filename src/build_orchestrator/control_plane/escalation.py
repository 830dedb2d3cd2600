"""
Retry/escalation controller.

This module decides what happens after a task attempt fails:
- first recoverable failure: one retry carrying the gate failure reasons
- second failure of the same task: escalate (hard bound, one retry per task)
- fatal triggers escalate immediately without a retry

It also builds operator-facing escalation records and classifies raw error text into
categories with a remediation suggestion that travels with the retry request.
Decisions are logged through ``structlog``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from build_orchestrator.agents.client import (
    AgentError,
    CapabilityUnavailableError,
    ExternalDependencyError,
)
from build_orchestrator.constants import MAX_RETRIES_PER_TASK
from build_orchestrator.domain import ids as domain_ids
from build_orchestrator.domain.models import (
    Build,
    BuildStatus,
    EscalationLevel,
    EscalationRecord,
    EscalationTrigger,
    JSONValue,
    PhaseStatus,
    TaskRef,
)
from build_orchestrator.planning.task_graph import task_node_key
from build_orchestrator.utils.concurrency import StallTimeoutError
from build_orchestrator.verification_plane.gates import ValidationImpossibleError

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

if TYPE_CHECKING:
    from build_orchestrator.verification_plane.gates import GateReport

DEFAULT_PHASE_FAILURE_LIMIT: Final[int] = 2


class FailureKind(StrEnum):
    GATE_FAILURE = "gate_failure"
    STALLED = "stalled"
    AGENT_ERROR = "agent_error"
    INTERRUPTED = "interrupted"
    VALIDATION_IMPOSSIBLE = "validation_impossible"
    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    EXTERNAL_DEPENDENCY = "external_dependency"


_FATAL_KINDS: Final[dict[FailureKind, EscalationTrigger]] = {
    FailureKind.VALIDATION_IMPOSSIBLE: EscalationTrigger.VALIDATION_IMPOSSIBLE,
    FailureKind.CAPABILITY_UNAVAILABLE: EscalationTrigger.CAPABILITY_UNAVAILABLE,
    FailureKind.EXTERNAL_DEPENDENCY: EscalationTrigger.EXTERNAL_DEPENDENCY,
}


class RetryAction(StrEnum):
    RETRY = "retry"
    ESCALATE = "escalate"


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    """Coarse error category with a remediation suggestion for the next attempt."""

    category: str
    recoverable: bool
    suggestion: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "category": self.category,
            "recoverable": self.recoverable,
            "suggestion": self.suggestion,
        }


_ERROR_PATTERNS: Final[tuple[tuple[re.Pattern[str], ErrorClassification], ...]] = (
    (
        re.compile(r"(?i)stalled|no progress"),
        ErrorClassification("stalled", True, "Report progress regularly and split long work"),
    ),
    (
        re.compile(r"(?i)syntax.*error|unexpected token|missing semicolon"),
        ErrorClassification("syntax", True, "Fix the syntax error and resubmit"),
    ),
    (
        re.compile(r"(?i)timeout|timed out|took too long"),
        ErrorClassification("timeout", True, "Simplify the request or reduce the scope of work"),
    ),
    (
        re.compile(r"(?i)rate.*limit|too many requests"),
        ErrorClassification("rate_limit", True, "Wait and retry with backoff"),
    ),
    (
        re.compile(r"(?i)context.*length|too long|maximum.*tokens"),
        ErrorClassification("context_length", True, "Reduce the prompt size or chunk the input"),
    ),
    (
        re.compile(r"(?i)undefined|null reference|cannot read|nonetype"),
        ErrorClassification("logic", True, "Add missing-value checks and retry"),
    ),
    (
        re.compile(r"(?i)missing declared output|is empty|not satisfied|rejected"),
        ErrorClassification(
            "output_contract", True, "Produce every declared output and address the gate errors"
        ),
    ),
)

_UNKNOWN_CLASSIFICATION: Final[ErrorClassification] = ErrorClassification(
    "unknown", False, "Unknown error; manual intervention may be needed"
)

_REQUIRED_ACTIONS: Final[dict[EscalationTrigger, str]] = {
    EscalationTrigger.RETRY_EXHAUSTED: (
        "Review the task's gate errors, fix the task definition or agent, then clear the escalation"
    ),
    EscalationTrigger.CYCLE_DETECTED: (
        "Remove the circular or forward phase dependency from the task graph and resubmit"
    ),
    EscalationTrigger.CAPABILITY_UNAVAILABLE: (
        "Register an agent for the missing capability, then clear the escalation"
    ),
    EscalationTrigger.VALIDATION_IMPOSSIBLE: (
        "Provide validation criteria for the task's capability, then clear the escalation"
    ),
    EscalationTrigger.PHASE_REPEATED_FAILURE: (
        "Inspect the failing phase's tasks for a shared root cause, then clear the escalation"
    ),
    EscalationTrigger.EXTERNAL_DEPENDENCY: (
        "Restore access to the unreachable dependency, then clear the escalation"
    ),
    EscalationTrigger.BUDGET_EXHAUSTED: (
        "Raise the build budget or accept the partial result, then clear the escalation"
    ),
}


def classify_error(message: str) -> ErrorClassification:
    for pattern, classification in _ERROR_PATTERNS:
        if pattern.search(message):
            return classification
    return _UNKNOWN_CLASSIFICATION


def required_action_for(trigger: EscalationTrigger) -> str:
    return _REQUIRED_ACTIONS[trigger]


@dataclass(frozen=True, slots=True)
class TaskFailure:
    """One failed attempt, normalized from a gate report or a raised exception."""

    kind: FailureKind
    message: str
    gate_errors: tuple[str, ...] = ()

    @property
    def counts_against_phase(self) -> bool:
        """Restart interruptions are not failures of the task itself."""
        return self.kind is not FailureKind.INTERRUPTED

    @classmethod
    def from_gate_report(cls, report: GateReport) -> TaskFailure:
        errors = report.errors
        kind = (
            FailureKind.VALIDATION_IMPOSSIBLE
            if report.validation_impossible
            else FailureKind.GATE_FAILURE
        )
        message = "; ".join(errors) if errors else "gate pipeline rejected the result"
        return cls(kind=kind, message=message, gate_errors=errors)

    @classmethod
    def from_exception(cls, exc: BaseException) -> TaskFailure:
        if isinstance(exc, StallTimeoutError):
            return cls(kind=FailureKind.STALLED, message=str(exc))
        if isinstance(exc, CapabilityUnavailableError):
            return cls(kind=FailureKind.CAPABILITY_UNAVAILABLE, message=str(exc))
        if isinstance(exc, ExternalDependencyError):
            return cls(kind=FailureKind.EXTERNAL_DEPENDENCY, message=str(exc))
        if isinstance(exc, ValidationImpossibleError):
            return cls(kind=FailureKind.VALIDATION_IMPOSSIBLE, message=str(exc))
        if isinstance(exc, AgentError):
            return cls(kind=FailureKind.AGENT_ERROR, message=str(exc))
        return cls(kind=FailureKind.AGENT_ERROR, message=f"{type(exc).__name__}: {exc}")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "gate_errors": list(self.gate_errors),
        }


@dataclass(frozen=True, slots=True)
class RetryRequest:
    """Feedback handed to the agent on its single retry."""

    task_id: str
    phase_id: str
    attempt: int
    description: str
    gate_failures: tuple[str, ...]
    previous_error: str
    classification: ErrorClassification

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "phase_id": self.phase_id,
            "attempt": self.attempt,
            "description": self.description,
            "gate_failures": list(self.gate_failures),
            "previous_error": self.previous_error,
            "classification": self.classification.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class RetryDecision:
    action: RetryAction
    task_ref: TaskRef
    failure: TaskFailure
    retry_request: RetryRequest | None = None
    trigger: EscalationTrigger | None = None
    reason: str = ""

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "action": self.action.value,
            "phase_index": self.task_ref.phase_index,
            "task_id": self.task_ref.task_id,
            "failure": self.failure.to_dict(),
            "retry_request": (
                self.retry_request.to_dict() if self.retry_request is not None else None
            ),
            "trigger": self.trigger.value if self.trigger is not None else None,
            "reason": self.reason,
        }


class RetryController:
    """
    Bounded-retry state machine: ``NONE -> AGENT_RETRY -> BLOCKED -> ESCALATED``.

    ``on_failure`` only decides; ``apply`` mutates the build and must be called from the
    orchestrator's serialized commit path.
    """

    def __init__(
        self,
        *,
        max_retries_per_task: int = MAX_RETRIES_PER_TASK,
        phase_failure_limit: int = DEFAULT_PHASE_FAILURE_LIMIT,
        logger: Any | None = None,
    ) -> None:
        if max_retries_per_task != MAX_RETRIES_PER_TASK:
            raise ValueError(f"max_retries_per_task is fixed at {MAX_RETRIES_PER_TASK}")
        if phase_failure_limit < 2:
            raise ValueError("phase_failure_limit must be >= 2")
        self._max_retries_per_task = max_retries_per_task
        self._phase_failure_limit = phase_failure_limit
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def max_dispatches_per_task(self) -> int:
        return self._max_retries_per_task + 1

    def on_failure(self, build: Build, task_ref: TaskRef, failure: TaskFailure) -> RetryDecision:
        phase = build.phases[task_ref.phase_index]
        task = build.task(task_ref)
        node = task_node_key(build, task_ref)

        fatal_trigger = _FATAL_KINDS.get(failure.kind)
        failed_ids = set(phase.failed_task_ids)
        if failure.counts_against_phase:
            failed_ids.add(task.id)

        if fatal_trigger is not None:
            decision = RetryDecision(
                action=RetryAction.ESCALATE,
                task_ref=task_ref,
                failure=failure,
                trigger=fatal_trigger,
                reason=f"task {node}: {failure.message}",
            )
        elif len(failed_ids) >= self._phase_failure_limit:
            decision = RetryDecision(
                action=RetryAction.ESCALATE,
                task_ref=task_ref,
                failure=failure,
                trigger=EscalationTrigger.PHASE_REPEATED_FAILURE,
                reason=(
                    f"phase {phase.id!r} failed across {len(failed_ids)} separate tasks "
                    f"({', '.join(sorted(failed_ids))}); latest {node}: {failure.message}"
                ),
            )
        elif task.attempts >= self.max_dispatches_per_task:
            decision = RetryDecision(
                action=RetryAction.ESCALATE,
                task_ref=task_ref,
                failure=failure,
                trigger=EscalationTrigger.RETRY_EXHAUSTED,
                reason=(
                    f"task {node} failed after {task.attempts} attempts: {failure.message}"
                ),
            )
        else:
            request = RetryRequest(
                task_id=task.id,
                phase_id=phase.id,
                attempt=task.attempts + 1,
                description=task.description,
                gate_failures=failure.gate_errors,
                previous_error=failure.message,
                classification=classify_error(failure.message),
            )
            decision = RetryDecision(
                action=RetryAction.RETRY,
                task_ref=task_ref,
                failure=failure,
                retry_request=request,
                reason=f"task {node} will be retried once: {failure.message}",
            )

        self._log_decision(build, decision)
        return decision

    def apply(self, build: Build, decision: RetryDecision) -> None:
        """Record the failure on the task, its phase and the build."""
        phase = build.phases[decision.task_ref.phase_index]
        task = build.task(decision.task_ref)

        task.last_error = decision.failure.message
        task.gate_errors = decision.failure.gate_errors
        if decision.failure.counts_against_phase and task.id not in phase.failed_task_ids:
            phase.failed_task_ids = (*phase.failed_task_ids, task.id)

        if decision.should_retry:
            task.escalation = EscalationLevel.AGENT_RETRY
            build.raise_escalation(EscalationLevel.AGENT_RETRY)
            return

        task.escalation = EscalationLevel.ESCALATED
        phase.status = PhaseStatus.FAILED
        self.escalate_build(build, decision.reason)

    def escalate_build(self, build: Build, reason: str) -> None:
        build.last_error = reason
        build.raise_escalation(EscalationLevel.ESCALATED)
        if build.status is not BuildStatus.ESCALATED:
            build.transition(BuildStatus.ESCALATED)

    def block_build(self, build: Build, reason: str) -> None:
        build.last_error = reason
        build.raise_escalation(EscalationLevel.BLOCKED)
        if build.status is not BuildStatus.BLOCKED:
            build.transition(BuildStatus.BLOCKED)

    def escalation_record(
        self,
        build: Build,
        trigger: EscalationTrigger,
        *,
        reason: str,
        last_error: str,
        task_ref: TaskRef | None = None,
        now: datetime | None = None,
    ) -> EscalationRecord:
        timestamp = now if now is not None else datetime.now(tz=UTC)
        return EscalationRecord(
            id=domain_ids.generate_escalation_id(timestamp_ms=int(timestamp.timestamp() * 1000)),
            build_id=build.id,
            trigger=trigger,
            reason=reason,
            last_error=last_error or reason,
            required_action=required_action_for(trigger),
            timestamp=timestamp,
            task_id=task_ref.task_id if task_ref is not None else None,
            phase_id=build.phases[task_ref.phase_index].id if task_ref is not None else None,
        )

    def record_for_decision(
        self, build: Build, decision: RetryDecision, *, now: datetime | None = None
    ) -> EscalationRecord:
        if decision.trigger is None:
            raise ValueError("decision does not escalate")
        return self.escalation_record(
            build,
            decision.trigger,
            reason=decision.reason,
            last_error=decision.failure.message,
            task_ref=decision.task_ref,
            now=now,
        )

    def _log_decision(self, build: Build, decision: RetryDecision) -> None:
        task = build.task(decision.task_ref)
        self._logger.info(
            "control_plane_retry_decision",
            build_id=build.id,
            task=task_node_key(build, decision.task_ref),
            action=decision.action.value,
            trigger=decision.trigger.value if decision.trigger is not None else None,
            failure_kind=decision.failure.kind.value,
            attempts=task.attempts,
            category=(
                decision.retry_request.classification.category
                if decision.retry_request is not None
                else None
            ),
        )


__all__ = [
    "DEFAULT_PHASE_FAILURE_LIMIT",
    "ErrorClassification",
    "FailureKind",
    "RetryAction",
    "RetryController",
    "RetryDecision",
    "RetryRequest",
    "TaskFailure",
    "classify_error",
    "required_action_for",
]
