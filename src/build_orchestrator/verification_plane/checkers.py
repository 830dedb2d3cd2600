"""Built-in gates: output contract, non-empty output, acceptance criteria and predicates."""

from __future__ import annotations

from collections.abc import Awaitable, Mapping
from typing import TYPE_CHECKING

from build_orchestrator.domain.models import AtomicTask
from build_orchestrator.verification_plane.gates import (
    GateOutput,
    GatePredicate,
    GateResult,
    ValidationImpossibleError,
)

if TYPE_CHECKING:
    from build_orchestrator.agents.client import AgentResult


class OutputContractGate:
    """Every key declared in the task's ``output`` contract is present and non-empty."""

    def __init__(self, gate_id: str = "output_contract") -> None:
        self.gate_id = gate_id

    def evaluate(
        self,
        task: AtomicTask,
        result: AgentResult,
        config: Mapping[str, object],
    ) -> GateResult:
        extra = config.get("required_output_keys", ())
        required = list(task.output)
        if isinstance(extra, (list, tuple)):
            required.extend(str(key) for key in extra if str(key) not in required)

        errors: list[str] = []
        for key in required:
            if key not in result.output:
                errors.append(f"missing declared output {key!r}")
            elif _is_empty(result.output[key]):
                errors.append(f"declared output {key!r} is empty")
        return GateResult(gate_id=self.gate_id, passed=not errors, errors=tuple(errors))


class NonEmptyOutputGate:
    def __init__(self, gate_id: str = "non_empty_output") -> None:
        self.gate_id = gate_id

    def evaluate(
        self,
        task: AtomicTask,
        result: AgentResult,
        config: Mapping[str, object],
    ) -> GateResult:
        if result.output and not all(_is_empty(value) for value in result.output.values()):
            return GateResult(gate_id=self.gate_id, passed=True)
        return GateResult(
            gate_id=self.gate_id,
            passed=False,
            errors=(f"agent returned no output for task {task.id}",),
        )


class AcceptanceCriteriaGate:
    """
    Check output keys listed under ``acceptance_criteria`` in the capability config.

    Without configured criteria the result cannot be judged, which is reported as
    validation impossible rather than a plain failure.
    """

    def __init__(self, gate_id: str = "acceptance_criteria") -> None:
        self.gate_id = gate_id

    def evaluate(
        self,
        task: AtomicTask,
        result: AgentResult,
        config: Mapping[str, object],
    ) -> GateResult:
        criteria = config.get("acceptance_criteria")
        if not isinstance(criteria, (list, tuple)) or not criteria:
            raise ValidationImpossibleError(
                f"no acceptance criteria configured for capability {task.capability.value!r}"
            )
        unmet = [
            str(criterion)
            for criterion in criteria
            if _is_empty(result.output.get(str(criterion)))
        ]
        return GateResult(
            gate_id=self.gate_id,
            passed=not unmet,
            errors=tuple(f"acceptance criterion {name!r} not satisfied" for name in unmet),
        )


class CallableGate:
    """Adapt a plain predicate ``(task, result, config) -> bool | mapping | GateResult``."""

    def __init__(self, gate_id: str, predicate: GatePredicate) -> None:
        if not gate_id.strip():
            raise ValueError("gate_id must be non-empty")
        if not callable(predicate):
            raise TypeError("predicate must be callable")
        self.gate_id = gate_id.strip()
        self._predicate = predicate

    def evaluate(
        self,
        task: AtomicTask,
        result: AgentResult,
        config: Mapping[str, object],
    ) -> Awaitable[GateOutput] | GateOutput:
        return self._predicate(task, result, config)


def _is_empty(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return not value
    return False


__all__ = [
    "AcceptanceCriteriaGate",
    "CallableGate",
    "NonEmptyOutputGate",
    "OutputContractGate",
]
