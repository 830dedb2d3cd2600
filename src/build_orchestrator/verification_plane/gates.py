"""
Quality gate pipeline

Purpose
- Validate every agent result through an ordered sequence of gates before it is accepted.

Normative behavior
- Gates run in configured order; a gate never assumes another gate has run.
- Policy is selected per capability: ``fail_fast`` stops at the first failing gate,
  ``aggregate`` runs every gate and collects every failure.
- Gate outputs are normalized: ``GateResult``, ``bool`` or a mapping; sync or async.
- A gate that raises or exceeds its timeout yields a failed ``GateResult`` with a readable reason.
- ``ValidationImpossibleError`` (or ``impossible=True``) marks the report
  ``validation_impossible`` so the controller escalates instead of retrying.
- Gates are pure with respect to the build: they read the task, result and capability config.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final, Protocol, TypeAlias, runtime_checkable

from build_orchestrator.domain.models import AtomicTask, Capability, JSONValue
from build_orchestrator.utils.concurrency import run_with_timeout

if TYPE_CHECKING:
    from build_orchestrator.agents.client import AgentResult

DEFAULT_GATE_TIMEOUT_SECONDS: Final[float] = 120.0


class GatePolicy(StrEnum):
    FAIL_FAST = "fail_fast"
    AGGREGATE = "aggregate"


class ValidationImpossibleError(RuntimeError):
    """Raised by a gate that cannot judge the result at all (e.g. missing criteria)."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


@dataclass(frozen=True, slots=True)
class GateResult:
    """Outcome of one gate for one task attempt."""

    gate_id: str
    passed: bool
    errors: tuple[str, ...] = ()
    impossible: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.gate_id, str) or not self.gate_id.strip():
            raise ValueError("GateResult.gate_id must be non-empty")
        object.__setattr__(self, "gate_id", self.gate_id.strip())
        object.__setattr__(self, "passed", bool(self.passed))
        object.__setattr__(self, "errors", _normalize_errors(self.errors))
        object.__setattr__(self, "impossible", bool(self.impossible))
        if self.impossible and self.passed:
            raise ValueError("GateResult cannot be both passed and impossible")
        if not self.passed and not self.errors:
            object.__setattr__(self, "errors", (f"gate {self.gate_id} rejected the result",))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "gate_id": self.gate_id,
            "passed": self.passed,
            "errors": list(self.errors),
            "impossible": self.impossible,
        }


GateOutput: TypeAlias = GateResult | Mapping[str, object] | bool


@runtime_checkable
class Gate(Protocol):
    """A validator applied to every agent result before acceptance."""

    gate_id: str

    def evaluate(
        self,
        task: AtomicTask,
        result: AgentResult,
        config: Mapping[str, object],
    ) -> Awaitable[GateOutput] | GateOutput: ...


@dataclass(frozen=True, slots=True)
class GateReport:
    """Normalized result of running the pipeline for one task attempt."""

    task_id: str
    policy: GatePolicy
    results: tuple[GateResult, ...]
    skipped_gate_ids: tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return all(item.passed for item in self.results)

    @property
    def validation_impossible(self) -> bool:
        return any(item.impossible for item in self.results)

    @property
    def failed_gate_ids(self) -> tuple[str, ...]:
        return tuple(item.gate_id for item in self.results if not item.passed)

    @property
    def errors(self) -> tuple[str, ...]:
        """Failure reasons prefixed with the gate that produced them."""
        collected: list[str] = []
        for item in self.results:
            if item.passed:
                continue
            collected.extend(f"{item.gate_id}: {error}" for error in item.errors)
        return tuple(collected)

    def to_payload(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "policy": self.policy.value,
            "passed": self.passed,
            "validation_impossible": self.validation_impossible,
            "results": [item.to_dict() for item in self.results],
            "skipped_gate_ids": list(self.skipped_gate_ids),
        }


class GatePipeline:
    """Ordered gate runner with per-capability policy and configuration."""

    def __init__(
        self,
        gates: Sequence[Gate] = (),
        *,
        policy_by_capability: Mapping[Capability | str, GatePolicy | str] | None = None,
        default_policy: GatePolicy | str = GatePolicy.FAIL_FAST,
        config_by_capability: Mapping[Capability | str, Mapping[str, object]] | None = None,
        gate_timeout_seconds: float = DEFAULT_GATE_TIMEOUT_SECONDS,
    ) -> None:
        if gate_timeout_seconds <= 0:
            raise ValueError("gate_timeout_seconds must be > 0")

        seen: set[str] = set()
        for gate in gates:
            if not isinstance(gate, Gate):
                raise TypeError(
                    f"gate must provide gate_id and evaluate(); got {type(gate).__name__}"
                )
            if gate.gate_id in seen:
                raise ValueError(f"duplicate gate id: {gate.gate_id!r}")
            seen.add(gate.gate_id)

        self._gates: tuple[Gate, ...] = tuple(gates)
        self._default_policy = GatePolicy(default_policy)
        self._policy_by_capability: dict[Capability, GatePolicy] = {
            Capability(capability): GatePolicy(policy)
            for capability, policy in (policy_by_capability or {}).items()
        }
        self._config_by_capability: dict[Capability, dict[str, object]] = {
            Capability(capability): dict(config)
            for capability, config in (config_by_capability or {}).items()
        }
        self._gate_timeout_seconds = float(gate_timeout_seconds)

    @classmethod
    def from_config(
        cls,
        gates: Sequence[Gate],
        config: Mapping[str, object],
        *,
        config_by_capability: Mapping[Capability | str, Mapping[str, object]] | None = None,
    ) -> GatePipeline:
        """
        Build a pipeline from the ``gates`` and ``execution`` sections of a loaded config.

        ``config_by_capability`` replaces ``gates.config_by_capability`` when given.
        """
        gates_section = _section(config, "gates")
        execution = _section(config, "execution")
        policy_by_capability = gates_section.get("policy_by_capability", {})
        if config_by_capability is None:
            configured = gates_section.get("config_by_capability", {})
            config_by_capability = configured if isinstance(configured, Mapping) else {}
        return cls(
            gates,
            policy_by_capability=(
                policy_by_capability if isinstance(policy_by_capability, Mapping) else {}
            ),
            default_policy=str(gates_section.get("default_policy", GatePolicy.FAIL_FAST.value)),
            config_by_capability=config_by_capability,
            gate_timeout_seconds=float(
                execution.get("gate_timeout_seconds", DEFAULT_GATE_TIMEOUT_SECONDS)
            ),
        )

    @property
    def gates(self) -> tuple[Gate, ...]:
        return self._gates

    def policy_for(self, capability: Capability | str) -> GatePolicy:
        return self._policy_by_capability.get(Capability(capability), self._default_policy)

    def config_for(self, capability: Capability | str) -> Mapping[str, object]:
        return dict(self._config_by_capability.get(Capability(capability), {}))

    async def run_gates(self, task: AtomicTask, result: AgentResult) -> GateReport:
        policy = self.policy_for(task.capability)
        config = self.config_for(task.capability)

        results: list[GateResult] = []
        skipped: list[str] = []
        stopped = False
        for gate in self._gates:
            if stopped:
                skipped.append(gate.gate_id)
                continue
            outcome = await evaluate_gate(
                gate, task, result, config, timeout_seconds=self._gate_timeout_seconds
            )
            results.append(outcome)
            if policy is GatePolicy.FAIL_FAST and not outcome.passed:
                stopped = True

        return GateReport(
            task_id=task.id,
            policy=policy,
            results=tuple(results),
            skipped_gate_ids=tuple(skipped),
        )


class CouncilGate:
    """
    Aggregate several independent judges into a single verdict by strict majority.

    An even split fails. A judge that errors, times out or cannot validate counts as a
    failing vote.
    """

    def __init__(
        self,
        gate_id: str,
        judges: Sequence[Gate],
        *,
        judge_timeout_seconds: float | None = None,
    ) -> None:
        if not gate_id.strip():
            raise ValueError("gate_id must be non-empty")
        if not judges:
            raise ValueError("CouncilGate requires at least one judge")
        if judge_timeout_seconds is not None and judge_timeout_seconds <= 0:
            raise ValueError("judge_timeout_seconds must be > 0 when provided")
        self.gate_id = gate_id.strip()
        self._judges = tuple(judges)
        self._judge_timeout_seconds = judge_timeout_seconds

    @property
    def judges(self) -> tuple[Gate, ...]:
        return self._judges

    async def evaluate(
        self,
        task: AtomicTask,
        result: AgentResult,
        config: Mapping[str, object],
    ) -> GateResult:
        verdicts = await asyncio.gather(
            *(
                evaluate_gate(
                    judge, task, result, config, timeout_seconds=self._judge_timeout_seconds
                )
                for judge in self._judges
            )
        )
        approvals = sum(1 for verdict in verdicts if verdict.passed)
        total = len(verdicts)
        if approvals * 2 > total:
            return GateResult(gate_id=self.gate_id, passed=True)

        errors = [f"council vote {approvals}/{total} did not reach a majority"]
        for verdict in verdicts:
            if not verdict.passed:
                errors.extend(f"{verdict.gate_id}: {error}" for error in verdict.errors)
        return GateResult(gate_id=self.gate_id, passed=False, errors=tuple(errors))


async def evaluate_gate(
    gate: Gate,
    task: AtomicTask,
    result: AgentResult,
    config: Mapping[str, object],
    *,
    timeout_seconds: float | None = None,
) -> GateResult:
    """Run one gate in an isolating boundary and normalize whatever it returns."""

    gate_id = gate.gate_id
    try:
        candidate = gate.evaluate(task, result, config)
        if inspect.isawaitable(candidate):
            if timeout_seconds is not None:
                raw_output = await run_with_timeout(candidate, timeout_seconds)
            else:
                raw_output = await candidate
        else:
            raw_output = candidate
    except ValidationImpossibleError as exc:
        return GateResult(
            gate_id=gate_id,
            passed=False,
            errors=(f"validation impossible: {exc.reason}",),
            impossible=True,
        )
    except TimeoutError as exc:
        detail = (
            f"gate timed out after {timeout_seconds:.3f}s"
            if timeout_seconds is not None
            else f"gate timed out: {exc}"
        )
        return GateResult(gate_id=gate_id, passed=False, errors=(detail,))
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001
        return GateResult(
            gate_id=gate_id,
            passed=False,
            errors=(f"gate raised {type(exc).__name__}: {exc}",),
        )

    try:
        return normalize_gate_output(raw_output, gate_id=gate_id)
    except (TypeError, ValueError) as exc:
        return GateResult(gate_id=gate_id, passed=False, errors=(f"invalid gate output: {exc}",))


def normalize_gate_output(output: object, *, gate_id: str) -> GateResult:
    if isinstance(output, GateResult):
        if output.gate_id == gate_id:
            return output
        return GateResult(
            gate_id=gate_id,
            passed=output.passed,
            errors=output.errors,
            impossible=output.impossible,
        )

    if isinstance(output, bool):
        return GateResult(gate_id=gate_id, passed=output)

    if isinstance(output, Mapping):
        passed = output.get("passed", True)
        if not isinstance(passed, bool):
            raise TypeError("'passed' must be a boolean")
        impossible = output.get("impossible", False)
        if not isinstance(impossible, bool):
            raise TypeError("'impossible' must be a boolean")
        return GateResult(
            gate_id=gate_id,
            passed=passed and not impossible,
            errors=_coerce_errors(output.get("errors", ())),
            impossible=impossible,
        )

    raise TypeError(
        "gate output must be GateResult, bool, or Mapping[str, object]; "
        f"got {type(output).__name__}"
    )


GatePredicate: TypeAlias = Callable[
    [AtomicTask, "AgentResult", Mapping[str, object]], Awaitable[GateOutput] | GateOutput
]


def _coerce_errors(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value)
    raise TypeError(
        f"'errors' must be a string or a sequence of strings, got {type(value).__name__}"
    )


def _normalize_errors(errors: Sequence[str]) -> tuple[str, ...]:
    normalized: list[str] = []
    for error in errors:
        if not isinstance(error, str):
            raise TypeError(f"gate errors must be strings, got {type(error).__name__}")
        candidate = error.strip()
        if candidate:
            normalized.append(candidate)
    return tuple(normalized)


def _section(config: Mapping[str, object], name: str) -> Mapping[str, Any]:
    section = config.get(name, {})
    return section if isinstance(section, Mapping) else {}


__all__ = [
    "DEFAULT_GATE_TIMEOUT_SECONDS",
    "CouncilGate",
    "Gate",
    "GateOutput",
    "GatePipeline",
    "GatePolicy",
    "GatePredicate",
    "GateReport",
    "GateResult",
    "ValidationImpossibleError",
    "evaluate_gate",
    "normalize_gate_output",
]
