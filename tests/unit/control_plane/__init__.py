"""Shared agents, task graph documents, and orchestrator builders for control-plane tests."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from build_orchestrator.agents.client import AgentContext, AgentRegistry, AgentResult
from build_orchestrator.config.schema import merge_config
from build_orchestrator.control_plane.controller import BuildOrchestrator
from build_orchestrator.domain.models import AtomicTask
from build_orchestrator.persistence.state_db import StateDB
from build_orchestrator.verification_plane.checkers import OutputContractGate

if TYPE_CHECKING:
    from pathlib import Path

    from build_orchestrator.control_plane.hooks import HookRegistry
    from build_orchestrator.verification_plane.gates import Gate


class ScriptedAgent:
    """
    Agent whose responses are scripted per task id.

    Each scripted entry is consumed by one invocation: an exception is raised, a mapping
    is returned as the raw output. Unscripted invocations fill every declared output.
    """

    def __init__(
        self,
        script: Mapping[str, Sequence[object]] | None = None,
        *,
        cost_usd: float = 0.0,
        delay_seconds: float = 0.0,
    ) -> None:
        self._script = {task_id: list(items) for task_id, items in (script or {}).items()}
        self._cost_usd = cost_usd
        self._delay_seconds = delay_seconds
        self.calls: list[tuple[str, int]] = []
        self.contexts: list[AgentContext] = []
        self.active = 0
        self.max_active = 0

    def calls_for(self, task_id: str) -> int:
        return sum(1 for called, _attempt in self.calls if called == task_id)

    async def invoke(self, task: AtomicTask, context: AgentContext) -> object:
        self.calls.append((task.id, context.attempt))
        self.contexts.append(context)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self._delay_seconds:
                await asyncio.sleep(self._delay_seconds)
            pending = self._script.get(task.id)
            if pending:
                scripted = pending.pop(0)
                if isinstance(scripted, BaseException):
                    raise scripted
                return scripted
            return AgentResult(
                task_id=task.id,
                output={key: f"{task.id}:{key}" for key in task.output},
                cost_usd=self._cost_usd,
            )
        finally:
            self.active -= 1


def task_doc(
    task_id: str,
    *,
    capability: str = "backend",
    inputs: Sequence[str] = (),
    outputs: Sequence[str] = ("result",),
) -> dict[str, object]:
    return {
        "id": task_id,
        "description": f"Produce {task_id}",
        "capability": capability,
        "input": list(inputs),
        "output": list(outputs),
    }


def phase_doc(
    phase_id: str,
    *tasks: dict[str, object],
    dependencies: Sequence[str | int] = (),
    capability: str = "backend",
    concurrent: bool | None = None,
) -> dict[str, object]:
    phase: dict[str, object] = {
        "id": phase_id,
        "name": phase_id.replace("-", " ").title(),
        "capability": capability,
        "dependencies": list(dependencies),
        "tasks": list(tasks),
    }
    if concurrent is not None:
        phase["concurrent"] = concurrent
    return phase


def graph_doc(*phases: dict[str, object], graph_id: str = "graph") -> dict[str, object]:
    return {"id": graph_id, "title": f"Build of {graph_id}", "phases": list(phases)}


def sequential_document(phase_count: int = 3) -> dict[str, object]:
    """``phase_count`` phases of one task each, every phase depending on the previous one."""
    return graph_doc(
        *(
            phase_doc(
                f"phase-{index}",
                task_doc(f"task-{index}"),
                dependencies=[f"phase-{index - 1}"] if index else [],
            )
            for index in range(phase_count)
        )
    )


def make_config(tmp_path: Path, overlay: Mapping[str, object] | None = None) -> dict[str, Any]:
    base: dict[str, object] = {
        "paths": {
            "state_db": (tmp_path / "state.sqlite").as_posix(),
            "escalation_dir": (tmp_path / "escalations").as_posix(),
            "log_dir": (tmp_path / "logs").as_posix(),
        },
        "checkpoints": {"interval_seconds": 3_600.0},
    }
    return merge_config(base, overlay or {})


def make_orchestrator(
    tmp_path: Path,
    agent: object,
    *,
    gates: Sequence[Gate] | None = None,
    hooks: HookRegistry | None = None,
    overlay: Mapping[str, object] | None = None,
    db: StateDB | None = None,
) -> BuildOrchestrator:
    return BuildOrchestrator(
        db if db is not None else StateDB(tmp_path / "state.sqlite"),
        AgentRegistry(default=agent),  # type: ignore[arg-type]
        (OutputContractGate(),) if gates is None else gates,
        hooks=hooks,
        config=make_config(tmp_path, overlay),
    )
