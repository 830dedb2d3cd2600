"""
Agent client boundary

Purpose
- Define the contract between the orchestrator and the external agents that perform tasks.

What is included in this file
- ``AgentClient`` protocol: ``invoke(task, context)`` returning an ``AgentResult``.
- ``AgentContext``: prior outputs resolved from ``input`` references, hook-injected auxiliary
  context, retry feedback and a progress heartbeat for stall detection.
- Error taxonomy: ``AgentError``, ``ExternalDependencyError``, ``CapabilityUnavailableError``.
- ``AgentRegistry``: explicitly constructed capability -> client mapping.

Functional requirements
- Agents are opaque; the orchestrator never inspects how a result is produced.
- Sync and async ``invoke`` implementations are both accepted.
"""

from __future__ import annotations

import inspect
import math
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, TypeAlias, runtime_checkable

from build_orchestrator.domain.models import AtomicTask, Capability, JSONValue
from build_orchestrator.utils.concurrency import ProgressHeartbeat

if TYPE_CHECKING:
    from build_orchestrator.control_plane.escalation import RetryRequest


class AgentError(RuntimeError):
    """Base error raised by agent clients; routed through the retry controller."""

    def __init__(self, detail: str, *, code: str = "agent_error", retryable: bool = True) -> None:
        self.detail = detail
        self.code = code
        self.retryable = bool(retryable)
        super().__init__(f"{code}: {detail}")


class ExternalDependencyError(AgentError):
    """Raised when a dependency the task relies on is unreachable."""

    def __init__(self, dependency: str, detail: str) -> None:
        self.dependency = dependency
        super().__init__(
            f"dependency {dependency!r} unreachable: {detail}",
            code="external_dependency",
            retryable=False,
        )


class CapabilityUnavailableError(LookupError):
    """Raised when no agent client is registered for a required capability."""

    def __init__(self, capability: Capability | str) -> None:
        self.capability = str(capability)
        super().__init__(f"no agent registered for capability {self.capability!r}")


@dataclass(frozen=True, slots=True)
class AgentResult:
    """Structured output returned by one agent invocation."""

    task_id: str
    output: dict[str, JSONValue]
    cost_usd: float = 0.0
    metadata: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.task_id, str) or not self.task_id.strip():
            raise ValueError("AgentResult.task_id must be a non-empty string")
        if not isinstance(self.output, Mapping):
            raise TypeError(
                f"AgentResult.output must be a mapping, got {type(self.output).__name__}"
            )
        object.__setattr__(self, "output", dict(self.output))
        if isinstance(self.cost_usd, bool) or not isinstance(self.cost_usd, (int, float)):
            raise TypeError("AgentResult.cost_usd must be a number")
        if not math.isfinite(self.cost_usd) or self.cost_usd < 0:
            raise ValueError("AgentResult.cost_usd must be finite and >= 0")
        object.__setattr__(self, "cost_usd", float(self.cost_usd))
        object.__setattr__(self, "metadata", dict(self.metadata))


@dataclass(slots=True)
class AgentContext:
    """Everything an agent receives besides the task itself."""

    build_id: str
    phase_id: str
    task_id: str
    attempt: int
    prior_outputs: dict[str, dict[str, JSONValue]] = field(default_factory=dict)
    auxiliary: dict[str, object] = field(default_factory=dict)
    retry: RetryRequest | None = None
    heartbeat: ProgressHeartbeat = field(default_factory=ProgressHeartbeat)

    @property
    def is_retry(self) -> bool:
        return self.retry is not None

    def report_progress(self) -> None:
        """Signal liveness to the stall watchdog."""
        self.heartbeat.beat()


AgentOutput: TypeAlias = AgentResult | Mapping[str, object]


@runtime_checkable
class AgentClient(Protocol):
    """Protocol implemented by concrete agent adapters."""

    def invoke(
        self, task: AtomicTask, context: AgentContext
    ) -> Awaitable[AgentOutput] | AgentOutput: ...


class AgentRegistry:
    """Capability -> agent client mapping, constructed explicitly and passed in."""

    def __init__(
        self,
        clients: Mapping[Capability | str, AgentClient] | None = None,
        *,
        default: AgentClient | None = None,
    ) -> None:
        self._clients: dict[Capability, AgentClient] = {}
        self._default = default
        for capability, client in (clients or {}).items():
            self.register(capability, client)

    @property
    def capabilities(self) -> tuple[Capability, ...]:
        return tuple(sorted(self._clients, key=lambda item: item.value))

    def register(
        self, capability: Capability | str, client: AgentClient, *, replace: bool = False
    ) -> None:
        resolved = Capability(capability)
        if not isinstance(client, AgentClient):
            raise TypeError(f"agent for {resolved.value!r} must implement invoke(task, context)")
        if resolved in self._clients and not replace:
            raise ValueError(f"agent already registered for capability {resolved.value!r}")
        self._clients[resolved] = client

    def has(self, capability: Capability | str) -> bool:
        return Capability(capability) in self._clients or self._default is not None

    def resolve(self, capability: Capability | str) -> AgentClient:
        resolved = Capability(capability)
        client = self._clients.get(resolved, self._default)
        if client is None:
            raise CapabilityUnavailableError(resolved)
        return client


async def invoke_agent(client: AgentClient, task: AtomicTask, context: AgentContext) -> AgentResult:
    """Call ``client.invoke`` (sync or async) and normalize the output to ``AgentResult``."""

    candidate = client.invoke(task, context)
    raw = await candidate if inspect.isawaitable(candidate) else candidate
    return normalize_agent_output(raw, task_id=task.id)


def normalize_agent_output(output: object, *, task_id: str) -> AgentResult:
    if isinstance(output, AgentResult):
        if output.task_id != task_id:
            raise AgentError(
                f"result is for task {output.task_id!r}, expected {task_id!r}",
                code="result_mismatch",
            )
        return output

    if isinstance(output, Mapping):
        if "output" in output and isinstance(output["output"], Mapping):
            cost = output.get("cost_usd", 0.0)
            metadata = output.get("metadata", {})
            if not isinstance(metadata, Mapping):
                raise AgentError("result metadata must be a mapping", code="response_invalid")
            try:
                return AgentResult(
                    task_id=task_id,
                    output=dict(output["output"]),
                    cost_usd=cost,  # type: ignore[arg-type]
                    metadata=dict(metadata),
                )
            except (TypeError, ValueError) as exc:
                raise AgentError(str(exc), code="response_invalid") from exc
        return AgentResult(task_id=task_id, output=dict(output))

    raise AgentError(
        f"agent output must be AgentResult or a mapping; got {type(output).__name__}",
        code="response_invalid",
    )


__all__ = [
    "AgentClient",
    "AgentContext",
    "AgentError",
    "AgentOutput",
    "AgentRegistry",
    "AgentResult",
    "CapabilityUnavailableError",
    "ExternalDependencyError",
    "invoke_agent",
    "normalize_agent_output",
]
