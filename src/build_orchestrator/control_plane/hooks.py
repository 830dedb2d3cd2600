"""
Lifecycle hook registry.

Hooks are optional side-effect handlers (telemetry, cost tracking, memory, audit) invoked
at named phases of a build. The registry is constructed explicitly and passed in; feature
flags are resolved once at build start into per-phase tables so disabled hooks are never
looked at again. Every invocation runs inside an isolating boundary: exceptions and
timeouts are captured as ``HookFailure`` values, logged, and never raised.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections import deque
from collections.abc import Awaitable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import structlog

from build_orchestrator.constants import DEFAULT_HOOK_PRIORITY
from build_orchestrator.domain.models import AtomicTask, Build, JSONValue, TaskRef
from build_orchestrator.utils.concurrency import run_with_timeout

if TYPE_CHECKING:
    from build_orchestrator.agents.client import AgentResult
    from build_orchestrator.verification_plane.gates import GateReport

DEFAULT_HOOK_TIMEOUT_SECONDS: Final[float] = 5.0
_ERROR_HISTORY_LIMIT: Final[int] = 20


class HookPhase(StrEnum):
    BEFORE_BUILD = "before-build"
    BEFORE_TASK = "before-task"
    AFTER_TASK = "after-task"
    ON_TASK_ERROR = "on-task-error"
    ON_HANDOFF = "on-handoff"
    BUILD_COMPLETE = "build-complete"


@dataclass(frozen=True, slots=True)
class HandoffInfo:
    """Phase boundary crossed when one phase passes and the next one starts."""

    from_phase_id: str
    to_phase_id: str | None
    from_phase_index: int
    to_phase_index: int | None


@dataclass(slots=True)
class HookContext:
    """
    Read-only view of the build plus a mutable ``auxiliary`` mapping.

    ``build`` is a snapshot; hooks cannot mutate live build state. Entries placed in
    ``auxiliary`` during ``before-task`` are passed to the agent.
    """

    phase: HookPhase
    build: Build
    task_ref: TaskRef | None = None
    task: AtomicTask | None = None
    result: AgentResult | None = None
    gate_report: GateReport | None = None
    error: str | None = None
    handoff: HandoffInfo | None = None
    auxiliary: dict[str, object] = field(default_factory=dict)


@runtime_checkable
class LifecycleHook(Protocol):
    """Pluggable side-effect handler; one implementation per optional feature."""

    name: str

    def handle(self, phase: HookPhase, context: HookContext) -> Awaitable[None] | None: ...


@dataclass(frozen=True, slots=True)
class HookRegistration:
    token: int
    hook: LifecycleHook
    phases: frozenset[HookPhase]
    priority: int
    feature: str | None
    sequence: int

    @property
    def name(self) -> str:
        return self.hook.name


@dataclass(frozen=True, slots=True)
class HookFailure:
    hook_name: str
    phase: HookPhase
    error: str
    timed_out: bool = False

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "hook": self.hook_name,
            "phase": self.phase.value,
            "error": self.error,
            "timed_out": self.timed_out,
        }


class _HookErrorStats:
    __slots__ = ("total", "by_phase", "recent")

    def __init__(self) -> None:
        self.total = 0
        self.by_phase: dict[str, int] = {}
        self.recent: deque[str] = deque(maxlen=_ERROR_HISTORY_LIMIT)

    def record(self, failure: HookFailure) -> None:
        self.total += 1
        self.by_phase[failure.phase.value] = self.by_phase.get(failure.phase.value, 0) + 1
        self.recent.append(failure.error)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "total": self.total,
            "by_phase": dict(sorted(self.by_phase.items())),
            "recent": list(self.recent),
        }


class HookRegistry:
    """Priority-ordered hook registrations; resolved into per-phase tables per build."""

    def __init__(self) -> None:
        self._registrations: dict[int, HookRegistration] = {}
        self._tokens = itertools.count(1)

    @property
    def registrations(self) -> tuple[HookRegistration, ...]:
        return tuple(sorted(self._registrations.values(), key=_ordering_key))

    def register(
        self,
        hook: LifecycleHook,
        phases: Iterable[HookPhase | str],
        priority: int = DEFAULT_HOOK_PRIORITY,
        *,
        feature: str | None = None,
    ) -> int:
        if not isinstance(hook, LifecycleHook):
            raise TypeError("hook must provide a name and handle(phase, context)")
        if not isinstance(hook.name, str) or not hook.name.strip():
            raise ValueError("hook name must be a non-empty string")
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise TypeError("priority must be an integer")
        resolved_phases = frozenset(HookPhase(phase) for phase in phases)
        if not resolved_phases:
            raise ValueError(f"hook {hook.name!r} must be registered for at least one phase")
        if feature is not None and not feature.strip():
            raise ValueError("feature must be non-empty when provided")

        token = next(self._tokens)
        self._registrations[token] = HookRegistration(
            token=token,
            hook=hook,
            phases=resolved_phases,
            priority=priority,
            feature=feature,
            sequence=token,
        )
        return token

    def unregister(self, token: int) -> bool:
        return self._registrations.pop(token, None) is not None

    def resolve(
        self,
        feature_flags: Mapping[str, bool] | None = None,
        *,
        timeout_seconds: float = DEFAULT_HOOK_TIMEOUT_SECONDS,
        logger: Any | None = None,
    ) -> ResolvedHooks:
        """
        Freeze the enabled hooks into per-phase tables.

        A hook bound to a feature is included only when ``feature_flags[feature]`` is true.
        Hooks without a feature are always included.
        """
        flags = dict(feature_flags or {})
        tables: dict[HookPhase, list[HookRegistration]] = {}
        for registration in self.registrations:
            if registration.feature is not None and not flags.get(registration.feature, False):
                continue
            for phase in registration.phases:
                tables.setdefault(phase, []).append(registration)
        return ResolvedHooks(
            {phase: tuple(items) for phase, items in tables.items()},
            timeout_seconds=timeout_seconds,
            logger=logger,
        )


class ResolvedHooks:
    """Hook tables frozen at build start."""

    def __init__(
        self,
        tables: Mapping[HookPhase, tuple[HookRegistration, ...]],
        *,
        timeout_seconds: float = DEFAULT_HOOK_TIMEOUT_SECONDS,
        logger: Any | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._tables = dict(tables)
        self._timeout_seconds = float(timeout_seconds)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._stats: dict[str, _HookErrorStats] = {}

    @classmethod
    def empty(cls) -> ResolvedHooks:
        return cls({})

    def has_hooks(self, phase: HookPhase) -> bool:
        return phase in self._tables

    def hook_names(self, phase: HookPhase) -> tuple[str, ...]:
        return tuple(registration.name for registration in self._tables.get(phase, ()))

    async def invoke(self, phase: HookPhase, context: HookContext) -> tuple[HookFailure, ...]:
        table = self._tables.get(phase)
        if not table:
            return ()

        failures: list[HookFailure] = []
        for registration in table:
            failure = await self._invoke_one(registration, phase, context)
            if failure is not None:
                failures.append(failure)
        return tuple(failures)

    def error_stats(self) -> dict[str, dict[str, JSONValue]]:
        return {name: stats.to_dict() for name, stats in sorted(self._stats.items())}

    async def _invoke_one(
        self,
        registration: HookRegistration,
        phase: HookPhase,
        context: HookContext,
    ) -> HookFailure | None:
        try:
            candidate = registration.hook.handle(phase, context)
            if inspect.isawaitable(candidate):
                await run_with_timeout(candidate, self._timeout_seconds)
        except asyncio.CancelledError:
            raise
        except TimeoutError:
            failure = HookFailure(
                hook_name=registration.name,
                phase=phase,
                error=f"hook timed out after {self._timeout_seconds:.3f}s",
                timed_out=True,
            )
        except Exception as exc:  # noqa: BLE001
            failure = HookFailure(
                hook_name=registration.name,
                phase=phase,
                error=f"{type(exc).__name__}: {exc}",
            )
        else:
            return None

        self._stats.setdefault(registration.name, _HookErrorStats()).record(failure)
        self._logger.warning(
            "control_plane_hook_failed",
            hook=failure.hook_name,
            phase=phase.value,
            error=failure.error,
            timed_out=failure.timed_out,
            build_id=context.build.id,
        )
        return failure


def _ordering_key(registration: HookRegistration) -> tuple[int, int]:
    return (registration.priority, registration.sequence)


__all__ = [
    "DEFAULT_HOOK_TIMEOUT_SECONDS",
    "HandoffInfo",
    "HookContext",
    "HookFailure",
    "HookPhase",
    "HookRegistration",
    "HookRegistry",
    "LifecycleHook",
    "ResolvedHooks",
]
