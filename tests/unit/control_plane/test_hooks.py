"""Unit tests for lifecycle hook registration, ordering, and isolation."""

from __future__ import annotations

import asyncio
import time

import pytest

from build_orchestrator.control_plane.hooks import (
    HookContext,
    HookPhase,
    HookRegistry,
    ResolvedHooks,
)
from build_orchestrator.planning.graph_input import build_from_document

from . import sequential_document


class _RecordingHook:
    def __init__(self, name: str, calls: list[str]) -> None:
        self.name = name
        self._calls = calls

    def handle(self, phase: HookPhase, context: HookContext) -> None:
        self._calls.append(f"{self.name}:{phase.value}")


class _RaisingHook:
    name = "raising"

    def handle(self, phase: HookPhase, context: HookContext) -> None:
        raise RuntimeError("hook exploded")


class _SlowHook:
    def __init__(self, name: str = "slow", seconds: float = 0.5) -> None:
        self.name = name
        self.seconds = seconds
        self.calls = 0

    async def handle(self, phase: HookPhase, context: HookContext) -> None:
        self.calls += 1
        await asyncio.sleep(self.seconds)


class _InjectingHook:
    name = "injecting"

    async def handle(self, phase: HookPhase, context: HookContext) -> None:
        context.auxiliary["routing_hint"] = "fast-path"


def _context(phase: HookPhase) -> HookContext:
    return HookContext(phase=phase, build=build_from_document(sequential_document(1)))


async def test_hooks_run_in_priority_order_with_stable_ties() -> None:
    calls: list[str] = []
    registry = HookRegistry()
    registry.register(_RecordingHook("late", calls), ["after-task"], priority=50)
    registry.register(_RecordingHook("tie-first", calls), ["after-task"], priority=10)
    registry.register(_RecordingHook("early", calls), ["after-task"], priority=-5)
    registry.register(_RecordingHook("tie-second", calls), ["after-task"], priority=10)
    registry.register(_RecordingHook("other-phase", calls), [HookPhase.BEFORE_BUILD])

    resolved = registry.resolve()
    failures = await resolved.invoke(HookPhase.AFTER_TASK, _context(HookPhase.AFTER_TASK))

    assert failures == ()
    assert calls == [
        "early:after-task",
        "tie-first:after-task",
        "tie-second:after-task",
        "late:after-task",
    ]
    assert resolved.hook_names(HookPhase.BEFORE_BUILD) == ("other-phase",)


async def test_raising_hook_is_isolated_and_later_hooks_still_run() -> None:
    calls: list[str] = []
    registry = HookRegistry()
    registry.register(_RaisingHook(), ["on-task-error"], priority=1)
    registry.register(_RecordingHook("after", calls), ["on-task-error"], priority=2)

    resolved = registry.resolve()
    failures = await resolved.invoke(HookPhase.ON_TASK_ERROR, _context(HookPhase.ON_TASK_ERROR))

    assert [failure.hook_name for failure in failures] == ["raising"]
    assert failures[0].error == "RuntimeError: hook exploded"
    assert failures[0].to_dict()["phase"] == "on-task-error"
    assert calls == ["after:on-task-error"]
    assert resolved.error_stats()["raising"]["total"] == 1


async def test_slow_hook_times_out_as_a_failure() -> None:
    registry = HookRegistry()
    registry.register(_SlowHook(seconds=5.0), ["before-build"])

    resolved = registry.resolve(timeout_seconds=0.05)
    failures = await resolved.invoke(HookPhase.BEFORE_BUILD, _context(HookPhase.BEFORE_BUILD))

    assert len(failures) == 1
    assert failures[0].timed_out
    assert "timed out" in failures[0].error


async def test_before_task_hooks_can_inject_auxiliary_context() -> None:
    registry = HookRegistry()
    registry.register(_InjectingHook(), ["before-task"])
    context = _context(HookPhase.BEFORE_TASK)

    await registry.resolve().invoke(HookPhase.BEFORE_TASK, context)

    assert context.auxiliary == {"routing_hint": "fast-path"}


async def test_disabled_feature_hook_is_resolved_away_with_no_latency() -> None:
    slow = _SlowHook(seconds=0.5)
    registry = HookRegistry()
    registry.register(slow, ["after-task"], feature="agent_memory")

    resolved = registry.resolve({"agent_memory": False})
    context = _context(HookPhase.AFTER_TASK)

    assert not resolved.has_hooks(HookPhase.AFTER_TASK)
    started = time.perf_counter()
    for _ in range(100):
        assert await resolved.invoke(HookPhase.AFTER_TASK, context) == ()
    elapsed = time.perf_counter() - started

    assert slow.calls == 0
    assert elapsed < 0.05

    enabled = registry.resolve({"agent_memory": True}, timeout_seconds=2.0)
    assert enabled.hook_names(HookPhase.AFTER_TASK) == ("slow",)


async def test_unregister_removes_the_hook() -> None:
    calls: list[str] = []
    registry = HookRegistry()
    token = registry.register(_RecordingHook("gone", calls), ["build-complete"])

    assert registry.unregister(token)
    assert not registry.unregister(token)
    await registry.resolve().invoke(HookPhase.BUILD_COMPLETE, _context(HookPhase.BUILD_COMPLETE))
    assert calls == []


def test_register_validates_its_arguments() -> None:
    registry = HookRegistry()
    calls: list[str] = []
    with pytest.raises(TypeError, match="handle"):
        registry.register(object(), ["after-task"])  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="at least one phase"):
        registry.register(_RecordingHook("empty", calls), [])
    with pytest.raises(ValueError):
        registry.register(_RecordingHook("bogus", calls), ["after-lunch"])
    with pytest.raises(TypeError, match="priority"):
        registry.register(_RecordingHook("flag", calls), ["after-task"], priority=True)
    with pytest.raises(ValueError, match="timeout_seconds"):
        ResolvedHooks({}, timeout_seconds=0)
