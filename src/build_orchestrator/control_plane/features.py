"""
Built-in feature hooks.

Cross-cutting concerns live here instead of in the core loop, one hook per feature flag:
- ``audit_trail``: structured audit entries for every lifecycle phase
- ``cost_tracking``: per-capability cost totals with a warning threshold
- ``handoff_notes``: notes written at phase boundaries and handed to later tasks
- ``agent_memory``: outputs of earlier tasks recalled for tasks of the same capability

``install_feature_hooks`` registers each hook with the priority and phases from its
``features.<name>`` config object; the enabled flag is applied when the registry is
resolved at build start.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from typing import Any

import structlog

from build_orchestrator.config.schema import FEATURE_NAMES
from build_orchestrator.control_plane.hooks import HookContext, HookPhase, HookRegistry
from build_orchestrator.domain.models import JSONValue, TaskStatus
from build_orchestrator.planning.task_graph import task_node_key


class AuditTrailHook:
    name = "audit_trail"

    def __init__(self, *, logger: Any | None = None, max_entries: int = 10_000) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._entries: deque[dict[str, JSONValue]] = deque(maxlen=max_entries)

    @property
    def entries(self) -> tuple[dict[str, JSONValue], ...]:
        return tuple(self._entries)

    def handle(self, phase: HookPhase, context: HookContext) -> None:
        entry: dict[str, JSONValue] = {
            "phase": phase.value,
            "build_id": context.build.id,
            "build_status": context.build.status.value,
        }
        if context.task_ref is not None:
            entry["task"] = task_node_key(context.build, context.task_ref)
        if context.task is not None:
            entry["attempts"] = context.task.attempts
        if context.error is not None:
            entry["error"] = context.error
        if context.handoff is not None:
            entry["handoff"] = {
                "from": context.handoff.from_phase_id,
                "to": context.handoff.to_phase_id,
            }
        self._entries.append(entry)
        self._logger.info("feature_audit_entry", **entry)


class CostTrackingHook:
    name = "cost_tracking"

    def __init__(self, *, warn_threshold_usd: float = 0.0, logger: Any | None = None) -> None:
        if warn_threshold_usd < 0:
            raise ValueError("warn_threshold_usd must be >= 0")
        self._warn_threshold_usd = float(warn_threshold_usd)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._by_build: dict[str, dict[str, float]] = {}
        self._failed_attempts: dict[str, int] = {}
        self._warned: set[str] = set()

    def totals(self, build_id: str) -> dict[str, float]:
        return dict(self._by_build.get(build_id, {}))

    def total(self, build_id: str) -> float:
        return round(sum(self._by_build.get(build_id, {}).values()), 12)

    def handle(self, phase: HookPhase, context: HookContext) -> None:
        build_id = context.build.id
        if phase is HookPhase.AFTER_TASK and context.result is not None and context.task:
            capability = context.task.capability.value
            totals = self._by_build.setdefault(build_id, {})
            totals[capability] = round(totals.get(capability, 0.0) + context.result.cost_usd, 12)
            self._maybe_warn(build_id)
        elif phase is HookPhase.ON_TASK_ERROR:
            self._failed_attempts[build_id] = self._failed_attempts.get(build_id, 0) + 1
        elif phase is HookPhase.BUILD_COMPLETE:
            self._logger.info(
                "feature_cost_summary",
                build_id=build_id,
                total_usd=self.total(build_id),
                by_capability=self.totals(build_id),
                failed_attempts=self._failed_attempts.get(build_id, 0),
            )

    def _maybe_warn(self, build_id: str) -> None:
        if self._warn_threshold_usd <= 0 or build_id in self._warned:
            return
        total = self.total(build_id)
        if total >= self._warn_threshold_usd:
            self._warned.add(build_id)
            self._logger.warning(
                "feature_cost_threshold_reached",
                build_id=build_id,
                total_usd=total,
                threshold_usd=self._warn_threshold_usd,
            )


class HandoffNotesHook:
    name = "handoff_notes"

    def __init__(self, *, max_notes: int = 20) -> None:
        if max_notes <= 0:
            raise ValueError("max_notes must be > 0")
        self._max_notes = max_notes
        self._notes: dict[str, deque[str]] = {}

    def notes(self, build_id: str) -> tuple[str, ...]:
        return tuple(self._notes.get(build_id, ()))

    def handle(self, phase: HookPhase, context: HookContext) -> None:
        build_id = context.build.id
        if phase is HookPhase.ON_HANDOFF and context.handoff is not None:
            finished = context.build.phases[context.handoff.from_phase_index]
            produced = sorted(
                {key for task in finished.tasks for key in task.output_value}
            )
            target = context.handoff.to_phase_id or "build completion"
            note = (
                f"phase {finished.id!r} ({finished.name}) passed with "
                f"{len(finished.tasks)} task(s); outputs: {', '.join(produced) or 'none'}; "
                f"next: {target}"
            )
            self._notes.setdefault(build_id, deque(maxlen=self._max_notes)).append(note)
        elif phase is HookPhase.BEFORE_TASK:
            notes = self._notes.get(build_id)
            if notes:
                context.auxiliary["handoff_notes"] = list(notes)


class AgentMemoryHook:
    name = "agent_memory"

    def __init__(self, *, max_entries: int = 50) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._max_entries = max_entries
        self._memory: dict[tuple[str, str], deque[dict[str, JSONValue]]] = {}

    def recall(self, build_id: str, capability: str) -> tuple[dict[str, JSONValue], ...]:
        return tuple(self._memory.get((build_id, capability), ()))

    def handle(self, phase: HookPhase, context: HookContext) -> None:
        task = context.task
        if task is None or context.task_ref is None:
            return
        key = (context.build.id, task.capability.value)
        if phase is HookPhase.BEFORE_TASK:
            remembered = self._memory.get(key)
            if remembered:
                context.auxiliary["memory"] = list(remembered)
        elif phase is HookPhase.AFTER_TASK and context.result is not None:
            if task.status is not TaskStatus.VALIDATED:
                return
            self._memory.setdefault(key, deque(maxlen=self._max_entries)).append(
                {
                    "task": task_node_key(context.build, context.task_ref),
                    "output": dict(context.result.output),
                }
            )


def feature_flags(config: Mapping[str, object]) -> dict[str, bool]:
    """Enabled flag per feature, read from the ``features`` config section."""
    section = config.get("features", {})
    features = section if isinstance(section, Mapping) else {}
    flags: dict[str, bool] = {}
    for name in FEATURE_NAMES:
        feature = features.get(name, {})
        flags[name] = bool(feature.get("enabled", False)) if isinstance(feature, Mapping) else False
    return flags


def install_feature_hooks(
    registry: HookRegistry,
    config: Mapping[str, object],
    *,
    logger: Any | None = None,
) -> dict[str, int]:
    """Register the built-in feature hooks; returns the registration token per feature."""
    section = config.get("features", {})
    features: Mapping[str, object] = section if isinstance(section, Mapping) else {}

    def settings(name: str) -> Mapping[str, Any]:
        value = features.get(name, {})
        return value if isinstance(value, Mapping) else {}

    hooks = {
        "audit_trail": AuditTrailHook(logger=logger),
        "cost_tracking": CostTrackingHook(
            warn_threshold_usd=float(settings("cost_tracking").get("warn_threshold_usd", 0.0)),
            logger=logger,
        ),
        "handoff_notes": HandoffNotesHook(
            max_notes=int(settings("handoff_notes").get("max_notes", 20))
        ),
        "agent_memory": AgentMemoryHook(
            max_entries=int(settings("agent_memory").get("max_entries", 50))
        ),
    }

    tokens: dict[str, int] = {}
    for name in FEATURE_NAMES:
        feature = settings(name)
        phases = feature.get("phases", ())
        if not phases:
            continue
        tokens[name] = registry.register(
            hooks[name],
            phases,
            int(feature.get("priority", 100)),
            feature=name,
        )
    return tokens


__all__ = [
    "AgentMemoryHook",
    "AuditTrailHook",
    "CostTrackingHook",
    "HandoffNotesHook",
    "feature_flags",
    "install_feature_hooks",
]
