"""Task graph document loading and strict field-level validation."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import yaml

from build_orchestrator.domain import ids
from build_orchestrator.domain.models import (
    TASK_REF_SEPARATOR,
    AtomicTask,
    Build,
    Capability,
    Phase,
)

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_DOCUMENT_KEYS = frozenset({"id", "title", "phases"})
_PHASE_REQUIRED = frozenset({"id", "name", "capability", "tasks", "dependencies"})
_PHASE_OPTIONAL = frozenset({"concurrent"})
_TASK_KEYS = frozenset({"id", "description", "capability", "input", "output"})


@dataclass(frozen=True, slots=True)
class GraphValidationIssue:
    """Single field-level problem found in a task graph document."""

    path: str
    message: str


class GraphValidationError(ValueError):
    """Raised when a task graph document is rejected at submission."""

    def __init__(self, issues: Sequence[GraphValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid task graph:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[GraphValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(GraphValidationIssue(path=path, message=message))

    def items(self) -> tuple[GraphValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def load_document(path: str | Path) -> dict[str, object]:
    """
    Read a task graph document from disk.

    YAML is a superset of JSON, so both ``.json`` and ``.yaml``/``.yml`` files are parsed
    with ``yaml.safe_load``.
    """
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise GraphValidationError(
            [GraphValidationIssue(file_path.as_posix(), f"unable to read document: {exc}")]
        ) from exc
    return parse_document(text, source=file_path.as_posix())


def parse_document(text: str, *, source: str = "<document>") -> dict[str, object]:
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise GraphValidationError(
            [GraphValidationIssue(source, f"invalid YAML/JSON: {exc}")]
        ) from exc
    if not isinstance(payload, Mapping):
        raise GraphValidationError(
            [GraphValidationIssue(source, "document root must be an object")]
        )
    return {str(key): value for key, value in payload.items()}


def validate_document(document: object) -> tuple[GraphValidationIssue, ...]:
    """Return every field-level issue in ``document``; an empty tuple means valid."""
    issues = _IssueCollector()
    if not isinstance(document, Mapping):
        issues.add("$", f"expected object, got {type(document).__name__}")
        return issues.items()

    _reject_unknown_keys(document, "$", _DOCUMENT_KEYS, issues)
    _require_keys(document, "$", _DOCUMENT_KEYS, issues)
    if "id" in document:
        _check_declared_id(document["id"], "$.id", issues)
    if "title" in document:
        _check_text(document["title"], "$.title", issues)

    phases_raw = document.get("phases")
    if "phases" not in document:
        return issues.items()
    if not _is_list(phases_raw):
        issues.add("$.phases", "expected array")
        return issues.items()
    if not phases_raw:
        issues.add("$.phases", "must contain at least one phase")
        return issues.items()

    phase_tasks: dict[str, set[str]] = {}
    phase_ids: list[str | None] = []
    for index, phase_raw in enumerate(phases_raw):
        phase_id = _validate_phase_shape(phase_raw, f"$.phases[{index}]", issues)
        phase_ids.append(phase_id)
        if phase_id is None:
            continue
        if phase_id in phase_tasks:
            issues.add(f"$.phases[{index}].id", f"duplicate phase id {phase_id!r}")
            continue
        phase_tasks[phase_id] = _declared_task_ids(phase_raw)

    for index, phase_raw in enumerate(phases_raw):
        if not isinstance(phase_raw, Mapping):
            continue
        path = f"$.phases[{index}]"
        _validate_dependencies(phase_raw.get("dependencies"), path, phase_ids, issues)
        _validate_references(phase_raw, path, phase_ids[index], phase_tasks, issues)

    return issues.items()


def build_from_document(
    document: object,
    *,
    build_id: str | None = None,
    now: datetime | None = None,
) -> Build:
    """Validate ``document`` and construct a fresh pending :class:`Build`; all or nothing."""
    issues = validate_document(document)
    if issues:
        raise GraphValidationError(issues)
    assert isinstance(document, Mapping)

    timestamp = now if now is not None else datetime.now(tz=UTC)
    phases_raw = document["phases"]
    assert isinstance(phases_raw, Sequence)
    phase_index_by_id = {
        str(phase["id"]): index for index, phase in enumerate(phases_raw)  # type: ignore[index]
    }

    phases: list[Phase] = []
    for phase_raw in phases_raw:
        assert isinstance(phase_raw, Mapping)
        tasks = tuple(
            AtomicTask(
                id=task_raw["id"],
                description=task_raw["description"],
                capability=Capability(task_raw["capability"]),
                input=tuple(task_raw["input"]),
                output=tuple(task_raw["output"]),
            )
            for task_raw in phase_raw["tasks"]
        )
        phases.append(
            Phase(
                id=phase_raw["id"],
                name=phase_raw["name"],
                capability=Capability(phase_raw["capability"]),
                tasks=tasks,
                dependencies=tuple(
                    _dependency_index(item, phase_index_by_id)
                    for item in phase_raw["dependencies"]
                ),
                concurrent=bool(phase_raw.get("concurrent", False)),
            )
        )

    return Build(
        id=build_id if build_id is not None else ids.generate_build_id(),
        graph_id=str(document["id"]),
        title=str(document["title"]),
        phases=tuple(phases),
        created_at=timestamp,
        updated_at=timestamp,
    )


# ------------------------
# Internal helper routines
# ------------------------


def _validate_phase_shape(
    phase_raw: object, path: str, issues: _IssueCollector
) -> str | None:
    if not isinstance(phase_raw, Mapping):
        issues.add(path, f"expected object, got {type(phase_raw).__name__}")
        return None

    _reject_unknown_keys(phase_raw, path, _PHASE_REQUIRED | _PHASE_OPTIONAL, issues)
    _require_keys(phase_raw, path, _PHASE_REQUIRED, issues)
    phase_id = (
        _check_declared_id(phase_raw["id"], f"{path}.id", issues) if "id" in phase_raw else None
    )
    if "name" in phase_raw:
        _check_text(phase_raw["name"], f"{path}.name", issues)
    if "capability" in phase_raw:
        _check_capability(phase_raw["capability"], f"{path}.capability", issues)
    if "concurrent" in phase_raw and not isinstance(phase_raw["concurrent"], bool):
        issues.add(f"{path}.concurrent", "expected boolean")

    if "tasks" in phase_raw:
        tasks_raw = phase_raw["tasks"]
        if not _is_list(tasks_raw):
            issues.add(f"{path}.tasks", "expected array")
        elif not tasks_raw:
            issues.add(f"{path}.tasks", "must contain at least one task")
        else:
            seen: set[str] = set()
            for task_index, task_raw in enumerate(tasks_raw):
                task_path = f"{path}.tasks[{task_index}]"
                task_id = _validate_task_shape(task_raw, task_path, issues)
                if task_id is None:
                    continue
                if task_id in seen:
                    issues.add(f"{task_path}.id", f"duplicate task id {task_id!r} within phase")
                seen.add(task_id)
    return phase_id


def _validate_task_shape(task_raw: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(task_raw, Mapping):
        issues.add(path, f"expected object, got {type(task_raw).__name__}")
        return None

    _reject_unknown_keys(task_raw, path, _TASK_KEYS, issues)
    _require_keys(task_raw, path, _TASK_KEYS, issues)
    task_id = _check_declared_id(task_raw["id"], f"{path}.id", issues) if "id" in task_raw else None
    if "description" in task_raw:
        _check_text(task_raw["description"], f"{path}.description", issues)
    if "capability" in task_raw:
        _check_capability(task_raw["capability"], f"{path}.capability", issues)
    for key in ("input", "output"):
        if key in task_raw:
            _check_str_list(task_raw[key], f"{path}.{key}", issues)
    return task_id


def _validate_dependencies(
    raw: object,
    path: str,
    phase_ids: Sequence[str | None],
    issues: _IssueCollector,
) -> None:
    if raw is None:
        return
    if not _is_list(raw):
        issues.add(f"{path}.dependencies", "expected array")
        return

    known = {phase_id: index for index, phase_id in enumerate(phase_ids) if phase_id is not None}
    resolved: list[int] = []
    for dep_index, item in enumerate(raw):
        dep_path = f"{path}.dependencies[{dep_index}]"
        if isinstance(item, bool) or not isinstance(item, (int, str)):
            issues.add(dep_path, "expected phase index or phase id")
            continue
        if isinstance(item, int):
            if not 0 <= item < len(phase_ids):
                issues.add(dep_path, f"phase index {item} out of range (0..{len(phase_ids) - 1})")
                continue
            resolved.append(item)
        else:
            if item not in known:
                issues.add(dep_path, f"unknown phase id {item!r}")
                continue
            resolved.append(known[item])
    if len(set(resolved)) != len(resolved):
        issues.add(f"{path}.dependencies", "contains duplicate phases")


def _validate_references(
    phase_raw: Mapping[str, object],
    path: str,
    phase_id: str | None,
    phase_tasks: Mapping[str, set[str]],
    issues: _IssueCollector,
) -> None:
    tasks_raw = phase_raw.get("tasks")
    if phase_id is None or not _is_list(tasks_raw):
        return
    for task_index, task_raw in enumerate(tasks_raw):
        if not isinstance(task_raw, Mapping) or not _is_list(task_raw.get("input")):
            continue
        for ref_index, reference in enumerate(task_raw["input"]):
            if not isinstance(reference, str):
                continue
            ref_path = f"{path}.tasks[{task_index}].input[{ref_index}]"
            if TASK_REF_SEPARATOR in reference:
                target_phase, _, target_task = reference.partition(TASK_REF_SEPARATOR)
                if target_task not in phase_tasks.get(target_phase, set()):
                    issues.add(ref_path, f"references unknown task {reference!r}")
            elif reference not in phase_tasks.get(phase_id, set()):
                issues.add(ref_path, f"references unknown task {reference!r} in phase {phase_id!r}")
            elif reference == task_raw.get("id"):
                issues.add(ref_path, "task must not reference itself")


def _declared_task_ids(phase_raw: object) -> set[str]:
    if not isinstance(phase_raw, Mapping) or not _is_list(phase_raw.get("tasks")):
        return set()
    return {
        task["id"]
        for task in phase_raw["tasks"]
        if isinstance(task, Mapping) and isinstance(task.get("id"), str)
    }


def _dependency_index(item: object, phase_index_by_id: Mapping[str, int]) -> int:
    if isinstance(item, int):
        return item
    return phase_index_by_id[str(item)]


def _reject_unknown_keys(
    payload: Mapping[str, object],
    path: str,
    allowed: frozenset[str],
    issues: _IssueCollector,
) -> None:
    for key in sorted(str(item) for item in payload if item not in allowed):
        issues.add(f"{path}.{key}", "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    path: str,
    required: frozenset[str],
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(f"{path}.{key}", "missing required field")


def _check_declared_id(value: object, path: str, issues: _IssueCollector) -> str | None:
    try:
        ids.validate_declared_id(value)  # type: ignore[arg-type]
    except ValueError as exc:
        issues.add(path, str(exc))
        return None
    assert isinstance(value, str)
    return value


def _check_text(value: object, path: str, issues: _IssueCollector) -> None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
    elif not value.strip():
        issues.add(path, "must not be empty")


def _check_capability(value: object, path: str, issues: _IssueCollector) -> None:
    if isinstance(value, str):
        try:
            Capability(value)
        except ValueError:
            pass
        else:
            return
    allowed = ", ".join(item.value for item in Capability)
    issues.add(path, f"unknown capability {value!r}; expected one of: {allowed}")


def _check_str_list(value: object, path: str, issues: _IssueCollector) -> None:
    if not _is_list(value):
        issues.add(path, "expected array of strings")
        return
    seen: set[str] = set()
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            issues.add(f"{path}[{index}]", "expected non-empty string")
            continue
        if item in seen:
            issues.add(f"{path}[{index}]", f"duplicate entry {item!r}")
        seen.add(item)


def _is_list(value: object) -> bool:
    return isinstance(value, (list, tuple))


__all__ = [
    "GraphValidationError",
    "GraphValidationIssue",
    "build_from_document",
    "load_document",
    "parse_document",
    "validate_document",
]
