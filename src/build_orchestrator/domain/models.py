"""
Build, phase and task models with their lifecycle tables.

Models validate and normalize every field on construction, so an instance that
exists is well formed. ``to_dict``/``from_dict`` give the canonical JSON shape
stored in checkpoints and the builds table.
"""

from __future__ import annotations

import copy
import json
import math
from collections.abc import Callable, Iterator, Mapping, Set
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum, StrEnum
from typing import Final, NoReturn, TypeVar, cast

from build_orchestrator.constants import BUILD_SCHEMA_VERSION, MAX_DISPATCHES_PER_TASK
from build_orchestrator.domain import ids as domain_ids
from build_orchestrator.utils.hashing import canonical_json

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_JSON_DEPTH = 16
_MAX_JSON_COLLECTION = 512

TASK_REF_SEPARATOR: Final[str] = "/"


class Capability(StrEnum):
    """Closed set of agent capabilities a phase or task may require."""

    PLANNING = "planning"
    ARCHITECTURE = "architecture"
    DATA_MODEL = "data_model"
    BACKEND = "backend"
    FRONTEND = "frontend"
    TESTING = "testing"
    SECURITY = "security"
    INTEGRATION = "integration"
    DOCUMENTATION = "documentation"
    PERFORMANCE = "performance"
    DEPLOYMENT = "deployment"
    RESEARCH = "research"
    REVIEW = "review"


class BuildStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    BLOCKED = "blocked"
    ESCALATED = "escalated"
    DONE = "done"


class EscalationLevel(StrEnum):
    NONE = "none"
    AGENT_RETRY = "agent_retry"
    BLOCKED = "blocked"
    ESCALATED = "escalated"


class PhaseStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    BLOCKED = "blocked"


class TaskStatus(StrEnum):
    QUEUED = "queued"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    VALIDATED = "validated"


class EscalationTrigger(StrEnum):
    """Conditions that stop automated progress on a build."""

    RETRY_EXHAUSTED = "retry_exhausted"
    CYCLE_DETECTED = "cycle_detected"
    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    VALIDATION_IMPOSSIBLE = "validation_impossible"
    PHASE_REPEATED_FAILURE = "phase_repeated_failure"
    EXTERNAL_DEPENDENCY = "external_dependency"
    BUDGET_EXHAUSTED = "budget_exhausted"


TERMINAL_BUILD_STATUSES: Final[frozenset[BuildStatus]] = frozenset(
    {BuildStatus.DONE, BuildStatus.ESCALATED}
)

_TASK_TRANSITIONS: Final[Mapping[TaskStatus, frozenset[TaskStatus]]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.ASSIGNED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.VALIDATED, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.ASSIGNED}),
    TaskStatus.VALIDATED: frozenset(),
}

_BUILD_TRANSITIONS: Final[Mapping[BuildStatus, frozenset[BuildStatus]]] = {
    BuildStatus.PENDING: frozenset(
        {BuildStatus.RUNNING, BuildStatus.BLOCKED, BuildStatus.ESCALATED}
    ),
    BuildStatus.RUNNING: frozenset(
        {BuildStatus.BLOCKED, BuildStatus.ESCALATED, BuildStatus.DONE}
    ),
    BuildStatus.BLOCKED: frozenset({BuildStatus.PENDING, BuildStatus.ESCALATED}),
    BuildStatus.ESCALATED: frozenset({BuildStatus.PENDING}),
    BuildStatus.DONE: frozenset(),
}

_ESCALATION_ORDER: Final[tuple[EscalationLevel, ...]] = (
    EscalationLevel.NONE,
    EscalationLevel.AGENT_RETRY,
    EscalationLevel.BLOCKED,
    EscalationLevel.ESCALATED,
)


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed by the lifecycle tables."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity}: illegal transition {current!r} -> {target!r}")


def can_transition_task(current: TaskStatus, target: TaskStatus) -> bool:
    return target in _TASK_TRANSITIONS[current]


def can_transition_build(current: BuildStatus, target: BuildStatus) -> bool:
    return target in _BUILD_TRANSITIONS[current]


def escalation_rank(level: EscalationLevel) -> int:
    return _ESCALATION_ORDER.index(level)


class CanonicalModel:
    """Dict and JSON round-tripping for the dataclass models below."""

    def to_dict(self) -> dict[str, JSONValue]:
        return cast("dict[str, JSONValue]", _to_json(self, type(self).__name__, models=True))

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _type_error(cls.__name__, "JSON string", raw)
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        return cls.from_dict(_as_mapping(document, cls.__name__))

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        """Rebuild from ``to_dict`` output; ``__post_init__`` re-validates every field."""
        return cls(**_record_for(cls, data))


@dataclass(frozen=True, slots=True)
class TaskRef:
    """Address of one task inside a build: phase position plus task id."""

    phase_index: int
    task_id: str


@dataclass(slots=True)
class AtomicTask(CanonicalModel):
    id: str
    description: str
    capability: Capability
    input: tuple[str, ...] = ()
    output: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.QUEUED
    attempts: int = 0
    escalation: EscalationLevel = EscalationLevel.NONE
    last_error: str | None = None
    output_value: dict[str, JSONValue] = field(default_factory=dict)
    gate_errors: tuple[str, ...] = ()
    cost_usd: float = 0.0

    def __post_init__(self) -> None:
        self.id = _checked_id(
            domain_ids.validate_declared_id, _as_str(self.id, "AtomicTask.id"), "AtomicTask.id"
        )
        self.description = _as_str(self.description, "AtomicTask.description")
        self.capability = _as_enum(Capability, self.capability, "AtomicTask.capability")
        self.input = _as_str_tuple(self.input, "AtomicTask.input", unique=True)
        self.output = _as_str_tuple(self.output, "AtomicTask.output", unique=True)
        self.status = _as_enum(TaskStatus, self.status, "AtomicTask.status")
        self.attempts = _as_int(self.attempts, "AtomicTask.attempts", minimum=0)
        self.escalation = _as_enum(EscalationLevel, self.escalation, "AtomicTask.escalation")
        self.last_error = _as_optional_str(self.last_error, "AtomicTask.last_error")
        self.output_value = _as_json_object(self.output_value, "AtomicTask.output_value")
        # Gate messages may legitimately repeat across attempts.
        self.gate_errors = _as_str_tuple(self.gate_errors, "AtomicTask.gate_errors", unique=False)
        self.cost_usd = _as_float(self.cost_usd, "AtomicTask.cost_usd", minimum=0.0)

    @property
    def dispatchable(self) -> bool:
        """True when the task may be handed to an agent by its own status alone."""
        if self.status is TaskStatus.QUEUED:
            return True
        return (
            self.status is TaskStatus.FAILED
            and escalation_rank(self.escalation) <= escalation_rank(EscalationLevel.AGENT_RETRY)
            and self.attempts < MAX_DISPATCHES_PER_TASK
        )

    def transition(self, target: TaskStatus) -> None:
        target = _as_enum(TaskStatus, target, "AtomicTask.status")
        if not can_transition_task(self.status, target):
            raise InvalidTransitionError(f"task {self.id}", self.status.value, target.value)
        self.status = target


@dataclass(slots=True)
class Phase(CanonicalModel):
    id: str
    name: str
    capability: Capability
    tasks: tuple[AtomicTask, ...]
    dependencies: tuple[int, ...] = ()
    concurrent: bool = False
    status: PhaseStatus = PhaseStatus.PENDING
    failed_task_ids: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.id = _checked_id(
            domain_ids.validate_declared_id, _as_str(self.id, "Phase.id"), "Phase.id"
        )
        self.name = _as_str(self.name, "Phase.name")
        self.capability = _as_enum(Capability, self.capability, "Phase.capability")
        self.tasks = _unique_members(self.tasks, "Phase.tasks", AtomicTask, noun="task")

        dependencies = tuple(
            _as_int(item, path, minimum=0)
            for item, path in _indexed(self.dependencies, "Phase.dependencies")
        )
        if len(set(dependencies)) != len(dependencies):
            _fail("Phase.dependencies", "contains duplicate values")
        self.dependencies = dependencies

        self.concurrent = _as_bool(self.concurrent, "Phase.concurrent")
        self.status = _as_enum(PhaseStatus, self.status, "Phase.status")
        self.failed_task_ids = _as_str_tuple(
            self.failed_task_ids, "Phase.failed_task_ids", unique=True
        )

    def task(self, task_id: str) -> AtomicTask:
        return self.tasks[self.task_index(task_id)]

    def task_index(self, task_id: str) -> int:
        for index, task in enumerate(self.tasks):
            if task.id == task_id:
                return index
        raise KeyError(f"phase {self.id} has no task {task_id!r}")

    @property
    def all_validated(self) -> bool:
        return all(task.status is TaskStatus.VALIDATED for task in self.tasks)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Phase:
        record = _record_for(cls, data)
        record["tasks"] = _nested(AtomicTask, record["tasks"], "Phase.tasks")
        return cls(**record)


@dataclass(slots=True)
class Build(CanonicalModel):
    """Top-level unit of work; mutated only through the orchestrator commit path."""

    id: str
    graph_id: str
    title: str
    phases: tuple[Phase, ...]
    created_at: datetime
    updated_at: datetime
    status: BuildStatus = BuildStatus.PENDING
    current_phase_index: int = 0
    retry_count: int = 0
    escalation_level: EscalationLevel = EscalationLevel.NONE
    last_error: str | None = None
    cost_spent_usd: float = 0.0
    elapsed_seconds: float = 0.0
    schema_version: int = BUILD_SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = _as_int(self.schema_version, "Build.schema_version", minimum=1)
        self.id = _checked_id(
            domain_ids.validate_build_id, _as_str(self.id, "Build.id"), "Build.id"
        )
        self.graph_id = _checked_id(
            domain_ids.validate_declared_id,
            _as_str(self.graph_id, "Build.graph_id"),
            "Build.graph_id",
        )
        self.title = _as_str(self.title, "Build.title")

        self.phases = _unique_members(self.phases, "Build.phases", Phase, noun="phase")
        last = len(self.phases) - 1
        for index, phase in enumerate(self.phases):
            out_of_range = [dep for dep in phase.dependencies if dep > last]
            if out_of_range:
                _fail(
                    f"Build.phases[{index}].dependencies",
                    f"phase index {out_of_range[0]} out of range (0..{last})",
                )

        self.created_at = _as_datetime(self.created_at, "Build.created_at")
        self.updated_at = _as_datetime(self.updated_at, "Build.updated_at")
        if self.updated_at < self.created_at:
            _fail("Build.updated_at", "must be >= Build.created_at")

        self.status = _as_enum(BuildStatus, self.status, "Build.status")
        # len(phases) means every phase has passed.
        self.current_phase_index = _as_int(
            self.current_phase_index, "Build.current_phase_index", minimum=0
        )
        if self.current_phase_index > len(self.phases):
            _fail("Build.current_phase_index", f"must be <= {len(self.phases)}")
        self.retry_count = _as_int(self.retry_count, "Build.retry_count", minimum=0)
        self.escalation_level = _as_enum(
            EscalationLevel, self.escalation_level, "Build.escalation_level"
        )
        self.last_error = _as_optional_str(self.last_error, "Build.last_error")
        self.cost_spent_usd = _as_float(self.cost_spent_usd, "Build.cost_spent_usd", minimum=0.0)
        self.elapsed_seconds = _as_float(
            self.elapsed_seconds, "Build.elapsed_seconds", minimum=0.0
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BUILD_STATUSES

    def transition(self, target: BuildStatus) -> None:
        target = _as_enum(BuildStatus, target, "Build.status")
        if not can_transition_build(self.status, target):
            raise InvalidTransitionError(f"build {self.id}", self.status.value, target.value)
        self.status = target

    def raise_escalation(self, level: EscalationLevel) -> None:
        """Move the escalation level forward; lower levels are ignored."""
        if escalation_rank(level) > escalation_rank(self.escalation_level):
            self.escalation_level = level

    def task(self, ref: TaskRef) -> AtomicTask:
        return self.phases[ref.phase_index].task(ref.task_id)

    def iter_tasks(self) -> Iterator[tuple[TaskRef, AtomicTask]]:
        for phase_index, phase in enumerate(self.phases):
            for task in phase.tasks:
                yield TaskRef(phase_index, task.id), task

    def phase_index(self, phase_id: str) -> int:
        for index, phase in enumerate(self.phases):
            if phase.id == phase_id:
                return index
        raise KeyError(f"build {self.id} has no phase {phase_id!r}")

    def resolve_input(self, ref: TaskRef, reference: str) -> TaskRef | None:
        """Resolve one ``input`` entry of ``ref`` to a task address, or ``None``."""
        return resolve_task_reference(self.phases, ref.phase_index, reference)

    def snapshot(self) -> Build:
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Build:
        record = _record_for(cls, data)
        record["phases"] = _nested(Phase, record["phases"], "Build.phases")
        return cls(**record)


@dataclass(slots=True)
class EscalationRecord(CanonicalModel):
    """Operator-facing record written when a build stops automated progress."""

    id: str
    build_id: str
    trigger: EscalationTrigger
    reason: str
    last_error: str
    required_action: str
    timestamp: datetime
    task_id: str | None = None
    phase_id: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_note: str | None = None

    def __post_init__(self) -> None:
        self.id = _checked_id(
            domain_ids.validate_escalation_id,
            _as_str(self.id, "EscalationRecord.id"),
            "EscalationRecord.id",
        )
        self.build_id = _checked_id(
            domain_ids.validate_build_id,
            _as_str(self.build_id, "EscalationRecord.build_id"),
            "EscalationRecord.build_id",
        )
        self.trigger = _as_enum(EscalationTrigger, self.trigger, "EscalationRecord.trigger")
        self.reason = _as_str(self.reason, "EscalationRecord.reason")
        self.last_error = _as_str(self.last_error, "EscalationRecord.last_error")
        self.required_action = _as_str(self.required_action, "EscalationRecord.required_action")
        self.timestamp = _as_datetime(self.timestamp, "EscalationRecord.timestamp")
        self.task_id = _as_optional_str(self.task_id, "EscalationRecord.task_id")
        self.phase_id = _as_optional_str(self.phase_id, "EscalationRecord.phase_id")
        if self.resolved_at is not None:
            self.resolved_at = _as_datetime(self.resolved_at, "EscalationRecord.resolved_at")
            if self.resolved_at < self.timestamp:
                _fail("EscalationRecord.resolved_at", "must be >= EscalationRecord.timestamp")
        self.resolved_by = _as_optional_str(self.resolved_by, "EscalationRecord.resolved_by")
        self.resolution_note = _as_optional_str(
            self.resolution_note, "EscalationRecord.resolution_note"
        )

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


def resolve_task_reference(
    phases: tuple[Phase, ...] | list[Phase],
    phase_index: int,
    reference: str,
) -> TaskRef | None:
    """Resolve ``phase_id/task_id`` or a same-phase ``task_id`` to a :class:`TaskRef`."""
    if TASK_REF_SEPARATOR in reference:
        phase_id, _, task_id = reference.partition(TASK_REF_SEPARATOR)
        for index, phase in enumerate(phases):
            if phase.id == phase_id:
                if any(task.id == task_id for task in phase.tasks):
                    return TaskRef(index, task_id)
                return None
        return None
    owner = phases[phase_index]
    if any(task.id == reference for task in owner.tasks):
        return TaskRef(phase_index, reference)
    return None


def iso_utc(value: datetime) -> str:
    """``2026-02-01T12:00:00.000000Z``: the one timestamp format persisted and logged."""
    moment = _as_datetime(value, "datetime")
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _type_error(path: str, expected: str, value: object) -> NoReturn:
    _fail(path, f"expected {expected}, got {type(value).__name__}")


def _check_fields(
    value: object,
    path: str,
    *,
    required: Set[str],
    optional: Set[str] = frozenset(),
) -> dict[str, object]:
    """Shallow copy of a serialized record after checking its key set."""
    record = dict(_as_mapping(value, path))
    for key in record:
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
    unknown = sorted(record.keys() - required - optional)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")
    missing = sorted(required - record.keys())
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return record


def _checked_id(validate: Callable[[str], None], value: str, path: str) -> str:
    try:
        validate(value)
    except ValueError as exc:
        _fail(path, str(exc))
    return value


def _record_for(model_type: type[CanonicalModel], data: object) -> dict[str, object]:
    """Serialized record checked against the dataclass fields of ``model_type``."""
    required: set[str] = set()
    optional: set[str] = set()
    for model_field in fields(model_type):
        defaulted = model_field.default is not MISSING or model_field.default_factory is not MISSING
        (optional if defaulted else required).add(model_field.name)
    return _check_fields(data, model_type.__name__, required=required, optional=optional)


def _nested(model_type: type[TModel], value: object, path: str) -> tuple[TModel, ...]:
    return tuple(
        item if isinstance(item, model_type) else model_type.from_dict(_as_mapping(item, item_path))
        for item, item_path in _indexed(value, path)
    )


def _unique_members(
    value: object, path: str, member_type: type[TModel], *, noun: str
) -> tuple[TModel, ...]:
    members = tuple(_as_list(value, path))
    if not members:
        _fail(path, "must not be empty")
    seen: set[str] = set()
    for index, member in enumerate(members):
        if not isinstance(member, member_type):
            _fail(f"{path}[{index}]", f"must be {member_type.__name__}")
        member_id = member.id  # type: ignore[attr-defined]
        if member_id in seen:
            _fail(f"{path}[{index}].id", f"duplicate {noun} id {member_id!r}")
        seen.add(member_id)
    return members


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _type_error(path, "object", value)
    return value


def _as_list(value: object, path: str) -> list[object]:
    if not isinstance(value, (list, tuple)):
        _type_error(path, "array", value)
    return list(value)


def _indexed(value: object, path: str) -> Iterator[tuple[object, str]]:
    for index, item in enumerate(_as_list(value, path)):
        yield item, f"{path}[{index}]"


def _as_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        _type_error(path, "string", value)
    text = value.strip()
    if not text:
        _fail(path, "must not be empty")
    if len(text) > _MAX_TEXT:
        _fail(path, f"must be <= {_MAX_TEXT} characters")
    return text


def _as_optional_str(value: object, path: str) -> str | None:
    return None if value is None else _as_str(value, path)


def _as_str_tuple(value: object, path: str, *, unique: bool) -> tuple[str, ...]:
    items = _as_list(value, path)
    if len(items) > _MAX_JSON_COLLECTION:
        _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")
    texts = tuple(_as_str(item, item_path) for item, item_path in _indexed(items, path))
    if unique and len(set(texts)) != len(texts):
        _fail(path, "contains duplicate values")
    return texts


def _as_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        _type_error(path, "boolean", value)
    return value


def _at_least(value: float, path: str, minimum: float | None) -> None:
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    # bool is an int subclass; True is not a retry count.
    if isinstance(value, bool) or not isinstance(value, int):
        _type_error(path, "integer", value)
    _at_least(value, path, minimum)
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _type_error(path, "number", value)
    number = float(value)
    if not math.isfinite(number):
        _fail(path, "must be finite")
    _at_least(number, path, minimum)
    return number


def _as_datetime(value: object, path: str) -> datetime:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        try:
            moment = datetime.fromisoformat(value)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _type_error(path, "datetime or ISO-8601 string", value)
    if moment.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return moment.astimezone(UTC)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _type_error(path, "string enum value", value)
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(sorted(member.value for member in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {choices}")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    if not isinstance(value, Mapping):
        _type_error(path, "JSON object", value)
    return cast("dict[str, JSONValue]", _to_json(value, path, models=False))


def _to_json(value: object, path: str, *, models: bool, depth: int = 0) -> JSONValue:
    """
    Plain JSON data for ``value``.

    With ``models`` set, dataclasses and datetimes are converted as well; that is
    how models serialize themselves. Without it only JSON-native values pass, and
    nesting and collection sizes are bounded; agent output and event payloads
    go through this path.
    """
    if not models and depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")
    if isinstance(value, Enum):
        if not isinstance(value.value, str):
            _fail(path, "enum value must be string")
        return value.value
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Mapping):
        if not models and len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"object size exceeds {_MAX_JSON_COLLECTION}")
        converted: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            converted[key] = _to_json(item, f"{path}.{key}", models=models, depth=depth + 1)
        return converted
    if isinstance(value, (list, tuple)):
        if not models and len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
        return [
            _to_json(item, f"{path}[{index}]", models=models, depth=depth + 1)
            for index, item in enumerate(value)
        ]
    if models and isinstance(value, datetime):
        return iso_utc(value)
    if models and is_dataclass(value) and not isinstance(value, type):
        return {
            model_field.name: _to_json(
                getattr(value, model_field.name),
                f"{path}.{model_field.name}",
                models=True,
                depth=depth + 1,
            )
            for model_field in fields(value)
        }
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


__all__ = [
    "TASK_REF_SEPARATOR",
    "TERMINAL_BUILD_STATUSES",
    "AtomicTask",
    "Build",
    "BuildStatus",
    "CanonicalModel",
    "Capability",
    "EscalationLevel",
    "EscalationRecord",
    "EscalationTrigger",
    "InvalidTransitionError",
    "JSONValue",
    "Phase",
    "PhaseStatus",
    "TaskRef",
    "TaskStatus",
    "can_transition_build",
    "can_transition_task",
    "escalation_rank",
    "iso_utc",
    "resolve_task_reference",
]
