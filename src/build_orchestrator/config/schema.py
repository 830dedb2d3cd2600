"""
Configuration schema and validation.

``OrchestratorConfig`` is the single options structure; every other module reads
its settings through it. A config is a nested mapping of sections, each section
a fixed set of fields. Validation walks a table of field checks, collects every
problem as a ``ConfigValidationIssue`` (dotted field path plus message) and only
returns a normalized config when there are none.

Credentials never live in the config itself. Unknown keys that look like secrets
are rejected with a hint to reference an environment variable instead, and
``redact_config`` masks them before a config is logged or dumped.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from build_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_HOOK_PRIORITY,
    ESCALATIONS_DIR,
    HOOK_PHASE_NAMES,
    LOGS_DIR,
    MAX_RETRIES_PER_TASK,
    STATE_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

GATE_POLICIES: Final[tuple[str, ...]] = ("aggregate", "fail_fast")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
FEATURE_NAMES: Final[tuple[str, ...]] = (
    "agent_memory",
    "audit_trail",
    "cost_tracking",
    "handoff_notes",
)
REDACTED_VALUE: Final[str] = "<redacted>"

# Capability names accepted as keys in the per-capability maps of ``[gates]``.
_CAPABILITY_NAMES: Final[frozenset[str]] = frozenset(
    {
        "planning",
        "architecture",
        "data_model",
        "backend",
        "frontend",
        "testing",
        "security",
        "integration",
        "documentation",
        "performance",
        "deployment",
        "research",
        "review",
    }
)

_WORD_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[^a-z0-9]+")

# Whole words of a snake_cased key, and fragments matched anywhere in it.
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"apikey", "credential", "credentials", "passwd", "private", "token"}
)
_SECRET_FRAGMENTS: Final[tuple[str, ...]] = (
    "access_token",
    "api_key",
    "password",
    "private_key",
    "secret",
)

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "escalation_dir"),
    ("paths", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class ExecutionConfig(TypedDict):
    max_concurrency: int
    stall_timeout_seconds: float
    hook_timeout_seconds: float
    gate_timeout_seconds: float


class RetryConfig(TypedDict):
    max_retries_per_task: int
    phase_failure_limit: int


class GatesConfig(TypedDict):
    default_policy: Literal["aggregate", "fail_fast"]
    policy_by_capability: dict[str, Literal["aggregate", "fail_fast"]]
    config_by_capability: dict[str, dict[str, Any]]


class BudgetsConfig(TypedDict):
    max_wall_clock_seconds: float
    max_cost_usd: float


class CheckpointsConfig(TypedDict):
    interval_seconds: float
    keep_last: int
    max_age_days: int


class PathsConfig(TypedDict):
    state_db: str
    escalation_dir: str
    log_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_to_stdout: bool
    redact_secrets: bool


class AuditTrailFeature(TypedDict):
    enabled: bool
    priority: int
    phases: list[str]


class CostTrackingFeature(TypedDict):
    enabled: bool
    priority: int
    phases: list[str]
    warn_threshold_usd: float


class AgentMemoryFeature(TypedDict):
    enabled: bool
    priority: int
    phases: list[str]
    max_entries: int


class HandoffNotesFeature(TypedDict):
    enabled: bool
    priority: int
    phases: list[str]
    max_notes: int


class FeaturesConfig(TypedDict):
    audit_trail: AuditTrailFeature
    cost_tracking: CostTrackingFeature
    agent_memory: AgentMemoryFeature
    handoff_notes: HandoffNotesFeature


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    execution: ExecutionConfig
    retry: RetryConfig
    gates: GatesConfig
    budgets: BudgetsConfig
    checkpoints: CheckpointsConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    features: FeaturesConfig


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "execution": {
        "max_concurrency": 4,
        "stall_timeout_seconds": 300.0,
        "hook_timeout_seconds": 5.0,
        "gate_timeout_seconds": 120.0,
    },
    "retry": {
        "max_retries_per_task": MAX_RETRIES_PER_TASK,
        "phase_failure_limit": 2,
    },
    "gates": {
        "default_policy": "fail_fast",
        "policy_by_capability": {},
        "config_by_capability": {},
    },
    "budgets": {
        "max_wall_clock_seconds": 0.0,
        "max_cost_usd": 0.0,
    },
    "checkpoints": {
        "interval_seconds": 30.0,
        "keep_last": 20,
        "max_age_days": 0,
    },
    "paths": {
        "state_db": f"{STATE_DIR.as_posix()}/build_orchestrator.sqlite",
        "escalation_dir": ESCALATIONS_DIR.as_posix(),
        "log_dir": LOGS_DIR.as_posix(),
    },
    "observability": {
        "log_level": "INFO",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "features": {
        "audit_trail": {
            "enabled": True,
            "priority": 10,
            "phases": list(HOOK_PHASE_NAMES),
        },
        "cost_tracking": {
            "enabled": True,
            "priority": 20,
            "phases": ["after-task", "on-task-error", "build-complete"],
            "warn_threshold_usd": 0.0,
        },
        "handoff_notes": {
            "enabled": True,
            "priority": 30,
            "phases": ["before-task", "on-handoff"],
            "max_notes": 20,
        },
        "agent_memory": {
            "enabled": False,
            "priority": DEFAULT_HOOK_PRIORITY,
            "phases": ["before-task", "after-task"],
            "max_entries": 50,
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Outcome of ``validate_config``; ``config`` is set only when ``issues`` is empty."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """A config failed validation; ``issues`` lists every problem found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _IssueCollector:
    __slots__ = ("_found",)

    def __init__(self) -> None:
        self._found: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._found.append(ConfigValidationIssue(path=path, message=message))

    def reject(self, path: str, message: str) -> None:
        """Record an issue; returns ``None`` so field checks can ``return issues.reject(...)``."""
        self.add(path, message)

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._found)

    def __bool__(self) -> bool:
        return bool(self._found)


# A field check returns the normalized value, or None after recording an issue.
_Check = Callable[[object, str, _IssueCollector], Any]


def default_config() -> OrchestratorConfig:
    """Fresh, independently mutable copy of ``DEFAULT_CONFIG``."""
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Operator hint for a config written against another schema version."""
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade the config file to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the build-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """
    Deep-merge ``overlay`` onto a copy of ``base``.

    Nested mappings merge key by key; any other overlay value (lists included)
    replaces what was there. Neither argument is mutated.
    """
    return _overlay(_plain(base), overlay)


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    issues = _IssueCollector()
    normalized = _CONFIG_SHAPE(config, "", issues)
    if normalized is None or issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Normalized ``config``; raises ``ConfigValidationError`` listing every issue."""
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Key-sorted copy of ``config`` with sensitive values replaced by ``REDACTED_VALUE``."""
    if not isinstance(config, Mapping):
        return {}
    return _redacted(config)


def is_sensitive_key(key: str) -> bool:
    """
    True when ``key`` names something that looks like a credential.

    ``clientSecret``, ``api-key`` and ``db_password`` all match. Keys ending in
    ``_env`` hold the *name* of an environment variable and never match.
    """
    words = _snake_case(key)
    if words.endswith("_env"):
        return False
    if any(fragment in words for fragment in _SECRET_FRAGMENTS):
        return True
    return not _SECRET_WORDS.isdisjoint(words.split("_"))


# --- field checks ---------------------------------------------------------------------------


def _type_name(value: object) -> str:
    return type(value).__name__


def _mapping(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        return issues.reject(path, f"expected object, got {_type_name(value)}")
    payload: dict[str, object] = {}
    for key, item in value.items():
        if isinstance(key, str):
            payload[key] = item
        else:
            issues.add(path, f"object key must be string, got {_type_name(key)}")
    return payload


def _boolean(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    return issues.reject(path, f"expected boolean, got {_type_name(value)}")


def _text(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        return issues.reject(path, f"expected string, got {_type_name(value)}")
    stripped = value.strip()
    return stripped or issues.reject(path, "must not be empty")


def _path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    text = _text(value, path, issues)
    if text is not None and "\x00" in text:
        return issues.reject(path, "must not contain NUL bytes")
    return text


def _integer(minimum: int | None = None) -> _Check:
    def check(value: object, path: str, issues: _IssueCollector) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            return issues.reject(path, f"expected integer, got {_type_name(value)}")
        if minimum is not None and value < minimum:
            return issues.reject(path, f"must be >= {minimum}")
        return value

    return check


def _number(*, minimum: float | None = None, above: float | None = None) -> _Check:
    def check(value: object, path: str, issues: _IssueCollector) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return issues.reject(path, f"expected number, got {_type_name(value)}")
        number = float(value)
        if not math.isfinite(number):
            return issues.reject(path, "must be finite")
        if minimum is not None and number < minimum:
            return issues.reject(path, f"must be >= {minimum}")
        if above is not None and number <= above:
            return issues.reject(path, f"must be > {above}")
        return number

    return check


def _choice(options: Sequence[str]) -> _Check:
    def check(value: object, path: str, issues: _IssueCollector) -> str | None:
        text = _text(value, path, issues)
        if text is None or text in options:
            return text
        expected = ", ".join(sorted(options))
        return issues.reject(path, f"invalid value {text!r}; expected one of: {expected}")

    return check


_hook_phase = _choice(HOOK_PHASE_NAMES)
_gate_policy = _choice(GATE_POLICIES)


def _phase_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        return issues.reject(path, f"expected array, got {_type_name(value)}")
    phases: list[str] = []
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        phase = _hook_phase(item, item_path, issues)
        if phase is None:
            return None
        if phase in phases:
            return issues.reject(item_path, f"duplicate phase {phase!r}")
        phases.append(phase)
    return phases


def _policy_map(value: object, path: str, issues: _IssueCollector) -> dict[str, str] | None:
    payload = _mapping(value, path, issues)
    if payload is None:
        return None
    policies: dict[str, str] = {}
    for capability, raw in sorted(payload.items()):
        entry_path = _join(path, capability)
        if capability not in _CAPABILITY_NAMES:
            issues.add(entry_path, "unknown capability")
            continue
        policy = _gate_policy(raw, entry_path, issues)
        if policy is not None:
            policies[capability] = policy
    return policies


def _capability_settings(
    value: object, path: str, issues: _IssueCollector
) -> dict[str, dict[str, Any]] | None:
    """Free-form gate settings per capability; only ``acceptance_criteria`` has a shape."""
    payload = _mapping(value, path, issues)
    if payload is None:
        return None
    settings: dict[str, dict[str, Any]] = {}
    for capability, raw in sorted(payload.items()):
        entry_path = _join(path, capability)
        if capability not in _CAPABILITY_NAMES:
            issues.add(entry_path, "unknown capability")
            continue
        entry = _mapping(raw, entry_path, issues)
        if entry is None:
            continue
        for key in sorted(key for key in entry if is_sensitive_key(key)):
            issues.add(_join(entry_path, key), _unknown_key_message(key))
        normalized = _plain(entry)
        if "acceptance_criteria" in entry:
            criteria_path = _join(entry_path, "acceptance_criteria")
            normalized["acceptance_criteria"] = _criteria(
                entry["acceptance_criteria"], criteria_path, issues
            )
        settings[capability] = normalized
    return settings


def _criteria(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)) or not value:
        return issues.reject(path, "must be a non-empty list of output names")
    names: list[str] = []
    for index, item in enumerate(value):
        name = _text(item, f"{path}[{index}]", issues)
        if name is not None:
            names.append(name)
    return names


def _schema_version(value: object, path: str, issues: _IssueCollector) -> int | None:
    version = _integer(minimum=1)(value, path, issues)
    if version is not None and version != ConfigSchemaVersion:
        issues.add(path, migration_guidance(version))
    return version


def _retry_bound(value: object, path: str, issues: _IssueCollector) -> int | None:
    bound = _integer()(value, path, issues)
    if bound is not None and bound != MAX_RETRIES_PER_TASK:
        return issues.reject(path, f"retry bound is fixed at {MAX_RETRIES_PER_TASK}")
    return bound


def _unknown_key_message(key: str) -> str:
    if is_sensitive_key(key):
        return "embedded secret values are forbidden; use an *_env key with an env var name"
    return "unknown field"


def _section(fields: Mapping[str, _Check]) -> _Check:
    """Check for a mapping holding exactly ``fields``; every field is required."""

    def check(value: object, path: str, issues: _IssueCollector) -> dict[str, Any] | None:
        payload = _mapping(value, path or "<root>", issues)
        if payload is None:
            return None
        for key in sorted(payload.keys() - fields.keys()):
            issues.add(_join(path, key), _unknown_key_message(key))
        normalized: dict[str, Any] = {}
        for key, field in fields.items():
            field_path = _join(path, key)
            if key not in payload:
                issues.add(field_path, "missing required field")
                continue
            parsed = field(payload[key], field_path, issues)
            if parsed is not None:
                normalized[key] = parsed
        return normalized

    return check


def _feature(**extras: _Check) -> _Check:
    return _section({"enabled": _boolean, "priority": _integer(), "phases": _phase_list, **extras})


_CONFIG_SHAPE: Final[_Check] = _section(
    {
        "meta": _section({"schema_version": _schema_version}),
        "execution": _section(
            {
                "max_concurrency": _integer(minimum=1),
                "stall_timeout_seconds": _number(above=0.0),
                "hook_timeout_seconds": _number(above=0.0),
                "gate_timeout_seconds": _number(above=0.0),
            }
        ),
        "retry": _section(
            {
                "max_retries_per_task": _retry_bound,
                "phase_failure_limit": _integer(minimum=2),
            }
        ),
        "gates": _section(
            {
                "default_policy": _gate_policy,
                "policy_by_capability": _policy_map,
                "config_by_capability": _capability_settings,
            }
        ),
        "budgets": _section(
            {
                "max_wall_clock_seconds": _number(minimum=0.0),
                "max_cost_usd": _number(minimum=0.0),
            }
        ),
        "checkpoints": _section(
            {
                "interval_seconds": _number(above=0.0),
                "keep_last": _integer(minimum=1),
                "max_age_days": _integer(minimum=0),
            }
        ),
        "paths": _section({name: _path_text for _section_name, name in PATH_FIELDS}),
        "observability": _section(
            {
                "log_level": _choice(LOG_LEVELS),
                "log_to_stdout": _boolean,
                "redact_secrets": _boolean,
            }
        ),
        "features": _section(
            {
                "agent_memory": _feature(max_entries=_integer(minimum=1)),
                "audit_trail": _feature(),
                "cost_tracking": _feature(warn_threshold_usd=_number(minimum=0.0)),
                "handoff_notes": _feature(max_notes=_integer(minimum=1)),
            }
        ),
    }
)


# --- copying, merging, redaction ------------------------------------------------------------


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _snake_case(key: str) -> str:
    spaced = _WORD_BOUNDARY.sub(r"\1_\2", str(key).strip())
    return _SEPARATORS.sub("_", spaced.lower()).strip("_")


def _plain(value: Any) -> Any:
    """Deep copy with mappings as dicts (string keys only) and sequences as lists."""
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return copy.deepcopy(value)


def _overlay(target: dict[str, Any], overlay: Mapping[str, object]) -> dict[str, Any]:
    for key, value in overlay.items():
        current = target.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            _overlay(current, value)
        else:
            target[key] = _plain(value)
    return target


def _redacted(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED_VALUE if is_sensitive_key(key) else _redacted(item)
            for key, item in sorted(value.items(), key=lambda pair: str(pair[0]))
        }
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


__all__ = [
    "DEFAULT_CONFIG",
    "FEATURE_NAMES",
    "GATE_POLICIES",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "REDACTED_VALUE",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "OrchestratorConfig",
    "assert_valid_config",
    "default_config",
    "is_sensitive_key",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
