"""Build events: the ordered, append-only record of committed transitions."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from build_orchestrator.constants import EVENT_SCHEMA_VERSION
from build_orchestrator.domain.ids import validate_build_id
from build_orchestrator.domain.models import (
    CanonicalModel,
    JSONValue,
    _as_datetime,
    _as_enum,
    _as_int,
    _as_json_object,
    _as_str,
    _check_fields,
    _checked_id,
    iso_utc,
)
from build_orchestrator.utils.hashing import canonical_json

# Substrings, so "auth_token" and "api_key" both match.
_SENSITIVE_KEY_TERMS = ("secret", "key", "password", "token")
_REDACTED_VALUE = "***REDACTED***"


class EventKind(StrEnum):
    """State transitions recorded in the per-build event log."""

    BUILD_SUBMITTED = "build_submitted"
    BUILD_STARTED = "build_started"
    BUILD_RESUMED = "build_resumed"
    BUILD_BLOCKED = "build_blocked"
    BUILD_ESCALATED = "build_escalated"
    BUILD_COMPLETE = "build_complete"

    PHASE_STARTED = "phase_started"
    PHASE_PASSED = "phase_passed"
    PHASE_FAILED = "phase_failed"
    HANDOFF = "handoff"

    TASK_ASSIGNED = "task_assigned"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_VALIDATED = "task_validated"
    TASK_FAILED = "task_failed"
    TASK_RETRY = "task_retry"
    TASK_STALLED = "task_stalled"
    TASK_INTERRUPTED = "task_interrupted"

    HOOK_FAILED = "hook_failed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    ESCALATION_CLEARED = "escalation_cleared"


@dataclass(slots=True)
class Event(CanonicalModel):
    """One committed transition; ``sequence_number`` is gapless per build, starting at 1."""

    sequence_number: int
    timestamp: datetime
    build_id: str
    kind: EventKind
    payload: dict[str, JSONValue]

    def __post_init__(self) -> None:
        self.sequence_number = _as_int(self.sequence_number, "Event.sequence_number", minimum=1)
        self.timestamp = _as_datetime(self.timestamp, "Event.timestamp")
        self.build_id = _checked_id(
            validate_build_id, _as_str(self.build_id, "Event.build_id"), "Event.build_id"
        )
        self.kind = _as_enum(EventKind, self.kind, "Event.kind")
        self.payload = _as_json_object(self.payload, "Event.payload")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": EVENT_SCHEMA_VERSION,
            "sequence_number": self.sequence_number,
            "timestamp": iso_utc(self.timestamp),
            "build_id": self.build_id,
            "kind": self.kind.value,
            "payload": _as_json_object(self.payload, "Event.payload"),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Event:
        record = _check_fields(
            data,
            "Event",
            required={"sequence_number", "timestamp", "build_id", "kind", "payload"},
            optional={"schema_version"},
        )
        raw_version = record.pop("schema_version", EVENT_SCHEMA_VERSION)
        version = _as_int(raw_version, "Event.schema_version")
        if version > EVENT_SCHEMA_VERSION:
            raise ValueError(
                f"Event.schema_version: unsupported version {version} "
                f"(newest known is {EVENT_SCHEMA_VERSION})"
            )
        return cls(**record)  # type: ignore[arg-type]

    def payload_json(self) -> str:
        return canonical_json(self.payload)


def redact_payload(payload: Mapping[str, JSONValue]) -> dict[str, JSONValue]:
    """Deep copy of ``payload`` with the value under any sensitive-looking key masked."""
    return {key: _masked(key, value) for key, value in payload.items()}


def _masked(key: str | None, value: JSONValue) -> JSONValue:
    if key is not None and any(term in key.lower() for term in _SENSITIVE_KEY_TERMS):
        return _REDACTED_VALUE
    if isinstance(value, dict):
        return {child: _masked(child, item) for child, item in value.items()}
    if isinstance(value, list):
        return [_masked(None, item) for item in value]
    return value


__all__ = ["Event", "EventKind", "redact_payload"]
