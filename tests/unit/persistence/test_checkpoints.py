"""Checkpoint save/restore, integrity, schema migration, and retention tests."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from build_orchestrator.domain import ids
from build_orchestrator.domain.models import (
    Build,
    BuildStatus,
    EscalationLevel,
    TaskStatus,
)
from build_orchestrator.persistence.checkpoints import (
    CheckpointIntegrityError,
    CheckpointNotFoundError,
    CheckpointSchemaError,
    CheckpointStore,
    RetentionPolicy,
)
from build_orchestrator.persistence.state_db import StateDB, canonical_json
from build_orchestrator.utils.hashing import payload_digest

from . import StepClock, fixed_now, make_build

if TYPE_CHECKING:
    from pathlib import Path


def _store(tmp_path: Path, **kwargs: Any) -> tuple[StateDB, CheckpointStore]:
    db = StateDB(tmp_path / "state.sqlite")
    return db, CheckpointStore(db, **kwargs)


def _record(build_payload: dict[str, Any], *, schema_version: int) -> dict[str, Any]:
    return {
        "schema_version": schema_version,
        "checkpoint_id": ids.generate_checkpoint_id(),
        "build_id": build_payload["id"],
        "created_at": "2026-02-01T12:00:00.000000Z",
        "sha256": payload_digest(build_payload),
        "build": build_payload,
    }


def _insert_raw(db: StateDB, record: dict[str, Any]) -> str:
    db.execute(
        """
        INSERT INTO checkpoints (id, build_id, schema_version, created_at, sha256, payload_json)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            record["checkpoint_id"],
            record["build_id"],
            record["schema_version"],
            record["created_at"],
            record["sha256"],
            canonical_json(record),
        ),
    )
    return str(record["checkpoint_id"])


_error_text = st.text(
    alphabet="abcdefghijklmnopqrstuvwxyz0123456789", min_size=1, max_size=20
)

_task_state = st.fixed_dictionaries(
    {
        "status": st.sampled_from(list(TaskStatus)),
        "attempts": st.integers(min_value=0, max_value=2),
        "escalation": st.sampled_from(list(EscalationLevel)),
        "cost_usd": st.floats(min_value=0, max_value=50, allow_nan=False, allow_infinity=False),
        "last_error": st.none() | _error_text,
        "output_value": st.dictionaries(
            st.sampled_from(["result", "notes"]),
            st.text(max_size=10) | st.integers(min_value=-5, max_value=5),
            max_size=2,
        ),
    }
)


@given(
    seed=st.integers(min_value=0, max_value=200),
    task_states=st.lists(_task_state, min_size=4, max_size=4),
    build_status=st.sampled_from(list(BuildStatus)),
    current_phase_index=st.integers(min_value=0, max_value=2),
    retry_count=st.integers(min_value=0, max_value=6),
    spent=st.floats(min_value=0, max_value=500, allow_nan=False, allow_infinity=False),
)
@settings(
    max_examples=40,
    derandomize=True,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
def test_property_restore_returns_the_saved_build(
    tmp_path: Path,
    seed: int,
    task_states: list[dict[str, Any]],
    build_status: BuildStatus,
    current_phase_index: int,
    retry_count: int,
    spent: float,
) -> None:
    _, store = _store(tmp_path)
    build = make_build(seed)
    for (_, task), state in zip(build.iter_tasks(), task_states, strict=True):
        for name, value in state.items():
            setattr(task, name, value)
    build.status = build_status
    build.current_phase_index = current_phase_index
    build.retry_count = retry_count
    build.cost_spent_usd = spent

    checkpoint_id = store.save(build)

    assert store.restore(checkpoint_id) == build
    assert store.latest(build.id) == build


def test_latest_tracks_the_newest_checkpoint(tmp_path: Path) -> None:
    _, store = _store(tmp_path, clock=StepClock())
    build = make_build(1)
    assert store.latest(build.id) is None
    assert store.latest_checkpoint_id(build.id) is None

    first = store.save(build)
    build.status = BuildStatus.RUNNING
    build.phases[0].tasks[0].status = TaskStatus.ASSIGNED
    second = store.save(build)

    assert store.latest_checkpoint_id(build.id) == second
    assert store.latest(build.id) == build
    assert store.restore(first).status is BuildStatus.PENDING

    infos = store.list_checkpoints(build.id)
    assert [info.checkpoint_id for info in infos] == [second, first]
    assert infos[0].created_at > infos[1].created_at
    assert infos[0].to_dict()["build_id"] == build.id


def test_restore_unknown_checkpoint_raises(tmp_path: Path) -> None:
    _, store = _store(tmp_path)
    with pytest.raises(CheckpointNotFoundError, match="checkpoint not found"):
        store.restore(ids.generate_checkpoint_id())


def test_tampered_build_payload_fails_integrity_check(tmp_path: Path) -> None:
    _, store = _store(tmp_path)
    build = make_build(2)
    record = _record(build.to_dict(), schema_version=2)
    record["build"]["title"] = "Rewritten"

    with pytest.raises(CheckpointIntegrityError, match="digest mismatch"):
        store.decode(json.dumps(record))
    with pytest.raises(CheckpointIntegrityError, match="not valid JSON"):
        store.decode("{not json")


def test_newer_schema_version_is_rejected(tmp_path: Path) -> None:
    _, store = _store(tmp_path)
    record = _record(make_build(3).to_dict(), schema_version=99)

    with pytest.raises(CheckpointSchemaError, match="newer than supported"):
        store.decode(json.dumps(record))


def test_version_one_record_is_migrated_on_read(tmp_path: Path) -> None:
    db, store = _store(tmp_path)
    build = make_build(4)
    build.status = BuildStatus.ESCALATED
    payload = build.to_dict()
    for name in ("escalation_level", "cost_spent_usd", "elapsed_seconds"):
        payload.pop(name)
    payload["schema_version"] = 1
    payload["escalated"] = True
    checkpoint_id = _insert_raw(db, _record(payload, schema_version=1))

    restored = store.restore(checkpoint_id)

    assert restored.escalation_level is EscalationLevel.ESCALATED
    assert restored.cost_spent_usd == 0.0
    assert restored.schema_version == 2
    assert restored.status is BuildStatus.ESCALATED
    assert store.list_checkpoints(build.id)[0].schema_version == 1


def test_missing_migrator_is_a_schema_error(tmp_path: Path) -> None:
    db, store = _store(tmp_path, migrators={})
    payload = make_build(5).to_dict()
    payload["schema_version"] = 1
    checkpoint_id = _insert_raw(db, _record(payload, schema_version=1))

    with pytest.raises(CheckpointSchemaError, match="no migrator"):
        store.restore(checkpoint_id)


def test_unknown_fields_are_ignored_on_restore(tmp_path: Path) -> None:
    db, store = _store(tmp_path)
    build = make_build(6)
    payload = build.to_dict()
    payload["future_build_field"] = {"x": 1}
    payload["phases"][0]["future_phase_field"] = True
    payload["phases"][0]["tasks"][0]["future_task_field"] = "later"
    checkpoint_id = _insert_raw(db, _record(payload, schema_version=2))

    assert store.restore(checkpoint_id) == build


def test_prune_keeps_the_newest_per_build(tmp_path: Path) -> None:
    _, store = _store(tmp_path, clock=StepClock())
    first = make_build(7)
    second = make_build(8)
    first_ids = [store.save(first) for _ in range(5)]
    second_ids = [store.save(second) for _ in range(2)]

    removed = store.prune(RetentionPolicy(keep_last=2))

    assert removed == 3
    assert [info.checkpoint_id for info in store.list_checkpoints(first.id)] == [
        first_ids[4],
        first_ids[3],
    ]
    assert len(store.list_checkpoints(second.id)) == len(second_ids)
    assert store.prune(RetentionPolicy(keep_last=2)) == 0


def test_prune_age_rule_never_removes_the_newest(tmp_path: Path) -> None:
    clock = StepClock(start=fixed_now(0), step=86_400.0)
    _, store = _store(tmp_path, clock=clock)
    build = make_build(9)
    saved = [store.save(build) for _ in range(3)]

    removed = store.prune(RetentionPolicy(keep_last=20, max_age_days=0.5))

    assert removed == 2
    assert store.latest_checkpoint_id(build.id) == saved[-1]
    assert isinstance(store.latest(build.id), Build)


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"keep_last": 0}, "keep_last"),
        ({"max_age_days": -1.0}, "max_age_days"),
    ],
)
def test_retention_policy_validation(kwargs: dict[str, Any], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RetentionPolicy(**kwargs)


def test_retention_policy_from_config() -> None:
    policy = RetentionPolicy.from_config({"checkpoints": {"keep_last": 3, "max_age_days": 7}})
    assert policy == RetentionPolicy(keep_last=3, max_age_days=7.0)
    assert RetentionPolicy.from_config({}) == RetentionPolicy()
