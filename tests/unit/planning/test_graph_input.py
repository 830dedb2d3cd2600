"""Unit tests for task graph document validation and build construction."""

from __future__ import annotations

import copy
import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import pytest

from build_orchestrator.domain.models import BuildStatus, Capability, TaskStatus
from build_orchestrator.planning.graph_input import (
    GraphValidationError,
    build_from_document,
    load_document,
    parse_document,
    validate_document,
)

if TYPE_CHECKING:
    from pathlib import Path

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017


def _document() -> dict[str, object]:
    return {
        "id": "shop",
        "title": "Shop backend",
        "phases": [
            {
                "id": "design",
                "name": "Design",
                "capability": "architecture",
                "dependencies": [],
                "tasks": [
                    {
                        "id": "schema",
                        "description": "Draft the data model",
                        "capability": "data_model",
                        "input": [],
                        "output": ["schema"],
                    }
                ],
            },
            {
                "id": "backend",
                "name": "Backend",
                "capability": "backend",
                "dependencies": ["design"],
                "concurrent": True,
                "tasks": [
                    {
                        "id": "api",
                        "description": "Implement the API",
                        "capability": "backend",
                        "input": ["design/schema"],
                        "output": ["routes"],
                    },
                    {
                        "id": "tests",
                        "description": "Cover the API",
                        "capability": "testing",
                        "input": ["api"],
                        "output": ["report"],
                    },
                ],
            },
        ],
    }


def _issue_paths(document: object) -> set[str]:
    return {issue.path for issue in validate_document(document)}


def test_valid_document_builds_pending_build() -> None:
    now = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)
    build = build_from_document(_document(), now=now)

    assert build.status is BuildStatus.PENDING
    assert build.graph_id == "shop"
    assert build.created_at == now == build.updated_at
    assert [phase.id for phase in build.phases] == ["design", "backend"]
    assert build.phases[1].dependencies == (0,)
    assert build.phases[1].concurrent is True
    assert build.phases[0].concurrent is False
    api = build.phases[1].tasks[0]
    assert api.capability is Capability.BACKEND
    assert api.input == ("design/schema",)
    assert all(task.status is TaskStatus.QUEUED for _ref, task in build.iter_tasks())


def test_numeric_dependencies_are_accepted() -> None:
    document = _document()
    document["phases"][1]["dependencies"] = [0]  # type: ignore[index]
    assert validate_document(document) == ()


def test_missing_and_unknown_fields_are_reported_with_paths() -> None:
    document = _document()
    phase = document["phases"][0]  # type: ignore[index]
    del phase["capability"]
    phase["owner"] = "ops"
    del phase["tasks"][0]["output"]

    paths = _issue_paths(document)
    assert "$.phases[0].capability" in paths
    assert "$.phases[0].owner" in paths
    assert "$.phases[0].tasks[0].output" in paths


def test_unknown_capability_lists_allowed_values() -> None:
    document = _document()
    document["phases"][0]["tasks"][0]["capability"] = "wizardry"  # type: ignore[index]

    with pytest.raises(GraphValidationError) as error:
        build_from_document(document)
    (issue,) = error.value.issues
    assert issue.path == "$.phases[0].tasks[0].capability"
    assert "unknown capability 'wizardry'" in issue.message
    assert "data_model" in issue.message


def test_reference_errors_are_rejected_at_submission() -> None:
    document = _document()
    backend = document["phases"][1]  # type: ignore[index]
    backend["tasks"][0]["input"] = ["design/nothing"]
    backend["tasks"][1]["input"] = ["tests"]
    backend["dependencies"] = ["ghost", 9]

    messages = {issue.path: issue.message for issue in validate_document(document)}
    assert "unknown task 'design/nothing'" in messages["$.phases[1].tasks[0].input[0]"]
    assert messages["$.phases[1].tasks[1].input[0]"] == "task must not reference itself"
    assert "unknown phase id 'ghost'" in messages["$.phases[1].dependencies[0]"]
    assert "out of range" in messages["$.phases[1].dependencies[1]"]


def test_duplicate_ids_are_rejected() -> None:
    document = _document()
    phases = document["phases"]  # type: ignore[assignment]
    phases.append(copy.deepcopy(phases[0]))  # type: ignore[attr-defined]
    phases[1]["tasks"].append(copy.deepcopy(phases[1]["tasks"][0]))  # type: ignore[index]

    paths = _issue_paths(document)
    assert "$.phases[2].id" in paths
    assert "$.phases[1].tasks[2].id" in paths


def test_phase_cycles_are_accepted_at_submission() -> None:
    document = _document()
    document["phases"][0]["dependencies"] = ["backend"]  # type: ignore[index]
    assert validate_document(document) == ()


def test_no_partial_build_on_error() -> None:
    document = _document()
    document["phases"] = []
    with pytest.raises(GraphValidationError, match="must contain at least one phase"):
        build_from_document(document)


@pytest.mark.parametrize("root", [[], "text", 42, None])
def test_document_root_must_be_object(root: object) -> None:
    issues = validate_document(root)
    assert [issue.path for issue in issues] == ["$"]


def test_load_document_reads_json_and_yaml(tmp_path: Path) -> None:
    json_path = tmp_path / "graph.json"
    json_path.write_text(json.dumps(_document()), encoding="utf-8")
    yaml_path = tmp_path / "graph.yaml"
    yaml_path.write_text(
        "\n".join(
            [
                "id: tiny",
                "title: Tiny",
                "phases:",
                "  - id: only",
                "    name: Only",
                "    capability: documentation",
                "    dependencies: []",
                "    tasks:",
                "      - id: readme",
                "        description: Write the readme",
                "        capability: documentation",
                "        input: []",
                "        output: [readme]",
            ]
        ),
        encoding="utf-8",
    )

    assert load_document(json_path) == _document()
    tiny = build_from_document(load_document(yaml_path))
    assert tiny.phases[0].tasks[0].output == ("readme",)


def test_load_document_reports_unreadable_and_malformed_input(tmp_path: Path) -> None:
    with pytest.raises(GraphValidationError, match="unable to read document"):
        load_document(tmp_path / "missing.yaml")

    with pytest.raises(GraphValidationError, match="invalid YAML/JSON"):
        parse_document("phases: [unclosed")

    with pytest.raises(GraphValidationError, match="document root must be an object"):
        parse_document("- just\n- a list\n")
