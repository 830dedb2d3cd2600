"""Unit tests for the operator CLI and the process entrypoint."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import structlog

from build_orchestrator.agents.client import AgentContext, AgentRegistry
from build_orchestrator.cli import CLIError, run_cli
from build_orchestrator.config import load_config
from build_orchestrator.control_plane import BuildOrchestrator
from build_orchestrator.domain import ids
from build_orchestrator.domain.models import AtomicTask, Build
from build_orchestrator.main import ExitCode, cli_entrypoint
from build_orchestrator.observability import configure_structlog
from build_orchestrator.persistence import StateDB
from build_orchestrator.planning.graph_input import parse_document

if TYPE_CHECKING:
    from collections.abc import Iterator

_CONFIG = """
[execution]
max_concurrency = 3

[paths]
state_db = "state/builds.sqlite"
escalation_dir = "escalations"
log_dir = "logs"

[checkpoints]
interval_seconds = 3600.0
"""

_GRAPH = """
id: shop
title: Online shop
phases:
  - id: design
    name: Design
    capability: architecture
    dependencies: []
    tasks:
      - id: schema
        description: Design the schema
        capability: data_model
        input: []
        output: [tables]
  - id: backend
    name: Backend
    capability: backend
    dependencies: [design]
    tasks:
      - id: api
        description: Build the API
        capability: backend
        input: [design/schema]
        output: [routes]
"""


class _Agent:
    def __init__(self, *, empty_for: str | None = None) -> None:
        self._empty_for = empty_for

    def invoke(self, task: AtomicTask, context: AgentContext) -> dict[str, object]:
        value = "" if task.id == self._empty_for else f"{task.id} done"
        return {key: value for key in task.output}


@pytest.fixture(autouse=True)
def _route_structlog() -> Iterator[None]:
    # Keep controller logs off stdout, which carries the CLI's JSON documents.
    configure_structlog()
    yield
    structlog.reset_defaults()


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "build_orchestrator.toml"
    path.write_text(_CONFIG, encoding="utf-8")
    return path


def _invoke(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict[str, object]]:
    code = run_cli(list(argv))
    out = capsys.readouterr().out.strip()
    return code, json.loads(out) if out else {}


async def _run_build(config_path: Path, agent: _Agent) -> Build:
    config = load_config(config_path)
    db = StateDB(Path(config["paths"]["state_db"]))
    try:
        orchestrator = BuildOrchestrator(db, AgentRegistry(default=agent), config=config)
        build = orchestrator.submit(parse_document(_GRAPH))
        return (await orchestrator.run(build.id)).build
    finally:
        db.close()


def test_validate_reports_the_graph_shape(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    graph = tmp_path / "graph.yaml"
    graph.write_text(_GRAPH, encoding="utf-8")

    code, payload = _invoke(capsys, "validate", str(graph))

    assert code == 0
    assert payload == {
        "command": "validate",
        "valid": True,
        "graph_id": "shop",
        "title": "Online shop",
        "phases": 2,
        "tasks": 2,
    }


def test_validate_lists_issues_for_a_broken_graph(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    graph = tmp_path / "graph.json"
    graph.write_text(json.dumps({"id": "shop", "title": "Shop", "phases": "none"}), "utf-8")

    code, payload = _invoke(capsys, "validate", str(graph))

    assert code == 1
    assert payload["valid"] is False
    assert payload["issues"]


async def test_status_and_events_of_a_finished_build(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    build = await _run_build(config_path, _Agent())

    code, status = _invoke(capsys, "status", build.id, "--config", str(config_path))
    assert code == 0
    summary = status["build"]
    assert isinstance(summary, dict)
    assert summary["status"] == "done"
    assert [phase["passed"] for phase in summary["phases"]] == [True, True]
    assert status["open_escalations"] == []

    code, events = _invoke(
        capsys, "events", build.id, "--since", "2", "--config", str(config_path)
    )
    assert code == 0
    sequences = [event["sequence_number"] for event in events["events"]]
    assert sequences[0] == 3
    assert events["events"][-1]["kind"] == "build_complete"


async def test_escalated_build_can_be_inspected_and_cleared(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    build = await _run_build(config_path, _Agent(empty_for="api"))

    code, status = _invoke(capsys, "status", build.id, "--config", str(config_path))
    assert code == int(ExitCode.BUILD_NOT_DONE)
    assert len(status["open_escalations"]) == 1

    code, listing = _invoke(capsys, "escalations", "--open", "--config", str(config_path))
    assert code == 0
    (record,) = listing["escalations"]
    assert record["trigger"] == "retry_exhausted"
    assert record["task_id"] == "api"

    code, cleared = _invoke(
        capsys, "clear", build.id, "--actor", "ops", "--note", "retrying", "--config",
        str(config_path),
    )
    assert code == 0
    assert cleared["build"]["status"] == "pending"

    code = run_cli(["clear", build.id, "--actor", "ops", "--config", str(config_path)])
    assert code == 1
    assert "only blocked or escalated" in capsys.readouterr().err


async def test_prune_applies_the_retention_policy(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    build = await _run_build(config_path, _Agent())

    code, payload = _invoke(capsys, "prune", "--keep-last", "1", "--config", str(config_path))

    assert code == 0
    assert payload["removed"] > 0
    config = load_config(config_path)
    db = StateDB(Path(config["paths"]["state_db"]))
    try:
        orchestrator = BuildOrchestrator(db, AgentRegistry(), config=config)
        assert len(orchestrator.checkpoints.list_checkpoints(build.id)) == 1
    finally:
        db.close()


def test_unknown_and_malformed_build_ids(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = run_cli(["status", ids.generate_build_id(), "--config", str(config_path)])
    assert code == 1
    assert "build not found" in capsys.readouterr().err

    code = run_cli(["status", "not-a-build", "--config", str(config_path)])
    assert code == 2
    assert "invalid build id" in capsys.readouterr().err


def test_config_command_prints_the_effective_config(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code, payload = _invoke(capsys, "config", "--config", str(config_path))

    assert code == 0
    config = payload["config"]
    assert config["execution"]["max_concurrency"] == 3
    assert config["paths"]["state_db"].endswith("state/builds.sqlite")


def test_entrypoint_maps_config_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli_entrypoint(["config", "--config", str(tmp_path / "missing.toml")])

    assert code == int(ExitCode.CONFIG_ERROR)
    assert "config file not found" in capsys.readouterr().err


def test_entrypoint_normalizes_argparse_exits(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["--help"]) == int(ExitCode.SUCCESS)
    assert cli_entrypoint(["no-such-command"]) == int(ExitCode.CONFIG_ERROR)


def test_cli_error_keeps_message_and_exit_code() -> None:
    with pytest.raises(CLIError) as excinfo:
        raise CLIError("--since must be >= 0", exit_code=2)

    assert excinfo.value.exit_code == 2
    assert str(excinfo.value) == "--since must be >= 0"
    assert excinfo.value.__traceback__ is not None


def test_negative_since_is_an_operator_error(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = run_cli(
        ["events", ids.generate_build_id(), "--since", "-1", "--config", str(config_path)]
    )

    assert code == 2
    assert "error: --since must be >= 0" in capsys.readouterr().err
