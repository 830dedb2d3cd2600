"""Operator command-line interface for build-orchestrator."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, cast

from build_orchestrator.agents import AgentRegistry
from build_orchestrator.config import load_config, redact_config
from build_orchestrator.control_plane import (
    BuildNotFoundError,
    BuildOrchestrator,
    OrchestratorError,
)
from build_orchestrator.domain import ids
from build_orchestrator.domain.models import Build, BuildStatus, PhaseStatus, TaskStatus
from build_orchestrator.observability import setup_logging, shutdown_logging
from build_orchestrator.persistence import RetentionPolicy, StateDB
from build_orchestrator.planning.graph_input import (
    GraphValidationError,
    build_from_document,
    load_document,
)


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, *, exit_code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="build-orchestrator",
        description=(
            "build-orchestrator: durable multi-agent build state machine.\n\n"
            "Common workflows:\n"
            "  build-orchestrator validate graph.yaml      Check a task graph document\n"
            "  build-orchestrator status <build_id>        Show build and task status\n"
            "  build-orchestrator events <build_id>        Dump the build's event log\n"
            "  build-orchestrator clear <build_id> --actor NAME\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./build_orchestrator.toml if present).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser(
        "validate", parents=[common], help="Validate a task graph document (JSON or YAML)"
    )
    validate_parser.add_argument("graph_path", help="Path to the task graph document")
    validate_parser.set_defaults(handler=_cmd_validate)

    status_parser = subparsers.add_parser(
        "status", parents=[common], help="Show the current state of a build"
    )
    status_parser.add_argument("build_id")
    status_parser.set_defaults(handler=_cmd_status)

    events_parser = subparsers.add_parser(
        "events", parents=[common], help="List a build's events in sequence order"
    )
    events_parser.add_argument("build_id")
    events_parser.add_argument(
        "--since", type=int, default=0, help="Only events with a sequence number above N"
    )
    events_parser.set_defaults(handler=_cmd_events)

    escalations_parser = subparsers.add_parser(
        "escalations", parents=[common], help="List escalation records"
    )
    escalations_parser.add_argument("--build-id", default=None)
    escalations_parser.add_argument(
        "--open", dest="open_only", action="store_true", help="Only unresolved records"
    )
    escalations_parser.set_defaults(handler=_cmd_escalations)

    clear_parser = subparsers.add_parser(
        "clear", parents=[common], help="Clear a blocked or escalated build for resumption"
    )
    clear_parser.add_argument("build_id")
    clear_parser.add_argument("--actor", required=True, help="Operator clearing the escalation")
    clear_parser.add_argument("--note", default=None)
    clear_parser.set_defaults(handler=_cmd_clear)

    prune_parser = subparsers.add_parser(
        "prune", parents=[common], help="Delete old checkpoints by retention policy"
    )
    prune_parser.add_argument("--keep-last", type=int, default=None)
    prune_parser.add_argument("--max-age-days", type=float, default=None)
    prune_parser.set_defaults(handler=_cmd_prune)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Show the effective (redacted) configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_validate(args: argparse.Namespace) -> int:
    try:
        document = load_document(args.graph_path)
        build = build_from_document(document)
    except GraphValidationError as exc:
        _emit_json(
            {
                "command": "validate",
                "valid": False,
                "issues": [
                    {"path": issue.path, "message": issue.message} for issue in exc.issues
                ],
            }
        )
        return 1

    _emit_json(
        {
            "command": "validate",
            "valid": True,
            "graph_id": build.graph_id,
            "title": build.title,
            "phases": len(build.phases),
            "tasks": sum(1 for _ in build.iter_tasks()),
        }
    )
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    with _open_orchestrator(args) as orchestrator:
        build = _require_build(orchestrator, args.build_id)
        open_records = orchestrator.escalations.open_for_build(build.id)
        _emit_json(
            {
                "command": "status",
                "build": _summarize_build(build),
                "open_escalations": [record.to_dict() for record in open_records],
                "last_sequence": orchestrator.events.last_sequence(build.id),
            }
        )
    return 0 if build.status is BuildStatus.DONE else 1


def _cmd_events(args: argparse.Namespace) -> int:
    if args.since < 0:
        raise CLIError("--since must be >= 0", exit_code=2)
    with _open_orchestrator(args) as orchestrator:
        build = _require_build(orchestrator, args.build_id)
        events = orchestrator.events.query(build.id, since_seq=args.since)
        _emit_json(
            {
                "command": "events",
                "build_id": build.id,
                "events": [event.to_dict() for event in events],
            }
        )
    return 0


def _cmd_escalations(args: argparse.Namespace) -> int:
    build_id = _optional_str(args.build_id)
    if build_id is not None:
        _validate_build_id(build_id)
    with _open_orchestrator(args) as orchestrator:
        records = orchestrator.escalations.list(build_id=build_id, open_only=args.open_only)
        _emit_json(
            {
                "command": "escalations",
                "build_id": build_id,
                "escalations": [record.to_dict() for record in records],
            }
        )
    return 0


def _cmd_clear(args: argparse.Namespace) -> int:
    actor = _optional_str(args.actor)
    if actor is None:
        raise CLIError("--actor must be non-empty", exit_code=2)
    with _open_orchestrator(args) as orchestrator:
        _require_build(orchestrator, args.build_id)
        try:
            build = orchestrator.clear_escalation(
                args.build_id, actor=actor, note=_optional_str(args.note)
            )
        except OrchestratorError as exc:
            raise CLIError(str(exc), exit_code=1) from exc
        _emit_json({"command": "clear", "build": _summarize_build(build)})
    return 0


def _cmd_prune(args: argparse.Namespace) -> int:
    with _open_orchestrator(args) as orchestrator:
        checkpoints = cast("Mapping[str, Any]", orchestrator.config["checkpoints"])
        keep_last = args.keep_last if args.keep_last is not None else checkpoints["keep_last"]
        max_age_days = (
            args.max_age_days if args.max_age_days is not None else checkpoints["max_age_days"]
        )
        try:
            policy = RetentionPolicy(keep_last=int(keep_last), max_age_days=float(max_age_days))
        except ValueError as exc:
            raise CLIError(str(exc), exit_code=2) from exc
        removed = orchestrator.prune_checkpoints(policy)
        _emit_json(
            {
                "command": "prune",
                "removed": removed,
                "keep_last": policy.keep_last,
                "max_age_days": policy.max_age_days,
            }
        )
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = load_config(args.config_path)
    _emit_json({"command": "config", "config": redact_config(config)})
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _open_orchestrator(args: argparse.Namespace) -> Iterator[BuildOrchestrator]:
    """Open the configured state DB with logging for the duration of one command."""

    config = load_config(args.config_path)
    paths = cast("Mapping[str, Any]", config["paths"])
    setup_logging(
        cast("Mapping[str, object]", config["observability"]),
        session_id=ids.generate_prefixed_id("cli"),
        log_dir=paths["log_dir"],
    )
    db = StateDB(Path(paths["state_db"]))
    try:
        yield BuildOrchestrator(db, AgentRegistry(), config=config)
    finally:
        db.close()
        shutdown_logging()


def _require_build(orchestrator: BuildOrchestrator, build_id: str) -> Build:
    _validate_build_id(build_id)
    try:
        return orchestrator.get_build(build_id)
    except BuildNotFoundError as exc:
        raise CLIError(str(exc), exit_code=1) from exc


def _validate_build_id(build_id: str) -> None:
    try:
        ids.validate_build_id(build_id)
    except ValueError as exc:
        raise CLIError(f"invalid build id: {exc}", exit_code=2) from exc


def _summarize_build(build: Build) -> dict[str, object]:
    return {
        "id": build.id,
        "graph_id": build.graph_id,
        "title": build.title,
        "status": build.status.value,
        "escalation_level": build.escalation_level.value,
        "current_phase_index": build.current_phase_index,
        "retry_count": build.retry_count,
        "cost_spent_usd": build.cost_spent_usd,
        "elapsed_seconds": build.elapsed_seconds,
        "last_error": build.last_error,
        "phases": [
            {
                "id": phase.id,
                "status": phase.status.value,
                "passed": phase.status is PhaseStatus.PASSED,
                "tasks": {
                    task.id: {
                        "status": task.status.value,
                        "attempts": task.attempts,
                        "last_error": task.last_error,
                    }
                    for task in phase.tasks
                },
                "validated": sum(
                    1 for task in phase.tasks if task.status is TaskStatus.VALIDATED
                ),
            }
            for phase in build.phases
        ],
    }


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


__all__ = ["CLIError", "build_parser", "run_cli"]
