"""Process entrypoint: runs the operator CLI and turns every outcome into an exit code."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    BUILD_NOT_DONE = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 3


_OPERATOR_OS_ERRORS = (FileNotFoundError, NotADirectoryError, IsADirectoryError, PermissionError)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI for ``python -m build_orchestrator`` and the ``build-orchestrator`` script.

    Never raises: argparse exits are folded into the contract, bad input from the
    operator (config, graph documents, unreadable paths) maps to ``CONFIG_ERROR``
    with a one-line message, and anything else is ``INTERNAL_ERROR`` with a traceback.
    """
    try:
        from build_orchestrator.cli import run_cli

        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _as_exit_code(exc.code)
    except Exception as exc:  # noqa: BLE001 - process boundary
        if _is_operator_error(exc):
            _stderr(str(exc).strip() or type(exc).__name__)
            return int(ExitCode.CONFIG_ERROR)
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return int(ExitCode.INTERNAL_ERROR)


def _as_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and not isinstance(raw, bool):
        try:
            return int(ExitCode(raw))
        except ValueError:
            return int(ExitCode.INTERNAL_ERROR)
    # sys.exit("message") carries text for the operator.
    if isinstance(raw, str) and raw.strip():
        _stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _is_operator_error(exc: BaseException) -> bool:
    from build_orchestrator.config.loader import ConfigLoadError
    from build_orchestrator.config.schema import ConfigValidationError
    from build_orchestrator.planning.graph_input import GraphValidationError

    operator_errors = (
        ConfigLoadError,
        ConfigValidationError,
        GraphValidationError,
        *_OPERATOR_OS_ERRORS,
    )
    return any(isinstance(link, operator_errors) for link in _causes(exc))


def _causes(exc: BaseException) -> Iterator[BaseException]:
    """Yield ``exc`` and the exceptions it was raised from, oldest last."""
    seen: set[int] = set()
    link: BaseException | None = exc
    while link is not None and id(link) not in seen:
        seen.add(id(link))
        yield link
        if link.__cause__ is not None:
            link = link.__cause__
        elif not link.__suppress_context__:
            link = link.__context__
        else:
            link = None


def _stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
