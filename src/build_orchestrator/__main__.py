"""Module entrypoint for ``python -m build_orchestrator``."""

from __future__ import annotations

from build_orchestrator.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
