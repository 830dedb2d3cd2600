"""
Package root

Purpose
- Single-process multi-agent build orchestrator: a decomposed task graph is dispatched
  task by task to pluggable agent clients, every result is validated by a gate pipeline,
  and a durable build state machine is advanced until the build is done, blocked or
  escalated.

Import boundary
- No side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
