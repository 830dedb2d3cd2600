"""Small helpers shared by the persistence and control planes."""

from build_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    ProgressHeartbeat,
    StallTimeoutError,
    run_with_stall_detection,
    run_with_timeout,
)
from build_orchestrator.utils.fs import atomic_write
from build_orchestrator.utils.hashing import canonical_json, payload_digest, sha256_text

__all__ = [
    "BoundedSemaphore",
    "ProgressHeartbeat",
    "StallTimeoutError",
    "atomic_write",
    "canonical_json",
    "payload_digest",
    "run_with_stall_detection",
    "run_with_timeout",
    "sha256_text",
]
