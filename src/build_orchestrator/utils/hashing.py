"""Canonical JSON and the content digests stored beside persisted payloads."""

from __future__ import annotations

import hashlib
import json


def canonical_json(value: object) -> str:
    """Key-sorted, whitespace-free JSON; equal payloads always serialize identically."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def payload_digest(payload: object) -> str:
    """SHA-256 of ``canonical_json(payload)``; used to detect tampered checkpoints."""
    return sha256_text(canonical_json(payload))


__all__ = ["canonical_json", "payload_digest", "sha256_text"]
