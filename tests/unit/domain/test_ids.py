"""Unit tests for canonical ID helpers."""

from __future__ import annotations

import pytest

from build_orchestrator.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_generate_ulid_no_collision_10000() -> None:
    generated = {ids.generate_ulid() for _ in range(10_000)}
    assert len(generated) == 10_000


def test_ulid_charset_length_and_reject_invalid_chars() -> None:
    ulid_value = ids.generate_ulid(timestamp_ms=123_456, randbytes=_ff_bytes)
    assert len(ulid_value) == ids.ULID_LENGTH
    assert ulid_value == ulid_value.upper()
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in ulid_value)

    with pytest.raises(ValueError, match="ulid length must be"):
        ids.validate_ulid("0" * 25)

    with pytest.raises(ValueError, match="invalid ULID character"):
        ids.validate_ulid("*" + "0" * 25)


def test_ulid_overflow_and_timestamp_boundaries() -> None:
    ids.validate_ulid("7" + "Z" * 25)
    with pytest.raises(ValueError, match="overflow"):
        ids.validate_ulid("8" + "0" * 25)

    assert ids.parse_ulid_timestamp_ms("0" * 26) == 0
    top = ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS, randbytes=_zero_bytes)
    assert ids.parse_ulid_timestamp_ms(top) == ids.ULID_MAX_TIMESTAMP_MS


def test_prefixed_ids_validate_their_own_prefix() -> None:
    build_id = ids.generate_build_id(timestamp_ms=1_000, randbytes=_zero_bytes)
    checkpoint_id = ids.generate_checkpoint_id(timestamp_ms=1_000, randbytes=_zero_bytes)
    escalation_id = ids.generate_escalation_id(timestamp_ms=1_000, randbytes=_zero_bytes)

    assert build_id.startswith("bld-")
    ids.validate_build_id(build_id)
    ids.validate_checkpoint_id(checkpoint_id)
    ids.validate_escalation_id(escalation_id)

    with pytest.raises(ValueError, match="expected prefix 'bld-'"):
        ids.validate_build_id(checkpoint_id)
    with pytest.raises(ValueError, match="invalid ULID part"):
        ids.validate_build_id("bld-not-a-ulid")


def test_generated_ids_sort_by_timestamp() -> None:
    earlier = ids.generate_build_id(timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.generate_build_id(timestamp_ms=1_001, randbytes=_zero_bytes)
    assert earlier < later


@pytest.mark.parametrize("value", ["design", "phase-1", "a.b:c_d", "9lives"])
def test_declared_ids_accept_document_identifiers(value: str) -> None:
    ids.validate_declared_id(value)


@pytest.mark.parametrize("value", ["", "-leading", "has space", "x" * 129, "slash/inside"])
def test_declared_ids_reject_malformed_identifiers(value: str) -> None:
    with pytest.raises(ValueError, match="identifier must start with"):
        ids.validate_declared_id(value)


def test_short_id_and_prefix_validation() -> None:
    build_id = ids.generate_build_id(timestamp_ms=5, randbytes=_zero_bytes)
    assert ids.short_id(build_id) == build_id[-8:]
    with pytest.raises(ValueError, match="at least 8"):
        ids.short_id("short")
    with pytest.raises(ValueError, match="must not contain"):
        ids.generate_prefixed_id("a-b")


def test_id_families_recognise_their_own_ids() -> None:
    build_id = ids.BUILD_IDS.generate(timestamp_ms=7, randbytes=_zero_bytes)

    assert ids.BUILD_IDS.owns(build_id)
    assert not ids.ESCALATION_IDS.owns(build_id)
    assert not ids.CHECKPOINT_IDS.owns("ckpt-")
    with pytest.raises(ValueError, match="non-empty"):
        ids.IdFamily("")
