"""
Identifiers for builds, checkpoints and escalation records.

Generated IDs are ``<prefix>-<ULID>``: a 48-bit millisecond timestamp followed by
80 random bits, rendered as 26 Crockford Base32 characters. Sorting the strings
therefore sorts records by creation time, which the persistence layer relies on
when it lists checkpoints and escalations newest-last.

Phase and task IDs are not generated here; they come from graph documents and
only need to be well formed (``validate_declared_id``).
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

_RANDOM_BITS: Final[int] = ULID_RANDOM_BYTES * 8
_ULID_BITS: Final[int] = 128
_SEPARATOR: Final[str] = "-"
_SYMBOL_VALUES: Final[dict[str, int]] = {
    symbol: value for value, symbol in enumerate(CROCKFORD_BASE32_ALPHABET)
}
_DECLARED_ID_RE: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}")

BUILD_ID_PREFIX: Final[str] = "bld"
CHECKPOINT_ID_PREFIX: Final[str] = "ckpt"
ESCALATION_ID_PREFIX: Final[str] = "esc"

RandomSource = Callable[[int], bytes]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: RandomSource | None = None,
) -> str:
    """Return a new ULID; ``timestamp_ms`` and ``randbytes`` are injectable for tests."""
    stamp = _timestamp(timestamp_ms)
    entropy = int.from_bytes(_entropy(randbytes), "big")
    return _to_base32((stamp << _RANDOM_BITS) | entropy)


def validate_ulid(s: str) -> None:
    _from_base32(s)


def parse_ulid_timestamp_ms(s: str) -> int:
    return _from_base32(s) >> _RANDOM_BITS


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str):
        raise ValueError(f"prefix must be a string, got {type(prefix).__name__}")
    if not prefix:
        raise ValueError("prefix must be non-empty")
    if _SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_SEPARATOR}'")


@dataclass(frozen=True, slots=True)
class IdFamily:
    """A prefix plus the generate/validate pair for IDs carrying it."""

    prefix: str

    def __post_init__(self) -> None:
        _check_prefix(self.prefix)

    @property
    def lead(self) -> str:
        return self.prefix + _SEPARATOR

    def generate(
        self, *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
    ) -> str:
        return self.lead + generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)

    def validate(self, id_str: str) -> None:
        if not isinstance(id_str, str):
            raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
        if not id_str.startswith(self.lead):
            raise ValueError(f"expected prefix '{self.lead}'")
        try:
            validate_ulid(id_str[len(self.lead) :])
        except ValueError as exc:
            raise ValueError(f"invalid ULID part for prefix '{self.prefix}': {exc}") from exc

    def owns(self, id_str: str) -> bool:
        try:
            self.validate(id_str)
        except ValueError:
            return False
        return True


BUILD_IDS: Final[IdFamily] = IdFamily(BUILD_ID_PREFIX)
CHECKPOINT_IDS: Final[IdFamily] = IdFamily(CHECKPOINT_ID_PREFIX)
ESCALATION_IDS: Final[IdFamily] = IdFamily(ESCALATION_ID_PREFIX)


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: RandomSource | None = None,
) -> str:
    return IdFamily(prefix).generate(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    IdFamily(expected_prefix).validate(id_str)


def generate_build_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return BUILD_IDS.generate(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_build_id(id_str: str) -> None:
    BUILD_IDS.validate(id_str)


def generate_checkpoint_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return CHECKPOINT_IDS.generate(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_checkpoint_id(id_str: str) -> None:
    CHECKPOINT_IDS.validate(id_str)


def generate_escalation_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return ESCALATION_IDS.generate(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_escalation_id(id_str: str) -> None:
    ESCALATION_IDS.validate(id_str)


def validate_declared_id(value: str) -> None:
    """Check a phase or task ID taken from a graph document."""
    if not isinstance(value, str):
        raise ValueError(f"identifier must be a string, got {type(value).__name__}")
    if _DECLARED_ID_RE.fullmatch(value) is None:
        raise ValueError(
            "identifier must start with a letter or digit and contain only "
            f"letters, digits, '_', '.', ':' or '-' (got {value!r})"
        )


def short_id(id_str: str) -> str:
    """Trailing eight characters, enough to tell builds apart in log lines and CLI output."""
    if not isinstance(id_str, str):
        raise ValueError(f"id must be a string, got {type(id_str).__name__}")
    if len(id_str) < 8:
        raise ValueError("id must be at least 8 characters")
    return id_str[-8:]


def _timestamp(timestamp_ms: int | None) -> int:
    value = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(value).__name__}")
    if not 0 <= value <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {value}"
        )
    return value


def _entropy(randbytes: RandomSource | None) -> bytes:
    raw = (randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES)
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise ValueError("randbytes must return a bytes-like object")
    data = bytes(raw)
    if len(data) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    return data


def _to_base32(value: int) -> str:
    symbols: list[str] = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        symbols.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(symbols))


def _from_base32(text: str) -> int:
    if not isinstance(text, str):
        raise ValueError(f"ulid must be a string, got {type(text).__name__}")
    if len(text) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(text)}")
    value = 0
    for position, symbol in enumerate(text):
        digit = _SYMBOL_VALUES.get(symbol.upper())
        if digit is None:
            raise ValueError(f"invalid ULID character {symbol!r} at index {position}")
        value = value * 32 + digit
    # 26 symbols carry 130 bits; the top two must be clear.
    if value >> _ULID_BITS:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")
    return value


__all__ = [
    "BUILD_IDS",
    "BUILD_ID_PREFIX",
    "CHECKPOINT_IDS",
    "CHECKPOINT_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "ESCALATION_IDS",
    "ESCALATION_ID_PREFIX",
    "IdFamily",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "generate_build_id",
    "generate_checkpoint_id",
    "generate_escalation_id",
    "generate_prefixed_id",
    "generate_ulid",
    "parse_ulid_timestamp_ms",
    "short_id",
    "validate_build_id",
    "validate_checkpoint_id",
    "validate_declared_id",
    "validate_escalation_id",
    "validate_prefixed_id",
    "validate_ulid",
]
