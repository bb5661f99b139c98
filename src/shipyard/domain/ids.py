"""Run identifiers: ``run-`` followed by a ULID, so ids sort by creation time."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
RUN_ID_PREFIX: Final[str] = "run"

_RANDOM_BITS: Final[int] = 80
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
# The first character carries only 3 bits of a 128-bit value.
_ULID_PATTERN: Final[re.Pattern[str]] = re.compile(r"[0-7][0-9A-HJKMNP-TV-Z]{25}", re.IGNORECASE)


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    """Return a 26-character Crockford Base32 ULID."""
    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= millis <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {millis}")
    entropy = (randbytes or secrets.token_bytes)(_RANDOM_BITS // 8)
    if len(entropy) != _RANDOM_BITS // 8:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BITS // 8} bytes")

    value = (millis << _RANDOM_BITS) | int.from_bytes(entropy, "big")
    digits = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(digits))


def generate_run_id(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    return f"{RUN_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_run_id(run_id: str) -> None:
    """Raise ``ValueError`` unless ``run_id`` looks like ``run-<ULID>``."""
    if not isinstance(run_id, str):
        raise ValueError(f"run id must be a string, got {type(run_id).__name__}")
    prefix, _, ulid = run_id.partition("-")
    if prefix != RUN_ID_PREFIX:
        raise ValueError(f"invalid run id {run_id!r}: expected prefix '{RUN_ID_PREFIX}-'")
    if _ULID_PATTERN.fullmatch(ulid) is None:
        raise ValueError(f"invalid run id {run_id!r}: malformed ULID")


def run_id_timestamp_ms(run_id: str) -> int:
    """Milliseconds since the epoch at which ``run_id`` was generated."""
    validate_run_id(run_id)
    value = 0
    for char in run_id.partition("-")[2].upper():
        value = value * 32 + CROCKFORD_BASE32_ALPHABET.index(char)
    return value >> _RANDOM_BITS


def short_id(run_id: str) -> str:
    if len(run_id) < 8:
        raise ValueError("id must be at least 8 characters")
    return run_id[-8:]


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "generate_run_id",
    "generate_ulid",
    "run_id_timestamp_ms",
    "short_id",
    "validate_run_id",
]
