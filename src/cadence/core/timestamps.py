"""
Timestamp and identifier utilities.

All instants handled by the engine are timezone-aware UTC datetimes.  They
are persisted as fixed-width ISO-8601 strings (always with microseconds
and a ``+00:00`` offset) so that lexical order in the store equals
chronological order, which the due-schedule query relies on.

Identifiers are ULID-like: a millisecond timestamp prefix followed by
randomness, so ids sort roughly by creation time.  A short entity prefix
(``sch``, ``run``, ``ses``, ``msg``) makes them recognisable in logs.

Tags:
    timestamps, ulid, utc, datetime, cadence, stdlib-only

Doc-Types:
    - API Reference
"""

import random
import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Return *dt* as an aware UTC datetime (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def generate_ulid() -> str:
    """
    Generate a ULID-like identifier.

    Format: 26 characters, base32 encoded, time-sortable.
    """
    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = _encode_base32(timestamp_ms, 10)
    random_part = "".join(random.choices(_ENCODING, k=16))
    return timestamp_chars + random_part


def generate_id(prefix: str) -> str:
    """Generate a prefixed identifier, e.g. ``sch_01j9...``."""
    return f"{prefix}_{generate_ulid().lower()}"


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to a fixed-width UTC ISO 8601 string."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def from_iso8601(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to an aware UTC datetime."""
    if s is None:
        return None
    return ensure_utc(datetime.fromisoformat(s))


# ULID base32 alphabet (Crockford's)
_ENCODING = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ENCODING_LEN = len(_ENCODING)


def _encode_base32(value: int, length: int) -> str:
    """Encode integer to base32 string of fixed length."""
    result = []
    for _ in range(length):
        result.append(_ENCODING[value % _ENCODING_LEN])
        value //= _ENCODING_LEN
    return "".join(reversed(result))
