"""Cron evaluator - next fire time for a restricted cron grammar.

Manifesto:
    "When does this schedule fire next?" must have exactly one answer for
    a given (expression, timezone, reference instant), independent of the
    host clock and the host timezone.  The evaluator is a pure function:
    it never reads the current time and keeps no state between calls.

Grammar:
    Five whitespace-separated fields ``minute hour day month weekday``.
    Each field is ``*`` or a comma-separated list of integers:

        minute   0-59      hour  0-23      day  1-31
        month    1-12      weekday 0-6  (0 = Sunday)

    The presets ``@yearly @annually @monthly @weekly @daily @midnight
    @hourly`` expand to their five-field equivalents first.  When both
    day and weekday are restricted, a day matches if either one does.

Timezones:
    Candidates are wall-clock times in the schedule's IANA zone.  Each one
    is converted to an absolute instant with the offset in force at that
    wall-clock time:

    - skipped local times (spring-forward gap) resolve to the end of the gap
    - ambiguous local times (fall-back overlap) resolve to the earliest
      occurrence that is still after the reference instant

Examples:
    >>> from datetime import datetime
    >>> from zoneinfo import ZoneInfo
    >>> after = datetime(2024, 1, 1, 9, 5, tzinfo=ZoneInfo("America/Los_Angeles"))
    >>> nxt = next_fire_time("0 8,10,12,14,16,18,20,22 * * *", "America/Los_Angeles", after)
    >>> nxt.astimezone(ZoneInfo("America/Los_Angeles")).isoformat()
    '2024-01-01T10:00:00-08:00'

Tags:
    cadence, scheduling, cron, croniter, timezone, dst, pure-function

Doc-Types:
    api-reference
"""

from __future__ import annotations

import calendar
import re
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterError, croniter

from cadence.core.errors import InvalidCronExpression, ValidationError
from cadence.core.timestamps import ensure_utc

PRESETS: dict[str, str] = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# (name, min, max) in field order
FIELDS: tuple[tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 6),
)

_INTEGER = re.compile(r"^\d+$")

# Upper bound on candidates examined per call; each DST edge costs at most one.
_MAX_CANDIDATES = 16


def parse_fields(expression: str) -> list[set[int] | None]:
    """Parse *expression* into one value set per field (``None`` means ``*``).

    Raises:
        InvalidCronExpression: wrong field count, bad token, or out of range.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidCronExpression(str(expression), "expression is empty")

    text = PRESETS.get(expression.strip().lower(), expression.strip())
    parts = text.split()
    if len(parts) != len(FIELDS):
        raise InvalidCronExpression(
            expression, f"expected {len(FIELDS)} fields, got {len(parts)}"
        )

    parsed: list[set[int] | None] = []
    for token, (name, low, high) in zip(parts, FIELDS, strict=True):
        if token == "*":
            parsed.append(None)
            continue
        values: set[int] = set()
        for item in token.split(","):
            if not _INTEGER.match(item):
                raise InvalidCronExpression(expression, f"{name} field has invalid value {item!r}")
            value = int(item)
            if not low <= value <= high:
                raise InvalidCronExpression(
                    expression, f"{name} value {value} out of range {low}-{high}"
                )
            values.add(value)
        parsed.append(values)
    return parsed


def validate_cron_expression(expression: str) -> str:
    """Validate *expression* and return its normalised five-field form.

    Besides syntax, rejects day/month combinations that can never occur
    (``0 0 31 2 *``) since such a schedule would have no next fire time.
    """
    minute, hour, day, month, weekday = parse_fields(expression)

    if day is not None and weekday is None:
        months = month if month is not None else set(range(1, 13))
        # leap-year month lengths: Feb 29 is reachable
        if not any(d <= calendar.monthrange(2024, m)[1] for m in months for d in day):
            raise InvalidCronExpression(expression, "day and month never coincide")

    normalised = []
    for values in (minute, hour, day, month, weekday):
        normalised.append("*" if values is None else ",".join(str(v) for v in sorted(values)))
    return " ".join(normalised)


def is_valid_cron_expression(expression: str) -> bool:
    try:
        validate_cron_expression(expression)
    except InvalidCronExpression:
        return False
    return True


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the ``ZoneInfo`` for an IANA name or raise ``ValidationError``."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        raise ValidationError(
            f"Invalid timezone: {name!r}",
            context={"timezone": name},
            cause=e,
        ) from e


def next_fire_time(expression: str, timezone: str, after: datetime) -> datetime:
    """First instant strictly after *after* matching *expression* in *timezone*.

    Args:
        expression: Cron expression (five fields or a preset)
        timezone: IANA zone name the fields are evaluated in
        after: Reference instant (naive values are taken as UTC)

    Returns:
        Aware UTC datetime.

    Raises:
        InvalidCronExpression: if the expression is invalid or never fires
        ValidationError: if the timezone is unknown
    """
    normalised = validate_cron_expression(expression)
    tz = resolve_timezone(timezone)
    after = ensure_utc(after)

    wall_after = after.astimezone(tz).replace(tzinfo=None)
    try:
        candidates = croniter(normalised, wall_after)
        for _ in range(_MAX_CANDIDATES):
            wall = candidates.get_next(datetime)
            instant = _wall_to_instant(wall, tz, after)
            if instant is not None:
                return instant
    except CroniterError as e:
        raise InvalidCronExpression(expression, str(e), cause=e) from e

    raise InvalidCronExpression(expression, "no fire time found")


def next_fire_times(
    expression: str,
    timezone: str,
    after: datetime,
    count: int = 5,
) -> list[datetime]:
    """The next *count* fire instants after *after* (preview helper)."""
    result: list[datetime] = []
    cursor = after
    for _ in range(count):
        cursor = next_fire_time(expression, timezone, cursor)
        result.append(cursor)
    return result


# ---------------------------------------------------------------------------
# Wall-clock → instant
# ---------------------------------------------------------------------------


def _wall_to_instant(wall: datetime, tz: ZoneInfo, after: datetime) -> datetime | None:
    """Resolve a naive local wall time to the first valid instant after *after*.

    Returns ``None`` when no occurrence of *wall* lies after *after*.
    """
    earlier = wall.replace(tzinfo=tz, fold=0).astimezone(UTC)
    later = wall.replace(tzinfo=tz, fold=1).astimezone(UTC)

    if earlier.astimezone(tz).replace(tzinfo=None) != wall:
        # Skipped by a forward transition: fold=1 lands before the gap,
        # fold=0 after it.
        gap_end = _transition_between(later, earlier, tz)
        return gap_end if gap_end > after else None

    if earlier > after:
        return earlier
    if later != earlier and later > after:
        return later
    return None


def _transition_between(before: datetime, after: datetime, tz: ZoneInfo) -> datetime:
    """Instant of the offset change in ``(before, after]`` (second precision)."""
    target = after.astimezone(tz).utcoffset()
    lo = int(before.timestamp())
    hi = int(after.timestamp())
    while hi - lo > 1:
        mid = (lo + hi) // 2
        if datetime.fromtimestamp(mid, tz).utcoffset() == target:
            hi = mid
        else:
            lo = mid
    return datetime.fromtimestamp(hi, UTC)


__all__ = [
    "PRESETS",
    "FIELDS",
    "parse_fields",
    "validate_cron_expression",
    "is_valid_cron_expression",
    "resolve_timezone",
    "next_fire_time",
    "next_fire_times",
]
