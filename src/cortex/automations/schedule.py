"""Cron matching and wait-duration parsing, pure Python."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$", re.IGNORECASE)

_UNIT_MULTIPLIERS: dict[str, int] = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
}

_CRON_FIELDS = ("minute", "hour", "day", "month", "weekday")
_CRON_RANGES = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 6))


def parse_duration(spec: str) -> timedelta:
    """Parse '30m', '2h', '1d', '1w' (or seconds with 's') to a timedelta.

    Raises:
        ValueError: If the value is not a valid duration string.
    """
    match = _DURATION_RE.match(str(spec))
    if not match:
        msg = f"Invalid duration: {spec!r}. Expected '<N><s|m|h|d|w>'."
        raise ValueError(msg)
    value = int(match.group(1))
    if value <= 0:
        msg = f"Duration must be positive: {spec!r}"
        raise ValueError(msg)
    return timedelta(seconds=value * _UNIT_MULTIPLIERS[match.group(2).lower()])


@lru_cache(maxsize=256)
def parse_cron(expression: str) -> dict[str, frozenset[int]]:
    """Parse a 5-field cron expression into component sets.

    Weekday uses cron numbering (0 = Sunday; 7 is accepted as Sunday too).
    Supports: *, specific numbers, ranges (1-5), steps (*/15), lists (1,3,5)

    Raises:
        ValueError: If the expression is malformed or out of range.
    """
    fields = expression.strip().split()
    if len(fields) != 5:
        msg = f"Cron expression must have 5 fields, got {len(fields)}: {expression!r}"
        raise ValueError(msg)

    result: dict[str, frozenset[int]] = {}
    for name, field_str, (lo, hi) in zip(_CRON_FIELDS, fields, _CRON_RANGES, strict=True):
        if name == "weekday":
            values = {v % 7 for v in _parse_cron_field(field_str, lo, 7)}
        else:
            values = set(_parse_cron_field(field_str, lo, hi))
        result[name] = frozenset(values)
    return result


def cron_matches(expression: str, when: datetime, timezone: str = "UTC") -> bool:
    """Return True if *when* (minute granularity) satisfies *expression*."""
    parsed = parse_cron(expression)
    try:
        local = when.astimezone(ZoneInfo(timezone))
    except ZoneInfoNotFoundError as exc:
        msg = f"Unknown timezone: {timezone!r}"
        raise ValueError(msg) from exc
    cron_weekday = (local.weekday() + 1) % 7  # Python: Monday=0; cron: Sunday=0
    return (
        local.minute in parsed["minute"]
        and local.hour in parsed["hour"]
        and local.day in parsed["day"]
        and local.month in parsed["month"]
        and cron_weekday in parsed["weekday"]
    )


def _parse_cron_field(field: str, lo: int, hi: int) -> list[int]:
    """Parse a single cron field into a list of matching integers."""
    values: set[int] = set()

    for part in field.split(","):
        part = part.strip()
        try:
            if "/" in part:
                # Step: */15 or 1-30/5
                base, step_str = part.split("/", 1)
                step = int(step_str)
                if step <= 0:
                    raise ValueError(part)
                if base == "*":
                    start, end = lo, hi
                elif "-" in base:
                    start_str, end_str = base.split("-", 1)
                    start, end = int(start_str), int(end_str)
                else:
                    start, end = int(base), hi
                values.update(range(start, end + 1, step))
            elif "-" in part:
                # Range: 1-5
                start_str, end_str = part.split("-", 1)
                values.update(range(int(start_str), int(end_str) + 1))
            elif part == "*":
                values.update(range(lo, hi + 1))
            else:
                values.add(int(part))
        except ValueError:
            msg = f"Invalid cron field: {field!r}"
            raise ValueError(msg) from None

    if not values or min(values) < lo or max(values) > hi:
        msg = f"Cron field {field!r} out of range {lo}-{hi}"
        raise ValueError(msg)
    return sorted(values)
