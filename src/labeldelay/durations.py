from __future__ import annotations

import math
import re
from typing import Final


_SECOND_MS: Final[int] = 1000
_MINUTE_MS: Final[int] = 60 * _SECOND_MS
_HOUR_MS: Final[int] = 60 * _MINUTE_MS
_DAY_MS: Final[int] = 24 * _HOUR_MS
_WEEK_MS: Final[int] = 7 * _DAY_MS
_YEAR_MS: Final[float] = 365.25 * _DAY_MS

_DURATION_PATTERN = re.compile(
    r"^(?P<value>-?\d*\.?\d+)\s*(?P<unit>"
    r"milliseconds?|msecs?|ms|seconds?|secs?|s|minutes?|mins?|m|"
    r"hours?|hrs?|h|days?|d|weeks?|w|years?|yrs?|y)?$",
    re.IGNORECASE,
)
_UNIT_MS: Final[dict[str, float]] = {
    "ms": 1,
    "msec": 1,
    "msecs": 1,
    "millisecond": 1,
    "milliseconds": 1,
    "s": _SECOND_MS,
    "sec": _SECOND_MS,
    "secs": _SECOND_MS,
    "second": _SECOND_MS,
    "seconds": _SECOND_MS,
    "m": _MINUTE_MS,
    "min": _MINUTE_MS,
    "mins": _MINUTE_MS,
    "minute": _MINUTE_MS,
    "minutes": _MINUTE_MS,
    "h": _HOUR_MS,
    "hr": _HOUR_MS,
    "hrs": _HOUR_MS,
    "hour": _HOUR_MS,
    "hours": _HOUR_MS,
    "d": _DAY_MS,
    "day": _DAY_MS,
    "days": _DAY_MS,
    "w": _WEEK_MS,
    "week": _WEEK_MS,
    "weeks": _WEEK_MS,
    "y": _YEAR_MS,
    "yr": _YEAR_MS,
    "yrs": _YEAR_MS,
    "year": _YEAR_MS,
    "years": _YEAR_MS,
}


def parse_duration_ms(value: str | int | float) -> int:
    """Parse ``5ms``, ``1h``, ``2 days`` or a bare millisecond count."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        if not math.isfinite(value):
            raise ValueError(f"Invalid duration: {value!r}")
        return _round_half_up(value)
    text = value.strip()
    if not text or len(text) > 100:
        raise ValueError(f"Invalid duration: {value!r}")
    match = _DURATION_PATTERN.match(text)
    if match is None:
        raise ValueError(f"Invalid duration: {value!r}")
    unit = (match.group("unit") or "ms").lower()
    return _round_half_up(float(match.group("value")) * _UNIT_MS[unit])


def humanize_duration_ms(duration_ms: int) -> str:
    magnitude = abs(duration_ms)
    if magnitude >= _DAY_MS:
        return _plural(duration_ms, magnitude, _DAY_MS, "day")
    if magnitude >= _HOUR_MS:
        return _plural(duration_ms, magnitude, _HOUR_MS, "hour")
    if magnitude >= _MINUTE_MS:
        return _plural(duration_ms, magnitude, _MINUTE_MS, "minute")
    if magnitude >= _SECOND_MS:
        return _plural(duration_ms, magnitude, _SECOND_MS, "second")
    return f"{duration_ms} ms"


def _plural(duration_ms: int, magnitude: int, unit_ms: int, name: str) -> str:
    is_plural = magnitude >= unit_ms * 1.5
    count = _round_half_up(duration_ms / unit_ms)
    return f"{count} {name}{'s' if is_plural else ''}"


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)
