"""Duration parsing utilities."""

import math
import re

from dkan_query.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+)(ms|s|m|h|d)$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}
_FOREVER = frozenset({"forever", "infinity", "inf"})


def parse_duration(duration: Duration) -> float:
    """Parse duration string to milliseconds. Passthrough if already numeric.

    "forever" maps to an infinite duration, which pins cached data until it
    is explicitly invalidated.
    """
    if isinstance(duration, bool):
        raise TypeError(f"Invalid duration: {duration!r}")

    if isinstance(duration, (int, float)):
        if math.isnan(duration) or duration < 0:
            raise ValueError(f"Invalid duration: {duration!r}")
        return duration

    if duration.strip().lower() in _FOREVER:
        return math.inf

    match = _DURATION_PATTERN.match(duration)
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    return int(value) * _UNITS[unit]
