"""
Duration tokens as printed by test frameworks ("120ms", "1.5s", "2m").
"""

import re

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m)")

_UNIT_FACTORS = {
    "ms": 1.0,
    "s": 1000.0,
    "m": 60_000.0,
}


def parse_duration(token: str) -> float:
    """
    Convert a duration token to milliseconds.

    Accepts exactly ``<number><unit>`` with unit ``ms``, ``s`` or ``m`` and
    no space in between. Anything else yields ``0``.

    Examples:
        parse_duration("1500ms") -> 1500.0
        parse_duration("1.5s")   -> 1500.0
        parse_duration("2m")     -> 120000.0
        parse_duration("bogus")  -> 0.0
    """
    if not isinstance(token, str):
        return 0.0
    match = _DURATION_RE.fullmatch(token)
    if not match:
        return 0.0
    value, unit = match.groups()
    return float(value) * _UNIT_FACTORS[unit]


def format_duration(ms: float) -> str:
    """Format a millisecond duration for display."""
    if ms < 1:
        return f"{ms * 1000:.0f}us"
    elif ms < 1000:
        return f"{ms:.0f}ms"
    elif ms < 60_000:
        return f"{ms / 1000:.2f}s"
    else:
        return f"{ms / 60_000:.1f}m"
