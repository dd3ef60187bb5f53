from __future__ import annotations

from typing import Any


def coerce_int(value: Any, default: int = 0) -> int:
    """Read a JSON scalar as an integer the lenient way.

    Numbers are truncated, numeric strings are parsed, booleans map to 1/0 and
    anything else (including a missing value) yields ``default``.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return default
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except (TypeError, ValueError, OverflowError):
            return default
    return default
