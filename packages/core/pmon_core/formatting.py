"""Human-scaled byte and rate formatting."""

from __future__ import annotations

import math


UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def scale(num_bytes: float, precision: int = 2) -> tuple[float, str]:
    """Scale a byte count to base-1024 units, e.g. ``scale(1536) == (1.5, "KB")``."""
    try:
        value = float(num_bytes)
    except (TypeError, ValueError):
        return (0, "B")
    if value == 0 or not math.isfinite(value):
        return (0, "B")

    magnitude = abs(value)
    idx = 0
    while magnitude >= 1024 and idx < len(UNITS) - 1:
        magnitude /= 1024
        idx += 1
    scaled = round(value / (1024**idx), precision)
    # Rounding can carry into the next unit (1023.999 KB -> 1024.0 KB).
    if abs(scaled) >= 1024 and idx < len(UNITS) - 1:
        idx += 1
        scaled = round(value / (1024**idx), precision)
    return (scaled, UNITS[idx])


def scale_rate(bytes_per_second: float, precision: int = 2) -> tuple[float, str]:
    value, unit = scale(bytes_per_second, precision)
    return (value, f"{unit}/s")


def format_bytes(num_bytes: float, precision: int = 2) -> str:
    value, unit = scale(num_bytes, precision)
    return f"{value:g} {unit}"


def format_rate(bytes_per_second: float, precision: int = 2) -> str:
    value, unit = scale_rate(bytes_per_second, precision)
    return f"{value:g} {unit}"


def scaled_dict(num_bytes: float) -> dict[str, float | str]:
    value, unit = scale(num_bytes)
    return {"value": value, "unit": unit}
