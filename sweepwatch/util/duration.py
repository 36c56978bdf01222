"""Duration parsing helpers for configuration values and CLI arguments."""

from __future__ import annotations

from typing import Any, Optional

_MULTIPLIERS = {
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}


def parse_duration_to_seconds(raw: Optional[Any]) -> Optional[float]:
    """Parse strings like '30', '10m', '2h', '7d', returning seconds as float.

    Raises ValueError on malformed input or a negative duration.
    """

    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
        if value < 0:
            raise ValueError(f"Negative duration '{raw}'")
        return value
    text = str(raw).strip().lower()
    if not text:
        return None
    unit = text[-1]
    if unit.isalpha():
        value_part = text[:-1]
    else:
        unit = "s"
        value_part = text
    if unit not in _MULTIPLIERS:
        raise ValueError(f"Unsupported duration suffix '{unit}'")
    try:
        value = float(value_part)
    except ValueError as exc:
        raise ValueError(f"Invalid duration '{raw}'") from exc
    if value < 0:
        raise ValueError(f"Negative duration '{raw}'")
    return value * _MULTIPLIERS[unit]
