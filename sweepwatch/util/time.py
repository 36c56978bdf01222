"""Epoch-millisecond clock and UTC bucketing helpers."""

from __future__ import annotations

import time

HOUR_MS = 3_600_000
DAY_MS = 24 * HOUR_MS


def now_ms() -> int:
    """Wall-clock time in integer milliseconds since the epoch."""
    return int(time.time() * 1000)


def hour_bucket(ts_ms: int) -> int:
    """Start of the UTC hour containing ``ts_ms``."""
    return (int(ts_ms) // HOUR_MS) * HOUR_MS


def day_bucket(ts_ms: int) -> int:
    """Start of the UTC day containing ``ts_ms``."""
    return (int(ts_ms) // DAY_MS) * DAY_MS
