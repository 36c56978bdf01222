"""
sweepwatch: supervised spectrum sweeps, live fan-out and a retention-managed signal store.

The core library wraps an external sweep program (hackrf_sweep by default),
parses its line output into samples, rebroadcasts typed events to live
subscribers, and persists detected signals into a spatially indexed SQLite
store that a background scheduler keeps within its retention policy.

Usage:
    from sweepwatch.config import load_settings
    from sweepwatch.runtime import Runtime

    runtime = Runtime.from_settings(load_settings())
    runtime.start()
"""
from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
