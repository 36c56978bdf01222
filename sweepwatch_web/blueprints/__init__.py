"""
Blueprints package for Sweepwatch Web.

This package contains Flask blueprints that organize routes by function:
- api_sweep: Supervisor control and status (/api/sweep/*)
- api_signals: Stored signals and relationships (/api/signals*, /api/relationships)
- api_stream: Long-poll fallback for the event stream (/api/stream/poll)
- api_db: Retention and database statistics (/api/db/*)
- api_debug: Health and error tracking (/api/health, /api/debug/*)
"""
from __future__ import annotations
