"""Versioned, reversible schema migrations for the signal store.

Each migration carries explicit ``up`` and ``down`` statements and the tables
it is expected to create. Applied versions are recorded in
``schema_migrations``; every step runs in its own transaction.
"""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from sweepwatch.util.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    description: str
    up: Tuple[str, ...]
    down: Tuple[str, ...]
    tables: Tuple[str, ...] = ()


MIGRATIONS: Tuple[Migration, ...] = (
    Migration(
        version=1,
        name="core_signals_devices",
        description="Signals with spatial grid expression index, device aggregates",
        up=(
            """
            CREATE TABLE signals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                signal_id TEXT NOT NULL UNIQUE,
                device_id TEXT,
                timestamp_ms INTEGER NOT NULL,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                altitude REAL NOT NULL DEFAULT 0,
                power_dbm REAL NOT NULL,
                frequency_hz REAL NOT NULL,
                bandwidth_hz REAL,
                modulation TEXT,
                source TEXT NOT NULL,
                metadata TEXT
            )
            """,
            "CREATE INDEX idx_signals_timestamp ON signals(timestamp_ms)",
            "CREATE INDEX idx_signals_device ON signals(device_id, timestamp_ms)",
            "CREATE INDEX idx_signals_source_ts ON signals(source, timestamp_ms)",
            """
            CREATE INDEX idx_signals_grid ON signals(
                CAST(latitude * 10000 AS INTEGER),
                CAST(longitude * 10000 AS INTEGER)
            )
            """,
            """
            CREATE TABLE devices (
                device_id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                manufacturer TEXT,
                first_seen_ms INTEGER NOT NULL,
                last_seen_ms INTEGER NOT NULL,
                avg_power_dbm REAL NOT NULL,
                freq_min_hz REAL NOT NULL,
                freq_max_hz REAL NOT NULL,
                signal_count INTEGER NOT NULL DEFAULT 0,
                metadata TEXT
            )
            """,
            "CREATE INDEX idx_devices_last_seen ON devices(last_seen_ms)",
        ),
        down=(
            "DROP TABLE IF EXISTS devices",
            "DROP TABLE IF EXISTS signals",
        ),
        tables=("signals", "devices"),
    ),
    Migration(
        version=2,
        name="relationships_patterns",
        description="Device relationships and detected patterns with their signal links",
        up=(
            """
            CREATE TABLE relationships (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_device_id TEXT NOT NULL,
                target_device_id TEXT NOT NULL,
                relationship_type TEXT NOT NULL,
                strength REAL NOT NULL DEFAULT 0,
                first_seen_ms INTEGER NOT NULL,
                last_seen_ms INTEGER NOT NULL,
                metadata TEXT,
                UNIQUE (source_device_id, target_device_id, relationship_type)
            )
            """,
            "CREATE INDEX idx_relationships_source ON relationships(source_device_id)",
            "CREATE INDEX idx_relationships_target ON relationships(target_device_id)",
            """
            CREATE TABLE patterns (
                pattern_id TEXT PRIMARY KEY,
                pattern_type TEXT NOT NULL,
                priority TEXT NOT NULL DEFAULT 'low',
                confidence REAL NOT NULL DEFAULT 0,
                description TEXT,
                timestamp_ms INTEGER NOT NULL,
                expires_at_ms INTEGER,
                metadata TEXT
            )
            """,
            "CREATE INDEX idx_patterns_expires ON patterns(expires_at_ms)",
            """
            CREATE TABLE pattern_signals (
                pattern_id TEXT NOT NULL,
                signal_id TEXT NOT NULL,
                PRIMARY KEY (pattern_id, signal_id)
            )
            """,
            "CREATE INDEX idx_pattern_signals_signal ON pattern_signals(signal_id)",
        ),
        down=(
            "DROP TABLE IF EXISTS pattern_signals",
            "DROP TABLE IF EXISTS patterns",
            "DROP TABLE IF EXISTS relationships",
        ),
        tables=("relationships", "patterns", "pattern_signals"),
    ),
    Migration(
        version=3,
        name="aggregation_tables",
        description="Hourly signal stats, daily device stats, hourly spatial heatmap",
        up=(
            """
            CREATE TABLE signal_stats_hourly (
                hour_ms INTEGER PRIMARY KEY,
                signal_count INTEGER NOT NULL,
                unique_devices INTEGER NOT NULL,
                avg_power_dbm REAL,
                min_power_dbm REAL,
                max_power_dbm REAL,
                freq_min_hz REAL,
                freq_max_hz REAL,
                source_counts TEXT,
                computed_at_ms INTEGER NOT NULL
            )
            """,
            """
            CREATE TABLE device_stats_daily (
                day_ms INTEGER NOT NULL,
                device_id TEXT NOT NULL,
                signal_count INTEGER NOT NULL,
                avg_power_dbm REAL,
                max_power_dbm REAL,
                active_hours INTEGER NOT NULL,
                computed_at_ms INTEGER NOT NULL,
                PRIMARY KEY (day_ms, device_id)
            )
            """,
            """
            CREATE TABLE spatial_heatmap_hourly (
                hour_ms INTEGER NOT NULL,
                grid_lat INTEGER NOT NULL,
                grid_lon INTEGER NOT NULL,
                signal_count INTEGER NOT NULL,
                unique_devices INTEGER NOT NULL,
                avg_power_dbm REAL,
                dominant_source TEXT,
                PRIMARY KEY (hour_ms, grid_lat, grid_lon)
            )
            """,
        ),
        down=(
            "DROP TABLE IF EXISTS spatial_heatmap_hourly",
            "DROP TABLE IF EXISTS device_stats_daily",
            "DROP TABLE IF EXISTS signal_stats_hourly",
        ),
        tables=("signal_stats_hourly", "device_stats_daily", "spatial_heatmap_hourly"),
    ),
    Migration(
        version=4,
        name="spatial_grid",
        description="Incrementally maintained per-hour grid cell aggregates",
        up=(
            """
            CREATE TABLE spatial_grid (
                grid_lat INTEGER NOT NULL,
                grid_lon INTEGER NOT NULL,
                hour_ms INTEGER NOT NULL,
                signal_count INTEGER NOT NULL,
                avg_power_dbm REAL NOT NULL,
                PRIMARY KEY (grid_lat, grid_lon, hour_ms)
            )
            """,
            "CREATE INDEX idx_spatial_grid_hour ON spatial_grid(hour_ms)",
        ),
        down=("DROP TABLE IF EXISTS spatial_grid",),
        tables=("spatial_grid",),
    ),
    Migration(
        version=5,
        name="aggregation_watermark",
        description="Fold watermark plus per-bucket device and source tallies for incremental aggregates",
        up=(
            """
            CREATE TABLE aggregation_watermark (
                name TEXT PRIMARY KEY,
                last_signal_rowid INTEGER NOT NULL,
                updated_at_ms INTEGER NOT NULL
            )
            """,
            """
            CREATE TABLE hourly_device_cells (
                hour_ms INTEGER NOT NULL,
                grid_lat INTEGER NOT NULL,
                grid_lon INTEGER NOT NULL,
                device_id TEXT NOT NULL,
                PRIMARY KEY (hour_ms, grid_lat, grid_lon, device_id)
            )
            """,
            "CREATE INDEX idx_hourly_device_cells_device ON hourly_device_cells(device_id, hour_ms)",
            """
            CREATE TABLE hourly_source_cells (
                hour_ms INTEGER NOT NULL,
                grid_lat INTEGER NOT NULL,
                grid_lon INTEGER NOT NULL,
                source TEXT NOT NULL,
                signal_count INTEGER NOT NULL,
                PRIMARY KEY (hour_ms, grid_lat, grid_lon, source)
            )
            """,
        ),
        down=(
            "DROP TABLE IF EXISTS hourly_source_cells",
            "DROP TABLE IF EXISTS hourly_device_cells",
            "DROP TABLE IF EXISTS aggregation_watermark",
        ),
        tables=("aggregation_watermark", "hourly_device_cells", "hourly_source_cells"),
    ),
)


def ensure_migrations_table(con: sqlite3.Connection) -> None:
    con.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            applied_at_ms INTEGER NOT NULL,
            execution_ms REAL NOT NULL
        )
        """
    )


def current_version(con: sqlite3.Connection) -> int:
    ensure_migrations_table(con)
    row = con.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def applied_migrations(con: sqlite3.Connection) -> List[Dict[str, object]]:
    ensure_migrations_table(con)
    rows = con.execute(
        "SELECT version, name, description, applied_at_ms, execution_ms FROM schema_migrations ORDER BY version"
    ).fetchall()
    return [
        {
            "version": int(r[0]),
            "name": r[1],
            "description": r[2],
            "appliedAtMs": int(r[3]),
            "executionMs": float(r[4]),
        }
        for r in rows
    ]


def _check_sequence(migrations: Sequence[Migration]) -> None:
    versions = [m.version for m in migrations]
    if versions != list(range(1, len(versions) + 1)):
        raise ValueError(f"migration versions must be contiguous from 1, got {versions}")


def _run(con: sqlite3.Connection, statements: Sequence[str]) -> None:
    for stmt in statements:
        con.execute(stmt)


def migrate(
    con: sqlite3.Connection,
    target: Optional[int] = None,
    *,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> List[int]:
    """Apply pending migrations up to ``target`` (default: latest).

    ``con`` must be in autocommit mode (``isolation_level=None``).
    Returns the versions applied.
    """
    _check_sequence(migrations)
    latest = migrations[-1].version if migrations else 0
    target = latest if target is None else target
    if not 0 <= target <= latest:
        raise ValueError(f"target version {target} outside 0..{latest}")
    ensure_migrations_table(con)
    current = current_version(con)
    applied: List[int] = []
    for mig in migrations:
        if mig.version <= current or mig.version > target:
            continue
        t0 = time.perf_counter()
        con.execute("BEGIN IMMEDIATE")
        try:
            _run(con, mig.up)
            con.execute(
                "INSERT INTO schema_migrations (version, name, description, applied_at_ms, execution_ms) VALUES (?, ?, ?, ?, ?)",
                (mig.version, mig.name, mig.description, int(time.time() * 1000), (time.perf_counter() - t0) * 1000.0),
            )
            con.execute("COMMIT")
        except Exception:
            con.execute("ROLLBACK")
            logger.error("Migration %d (%s) failed; rolled back", mig.version, mig.name)
            raise
        logger.info("Applied migration %d: %s", mig.version, mig.name)
        applied.append(mig.version)
    return applied


def rollback(
    con: sqlite3.Connection,
    target: int,
    *,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> List[int]:
    """Revert applied migrations, newest first, until ``target`` is current."""
    _check_sequence(migrations)
    if target < 0:
        raise ValueError("target version must be >= 0")
    current = current_version(con)
    reverted: List[int] = []
    for mig in sorted(migrations, key=lambda m: m.version, reverse=True):
        if mig.version > current or mig.version <= target:
            continue
        con.execute("BEGIN IMMEDIATE")
        try:
            _run(con, mig.down)
            con.execute("DELETE FROM schema_migrations WHERE version = ?", (mig.version,))
            con.execute("COMMIT")
        except Exception:
            con.execute("ROLLBACK")
            logger.error("Rollback of migration %d (%s) failed", mig.version, mig.name)
            raise
        logger.info("Rolled back migration %d: %s", mig.version, mig.name)
        reverted.append(mig.version)
    return reverted


def validate(con: sqlite3.Connection, *, migrations: Sequence[Migration] = MIGRATIONS) -> List[str]:
    """List schema problems: missing tables for applied versions, unknown versions."""
    problems: List[str] = []
    existing = {
        r[0] for r in con.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    }
    known = {m.version: m for m in migrations}
    for entry in applied_migrations(con):
        mig = known.get(int(entry["version"]))
        if mig is None:
            problems.append(f"unknown migration version {entry['version']} recorded")
            continue
        for table in mig.tables:
            if table not in existing:
                problems.append(f"migration {mig.version} ({mig.name}) expects table '{table}'")
    return problems
