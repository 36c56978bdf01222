"""Periodic retention and maintenance passes over the signal store.

A pass runs these steps in order; a failing step is logged and the rest
still run:

1. backup (maintenance passes only, best-effort)
2. fold new signals into the hourly, heatmap and daily aggregate rows
3. expire signals per retention policy, in bounded batches
4. delete devices with no signal inside the active window
5. delete relationships, pattern links and patterns left dangling
6. prune old aggregates and compact grid cells
7. integrity check and conditional VACUUM (maintenance passes only)

Folding also runs on its own shorter timer. A watermark on the signal rowid
makes every signal count exactly once, before expiry can remove it.

Every batch is its own short write transaction, so ingestion interleaves
with a long cleanup. Only one pass runs at a time.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sweepwatch.model import GRID_SCALE
from sweepwatch.retention.backup import backup_database
from sweepwatch.retention.policy import RetentionPolicy
from sweepwatch.store.store import SignalStore
from sweepwatch.util.logging import get_logger, log_exception
from sweepwatch.util.time import DAY_MS, HOUR_MS, day_bucket, hour_bucket, now_ms

logger = get_logger(__name__)

MAX_BATCH = 10_000
FOLD_WATERMARK = "signals"

_HOUR_SQL = f"(timestamp_ms / {HOUR_MS}) * {HOUR_MS}"
_DAY_SQL = f"(timestamp_ms / {DAY_MS}) * {DAY_MS}"
_GRID_LAT_SQL = f"CAST(latitude * {GRID_SCALE} AS INTEGER)"
_GRID_LON_SQL = f"CAST(longitude * {GRID_SCALE} AS INTEGER)"


@dataclass(frozen=True)
class CleanupConfig:
    batch_size: int = MAX_BATCH
    interval_sec: float = 3600.0
    aggregate_interval_sec: float = 600.0
    maintenance_interval_sec: float = 86400.0
    max_runtime_sec: float = 30.0
    device_retention_ms: int = 7 * DAY_MS
    pattern_retention_ms: int = DAY_MS
    aggregate_retention_ms: int = 30 * DAY_MS
    backup_dir: Optional[str] = None
    backup_keep: int = 7
    vacuum_fragmentation: float = 0.2

    def __post_init__(self) -> None:
        if not 1 <= self.batch_size <= MAX_BATCH:
            raise ValueError(f"batch_size must be within 1..{MAX_BATCH}")


@dataclass
class CleanupReport:
    started_ms: int
    full: bool
    finished_ms: Optional[int] = None
    backup_path: Optional[str] = None
    signals_deleted: int = 0
    batches: int = 0
    devices_deleted: int = 0
    relationships_deleted: int = 0
    pattern_links_deleted: int = 0
    patterns_deleted: int = 0
    grid_cells_deleted: int = 0
    signals_aggregated: int = 0
    hourly_rows: int = 0
    daily_rows: int = 0
    heatmap_rows: int = 0
    aggregates_pruned: int = 0
    integrity: Optional[str] = None
    fragmentation: Optional[float] = None
    vacuumed: bool = False
    size_before: Optional[int] = None
    size_after: Optional[int] = None
    interrupted: bool = False
    step_ms: Dict[str, float] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class CleanupScheduler:
    def __init__(
        self,
        store: SignalStore,
        policy: RetentionPolicy,
        config: Optional[CleanupConfig] = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.policy = policy
        self.config = config or CleanupConfig()
        self._clock = clock
        self._pass_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._last_maintenance_ms: Optional[int] = None
        self.last_report: Optional[CleanupReport] = None

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, name="cleanup-scheduler", daemon=True),
            threading.Thread(target=self._aggregate_loop, name="cleanup-aggregate", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the timers; an in-flight pass ends at its next batch boundary."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def _loop(self) -> None:
        while not self._stop.wait(self.config.interval_sec):
            self.run_pass()

    def _aggregate_loop(self) -> None:
        while not self._stop.wait(self.config.aggregate_interval_sec):
            self.run_aggregation()

    @property
    def running(self) -> bool:
        return self._pass_lock.locked()

    def _maintenance_due(self, now: int) -> bool:
        if self._last_maintenance_ms is None:
            return True
        return now - self._last_maintenance_ms >= self.config.maintenance_interval_sec * 1000

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    def run_pass(self, *, full: Optional[bool] = None) -> Optional[CleanupReport]:
        """Run one pass; returns None if another pass is already in flight."""
        if not self._pass_lock.acquire(blocking=False):
            logger.info("Cleanup pass already running; skipping this tick")
            return None
        try:
            now = self._clock()
            if full is None:
                full = self._maintenance_due(now)
            report = CleanupReport(started_ms=now, full=full)
            steps: List[Tuple[str, Callable[[CleanupReport, int], None]]] = []
            if full:
                steps.append(("backup", self._step_backup))
            steps += [
                ("aggregate", self._step_aggregate),
                ("expire_signals", self._step_expire_signals),
                ("orphan_devices", self._step_orphan_devices),
                ("orphan_derived", self._step_orphan_derived),
                ("prune_aggregates", self._step_prune_aggregates),
            ]
            if full:
                steps.append(("integrity", self._step_integrity))
            self._run_steps(report, now, steps)

            if full and "integrity" not in report.errors:
                self._last_maintenance_ms = now
            report.finished_ms = self._clock()
            self.last_report = report
            logger.info(
                "Cleanup pass done: %d signals, %d devices, %d relationships, %d patterns removed%s",
                report.signals_deleted,
                report.devices_deleted,
                report.relationships_deleted,
                report.patterns_deleted,
                f" ({len(report.errors)} step errors)" if report.errors else "",
            )
            return report
        finally:
            self._pass_lock.release()

    def run_aggregation(self) -> Optional[CleanupReport]:
        """Fold new signals into the aggregate tables between cleanup passes."""
        if not self._pass_lock.acquire(blocking=False):
            logger.debug("Cleanup pass in flight; it folds aggregates itself")
            return None
        try:
            now = self._clock()
            report = CleanupReport(started_ms=now, full=False)
            self._run_steps(report, now, [("aggregate", self._step_aggregate)])
            report.finished_ms = self._clock()
            if report.signals_aggregated:
                logger.debug("Folded %d signals into aggregates", report.signals_aggregated)
            return report
        finally:
            self._pass_lock.release()

    def _run_steps(
        self,
        report: CleanupReport,
        now: int,
        steps: List[Tuple[str, Callable[[CleanupReport, int], None]]],
    ) -> None:
        for name, step in steps:
            if self._stop.is_set():
                report.interrupted = True
                break
            t0 = time.perf_counter()
            try:
                step(report, now)
            except Exception as exc:
                log_exception(logger, f"Cleanup step {name} failed", error_type="cleanup", step=name)
                report.errors[name] = str(exc)
            report.step_ms[name] = (time.perf_counter() - t0) * 1000.0

    def _delete_batched(self, report: CleanupReport, table: str, where: str, params: Tuple[Any, ...]) -> int:
        """Delete matching rows in batches; each batch is one transaction."""
        total = 0
        batch = self.config.batch_size
        deadline = time.monotonic() + self.config.max_runtime_sec
        sql = f"DELETE FROM {table} WHERE rowid IN (SELECT rowid FROM {table} WHERE {where} LIMIT ?)"
        while True:
            if self._stop.is_set():
                report.interrupted = True
                break
            if time.monotonic() >= deadline:
                report.skipped.append(f"{table}: runtime budget reached")
                break
            with self.store.transaction() as con:
                deleted = con.execute(sql, params + (batch,)).rowcount
            total += deleted
            report.batches += 1
            if deleted < batch:
                break
        return total

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _step_backup(self, report: CleanupReport, now: int) -> None:
        if not self.config.backup_dir:
            report.skipped.append("backup: disabled")
            return
        try:
            path = backup_database(self.store, self.config.backup_dir, keep=self.config.backup_keep)
        except Exception as exc:
            logger.warning("Backup failed, continuing cleanup: %s", exc, extra={"step": "backup"})
            report.skipped.append(f"backup: {exc}")
            return
        report.backup_path = str(path)

    def _step_expire_signals(self, report: CleanupReport, now: int) -> None:
        for where, params in self.policy.expiry_clauses(now):
            report.signals_deleted += self._delete_batched(report, "signals", where, params)

    def _step_orphan_devices(self, report: CleanupReport, now: int) -> None:
        cutoff = now - self.config.device_retention_ms
        report.devices_deleted += self._delete_batched(
            report,
            "devices",
            "NOT EXISTS (SELECT 1 FROM signals s WHERE s.device_id = devices.device_id AND s.timestamp_ms >= ?)",
            (cutoff,),
        )

    def _step_orphan_derived(self, report: CleanupReport, now: int) -> None:
        report.relationships_deleted += self._delete_batched(
            report,
            "relationships",
            "source_device_id NOT IN (SELECT device_id FROM devices) "
            "OR target_device_id NOT IN (SELECT device_id FROM devices)",
            (),
        )
        report.pattern_links_deleted += self._delete_batched(
            report,
            "pattern_signals",
            "signal_id NOT IN (SELECT signal_id FROM signals)",
            (),
        )
        report.patterns_deleted += self._delete_batched(
            report,
            "patterns",
            "(expires_at_ms IS NOT NULL AND expires_at_ms < ?) "
            "OR (expires_at_ms IS NULL AND timestamp_ms < ?) "
            "OR pattern_id NOT IN (SELECT pattern_id FROM pattern_signals)",
            (now, now - self.config.pattern_retention_ms),
        )
        report.pattern_links_deleted += self._delete_batched(
            report,
            "pattern_signals",
            "pattern_id NOT IN (SELECT pattern_id FROM patterns)",
            (),
        )

    def _step_aggregate(self, report: CleanupReport, now: int) -> None:
        """Fold signals stored since the last run into the aggregate tables."""
        while True:
            if self._stop.is_set():
                report.interrupted = True
                break
            if self._fold_batch(report, now) < self.config.batch_size:
                break

    def _fold_batch(self, report: CleanupReport, now: int) -> int:
        # Each signal row is folded once; the watermark moves in the same transaction.
        with self.store.transaction() as con:
            row = con.execute(
                "SELECT last_signal_rowid FROM aggregation_watermark WHERE name = ?", (FOLD_WATERMARK,)
            ).fetchone()
            low = int(row[0]) if row else 0
            row = con.execute(
                "SELECT COUNT(*), MAX(id) FROM (SELECT id FROM signals WHERE id > ? ORDER BY id LIMIT ?)",
                (low, self.config.batch_size),
            ).fetchone()
            folded = int(row[0])
            if not folded:
                return 0
            span = (low, int(row[1]))

            report.hourly_rows += con.execute(
                f"""
                INSERT INTO signal_stats_hourly (
                    hour_ms, signal_count, unique_devices, avg_power_dbm, min_power_dbm,
                    max_power_dbm, freq_min_hz, freq_max_hz, source_counts, computed_at_ms
                )
                SELECT {_HOUR_SQL} AS h, COUNT(*), 0, AVG(power_dbm), MIN(power_dbm), MAX(power_dbm),
                       MIN(frequency_hz), MAX(frequency_hz), '{{}}', ?
                FROM signals WHERE id > ? AND id <= ?
                GROUP BY h
                ON CONFLICT(hour_ms) DO UPDATE SET
                    avg_power_dbm = (signal_stats_hourly.avg_power_dbm * signal_stats_hourly.signal_count
                                     + excluded.avg_power_dbm * excluded.signal_count)
                                    / (signal_stats_hourly.signal_count + excluded.signal_count),
                    signal_count = signal_stats_hourly.signal_count + excluded.signal_count,
                    min_power_dbm = MIN(signal_stats_hourly.min_power_dbm, excluded.min_power_dbm),
                    max_power_dbm = MAX(signal_stats_hourly.max_power_dbm, excluded.max_power_dbm),
                    freq_min_hz = MIN(signal_stats_hourly.freq_min_hz, excluded.freq_min_hz),
                    freq_max_hz = MAX(signal_stats_hourly.freq_max_hz, excluded.freq_max_hz),
                    computed_at_ms = excluded.computed_at_ms
                """,
                (now,) + span,
            ).rowcount
            con.execute(
                f"""
                INSERT OR IGNORE INTO hourly_device_cells (hour_ms, grid_lat, grid_lon, device_id)
                SELECT DISTINCT {_HOUR_SQL}, {_GRID_LAT_SQL}, {_GRID_LON_SQL}, device_id
                FROM signals WHERE id > ? AND id <= ? AND device_id IS NOT NULL
                """,
                span,
            )
            con.execute(
                f"""
                INSERT INTO hourly_source_cells (hour_ms, grid_lat, grid_lon, source, signal_count)
                SELECT {_HOUR_SQL} AS h, {_GRID_LAT_SQL} AS g_lat, {_GRID_LON_SQL} AS g_lon, source, COUNT(*)
                FROM signals WHERE id > ? AND id <= ?
                GROUP BY h, g_lat, g_lon, source
                ON CONFLICT(hour_ms, grid_lat, grid_lon, source) DO UPDATE SET
                    signal_count = hourly_source_cells.signal_count + excluded.signal_count
                """,
                span,
            )
            report.heatmap_rows += con.execute(
                f"""
                INSERT INTO spatial_heatmap_hourly (
                    hour_ms, grid_lat, grid_lon, signal_count, unique_devices, avg_power_dbm, dominant_source
                )
                SELECT {_HOUR_SQL} AS h, {_GRID_LAT_SQL} AS g_lat, {_GRID_LON_SQL} AS g_lon,
                       COUNT(*), 0, AVG(power_dbm), NULL
                FROM signals WHERE id > ? AND id <= ?
                GROUP BY h, g_lat, g_lon
                ON CONFLICT(hour_ms, grid_lat, grid_lon) DO UPDATE SET
                    avg_power_dbm = (spatial_heatmap_hourly.avg_power_dbm * spatial_heatmap_hourly.signal_count
                                     + excluded.avg_power_dbm * excluded.signal_count)
                                    / (spatial_heatmap_hourly.signal_count + excluded.signal_count),
                    signal_count = spatial_heatmap_hourly.signal_count + excluded.signal_count
                """,
                span,
            ).rowcount
            report.daily_rows += con.execute(
                f"""
                INSERT INTO device_stats_daily (
                    day_ms, device_id, signal_count, avg_power_dbm, max_power_dbm, active_hours, computed_at_ms
                )
                SELECT {_DAY_SQL} AS d, device_id, COUNT(*), AVG(power_dbm), MAX(power_dbm), 0, ?
                FROM signals WHERE id > ? AND id <= ? AND device_id IS NOT NULL
                GROUP BY d, device_id
                ON CONFLICT(day_ms, device_id) DO UPDATE SET
                    avg_power_dbm = (device_stats_daily.avg_power_dbm * device_stats_daily.signal_count
                                     + excluded.avg_power_dbm * excluded.signal_count)
                                    / (device_stats_daily.signal_count + excluded.signal_count),
                    signal_count = device_stats_daily.signal_count + excluded.signal_count,
                    max_power_dbm = MAX(device_stats_daily.max_power_dbm, excluded.max_power_dbm),
                    computed_at_ms = excluded.computed_at_ms
                """,
                (now,) + span,
            ).rowcount

            hours = [
                int(r[0])
                for r in con.execute(f"SELECT DISTINCT {_HOUR_SQL} FROM signals WHERE id > ? AND id <= ?", span)
            ]
            for hour in hours:
                self._refresh_hour(con, hour)
            for day in sorted({day_bucket(h) for h in hours}):
                con.execute(
                    """
                    UPDATE device_stats_daily SET active_hours = (
                        SELECT COUNT(DISTINCT c.hour_ms) FROM hourly_device_cells c
                        WHERE c.device_id = device_stats_daily.device_id
                          AND c.hour_ms >= device_stats_daily.day_ms AND c.hour_ms < device_stats_daily.day_ms + ?
                    )
                    WHERE day_ms = ?
                    """,
                    (DAY_MS, day),
                )

            con.execute(
                """
                INSERT INTO aggregation_watermark (name, last_signal_rowid, updated_at_ms) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    last_signal_rowid = excluded.last_signal_rowid,
                    updated_at_ms = excluded.updated_at_ms
                """,
                (FOLD_WATERMARK, span[1], now),
            )
        report.signals_aggregated += folded
        return folded

    def _refresh_hour(self, con: sqlite3.Connection, hour: int) -> None:
        sources = {
            r[0]: int(r[1])
            for r in con.execute(
                "SELECT source, SUM(signal_count) FROM hourly_source_cells WHERE hour_ms = ? GROUP BY source ORDER BY source",
                (hour,),
            ).fetchall()
        }
        con.execute(
            """
            UPDATE signal_stats_hourly SET
                unique_devices = (SELECT COUNT(DISTINCT device_id) FROM hourly_device_cells WHERE hour_ms = ?),
                source_counts = ?
            WHERE hour_ms = ?
            """,
            (hour, json.dumps(sources), hour),
        )
        con.execute(
            """
            UPDATE spatial_heatmap_hourly SET
                unique_devices = (
                    SELECT COUNT(*) FROM hourly_device_cells c
                    WHERE c.hour_ms = spatial_heatmap_hourly.hour_ms
                      AND c.grid_lat = spatial_heatmap_hourly.grid_lat
                      AND c.grid_lon = spatial_heatmap_hourly.grid_lon
                ),
                dominant_source = (
                    SELECT s.source FROM hourly_source_cells s
                    WHERE s.hour_ms = spatial_heatmap_hourly.hour_ms
                      AND s.grid_lat = spatial_heatmap_hourly.grid_lat
                      AND s.grid_lon = spatial_heatmap_hourly.grid_lon
                    ORDER BY s.signal_count DESC, s.source LIMIT 1
                )
            WHERE hour_ms = ?
            """,
            (hour,),
        )

    def _step_prune_aggregates(self, report: CleanupReport, now: int) -> None:
        agg_cutoff = now - self.config.aggregate_retention_ms
        for table in ("signal_stats_hourly", "spatial_heatmap_hourly", "hourly_device_cells", "hourly_source_cells"):
            report.aggregates_pruned += self._delete_batched(report, table, "hour_ms < ?", (agg_cutoff,))
        report.aggregates_pruned += self._delete_batched(report, "device_stats_daily", "day_ms < ?", (agg_cutoff,))
        grid_cutoff = hour_bucket(now - self.policy.max_ttl_ms) - HOUR_MS
        report.grid_cells_deleted += self._delete_batched(report, "spatial_grid", "hour_ms < ?", (grid_cutoff,))

    def _step_integrity(self, report: CleanupReport, now: int) -> None:
        results = self.store.quick_check()
        report.integrity = "ok" if results == ["ok"] else "; ".join(results[:5])
        pages = self.store.page_stats()
        report.size_before = pages["sizeBytes"]
        report.fragmentation = pages["freelistCount"] / pages["pageCount"] if pages["pageCount"] else 0.0
        if report.integrity != "ok":
            logger.error("Integrity check failed, skipping VACUUM: %s", report.integrity, extra={"step": "integrity"})
            report.skipped.append("vacuum: integrity check failed")
            return
        if report.fragmentation <= self.config.vacuum_fragmentation:
            report.skipped.append("vacuum: below fragmentation threshold")
            report.size_after = report.size_before
            return
        logger.info("Fragmentation %.1f%% exceeds threshold; running VACUUM", report.fragmentation * 100)
        self.store.vacuum()
        report.vacuumed = True
        report.size_after = self.store.page_stats()["sizeBytes"]
