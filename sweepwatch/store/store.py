"""SQLite-backed signal store.

One writer connection serialized behind a lock, WAL journaling, and a small
bounded pool of read-only connections shared by reader threads. Writes that
hit lock contention are retried with bounded backoff and surface as
PersistenceError.
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sweepwatch.errors import PersistenceError
from sweepwatch.model import (
    GRID_SCALE,
    Device,
    Pattern,
    Relationship,
    Signal,
    Source,
    grid_cell,
    infer_device_type,
)
from sweepwatch.store import migrations
from sweepwatch.util.logging import get_logger
from sweepwatch.util.time import hour_bucket, now_ms

logger = get_logger(__name__)

MAX_RECENT = 1000
MAX_IDLE_READERS = 4

_SIGNAL_COLUMNS = (
    "signal_id, device_id, timestamp_ms, latitude, longitude, altitude, power_dbm, "
    "frequency_hz, bandwidth_hz, modulation, source, metadata"
)


class WriteLockTimeout(Exception):
    """The store's single-writer lock was not acquired in time."""


class SignalStore:
    def __init__(
        self,
        path: str,
        *,
        write_timeout_sec: float = 5.0,
        retry_attempts: int = 3,
        retry_backoff_sec: float = 0.05,
        max_idle_readers: int = MAX_IDLE_READERS,
        migrate: bool = True,
    ) -> None:
        self.path = path
        self.write_timeout_sec = write_timeout_sec
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_sec = retry_backoff_sec
        self._memory = path == ":memory:"
        self._write_lock = threading.Lock()
        self.max_idle_readers = max(1, max_idle_readers)
        self._idle_readers: List[sqlite3.Connection] = []
        self._open_readers = 0
        self._readers_lock = threading.Lock()
        self.con = self._open_writer()
        if migrate:
            migrations.migrate(self.con)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _open_writer(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.path, timeout=30.0, isolation_level=None, check_same_thread=False)
        con.row_factory = sqlite3.Row
        try:
            con.execute("PRAGMA journal_mode=WAL")
        except sqlite3.OperationalError:
            pass
        con.execute("PRAGMA busy_timeout=5000")
        con.execute("PRAGMA synchronous=NORMAL")
        return con

    def _open_reader(self) -> sqlite3.Connection:
        abspath = os.path.abspath(self.path)
        con = sqlite3.connect(
            f"file:{abspath}?mode=ro", uri=True, timeout=30.0, isolation_level=None, check_same_thread=False
        )
        con.execute("PRAGMA busy_timeout=2000")
        con.row_factory = sqlite3.Row
        return con

    @property
    def open_readers(self) -> int:
        with self._readers_lock:
            return self._open_readers

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Connection for queries; readers never take the write lock.

        Connections are borrowed from the idle pool and handed back afterwards.
        At most ``max_idle_readers`` stay open between calls; extra connections
        opened under concurrency are closed on release.
        """
        if self._memory:
            with self._write_lock:
                yield self.con
            return
        with self._readers_lock:
            con = self._idle_readers.pop() if self._idle_readers else None
            if con is None:
                self._open_readers += 1
        if con is None:
            try:
                con = self._open_reader()
            except BaseException:
                with self._readers_lock:
                    self._open_readers -= 1
                raise
        try:
            yield con
        finally:
            self._release_reader(con)

    def _release_reader(self, con: sqlite3.Connection) -> None:
        with self._readers_lock:
            if len(self._idle_readers) < self.max_idle_readers:
                self._idle_readers.append(con)
                return
            self._open_readers -= 1
        con.close()

    def close(self) -> None:
        with self._readers_lock:
            readers, self._idle_readers = self._idle_readers, []
            self._open_readers -= len(readers)
        for con in readers:
            con.close()
        self.con.close()

    # ------------------------------------------------------------------
    # Write discipline
    # ------------------------------------------------------------------

    def begin(self) -> None:
        self.con.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        self.con.execute("COMMIT")

    def rollback(self) -> None:
        if self.con.in_transaction:
            self.con.execute("ROLLBACK")

    @contextmanager
    def write_lock(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        if not self._write_lock.acquire(timeout=self.write_timeout_sec if timeout is None else timeout):
            raise WriteLockTimeout(f"write lock not acquired within {self.write_timeout_sec:g}s")
        try:
            yield self.con
        finally:
            self._write_lock.release()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction; rolled back on any error."""
        with self.write_lock() as con:
            self.begin()
            try:
                yield con
                self.commit()
            except BaseException:
                self.rollback()
                raise

    def _with_retry(self, what: str, fn: Any) -> Any:
        delay = self.retry_backoff_sec
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                with self.transaction() as con:
                    return fn(con)
            except (sqlite3.OperationalError, WriteLockTimeout) as exc:
                last_exc = exc
                logger.debug("%s attempt %d/%d failed: %s", what, attempt, self.retry_attempts, exc)
                if attempt < self.retry_attempts:
                    time.sleep(delay)
                    delay *= 2
            except sqlite3.Error as exc:
                raise PersistenceError(f"{what} failed: {exc}") from exc
        raise PersistenceError(f"{what} failed after {self.retry_attempts} attempts: {last_exc}") from last_exc

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, signal: Signal) -> bool:
        """Persist a signal; False when ``signal_id`` was already stored.

        Raises PersistenceError once retries are exhausted.
        """
        return self._with_retry(f"ingest {signal.signal_id}", lambda con: self._ingest_tx(con, signal))

    def ingest_many(self, signals: Sequence[Signal]) -> int:
        """Persist signals in one transaction; returns how many were new."""
        if not signals:
            return 0
        return self._with_retry(
            f"ingest batch of {len(signals)}",
            lambda con: sum(1 for s in signals if self._ingest_tx(con, s)),
        )

    def _ingest_tx(self, con: sqlite3.Connection, signal: Signal) -> bool:
        cur = con.execute(
            f"INSERT OR IGNORE INTO signals ({_SIGNAL_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                signal.signal_id,
                signal.device_id,
                int(signal.timestamp_ms),
                float(signal.latitude),
                float(signal.longitude),
                float(signal.altitude or 0.0),
                float(signal.power_dbm),
                float(signal.frequency_hz),
                signal.bandwidth_hz,
                signal.modulation,
                signal.source.value,
                json.dumps(signal.metadata) if signal.metadata else None,
            ),
        )
        if cur.rowcount == 0:
            return False
        if signal.device_id:
            self._upsert_device(con, signal)
        self._bump_grid(con, signal)
        return True

    def _upsert_device(self, con: sqlite3.Connection, signal: Signal) -> None:
        meta = signal.metadata or {}
        dev_type = meta.get("deviceType") or infer_device_type(signal.frequency_hz, signal.source)
        con.execute(
            """
            INSERT INTO devices (
                device_id, type, manufacturer, first_seen_ms, last_seen_ms,
                avg_power_dbm, freq_min_hz, freq_max_hz, signal_count, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
            ON CONFLICT(device_id) DO UPDATE SET
                avg_power_dbm = avg_power_dbm + (excluded.avg_power_dbm - avg_power_dbm) / (signal_count + 1),
                signal_count = signal_count + 1,
                first_seen_ms = MIN(first_seen_ms, excluded.first_seen_ms),
                last_seen_ms = MAX(last_seen_ms, excluded.last_seen_ms),
                freq_min_hz = MIN(freq_min_hz, excluded.freq_min_hz),
                freq_max_hz = MAX(freq_max_hz, excluded.freq_max_hz),
                manufacturer = COALESCE(excluded.manufacturer, manufacturer)
            """,
            (
                signal.device_id,
                dev_type,
                meta.get("manufacturer"),
                int(signal.timestamp_ms),
                int(signal.timestamp_ms),
                float(signal.power_dbm),
                float(signal.frequency_hz),
                float(signal.frequency_hz),
                json.dumps({"source": signal.source.value}),
            ),
        )

    def _bump_grid(self, con: sqlite3.Connection, signal: Signal) -> None:
        glat, glon = signal.grid
        con.execute(
            """
            INSERT INTO spatial_grid (grid_lat, grid_lon, hour_ms, signal_count, avg_power_dbm)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(grid_lat, grid_lon, hour_ms) DO UPDATE SET
                avg_power_dbm = avg_power_dbm + (excluded.avg_power_dbm - avg_power_dbm) / (signal_count + 1),
                signal_count = signal_count + 1
            """,
            (glat, glon, hour_bucket(signal.timestamp_ms), float(signal.power_dbm)),
        )

    # ------------------------------------------------------------------
    # Relationships & patterns
    # ------------------------------------------------------------------

    def record_relationship(
        self,
        source_device_id: str,
        target_device_id: str,
        relationship_type: str,
        *,
        strength: float = 0.0,
        timestamp_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        rel = Relationship(
            source_device_id=source_device_id,
            target_device_id=target_device_id,
            relationship_type=relationship_type,
            timestamp_ms=int(timestamp_ms if timestamp_ms is not None else now_ms()),
            strength=strength,
            metadata=metadata or {},
        )
        self.record_relationships([rel])

    def record_relationships(self, relationships: Sequence[Relationship]) -> int:
        """Upsert a batch of edges in one transaction; returns the edge count."""
        rows = [
            (
                r.source_device_id,
                r.target_device_id,
                r.relationship_type,
                float(r.strength),
                int(r.timestamp_ms),
                int(r.timestamp_ms),
                json.dumps(r.metadata) if r.metadata else None,
            )
            for r in relationships
        ]
        if not rows:
            return 0

        def _tx(con: sqlite3.Connection) -> int:
            con.executemany(
                """
                INSERT INTO relationships (
                    source_device_id, target_device_id, relationship_type, strength,
                    first_seen_ms, last_seen_ms, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_device_id, target_device_id, relationship_type) DO UPDATE SET
                    strength = excluded.strength,
                    first_seen_ms = MIN(first_seen_ms, excluded.first_seen_ms),
                    last_seen_ms = MAX(last_seen_ms, excluded.last_seen_ms),
                    metadata = COALESCE(excluded.metadata, metadata)
                """,
                rows,
            )
            return len(rows)

        return self._with_retry(f"{len(rows)} relationships", _tx)

    def record_pattern(self, pattern: Pattern) -> None:
        def _tx(con: sqlite3.Connection) -> None:
            con.execute(
                """
                INSERT OR REPLACE INTO patterns (
                    pattern_id, pattern_type, priority, confidence, description,
                    timestamp_ms, expires_at_ms, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    pattern.pattern_id,
                    pattern.pattern_type,
                    pattern.priority,
                    float(pattern.confidence),
                    pattern.description,
                    int(pattern.timestamp_ms),
                    pattern.expires_at_ms,
                    json.dumps(pattern.metadata) if pattern.metadata else None,
                ),
            )
            con.executemany(
                "INSERT OR IGNORE INTO pattern_signals (pattern_id, signal_id) VALUES (?, ?)",
                [(pattern.pattern_id, sid) for sid in pattern.signal_ids],
            )

        self._with_retry(f"pattern {pattern.pattern_id}", _tx)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_by_id(self, signal_id: str) -> Optional[Signal]:
        with self.reading() as con:
            row = con.execute(f"SELECT {_SIGNAL_COLUMNS} FROM signals WHERE signal_id = ?", (signal_id,)).fetchone()
        return Signal.from_row(row) if row else None

    def find_recent(self, limit: int = 100) -> List[Signal]:
        limit = max(1, min(int(limit), MAX_RECENT))
        with self.reading() as con:
            rows = con.execute(
                f"SELECT {_SIGNAL_COLUMNS} FROM signals ORDER BY timestamp_ms DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [Signal.from_row(r) for r in rows]

    @staticmethod
    def _bbox_params(lat_min: float, lat_max: float, lon_min: float, lon_max: float) -> Tuple[float, ...]:
        if lat_min > lat_max or lon_min > lon_max:
            raise ValueError("bounding box minimums must not exceed maximums")
        glat_min, glon_min = grid_cell(lat_min, lon_min)
        glat_max, glon_max = grid_cell(lat_max, lon_max)
        return (glat_min, glat_max, glon_min, glon_max, lat_min, lat_max, lon_min, lon_max)

    _BBOX_WHERE = (
        f"CAST(latitude * {GRID_SCALE} AS INTEGER) BETWEEN ? AND ? "
        f"AND CAST(longitude * {GRID_SCALE} AS INTEGER) BETWEEN ? AND ? "
        "AND latitude BETWEEN ? AND ? AND longitude BETWEEN ? AND ?"
    )

    def find_in_bounding_box(
        self,
        lat_min: float,
        lat_max: float,
        lon_min: float,
        lon_max: float,
        *,
        limit: Optional[int] = None,
    ) -> List[Signal]:
        """Signals inside the closed box, newest first.

        The grid-cell predicates prune through the expression index before
        the exact coordinate comparison.
        """
        params: Tuple[Any, ...] = self._bbox_params(lat_min, lat_max, lon_min, lon_max)
        sql = f"SELECT {_SIGNAL_COLUMNS} FROM signals WHERE {self._BBOX_WHERE} ORDER BY timestamp_ms DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (int(limit),)
        with self.reading() as con:
            rows = con.execute(sql, params).fetchall()
        return [Signal.from_row(r) for r in rows]

    def area_stats(self, lat_min: float, lat_max: float, lon_min: float, lon_max: float) -> Dict[str, Any]:
        params = self._bbox_params(lat_min, lat_max, lon_min, lon_max)
        with self.reading() as con:
            row = con.execute(
                f"""
                SELECT COUNT(*) AS n, COUNT(DISTINCT device_id) AS devices,
                       AVG(power_dbm) AS avg_p, MIN(power_dbm) AS min_p, MAX(power_dbm) AS max_p
                FROM signals WHERE {self._BBOX_WHERE}
                """,
                params,
            ).fetchone()
        return {
            "signalCount": int(row["n"]),
            "uniqueDevices": int(row["devices"]),
            "avgPowerDbm": row["avg_p"],
            "minPowerDbm": row["min_p"],
            "maxPowerDbm": row["max_p"],
        }

    def get_device(self, device_id: str) -> Optional[Device]:
        with self.reading() as con:
            row = con.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        return Device.from_row(row) if row else None

    def list_devices(self, limit: int = 100) -> List[Device]:
        with self.reading() as con:
            rows = con.execute(
                "SELECT * FROM devices ORDER BY last_seen_ms DESC LIMIT ?", (max(1, min(int(limit), MAX_RECENT)),)
            ).fetchall()
        return [Device.from_row(r) for r in rows]

    def list_relationships(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self.reading() as con:
            rows = con.execute(
                """
                SELECT source_device_id, target_device_id, relationship_type, strength,
                       first_seen_ms, last_seen_ms
                FROM relationships ORDER BY last_seen_ms DESC LIMIT ?
                """,
                (max(1, min(int(limit), MAX_RECENT)),),
            ).fetchall()
        return [
            {
                "sourceDeviceId": r["source_device_id"],
                "targetDeviceId": r["target_device_id"],
                "type": r["relationship_type"],
                "strength": r["strength"],
                "firstSeenMs": r["first_seen_ms"],
                "lastSeenMs": r["last_seen_ms"],
            }
            for r in rows
        ]

    def pattern_ids(self) -> List[str]:
        with self.reading() as con:
            return [r[0] for r in con.execute("SELECT pattern_id FROM patterns ORDER BY pattern_id").fetchall()]

    def grid_cells(self, hour_ms: Optional[int] = None) -> List[Dict[str, Any]]:
        sql = "SELECT grid_lat, grid_lon, hour_ms, signal_count, avg_power_dbm FROM spatial_grid"
        params: Sequence[Any] = ()
        if hour_ms is not None:
            sql += " WHERE hour_ms = ?"
            params = (hour_bucket(hour_ms),)
        with self.reading() as con:
            return [dict(r) for r in con.execute(sql + " ORDER BY hour_ms, grid_lat, grid_lon", params).fetchall()]

    def count(self, table: str = "signals") -> int:
        if table not in _COUNTED_TABLES:
            raise ValueError(f"unknown table {table!r}")
        with self.reading() as con:
            return int(con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])

    # ------------------------------------------------------------------
    # Maintenance primitives
    # ------------------------------------------------------------------

    def page_stats(self) -> Dict[str, int]:
        with self.reading() as con:
            page_size = int(con.execute("PRAGMA page_size").fetchone()[0])
            page_count = int(con.execute("PRAGMA page_count").fetchone()[0])
            freelist = int(con.execute("PRAGMA freelist_count").fetchone()[0])
        return {
            "pageSize": page_size,
            "pageCount": page_count,
            "freelistCount": freelist,
            "sizeBytes": page_size * page_count,
        }

    def quick_check(self) -> List[str]:
        with self.reading() as con:
            return [str(r[0]) for r in con.execute("PRAGMA quick_check").fetchall()]

    def vacuum(self) -> None:
        with self.write_lock(timeout=max(self.write_timeout_sec, 60.0)) as con:
            con.execute("VACUUM")
            con.execute("PRAGMA optimize")

    def backup_to(self, dest_path: str) -> None:
        dest = sqlite3.connect(dest_path)
        try:
            if self._memory:
                with self.write_lock() as con:
                    con.backup(dest)
            else:
                src = sqlite3.connect(f"file:{os.path.abspath(self.path)}?mode=ro", uri=True)
                try:
                    src.backup(dest, pages=1024)
                finally:
                    src.close()
        finally:
            dest.close()

    def stats(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"tables": {t: self.count(t) for t in _COUNTED_TABLES}}
        with self.reading() as con:
            row = con.execute("SELECT MIN(timestamp_ms), MAX(timestamp_ms) FROM signals").fetchone()
            by_source = con.execute("SELECT source, COUNT(*) FROM signals GROUP BY source").fetchall()
            version = con.execute("SELECT MAX(version) FROM schema_migrations").fetchone()[0]
        out["oldestSignalMs"] = row[0]
        out["newestSignalMs"] = row[1]
        out["bySource"] = {s.value: 0 for s in Source}
        out["bySource"].update({r[0]: int(r[1]) for r in by_source})
        out["schemaVersion"] = int(version or 0)
        out["storage"] = self.page_stats()
        return out


_COUNTED_TABLES = (
    "signals",
    "devices",
    "relationships",
    "patterns",
    "pattern_signals",
    "spatial_grid",
    "signal_stats_hourly",
    "device_stats_daily",
    "spatial_heatmap_hourly",
    "hourly_device_cells",
    "hourly_source_cells",
)
