import sqlite3
import threading

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from sweepwatch.errors import PersistenceError
from sweepwatch.model import Pattern, Signal, Source, grid_cell
from sweepwatch.store.store import SignalStore
from sweepwatch.util.time import HOUR_MS


def _signal(sid: str, **kw) -> Signal:
    values = dict(
        signal_id=sid,
        device_id="dev-1",
        timestamp_ms=1_700_000_000_000,
        latitude=40.0,
        longitude=-75.0,
        power_dbm=-60.0,
        frequency_hz=2437e6,
        source=Source.MANUAL,
    )
    values.update(kw)
    return Signal(**values)


def test_ingest_is_idempotent_on_signal_id() -> None:
    store = SignalStore(":memory:")
    assert store.ingest(_signal("a")) is True
    assert store.ingest(_signal("a", power_dbm=-10.0)) is False
    assert store.count("signals") == 1
    assert store.find_by_id("a").power_dbm == -60.0
    assert store.get_device("dev-1").signal_count == 1


def test_device_aggregate_tracks_mean_range_and_sightings() -> None:
    store = SignalStore(":memory:")
    store.ingest(_signal("a", power_dbm=-50.0, frequency_hz=2412e6, timestamp_ms=2000))
    store.ingest(_signal("b", power_dbm=-70.0, frequency_hz=2462e6, timestamp_ms=1000))
    dev = store.get_device("dev-1")
    assert dev.signal_count == 2
    assert dev.avg_power_dbm == pytest.approx(-60.0)
    assert (dev.freq_min_hz, dev.freq_max_hz) == (2412e6, 2462e6)
    assert (dev.first_seen_ms, dev.last_seen_ms) == (1000, 2000)
    assert dev.type == "wifi"
    assert [d.device_id for d in store.list_devices()] == ["dev-1"]


def test_signals_without_device_do_not_create_devices() -> None:
    store = SignalStore(":memory:")
    store.ingest(_signal("a", device_id=None))
    assert store.count("devices") == 0


def test_signal_round_trips_through_storage() -> None:
    store = SignalStore(":memory:")
    original = _signal("a", altitude=12.5, bandwidth_hz=20e6, modulation="OFDM", metadata={"ssid": "lab"})
    store.ingest(original)
    assert store.find_by_id("a") == original
    assert store.find_by_id("missing") is None


def test_find_recent_orders_newest_first_and_clamps_limit() -> None:
    store = SignalStore(":memory:")
    for i in range(5):
        store.ingest(_signal(f"s{i}", timestamp_ms=1000 + i))
    assert [s.signal_id for s in store.find_recent(3)] == ["s4", "s3", "s2"]
    assert len(store.find_recent(0)) == 1
    assert len(store.find_recent(5000)) == 5


def test_spatial_grid_counts_signals_per_cell_and_hour() -> None:
    store = SignalStore(":memory:")
    base = 10 * HOUR_MS
    store.ingest(_signal("a", timestamp_ms=base + 1, latitude=40.00001, power_dbm=-50.0))
    store.ingest(_signal("b", timestamp_ms=base + 2, latitude=40.00002, power_dbm=-70.0))
    store.ingest(_signal("c", timestamp_ms=base + HOUR_MS, latitude=40.00002))
    cells = store.grid_cells(base)
    assert len(cells) == 1
    assert (cells[0]["grid_lat"], cells[0]["grid_lon"]) == grid_cell(40.00001, -75.0)
    assert cells[0]["signal_count"] == 2
    assert cells[0]["avg_power_dbm"] == pytest.approx(-60.0)
    assert len(store.grid_cells()) == 2


def test_bounding_box_is_inclusive_and_validated() -> None:
    store = SignalStore(":memory:")
    store.ingest(_signal("edge", latitude=10.0, longitude=20.0))
    store.ingest(_signal("in", latitude=10.5, longitude=20.5))
    store.ingest(_signal("out", latitude=11.5, longitude=20.5))
    found = {s.signal_id for s in store.find_in_bounding_box(10.0, 11.0, 20.0, 21.0)}
    assert found == {"edge", "in"}
    assert len(store.find_in_bounding_box(10.0, 11.0, 20.0, 21.0, limit=1)) == 1
    with pytest.raises(ValueError):
        store.find_in_bounding_box(11.0, 10.0, 20.0, 21.0)


def test_area_stats_summarize_the_box() -> None:
    store = SignalStore(":memory:")
    store.ingest(_signal("a", device_id="d1", power_dbm=-40.0))
    store.ingest(_signal("b", device_id="d2", power_dbm=-80.0))
    store.ingest(_signal("c", device_id="d3", latitude=-40.0))
    stats = store.area_stats(39.0, 41.0, -76.0, -74.0)
    assert stats["signalCount"] == 2
    assert stats["uniqueDevices"] == 2
    assert stats["avgPowerDbm"] == pytest.approx(-60.0)
    assert (stats["minPowerDbm"], stats["maxPowerDbm"]) == (-80.0, -40.0)


_COORD = st.floats(min_value=-0.01, max_value=0.01, allow_nan=False, allow_infinity=False)
_POINTS = st.lists(st.tuples(_COORD, _COORD), min_size=0, max_size=40)


@settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(points=_POINTS, lat_a=_COORD, lat_b=_COORD, lon_a=_COORD, lon_b=_COORD)
def test_bounding_box_matches_brute_force(points, lat_a, lat_b, lon_a, lon_b) -> None:
    store = SignalStore(":memory:")
    for i, (lat, lon) in enumerate(points):
        store.ingest(_signal(f"p{i}", latitude=lat, longitude=lon, timestamp_ms=i))
    lat_min, lat_max = sorted((lat_a, lat_b))
    lon_min, lon_max = sorted((lon_a, lon_b))

    found = {s.signal_id for s in store.find_in_bounding_box(lat_min, lat_max, lon_min, lon_max)}
    expected = {
        f"p{i}"
        for i, (lat, lon) in enumerate(points)
        if lat_min <= lat <= lat_max and lon_min <= lon <= lon_max
    }
    assert found == expected
    assert store.area_stats(lat_min, lat_max, lon_min, lon_max)["signalCount"] == len(expected)
    store.close()


def test_relationship_upsert_widens_sighting_window() -> None:
    store = SignalStore(":memory:")
    store.record_relationship("a", "b", "co_located", strength=0.5, timestamp_ms=2000)
    store.record_relationship("a", "b", "co_located", strength=0.9, timestamp_ms=1000)
    store.record_relationship("a", "b", "co_located", strength=0.7, timestamp_ms=3000)
    rels = store.list_relationships()
    assert len(rels) == 1
    assert rels[0]["strength"] == 0.7
    assert (rels[0]["firstSeenMs"], rels[0]["lastSeenMs"]) == (1000, 3000)


def test_patterns_are_stored_with_their_signals() -> None:
    store = SignalStore(":memory:")
    store.ingest(_signal("a"))
    store.record_pattern(Pattern("p1", "burst", timestamp_ms=10, expires_at_ms=20, signal_ids=["a"]))
    assert store.pattern_ids() == ["p1"]
    assert store.count("pattern_signals") == 1


def test_stats_report_counts_sources_and_storage() -> None:
    store = SignalStore(":memory:")
    store.ingest(_signal("a", timestamp_ms=5))
    store.ingest(_signal("b", timestamp_ms=9, source=Source.WIFI_DETECT))
    stats = store.stats()
    assert stats["tables"]["signals"] == 2
    assert (stats["oldestSignalMs"], stats["newestSignalMs"]) == (5, 9)
    assert stats["bySource"]["manual"] == 1
    assert stats["bySource"]["wifi-detect"] == 1
    assert stats["bySource"]["other"] == 0
    assert stats["schemaVersion"] == 5
    assert stats["storage"]["pageCount"] > 0


def test_unknown_table_count_is_rejected() -> None:
    with pytest.raises(ValueError):
        SignalStore(":memory:").count("sqlite_master")


def test_closed_connection_raises_persistence_error() -> None:
    store = SignalStore(":memory:")
    store.con.close()
    with pytest.raises(PersistenceError):
        store.ingest(_signal("a"))


def test_locked_database_is_retried_then_reported(tmp_path) -> None:
    path = str(tmp_path / "locked.db")
    store = SignalStore(path, retry_attempts=2, retry_backoff_sec=0.01)
    store.con.execute("PRAGMA busy_timeout=50")
    other = sqlite3.connect(path, isolation_level=None)
    other.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(PersistenceError):
            store.ingest(_signal("a"))
    finally:
        other.execute("ROLLBACK")
        other.close()
    assert store.ingest(_signal("a")) is True
    store.close()


def test_readers_see_writes_from_other_threads(tmp_path) -> None:
    store = SignalStore(str(tmp_path / "wal.db"))

    def _write() -> None:
        for i in range(50):
            store.ingest(_signal(f"w{i}", timestamp_ms=i))

    writer = threading.Thread(target=_write)
    writer.start()
    while writer.is_alive():
        assert store.count("signals") <= 50
    writer.join()
    assert store.count("signals") == 50
    assert store.find_recent(1)[0].signal_id == "w49"
    store.close()


def test_short_lived_reader_threads_share_a_bounded_pool(tmp_path) -> None:
    store = SignalStore(str(tmp_path / "pool.db"), max_idle_readers=2)
    store.ingest(_signal("a"))
    results = []

    def _read() -> None:
        results.append(len(store.find_recent(10)))

    for _ in range(50):
        t = threading.Thread(target=_read)
        t.start()
        t.join()
    assert results == [1] * 50
    assert store.open_readers == 1

    barrier = threading.Barrier(8)

    def _read_together() -> None:
        with store.reading() as con:
            barrier.wait(timeout=5)
            con.execute("SELECT COUNT(*) FROM signals").fetchone()

    threads = [threading.Thread(target=_read_together) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.open_readers == 2
    store.close()
    assert store.open_readers == 0
