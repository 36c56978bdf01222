import os

import pytest

from sweepwatch.config import load_settings
from sweepwatch.errors import ConfigurationError
from sweepwatch.model import Source
from sweepwatch.util.time import DAY_MS, HOUR_MS


def _env(**values) -> dict:
    env = {"SWEEPWATCH_DB": "/var/lib/sweepwatch/signals.db"}
    env.update({f"SWEEPWATCH_{k}": v for k, v in values.items()})
    return env


def test_storage_location_is_required() -> None:
    with pytest.raises(ConfigurationError) as err:
        load_settings({})
    assert err.value.variable == "SWEEPWATCH_DB"


def test_defaults() -> None:
    s = load_settings(_env())
    assert s.sweep_program == ("hackrf_sweep",)
    assert s.ttl_by_source[Source.HARDWARE_SWEEP] == HOUR_MS
    assert s.ttl_by_source[Source.WIFI_DETECT] == 7 * DAY_MS
    assert s.ttl_by_source[Source.MANUAL] == 3 * DAY_MS
    assert s.overflow_threshold == 10
    assert s.overflow_window_sec == 30.0
    assert s.backup_dir == os.path.join("/var/lib/sweepwatch", "backups")
    assert s.detect_url == ""
    assert s.cleanup_config().batch_size == 10_000
    assert s.cleanup_config().aggregate_interval_sec == 600.0


def test_durations_and_program_are_parsed() -> None:
    s = load_settings(
        _env(
            SWEEP_BIN="/opt/hackrf/bin/hackrf_sweep -a 1",
            TTL_HARDWARE_SWEEP="2h",
            TTL_BLUETOOTH_DETECT="1d",
            STOP_GRACE="1500",
            HEARTBEAT_INTERVAL="5s",
            AGGREGATE_INTERVAL="5m",
        )
    )
    assert s.sweep_program == ("/opt/hackrf/bin/hackrf_sweep", "-a", "1")
    assert s.ttl_by_source[Source.HARDWARE_SWEEP] == 2 * HOUR_MS
    assert s.ttl_by_source[Source.BLUETOOTH_DETECT] == DAY_MS
    assert s.stop_grace_sec == 1500.0
    assert s.heartbeat_interval_sec == 5.0
    assert s.cleanup_config().aggregate_interval_sec == 300.0
    assert s.supervisor_config().program[0] == "/opt/hackrf/bin/hackrf_sweep"


def test_band_overrides_reach_the_policy() -> None:
    s = load_settings(_env(TTL_BANDS="hardware-sweep:2400-2500=24h"))
    assert s.retention_policy().ttl_for(Source.HARDWARE_SWEEP, 2437e6) == 24 * HOUR_MS


@pytest.mark.parametrize(
    "name,value",
    [
        ("TTL_MANUAL", "soon"),
        ("TTL_WIFI_DETECT", "0"),
        ("OVERFLOW_THRESHOLD", "ten"),
        ("SUBSCRIBER_QUEUE", "0"),
        ("LATITUDE", "91"),
        ("LONGITUDE", "-181"),
        ("CLEANUP_BATCH", "10001"),
        ("VACUUM_FRAGMENTATION", "1.5"),
        ("DETECT_URL", "ftp://kismet"),
        ("TTL_BANDS", "hardware-sweep:2500-2400=1h"),
        ("SWEEP_BIN", "'unterminated"),
        ("AGGREGATE_INTERVAL", "0"),
    ],
)
def test_bad_values_name_the_variable(name, value) -> None:
    with pytest.raises(ConfigurationError) as err:
        load_settings(_env(**{name: value}))
    assert err.value.variable == f"SWEEPWATCH_{name}"
    assert f"SWEEPWATCH_{name}" in str(err.value)


def test_backup_dir_can_be_disabled_or_overridden() -> None:
    assert load_settings(_env(BACKUP_DIR="")).backup_dir is None
    assert load_settings(_env(BACKUP_DIR="/srv/backups")).backup_dir == "/srv/backups"
    assert load_settings({"SWEEPWATCH_DB": ":memory:"}).backup_dir is None


def test_describe_omits_secrets() -> None:
    s = load_settings(_env(DETECT_URL="http://kismet:2501", DETECT_API_KEY="hunter2"))
    assert s.detect_api_key == "hunter2"
    assert "hunter2" not in repr(s.describe())
    assert s.describe()["detectUrl"] == "http://kismet:2501"
