"""
Configuration loading for sweepwatch.

All SWEEPWATCH_* environment variables are parsed here into a frozen Settings
object. The CLI and the web app factory call load_settings() once at startup;
components receive the values they need rather than reading os.environ.
"""
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from sweepwatch.errors import ConfigurationError
from sweepwatch.model import Source
from sweepwatch.retention.cleanup import MAX_BATCH, CleanupConfig
from sweepwatch.retention.policy import DEFAULT_TTLS_MS, RetentionPolicy, parse_band_rules
from sweepwatch.sweep.supervisor import SupervisorConfig
from sweepwatch.util.duration import parse_duration_to_seconds

ENV_PREFIX = "SWEEPWATCH_"


def _raw(env: Mapping[str, str], name: str) -> Optional[str]:
    val = env.get(ENV_PREFIX + name)
    if val is None or not val.strip():
        return None
    return val.strip()


def _duration_env(env: Mapping[str, str], name: str, default: str) -> float:
    """Parse a duration variable (``30``, ``10m``, ``2h``, ``7d``) into seconds."""
    text = _raw(env, name) or default
    try:
        seconds = parse_duration_to_seconds(text)
    except ValueError as exc:
        raise ConfigurationError(ENV_PREFIX + name, str(exc)) from exc
    if not seconds or seconds <= 0:
        raise ConfigurationError(ENV_PREFIX + name, "duration must be positive")
    return seconds


def _int_env(env: Mapping[str, str], name: str, default: int, *, minimum: int = 1) -> int:
    text = _raw(env, name)
    if text is None:
        return default
    try:
        value = int(text)
    except ValueError as exc:
        raise ConfigurationError(ENV_PREFIX + name, f"expected an integer, got '{text}'") from exc
    if value < minimum:
        raise ConfigurationError(ENV_PREFIX + name, f"must be >= {minimum}")
    return value


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    text = _raw(env, name)
    if text is None:
        return default
    try:
        return float(text)
    except ValueError as exc:
        raise ConfigurationError(ENV_PREFIX + name, f"expected a number, got '{text}'") from exc


@dataclass(frozen=True)
class Settings:
    db_path: str
    device_serial: Optional[str] = None
    sweep_program: Tuple[str, ...] = ("hackrf_sweep",)

    detect_url: str = ""
    detect_api_key: str = ""
    detect_interval_sec: float = 10.0

    ttl_by_source: Mapping[Source, int] = field(default_factory=lambda: dict(DEFAULT_TTLS_MS))
    ttl_bands: str = ""
    device_retention_sec: float = 7 * 86400.0
    pattern_retention_sec: float = 86400.0
    aggregate_retention_sec: float = 30 * 86400.0

    startup_timeout_sec: float = 20.0
    stop_grace_sec: float = 5.0
    overflow_threshold: int = 10
    overflow_window_sec: float = 30.0
    max_recovery_attempts: int = 5

    detection_threshold_dbm: float = -60.0
    latitude: float = 0.0
    longitude: float = 0.0
    altitude: float = 0.0

    heartbeat_interval_sec: float = 15.0
    heartbeat_max_missed: int = 3
    subscriber_queue: int = 256
    poll_timeout_sec: float = 30.0

    cleanup_interval_sec: float = 3600.0
    aggregate_interval_sec: float = 600.0
    maintenance_interval_sec: float = 86400.0
    cleanup_batch: int = MAX_BATCH
    backup_dir: Optional[str] = None
    backup_keep: int = 7
    vacuum_fragmentation: float = 0.2

    @property
    def station(self) -> Tuple[float, float, float]:
        return (self.latitude, self.longitude, self.altitude)

    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(ttl_by_source=dict(self.ttl_by_source), band_rules=parse_band_rules(self.ttl_bands))

    def supervisor_config(self) -> SupervisorConfig:
        return SupervisorConfig(
            program=self.sweep_program,
            device_serial=self.device_serial,
            startup_timeout_sec=self.startup_timeout_sec,
            stop_grace_sec=self.stop_grace_sec,
            overflow_threshold=self.overflow_threshold,
            overflow_window_sec=self.overflow_window_sec,
            max_recovery_attempts=self.max_recovery_attempts,
        )

    def cleanup_config(self) -> CleanupConfig:
        return CleanupConfig(
            batch_size=self.cleanup_batch,
            interval_sec=self.cleanup_interval_sec,
            aggregate_interval_sec=self.aggregate_interval_sec,
            maintenance_interval_sec=self.maintenance_interval_sec,
            device_retention_ms=int(self.device_retention_sec * 1000),
            pattern_retention_ms=int(self.pattern_retention_sec * 1000),
            aggregate_retention_ms=int(self.aggregate_retention_sec * 1000),
            backup_dir=self.backup_dir,
            backup_keep=self.backup_keep,
            vacuum_fragmentation=self.vacuum_fragmentation,
        )

    def describe(self) -> Dict[str, Any]:
        """Non-secret view of the effective configuration."""
        return {
            "db": self.db_path,
            "device": self.device_serial,
            "sweepProgram": list(self.sweep_program),
            "detectUrl": self.detect_url or None,
            "retention": self.retention_policy().describe(),
            "station": {"latitude": self.latitude, "longitude": self.longitude, "altitude": self.altitude},
            "backupDir": self.backup_dir,
        }


def _ttl_var(source: Source) -> str:
    return "TTL_" + source.value.upper().replace("-", "_")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read and validate configuration; raises ConfigurationError on the first bad value."""
    env = os.environ if environ is None else environ

    db_path = _raw(env, "DB")
    if db_path is None:
        raise ConfigurationError(ENV_PREFIX + "DB", "storage location is required")

    program_text = _raw(env, "SWEEP_BIN") or "hackrf_sweep"
    try:
        program = tuple(shlex.split(program_text))
    except ValueError as exc:
        raise ConfigurationError(ENV_PREFIX + "SWEEP_BIN", str(exc)) from exc
    if not program:
        raise ConfigurationError(ENV_PREFIX + "SWEEP_BIN", "empty command")

    detect_url = _raw(env, "DETECT_URL") or ""
    if detect_url:
        parsed = urlparse(detect_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(ENV_PREFIX + "DETECT_URL", f"not an http(s) URL: '{detect_url}'")

    ttls: Dict[Source, int] = {}
    for source in Source:
        default_sec = DEFAULT_TTLS_MS[source] // 1000
        ttls[source] = int(_duration_env(env, _ttl_var(source), f"{default_sec}s") * 1000)
    ttl_bands = _raw(env, "TTL_BANDS") or ""
    try:
        parse_band_rules(ttl_bands)
    except ValueError as exc:
        raise ConfigurationError(ENV_PREFIX + "TTL_BANDS", str(exc)) from exc

    latitude = _float_env(env, "LATITUDE", 0.0)
    if not -90.0 <= latitude <= 90.0:
        raise ConfigurationError(ENV_PREFIX + "LATITUDE", "must be within [-90, 90]")
    longitude = _float_env(env, "LONGITUDE", 0.0)
    if not -180.0 <= longitude <= 180.0:
        raise ConfigurationError(ENV_PREFIX + "LONGITUDE", "must be within [-180, 180]")

    batch = _int_env(env, "CLEANUP_BATCH", MAX_BATCH)
    if batch > MAX_BATCH:
        raise ConfigurationError(ENV_PREFIX + "CLEANUP_BATCH", f"must be <= {MAX_BATCH}")

    fragmentation = _float_env(env, "VACUUM_FRAGMENTATION", 0.2)
    if not 0.0 < fragmentation <= 1.0:
        raise ConfigurationError(ENV_PREFIX + "VACUUM_FRAGMENTATION", "must be within (0, 1]")

    if ENV_PREFIX + "BACKUP_DIR" in env:
        backup_dir = _raw(env, "BACKUP_DIR")
    elif db_path == ":memory:":
        backup_dir = None
    else:
        backup_dir = os.path.join(os.path.dirname(os.path.abspath(db_path)), "backups")

    return Settings(
        db_path=db_path,
        device_serial=_raw(env, "DEVICE"),
        sweep_program=program,
        detect_url=detect_url,
        detect_api_key=_raw(env, "DETECT_API_KEY") or "",
        detect_interval_sec=_duration_env(env, "DETECT_INTERVAL", "10s"),
        ttl_by_source=ttls,
        ttl_bands=ttl_bands,
        device_retention_sec=_duration_env(env, "DEVICE_RETENTION", "7d"),
        pattern_retention_sec=_duration_env(env, "PATTERN_RETENTION", "24h"),
        aggregate_retention_sec=_duration_env(env, "AGGREGATE_RETENTION", "30d"),
        startup_timeout_sec=_duration_env(env, "STARTUP_TIMEOUT", "20s"),
        stop_grace_sec=_duration_env(env, "STOP_GRACE", "5s"),
        overflow_threshold=_int_env(env, "OVERFLOW_THRESHOLD", 10),
        overflow_window_sec=_duration_env(env, "OVERFLOW_WINDOW", "30s"),
        max_recovery_attempts=_int_env(env, "MAX_RECOVERY_ATTEMPTS", 5),
        detection_threshold_dbm=_float_env(env, "DETECTION_THRESHOLD_DBM", -60.0),
        latitude=latitude,
        longitude=longitude,
        altitude=_float_env(env, "ALTITUDE", 0.0),
        heartbeat_interval_sec=_duration_env(env, "HEARTBEAT_INTERVAL", "15s"),
        heartbeat_max_missed=_int_env(env, "HEARTBEAT_MAX_MISSED", 3),
        subscriber_queue=_int_env(env, "SUBSCRIBER_QUEUE", 256),
        poll_timeout_sec=_duration_env(env, "POLL_TIMEOUT", "30s"),
        cleanup_interval_sec=_duration_env(env, "CLEANUP_INTERVAL", "1h"),
        aggregate_interval_sec=_duration_env(env, "AGGREGATE_INTERVAL", "10m"),
        maintenance_interval_sec=_duration_env(env, "MAINTENANCE_INTERVAL", "24h"),
        cleanup_batch=batch,
        backup_dir=backup_dir,
        backup_keep=_int_env(env, "BACKUP_KEEP", 7),
        vacuum_fragmentation=fragmentation,
    )
