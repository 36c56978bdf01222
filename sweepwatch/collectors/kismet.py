"""Device-detection collaborator client (Kismet REST API).

Fetches the device list from a Kismet server and converts each device's latest
observation into a wifi-detect or bluetooth-detect Signal. The poller feeds
those signals into the ingestion channel on a fixed interval.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Dict, List, Optional, Tuple
from urllib import error as urlerr
from urllib import request as urlreq

from sweepwatch.errors import CollectorError
from sweepwatch.model import Signal, Source
from sweepwatch.store.ingest import SignalIngestor
from sweepwatch.util.logging import RateLimitedLog, get_logger

logger = get_logger(__name__)

DEVICE_FIELDS = (
    "kismet.device.base.macaddr",
    "kismet.device.base.name",
    "kismet.device.base.type",
    "kismet.device.base.phyname",
    "kismet.device.base.channel",
    "kismet.device.base.frequency",
    "kismet.device.base.signal",
    "kismet.device.base.first_time",
    "kismet.device.base.last_time",
    "kismet.device.base.packets.total",
    "kismet.device.base.crypt",
    "kismet.device.base.location",
    "kismet.device.base.manuf",
)

_BT_MARKERS = ("bluetooth", "btle", "br/edr", "bt ")
_DEFAULT_BT_HZ = 2_441_000_000.0


class KismetClient:
    """HTTP client for the device-detection collaborator."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0) -> None:
        self.base = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _req(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        """Make an HTTP request; raises CollectorError on any failure."""
        url = self.base + path
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Cookie"] = f"KISMET={self.api_key}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urlreq.Request(url, data, headers=headers, method=method.upper())
        try:
            with urlreq.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read()
        except urlerr.HTTPError as e:
            raise CollectorError(f"detection HTTP {e.code}: {e.read().decode('utf-8', errors='replace')[:200]}") from e
        except (urlerr.URLError, OSError) as e:
            raise CollectorError(f"detection endpoint unreachable: {e}") from e
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise CollectorError(f"detection endpoint returned invalid JSON: {e}") from e

    def devices(self, since_ts: Optional[int] = None) -> List[Dict[str, Any]]:
        """Devices seen by the collaborator (optionally only since ``since_ts`` seconds)."""
        path = "/devices/views/all/devices.json"
        if since_ts:
            path = f"/devices/last-time/{int(since_ts)}/devices.json"
        data = self._req("POST", path, body={"fields": list(DEVICE_FIELDS)})
        if not isinstance(data, list):
            raise CollectorError(f"unexpected device list payload: {type(data).__name__}")
        return data

    def status(self) -> Dict[str, Any]:
        return self._req("GET", "/system/status.json")


def _signal_dbm(value: Any) -> Optional[float]:
    if isinstance(value, dict):
        value = value.get("kismet.common.signal.last_signal")
    try:
        dbm = float(value)
    except (TypeError, ValueError):
        return None
    return dbm if dbm != 0 else None


def _location(value: Any) -> Optional[Tuple[float, float, float]]:
    if not isinstance(value, dict):
        return None
    loc = value.get("kismet.common.location.avg_loc") or value.get("kismet.common.location.last") or {}
    point = loc.get("kismet.common.location.geopoint") if isinstance(loc, dict) else None
    if not isinstance(point, (list, tuple)) or len(point) < 2:
        return None
    lon, lat = float(point[0]), float(point[1])
    if lat == 0.0 and lon == 0.0:
        return None
    alt = float(loc.get("kismet.common.location.alt") or 0.0)
    return lat, lon, alt


def device_source(device: Dict[str, Any]) -> Source:
    text = " ".join(
        str(device.get(k) or "") for k in ("kismet.device.base.phyname", "kismet.device.base.type")
    ).lower() + " "
    if any(marker in text for marker in _BT_MARKERS):
        return Source.BLUETOOTH_DETECT
    return Source.WIFI_DETECT


def device_to_signal(device: Dict[str, Any], *, station: Tuple[float, float, float]) -> Optional[Signal]:
    """Convert one collaborator device record; None when it lacks usable data."""
    mac = device.get("kismet.device.base.macaddr")
    last_time = device.get("kismet.device.base.last_time")
    power = _signal_dbm(device.get("kismet.device.base.signal"))
    if not mac or not last_time or power is None:
        return None
    source = device_source(device)
    try:
        freq_hz = float(device.get("kismet.device.base.frequency") or 0.0) * 1000.0
    except (TypeError, ValueError):
        freq_hz = 0.0
    if freq_hz <= 0:
        if source is not Source.BLUETOOTH_DETECT:
            return None
        freq_hz = _DEFAULT_BT_HZ
    lat, lon, alt = _location(device.get("kismet.device.base.location")) or station
    meta: Dict[str, Any] = {
        "name": device.get("kismet.device.base.name"),
        "deviceType": "bluetooth" if source is Source.BLUETOOTH_DETECT else "wifi",
        "kismetType": device.get("kismet.device.base.type"),
        "channel": device.get("kismet.device.base.channel"),
        "packets": device.get("kismet.device.base.packets.total"),
    }
    if device.get("kismet.device.base.manuf"):
        meta["manufacturer"] = device["kismet.device.base.manuf"]
    return Signal(
        signal_id=f"{mac}-{int(last_time)}",
        device_id=str(mac),
        timestamp_ms=int(last_time) * 1000,
        latitude=lat,
        longitude=lon,
        altitude=alt,
        power_dbm=power,
        frequency_hz=freq_hz,
        source=source,
        metadata={k: v for k, v in meta.items() if v is not None},
    )


class DetectionPoller:
    """Poll the collaborator on an interval and submit its devices as signals."""

    def __init__(
        self,
        client: KismetClient,
        ingestor: SignalIngestor,
        *,
        interval_sec: float = 10.0,
        station: Tuple[float, float, float] = (0.0, 0.0, 0.0),
    ) -> None:
        self.client = client
        self.ingestor = ingestor
        self.interval_sec = interval_sec
        self.station = station
        self._since: Optional[int] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._rl = RateLimitedLog(logger, 60.0)
        self.polls = 0
        self.failures = 0

    def poll_once(self) -> int:
        """Fetch and submit once; returns the number of signals submitted."""
        devices = self.client.devices(self._since)
        submitted = 0
        newest = self._since or 0
        for device in devices:
            try:
                signal = device_to_signal(device, station=self.station)
            except (TypeError, ValueError) as exc:
                self._rl.debug("bad_device", "Skipping malformed device record: %s", exc)
                continue
            if signal is None:
                continue
            newest = max(newest, signal.timestamp_ms // 1000)
            if self.ingestor.submit(signal):
                submitted += 1
        if newest:
            self._since = newest
        self.polls += 1
        return submitted

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="detection-poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.client.timeout + 1.0)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                count = self.poll_once()
                logger.debug("Detection poll submitted %d signals", count)
            except CollectorError as exc:
                self.failures += 1
                self._rl.warning("poll", "Device-detection poll failed: %s", exc)
            self._stop.wait(self.interval_sec)
