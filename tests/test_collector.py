import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, List

import pytest

from sweepwatch.collectors.kismet import DetectionPoller, KismetClient, device_source, device_to_signal
from sweepwatch.errors import CollectorError
from sweepwatch.model import Source
from sweepwatch.store.ingest import SignalIngestor
from sweepwatch.store.store import SignalStore

STATION = (10.0, 20.0, 5.0)


def _wifi(mac: str = "AA:BB:CC:00:00:01", last_time: int = 1_700_000_000, **extra) -> Dict[str, Any]:
    device = {
        "kismet.device.base.macaddr": mac,
        "kismet.device.base.name": "lab-ap",
        "kismet.device.base.type": "Wi-Fi AP",
        "kismet.device.base.phyname": "IEEE802.11",
        "kismet.device.base.channel": "6",
        "kismet.device.base.frequency": 2437000,
        "kismet.device.base.signal": {"kismet.common.signal.last_signal": -48},
        "kismet.device.base.last_time": last_time,
        "kismet.device.base.packets.total": 120,
        "kismet.device.base.manuf": "Acme",
        "kismet.device.base.location": {
            "kismet.common.location.avg_loc": {
                "kismet.common.location.geopoint": [-75.1, 40.2],
                "kismet.common.location.alt": 12.0,
            }
        },
    }
    device.update(extra)
    return device


def test_wifi_device_becomes_located_signal() -> None:
    signal = device_to_signal(_wifi(), station=STATION)
    assert signal.signal_id == "AA:BB:CC:00:00:01-1700000000"
    assert signal.device_id == "AA:BB:CC:00:00:01"
    assert signal.timestamp_ms == 1_700_000_000_000
    assert signal.source is Source.WIFI_DETECT
    assert signal.frequency_hz == 2437e6
    assert signal.power_dbm == -48.0
    assert (signal.latitude, signal.longitude, signal.altitude) == (40.2, -75.1, 12.0)
    assert signal.metadata["manufacturer"] == "Acme"
    assert signal.metadata["deviceType"] == "wifi"


def test_missing_location_falls_back_to_station() -> None:
    unlocated = _wifi(**{"kismet.device.base.location": {"kismet.common.location.avg_loc": {"kismet.common.location.geopoint": [0, 0]}}})
    signal = device_to_signal(unlocated, station=STATION)
    assert (signal.latitude, signal.longitude, signal.altitude) == STATION
    assert device_to_signal(_wifi(**{"kismet.device.base.location": None}), station=STATION).latitude == 10.0


def test_bluetooth_without_frequency_uses_band_centre() -> None:
    device = _wifi(**{"kismet.device.base.phyname": "Bluetooth", "kismet.device.base.type": "BTLE", "kismet.device.base.frequency": 0})
    assert device_source(device) is Source.BLUETOOTH_DETECT
    signal = device_to_signal(device, station=STATION)
    assert signal.frequency_hz == 2_441_000_000.0
    assert signal.metadata["deviceType"] == "bluetooth"


@pytest.mark.parametrize(
    "overrides",
    [
        {"kismet.device.base.macaddr": None},
        {"kismet.device.base.last_time": 0},
        {"kismet.device.base.signal": {"kismet.common.signal.last_signal": 0}},
        {"kismet.device.base.signal": None},
        {"kismet.device.base.frequency": None},
    ],
)
def test_devices_without_usable_data_are_skipped(overrides) -> None:
    assert device_to_signal(_wifi(**overrides), station=STATION) is None


class _StubClient:
    timeout = 1.0

    def __init__(self, batches: List[List[Dict[str, Any]]]) -> None:
        self.batches = batches
        self.calls: List[Any] = []

    def devices(self, since_ts=None):
        self.calls.append(since_ts)
        return self.batches.pop(0)


def test_poll_submits_signals_and_tracks_last_seen() -> None:
    store = SignalStore(":memory:")
    ingestor = SignalIngestor(store)
    client = _StubClient(
        [
            [_wifi(last_time=100), _wifi(mac="AA:BB:CC:00:00:02", last_time=250), _wifi(**{"kismet.device.base.signal": None})],
            [_wifi(last_time=300)],
        ]
    )
    poller = DetectionPoller(client, ingestor, station=STATION)

    assert poller.poll_once() == 2
    assert poller.poll_once() == 1
    assert client.calls == [None, 250]
    assert poller.polls == 2

    ingestor.start()
    try:
        assert ingestor.flush(5.0)
    finally:
        ingestor.stop()
    assert store.count("signals") == 3
    assert store.count("devices") == 2


class _KismetHandler(BaseHTTPRequestHandler):
    seen: List[Dict[str, Any]] = []

    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = json.loads(self.rfile.read(length) or b"{}")
        self.seen.append({"path": self.path, "cookie": self.headers.get("Cookie"), "body": body})
        if self.path.startswith("/devices/views/all/") or self.path.startswith("/devices/last-time/"):
            payload = json.dumps([_wifi()]).encode()
            self.send_response(200)
        else:
            payload = b"not found"
            self.send_response(404)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        pass


def test_client_posts_field_list_with_session_cookie() -> None:
    _KismetHandler.seen = []
    server = HTTPServer(("127.0.0.1", 0), _KismetHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        client = KismetClient(f"http://127.0.0.1:{server.server_port}/", api_key="secret", timeout=5.0)
        assert client.devices()[0]["kismet.device.base.macaddr"] == "AA:BB:CC:00:00:01"
        client.devices(since_ts=1234)
        with pytest.raises(CollectorError):
            client._req("POST", "/missing")
    finally:
        server.shutdown()
        server.server_close()

    first, second = _KismetHandler.seen[:2]
    assert first["path"] == "/devices/views/all/devices.json"
    assert second["path"] == "/devices/last-time/1234/devices.json"
    assert first["cookie"] == "KISMET=secret"
    assert "kismet.device.base.macaddr" in first["body"]["fields"]


def test_unreachable_endpoint_raises_collector_error() -> None:
    server = HTTPServer(("127.0.0.1", 0), _KismetHandler)
    port = server.server_port
    server.server_close()
    with pytest.raises(CollectorError):
        KismetClient(f"http://127.0.0.1:{port}", timeout=1.0).devices()
