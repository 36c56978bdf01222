"""Bounded ingestion channel between producers and the signal store.

Producers (the supervisor's sample events, the device-detection poller,
manual API submissions) enqueue without blocking; a single worker thread
applies writes to the store in submission order.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from sweepwatch.errors import PersistenceError
from sweepwatch.events import ErrorEvent, Event, SampleEvent, StatusChange
from sweepwatch.model import Sample, Signal, Source, infer_device_type, strength_category
from sweepwatch.store.store import SignalStore
from sweepwatch.util.logging import RateLimitedLog, get_logger, log_exception

logger = get_logger(__name__)


@dataclass
class IngestStats:
    submitted: int = 0
    stored: int = 0
    duplicates: int = 0
    dropped: int = 0
    failed: int = 0
    promoted: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class SignalIngestor:
    def __init__(
        self,
        store: SignalStore,
        *,
        queue_size: int = 1024,
        detection_threshold_dbm: float = -60.0,
        station: Tuple[float, float, float] = (0.0, 0.0, 0.0),
        promote_interval_sec: float = 1.0,
        on_error: Optional[Callable[[Event], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.detection_threshold_dbm = detection_threshold_dbm
        self.station = station
        self.promote_interval_sec = promote_interval_sec
        self.on_error = on_error
        self.stats = IngestStats()
        self._clock = clock
        self._queue: "queue.Queue[Signal]" = queue.Queue(queue_size)
        self._last_promoted: Dict[str, float] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._rl = RateLimitedLog(logger, 10.0)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def on_event(self, event: Event) -> None:
        """Supervisor listener: promote qualifying samples."""
        if isinstance(event, SampleEvent):
            self.promote(event.sample)
        elif isinstance(event, (StatusChange, ErrorEvent)):
            return
        else:
            raise TypeError(f"unknown event type: {type(event).__name__}")

    def promote(self, sample: Sample) -> Optional[Signal]:
        """Turn a sample at or above the detection threshold into a Signal."""
        if sample.power_dbm < self.detection_threshold_dbm:
            return None
        device_id = f"sweep-{int(sample.frequency_hz // 1_000_000)}"
        now = self._clock()
        last = self._last_promoted.get(device_id)
        if last is not None and now - last < self.promote_interval_sec:
            return None
        self._last_promoted[device_id] = now
        lat, lon, alt = self.station
        signal = Signal(
            signal_id=f"sweep-{sample.timestamp_ms}-{int(sample.frequency_hz)}",
            device_id=device_id,
            timestamp_ms=sample.timestamp_ms,
            latitude=lat,
            longitude=lon,
            altitude=alt,
            power_dbm=sample.power_dbm,
            frequency_hz=sample.frequency_hz,
            bandwidth_hz=sample.bin_width_hz,
            source=Source.HARDWARE_SWEEP,
            metadata={
                "deviceType": infer_device_type(sample.frequency_hz),
                "strength": strength_category(sample.power_dbm),
            },
        )
        self.stats.promoted += 1
        self.submit(signal)
        return signal

    def submit(self, signal: Signal) -> bool:
        """Enqueue without blocking; False when the queue is full."""
        try:
            self._queue.put_nowait(signal)
        except queue.Full:
            self.stats.dropped += 1
            self._rl.warning("queue_full", "Ingestion queue full; dropped signal", signal_id=signal.signal_id)
            return False
        self.stats.submitted += 1
        return True

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="signal-ingestor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self.flush(timeout)
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until queued signals have been written; True if drained."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                signal = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.write(signal)
            finally:
                self._queue.task_done()

    def write(self, signal: Signal) -> bool:
        """Apply one write; persistence failures are logged and the signal dropped."""
        try:
            inserted = self.store.ingest(signal)
        except PersistenceError as exc:
            self.stats.failed += 1
            self._rl.error("persist", "Dropped signal after retries: %s", exc, signal_id=signal.signal_id)
            if self.on_error is not None:
                self.on_error(ErrorEvent(error_type=PersistenceError.__name__, message=str(exc), component="store"))
            return False
        except Exception:
            self.stats.failed += 1
            log_exception(logger, "Unexpected ingestion failure", error_type="ingest", signal_id=signal.signal_id)
            return False
        if inserted:
            self.stats.stored += 1
        else:
            self.stats.duplicates += 1
        return inserted
