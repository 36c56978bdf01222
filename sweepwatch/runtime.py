"""Process-wide wiring of the sweepwatch components.

One Runtime owns the store, the broadcast hub, the ingestion channel, the
sweep supervisor, the cleanup scheduler and (when configured) the device
detection poller. The CLI and the web app both build it from Settings.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from sweepwatch.broadcast.hub import BroadcastHub
from sweepwatch.collectors.kismet import DetectionPoller, KismetClient
from sweepwatch.config import Settings
from sweepwatch.retention.cleanup import CleanupScheduler
from sweepwatch.store.ingest import SignalIngestor
from sweepwatch.store.store import SignalStore
from sweepwatch.sweep.supervisor import SweepSupervisor
from sweepwatch.util.logging import get_logger, log_exception

logger = get_logger(__name__)


class Runtime:
    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[SignalStore] = None,
        supervisor: Optional[SweepSupervisor] = None,
    ) -> None:
        self.settings = settings
        self.store = store or SignalStore(settings.db_path)
        self.hub = BroadcastHub(
            queue_size=settings.subscriber_queue,
            heartbeat_interval_sec=settings.heartbeat_interval_sec,
            max_missed_heartbeats=settings.heartbeat_max_missed,
            poll_timeout_sec=settings.poll_timeout_sec,
        )
        self.ingestor = SignalIngestor(
            self.store,
            detection_threshold_dbm=settings.detection_threshold_dbm,
            station=settings.station,
            on_error=self.hub.broadcast,
        )
        self.supervisor = supervisor or SweepSupervisor(settings.supervisor_config())
        self.supervisor.add_listener(self.hub.broadcast)
        self.supervisor.add_listener(self.ingestor.on_event)
        self.cleanup = CleanupScheduler(self.store, settings.retention_policy(), settings.cleanup_config())
        self.poller: Optional[DetectionPoller] = None
        if settings.detect_url:
            client = KismetClient(settings.detect_url, settings.detect_api_key)
            self.poller = DetectionPoller(
                client,
                self.ingestor,
                interval_sec=settings.detect_interval_sec,
                station=settings.station,
            )
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "Runtime":
        return cls(settings)

    def start(self, *, background: bool = True) -> None:
        """Start worker threads; ``background=False`` skips the timers (used by tests)."""
        if self._started:
            return
        self.ingestor.start()
        if background:
            self.hub.start()
            self.cleanup.start()
            if self.poller is not None:
                self.poller.start()
        self._started = True
        logger.info("Runtime started (db=%s, collector=%s)", self.settings.db_path, bool(self.poller))

    def stop(self) -> None:
        """Stop everything in dependency order; the sweep process goes first."""
        try:
            self.supervisor.stop()
        except Exception:
            log_exception(logger, "Supervisor did not stop cleanly", error_type="shutdown")
        if self.poller is not None:
            self.poller.stop()
        self.cleanup.stop()
        self.ingestor.stop()
        self.hub.stop()
        self.store.close()
        self._started = False
        logger.info("Runtime stopped")

    def health(self) -> Dict[str, Any]:
        return {
            "supervisor": self.supervisor.phase.value,
            "subscribers": self.hub.subscriber_count,
            "ingest": self.ingestor.stats.to_dict(),
            "cleanupRunning": self.cleanup.running,
            "collector": None
            if self.poller is None
            else {"polls": self.poller.polls, "failures": self.poller.failures},
        }
