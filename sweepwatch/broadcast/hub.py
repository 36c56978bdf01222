"""In-process fan-out of supervisor events to live subscribers.

Every subscriber owns a bounded outbound queue. A full queue never blocks the
publisher: the oldest queued sample is dropped to make room (status and error
frames are only dropped when no sample is left to discard). Stream subscribers
receive heartbeat frames on a fixed interval and are evicted after missing too
many acknowledgements in a row; poll subscribers live for a single request.
"""

from __future__ import annotations

import itertools
import threading
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from sweepwatch.errors import SubscriberDeliveryError
from sweepwatch.events import Event, heartbeat_frame, to_wire
from sweepwatch.util.logging import RateLimitedLog, get_logger
from sweepwatch.util.time import now_ms

logger = get_logger(__name__)

Frame = Dict[str, Any]


class Subscription:
    """One subscriber's bounded outbound queue."""

    def __init__(self, sub_id: str, maxsize: int, *, kind: str = "stream") -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.id = sub_id
        self.kind = kind
        self.maxsize = maxsize
        self.created_ms = now_ms()
        self.dropped = 0
        self.missed_heartbeats = 0
        self.last_ack_ms: Optional[int] = None
        self._items: Deque[Frame] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.on_close: Optional[Callable[["Subscription"], None]] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def offer(self, frame: Frame) -> bool:
        """Enqueue without blocking; returns False if something was dropped."""
        with self._cond:
            if self._closed:
                raise SubscriberDeliveryError(f"subscription {self.id} is closed")
            dropped = False
            if len(self._items) >= self.maxsize:
                self._drop_oldest()
                dropped = True
            self._items.append(frame)
            self._cond.notify()
            return not dropped

    def _drop_oldest(self) -> None:
        for idx, queued in enumerate(self._items):
            if queued.get("type") == "sample":
                del self._items[idx]
                break
        else:
            self._items.popleft()
        self.dropped += 1

    def get(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Next frame, or None on timeout or close."""
        with self._cond:
            if not self._items and not self._closed:
                self._cond.wait_for(lambda: self._items or self._closed, timeout=timeout)
            if self._items:
                return self._items.popleft()
            return None

    def drain(self, max_items: int = 1000) -> List[Frame]:
        with self._cond:
            out: List[Frame] = []
            while self._items and len(out) < max_items:
                out.append(self._items.popleft())
            return out

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._items.clear()
            self._cond.notify_all()
        if self.on_close is not None:
            self.on_close(self)

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "queued": len(self),
            "dropped": self.dropped,
            "missedHeartbeats": self.missed_heartbeats,
            "createdMs": self.created_ms,
            "lastAckMs": self.last_ack_ms,
        }


class BroadcastHub:
    def __init__(
        self,
        *,
        queue_size: int = 256,
        heartbeat_interval_sec: float = 15.0,
        max_missed_heartbeats: int = 3,
        poll_timeout_sec: float = 30.0,
    ) -> None:
        self.queue_size = queue_size
        self.heartbeat_interval_sec = heartbeat_interval_sec
        self.max_missed_heartbeats = max_missed_heartbeats
        self.poll_timeout_sec = poll_timeout_sec
        self._subs: Dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self._heartbeat_seq = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._rl = RateLimitedLog(logger, 10.0)
        self.published = 0

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, *, kind: str = "stream", maxsize: Optional[int] = None) -> Subscription:
        sub = Subscription(f"{kind}-{next(self._seq)}-{uuid.uuid4().hex[:6]}", maxsize or self.queue_size, kind=kind)
        with self._lock:
            self._subs[sub.id] = sub
        logger.debug("Subscriber added", extra={"subscriber_id": sub.id})
        return sub

    def unsubscribe(self, handle: Union[Subscription, str, None]) -> bool:
        """Remove a subscription; unknown or repeated handles are a no-op."""
        if handle is None:
            return False
        sub_id = handle.id if isinstance(handle, Subscription) else str(handle)
        with self._lock:
            sub = self._subs.pop(sub_id, None)
        if sub is None:
            return False
        sub.close()
        logger.debug("Subscriber removed", extra={"subscriber_id": sub_id})
        return True

    def get(self, sub_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subs.get(sub_id)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def _snapshot(self, kind: Optional[str] = None) -> List[Subscription]:
        with self._lock:
            subs = list(self._subs.values())
        if kind is not None:
            subs = [s for s in subs if s.kind == kind]
        return subs

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def broadcast(self, event: Event) -> int:
        """Fan one event out to every live subscription; returns deliveries."""
        return self.publish_frame(to_wire(event))

    def publish_frame(self, frame: Frame) -> int:
        self.published += 1
        delivered = 0
        for sub in self._snapshot():
            try:
                if not sub.offer(frame):
                    self._rl.warning(
                        f"drop:{sub.id}",
                        "Subscriber queue full; dropped oldest frame (%d dropped so far)",
                        sub.dropped,
                        subscriber_id=sub.id,
                    )
                delivered += 1
            except SubscriberDeliveryError as exc:
                logger.info("Dropping subscriber: %s", exc, extra={"subscriber_id": sub.id})
                self.unsubscribe(sub)
        return delivered

    # ------------------------------------------------------------------
    # Heartbeats
    # ------------------------------------------------------------------

    def heartbeat(self) -> List[str]:
        """Send one heartbeat round; returns ids evicted for missed acks."""
        self._heartbeat_seq += 1
        frame = heartbeat_frame(self._heartbeat_seq)
        evicted: List[str] = []
        for sub in self._snapshot(kind="stream"):
            if sub.missed_heartbeats >= self.max_missed_heartbeats:
                logger.info(
                    "Evicting subscriber after %d missed heartbeats",
                    sub.missed_heartbeats,
                    extra={"subscriber_id": sub.id},
                )
                self.unsubscribe(sub)
                evicted.append(sub.id)
                continue
            sub.missed_heartbeats += 1
            try:
                sub.offer(frame)
            except SubscriberDeliveryError:
                self.unsubscribe(sub)
                evicted.append(sub.id)
        return evicted

    def ack(self, sub_id: str) -> bool:
        sub = self.get(sub_id)
        if sub is None:
            return False
        sub.missed_heartbeats = 0
        sub.last_ack_ms = now_ms()
        return True

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._heartbeat_loop, name="broadcast-heartbeat", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        for sub in self._snapshot():
            self.unsubscribe(sub)

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_interval_sec):
            self.heartbeat()

    # ------------------------------------------------------------------
    # Request/response fallback
    # ------------------------------------------------------------------

    def poll(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Wait for the next frame, bounded by the poll timeout.

        The temporary subscription is released on every path.
        """
        limit = self.poll_timeout_sec if timeout is None else max(0.0, min(timeout, self.poll_timeout_sec))
        sub = self.subscribe(kind="poll", maxsize=1)
        try:
            return sub.get(timeout=limit)
        finally:
            self.unsubscribe(sub)

    def stats(self) -> Dict[str, Any]:
        subs = self._snapshot()
        return {
            "subscribers": len(subs),
            "published": self.published,
            "heartbeatSeq": self._heartbeat_seq,
            "subscriptions": [s.describe() for s in subs],
        }
