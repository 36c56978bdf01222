import threading
import time

import pytest

from sweepwatch.broadcast.hub import BroadcastHub, Subscription
from sweepwatch.errors import SubscriberDeliveryError
from sweepwatch.events import ErrorEvent, SampleEvent, StatusChange, SupervisorPhase
from sweepwatch.model import Sample


def _sample(i: int) -> SampleEvent:
    return SampleEvent(Sample(frequency_hz=2400e6 + i, power_dbm=-50.0, timestamp_ms=1000 + i))


def _status() -> StatusChange:
    return StatusChange(previous=SupervisorPhase.STARTING, current=SupervisorPhase.RUNNING, timestamp_ms=5)


def test_wire_frames_carry_type_payload_and_timestamp() -> None:
    hub = BroadcastHub()
    sub = hub.subscribe()
    hub.broadcast(_sample(1))
    frame = sub.get(timeout=0)
    assert frame["type"] == "sample"
    assert frame["timestampMs"] == 1001
    assert frame["payload"]["frequencyHz"] == 2400e6 + 1
    assert frame["payload"]["strength"] == "strong"


def test_full_queue_drops_oldest_sample_first() -> None:
    sub = Subscription("s", 3)
    sub.offer({"type": "status", "n": 0})
    sub.offer({"type": "sample", "n": 1})
    sub.offer({"type": "sample", "n": 2})
    assert sub.offer({"type": "sample", "n": 3}) is False
    assert [f["n"] for f in sub.drain()] == [0, 2, 3]
    assert sub.dropped == 1


def test_full_queue_without_samples_drops_oldest_frame() -> None:
    sub = Subscription("s", 2)
    sub.offer({"type": "status", "n": 0})
    sub.offer({"type": "error", "n": 1})
    sub.offer({"type": "status", "n": 2})
    assert [f["n"] for f in sub.drain()] == [1, 2]


def test_slow_subscriber_does_not_affect_others() -> None:
    hub = BroadcastHub(queue_size=2)
    slow = hub.subscribe()
    fast = hub.subscribe(maxsize=100)
    for i in range(10):
        assert hub.broadcast(_sample(i)) == 2
    hub.broadcast(_status())
    assert len(fast.drain()) == 11
    frames = slow.drain()
    assert len(frames) == 2
    assert frames[-1]["type"] == "status"
    assert slow.dropped == 9


def test_unsubscribe_is_idempotent_and_closes_the_queue() -> None:
    hub = BroadcastHub()
    sub = hub.subscribe()
    closed = []
    sub.on_close = closed.append
    assert hub.unsubscribe(sub) is True
    assert hub.unsubscribe(sub) is False
    assert hub.unsubscribe(sub.id) is False
    assert hub.unsubscribe(None) is False
    assert closed == [sub]
    assert hub.subscriber_count == 0
    with pytest.raises(SubscriberDeliveryError):
        sub.offer({"type": "sample"})
    assert hub.broadcast(_sample(1)) == 0


def test_get_wakes_up_when_closed() -> None:
    sub = Subscription("s", 4)
    threading.Timer(0.1, sub.close).start()
    t0 = time.monotonic()
    assert sub.get(timeout=5) is None
    assert time.monotonic() - t0 < 2


def test_subscriber_missing_heartbeats_is_evicted() -> None:
    hub = BroadcastHub(max_missed_heartbeats=3)
    lazy = hub.subscribe()
    live = hub.subscribe()
    for _ in range(3):
        assert hub.heartbeat() == []
        assert hub.ack(live.id)
    assert lazy.missed_heartbeats == 3
    assert hub.heartbeat() == [lazy.id]
    assert lazy.closed
    assert hub.get(lazy.id) is None
    assert hub.get(live.id) is live
    beats = [f for f in live.drain() if f["type"] == "heartbeat"]
    assert [f["payload"]["seq"] for f in beats] == [1, 2, 3, 4]


def test_ack_for_unknown_subscriber_is_false() -> None:
    assert BroadcastHub().ack("nope") is False


def test_poll_returns_next_frame_and_releases_subscription() -> None:
    hub = BroadcastHub()
    threading.Timer(0.1, hub.broadcast, args=(ErrorEvent(error_type="X", message="boom"),)).start()
    frame = hub.poll(timeout=5)
    assert frame["type"] == "error"
    assert frame["payload"]["message"] == "boom"
    assert hub.subscriber_count == 0


def test_poll_times_out_with_none() -> None:
    hub = BroadcastHub(poll_timeout_sec=0.2)
    t0 = time.monotonic()
    assert hub.poll(timeout=10) is None
    assert time.monotonic() - t0 < 2
    assert hub.subscriber_count == 0


def test_poll_subscriptions_do_not_receive_heartbeats() -> None:
    hub = BroadcastHub()
    sub = hub.subscribe(kind="poll", maxsize=1)
    hub.heartbeat()
    assert len(sub) == 0
    assert sub.missed_heartbeats == 0


def test_stop_closes_every_subscription() -> None:
    hub = BroadcastHub(heartbeat_interval_sec=0.05)
    subs = [hub.subscribe() for _ in range(3)]
    hub.start()
    time.sleep(0.2)
    hub.stop()
    assert all(s.closed for s in subs)
    assert hub.subscriber_count == 0
