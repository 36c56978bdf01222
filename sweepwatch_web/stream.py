"""
Socket.IO delivery of hub frames.

Each connected client gets its own hub subscription and a background task
that forwards frames under the ``message`` event. Clients acknowledge
heartbeat frames with ``heartbeat_ack``; the hub evicts clients that stop
acknowledging, which ends the delivery task and drops the connection.
"""
from __future__ import annotations

import threading
from typing import Dict, Optional

from flask import request
from flask_socketio import Namespace, emit

from sweepwatch.broadcast.hub import BroadcastHub, Subscription
from sweepwatch.util.logging import get_logger

logger = get_logger(__name__)

DELIVERY_WAIT_SEC = 1.0


class StreamNamespace(Namespace):
    def __init__(self, namespace: str, hub: BroadcastHub) -> None:
        super().__init__(namespace)
        self.hub = hub
        self._subs: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def subscription_for(self, sid: str) -> Optional[Subscription]:
        with self._lock:
            return self._subs.get(sid)

    def on_connect(self, auth=None):
        sid = request.sid
        sub = self.hub.subscribe(kind="stream")
        with self._lock:
            self._subs[sid] = sub
        logger.info("Stream client connected", extra={"subscriber_id": sub.id})
        emit("subscribed", {"subscriberId": sub.id})
        self.socketio.start_background_task(self._deliver, sid, sub)

    def on_heartbeat_ack(self, data=None):
        sub = self.subscription_for(request.sid)
        if sub is not None:
            self.hub.ack(sub.id)

    def on_disconnect(self, reason=None):
        with self._lock:
            sub = self._subs.pop(request.sid, None)
        if sub is not None:
            self.hub.unsubscribe(sub)
            logger.info("Stream client disconnected", extra={"subscriber_id": sub.id})

    def _deliver(self, sid: str, sub: Subscription) -> None:
        while True:
            frame = sub.get(timeout=DELIVERY_WAIT_SEC)
            if frame is None:
                if sub.closed:
                    break
                continue
            self.socketio.emit("message", frame, to=sid, namespace=self.namespace)
        with self._lock:
            evicted = self._subs.pop(sid, None) is not None
        if evicted:
            logger.info("Closing evicted stream client", extra={"subscriber_id": sub.id})
            self.socketio.server.disconnect(sid, namespace=self.namespace)
