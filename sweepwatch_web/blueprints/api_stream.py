"""
Long-poll fallback for the event stream.

A client that cannot hold a Socket.IO connection asks for the next frame;
the request is bounded by the poll timeout and always releases its
temporary subscription.
"""
from __future__ import annotations

from flask import Blueprint, Response, jsonify, request

from sweepwatch_web.helpers import get_runtime

bp = Blueprint("api_stream", __name__)


@bp.get("/api/stream/poll")
def api_stream_poll():
    """One wire frame, or 204 when nothing arrived before the timeout."""
    timeout = request.args.get("timeout", type=float)
    frame = get_runtime().hub.poll(timeout)
    if frame is None:
        return Response(status=204)
    return jsonify(frame)
