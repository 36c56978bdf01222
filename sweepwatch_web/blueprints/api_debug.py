"""
Debug and observability API blueprint for Sweepwatch Web.

Provides the health check, the captured error ring, and the effective
(non-secret) configuration.
"""
from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from sweepwatch_web.app import ERROR_RING_MAX
from sweepwatch_web.helpers import get_runtime

bp = Blueprint("api_debug", __name__)


@bp.get("/api/health")
def api_health():
    """Health check: DB reachability plus component summary."""
    runtime = get_runtime()
    health: Dict[str, Any] = {"status": "ok", "db": "unknown"}
    health.update(runtime.health())
    try:
        runtime.store.count("signals")
        health["db"] = "connected"
    except Exception as exc:
        health["db"] = f"error: {exc}"
        health["status"] = "degraded"
    if health["supervisor"] == "emergency_stopped":
        health["status"] = "degraded"
    return jsonify(health)


@bp.get("/api/debug/errors")
def api_debug_errors():
    """Recent captured errors from the ring buffer."""
    ring = current_app.extensions["sweepwatch_errors"]
    limit = request.args.get("limit", type=int) or 50
    limit = max(1, min(limit, ERROR_RING_MAX))
    errors = list(reversed(ring[-limit:]))
    return jsonify({"errors": errors, "total_captured": len(ring)})


@bp.get("/api/debug/config")
def api_debug_config():
    runtime = get_runtime()
    config = runtime.settings.describe()
    config["hub"] = runtime.hub.stats()
    return jsonify(config)
