"""
Sweep control API blueprint for Sweepwatch Web.

Starts, stops and resets the sweep supervisor. Supervisor errors are turned
into JSON responses by the app-level error handler.
"""
from __future__ import annotations

from flask import Blueprint, jsonify, request

from sweepwatch.sweep.plan import SweepPlan
from sweepwatch_web.helpers import get_runtime, json_body

bp = Blueprint("api_sweep", __name__)


@bp.post("/api/sweep/start")
def api_sweep_start():
    """Start sweeping a plan; returns once the first sample has arrived."""
    plan = SweepPlan.from_dict(json_body())
    status = get_runtime().supervisor.start(plan)
    return jsonify(status), 202


@bp.post("/api/sweep/stop")
def api_sweep_stop():
    return jsonify(get_runtime().supervisor.stop()), 202


@bp.post("/api/sweep/emergency-stop")
def api_sweep_emergency_stop():
    data = request.get_json(silent=True) or {}
    reason = str(data.get("reason") or "operator request") if isinstance(data, dict) else "operator request"
    return jsonify(get_runtime().supervisor.emergency_stop(reason)), 202


@bp.post("/api/sweep/reset")
def api_sweep_reset():
    """Clear an emergency stop (409 when not emergency-stopped)."""
    return jsonify(get_runtime().supervisor.reset()), 202


@bp.get("/api/sweep/status")
def api_sweep_status():
    return jsonify(get_runtime().supervisor.status())
