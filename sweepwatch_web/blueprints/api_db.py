"""
Database maintenance API blueprint for Sweepwatch Web.
"""
from __future__ import annotations

from flask import Blueprint, jsonify

from sweepwatch_web.helpers import error_json, get_runtime

bp = Blueprint("api_db", __name__)


@bp.get("/api/db/stats")
def api_db_stats():
    """Row counts, signal age range, per-source counts and page statistics."""
    return jsonify(get_runtime().store.stats())


@bp.post("/api/db/cleanup")
def api_db_cleanup():
    """Run a full retention pass now (409 while another pass is running)."""
    report = get_runtime().cleanup.run_pass(full=True)
    if report is None:
        return error_json(409, "cleanup_running", "a cleanup pass is already in progress")
    return jsonify(report.to_dict())
