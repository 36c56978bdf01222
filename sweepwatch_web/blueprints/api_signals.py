"""
Signal API blueprint for Sweepwatch Web.

Read access to stored signals (recent, by id, by bounding box) and area
statistics, plus submission of signals (single or batched), device
relationship edges and detected patterns.
"""
from __future__ import annotations

from flask import Blueprint, jsonify, request

from sweepwatch.model import Pattern, Relationship, Signal, Source
from sweepwatch.store.store import MAX_RECENT
from sweepwatch.util.time import now_ms
from sweepwatch_web.helpers import bbox_args, error_json, get_runtime, json_body

bp = Blueprint("api_signals", __name__)

MAX_BATCH_SIGNALS = 1000


@bp.get("/api/signals")
def api_signals_recent():
    """Most recent signals, newest first (limit clamped to 1..1000)."""
    limit = request.args.get("limit", type=int) or 100
    limit = max(1, min(limit, MAX_RECENT))
    signals = get_runtime().store.find_recent(limit)
    return jsonify({"signals": [s.to_dict() for s in signals], "count": len(signals)})


@bp.get("/api/signals/bbox")
def api_signals_bbox():
    lat_min, lat_max, lon_min, lon_max = bbox_args()
    limit = request.args.get("limit", type=int)
    signals = get_runtime().store.find_in_bounding_box(lat_min, lat_max, lon_min, lon_max, limit=limit)
    return jsonify({"signals": [s.to_dict() for s in signals], "count": len(signals)})


@bp.get("/api/signals/area-stats")
def api_signals_area_stats():
    lat_min, lat_max, lon_min, lon_max = bbox_args()
    return jsonify(get_runtime().store.area_stats(lat_min, lat_max, lon_min, lon_max))


@bp.get("/api/signals/<signal_id>")
def api_signal_get(signal_id: str):
    signal = get_runtime().store.find_by_id(signal_id)
    if signal is None:
        return error_json(404, "not_found", f"no signal '{signal_id}'")
    return jsonify(signal.to_dict())


@bp.post("/api/signals")
def api_signals_submit():
    """Store one signal synchronously; source defaults to manual.

    Returns 201 when stored and 200 when the signalId already existed.
    """
    try:
        signal = Signal.from_dict(json_body(), default_source=Source.MANUAL)
    except ValueError as exc:
        return error_json(400, "invalid_signal", str(exc))
    inserted = get_runtime().store.ingest(signal)
    return jsonify({"signal": signal.to_dict(), "stored": inserted}), (201 if inserted else 200)


@bp.post("/api/signals/batch")
def api_signals_batch():
    """Store a list of signals (bare array or ``{"signals": [...]}``).

    Invalid entries are skipped and reported by index; valid ones are stored
    in a single transaction.
    """
    body = request.get_json(silent=True)
    items = body.get("signals") if isinstance(body, dict) else body
    if not isinstance(items, list):
        return error_json(400, "invalid_batch", "expected a signals array")
    if len(items) > MAX_BATCH_SIGNALS:
        return error_json(400, "batch_too_large", f"at most {MAX_BATCH_SIGNALS} signals per batch")

    signals = []
    rejected = []
    for idx, item in enumerate(items):
        try:
            if not isinstance(item, dict):
                raise ValueError("signal must be an object")
            signals.append(Signal.from_dict(item, default_source=Source.MANUAL))
        except ValueError as exc:
            rejected.append({"index": idx, "detail": str(exc)})
    stored = get_runtime().store.ingest_many(signals)
    return jsonify(
        {
            "total": len(items),
            "valid": len(signals),
            "stored": stored,
            "duplicates": len(signals) - stored,
            "rejected": rejected,
        }
    )


@bp.get("/api/relationships")
def api_relationships():
    limit = request.args.get("limit", type=int) or 100
    limit = max(1, min(limit, MAX_RECENT))
    rels = get_runtime().store.list_relationships(limit)
    return jsonify({"relationships": rels, "count": len(rels)})


@bp.post("/api/relationships")
def api_relationships_submit():
    """Upsert device relationship edges from ``{"edges": [...]}``; all or nothing."""
    edges = json_body().get("edges")
    if not isinstance(edges, list):
        return error_json(400, "invalid_edges", "expected an edges array")
    now = now_ms()
    try:
        rels = [Relationship.from_edge(edge, default_ts_ms=now) for edge in edges]
    except ValueError as exc:
        return error_json(400, "invalid_edges", str(exc))
    count = get_runtime().store.record_relationships(rels)
    return jsonify({"stored": count})


@bp.post("/api/patterns")
def api_patterns_submit():
    try:
        pattern = Pattern.from_dict(json_body())
    except ValueError as exc:
        return error_json(400, "invalid_pattern", str(exc))
    get_runtime().store.record_pattern(pattern)
    return jsonify({"patternId": pattern.pattern_id, "signalIds": pattern.signal_ids}), 201
