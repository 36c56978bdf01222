"""
Request helpers shared by the API blueprints.
"""
from __future__ import annotations

from typing import Any, Dict, Tuple

from flask import abort, current_app, jsonify, request

from sweepwatch.runtime import Runtime


def get_runtime() -> Runtime:
    """The Runtime attached by create_app()."""
    return current_app.extensions["sweepwatch"]


def error_json(status: int, code: str, detail: str):
    return jsonify({"error": code, "detail": detail}), status


def json_body() -> Dict[str, Any]:
    """Parsed JSON object body; aborts with 400 otherwise."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        abort(400, description="request body must be a JSON object")
    return data


def float_arg(name: str) -> float:
    raw = request.args.get(name)
    if raw is None or raw == "":
        abort(400, description=f"missing query parameter '{name}'")
    try:
        return float(raw)
    except ValueError:
        abort(400, description=f"query parameter '{name}' must be a number")


def bbox_args() -> Tuple[float, float, float, float]:
    """(lat_min, lat_max, lon_min, lon_max) from the query string."""
    box = (float_arg("lat_min"), float_arg("lat_max"), float_arg("lon_min"), float_arg("lon_max"))
    if box[0] > box[1] or box[2] > box[3]:
        abort(400, description="bounding box minimum exceeds maximum")
    return box
