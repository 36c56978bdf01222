"""
Application factory for Sweepwatch Web.

Wires together the runtime, blueprints, the Socket.IO stream, error handling,
and request middleware.
"""
from __future__ import annotations

import traceback as tb
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Dict, List, Optional, Tuple, Type

from flask import Flask, jsonify, request
from flask_socketio import SocketIO
from werkzeug.exceptions import HTTPException

from sweepwatch.config import Settings, load_settings
from sweepwatch.errors import (
    AlreadyRunningError,
    CollectorError,
    ConfigurationError,
    EmergencyStoppedError,
    InvalidPlanError,
    PersistenceError,
    ProcessStartupError,
    ProcessStartupTimeoutError,
    SupervisorError,
    SweepwatchError,
)
from sweepwatch.runtime import Runtime
from sweepwatch.util.logging import get_logger

logger = get_logger(__name__)

ERROR_RING_MAX = 100

# Most specific first; the first isinstance match wins.
_ERROR_STATUS: List[Tuple[Type[SweepwatchError], int, str]] = [
    (InvalidPlanError, 400, "invalid_plan"),
    (AlreadyRunningError, 409, "already_running"),
    (EmergencyStoppedError, 423, "emergency_stopped"),
    (ProcessStartupTimeoutError, 504, "startup_timeout"),
    (ProcessStartupError, 502, "startup_failed"),
    (SupervisorError, 409, "invalid_state"),
    (PersistenceError, 503, "storage_unavailable"),
    (CollectorError, 502, "collector_unavailable"),
    (ConfigurationError, 500, "configuration"),
]


def error_status(exc: SweepwatchError) -> Tuple[int, str]:
    for cls, status, code in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status, code
    return 500, "internal"


def create_app(
    settings: Optional[Settings] = None,
    *,
    runtime: Optional[Runtime] = None,
    start_background: bool = True,
) -> Flask:
    """Create and configure the Flask application.

    ``settings`` defaults to load_settings(); a prebuilt ``runtime`` takes
    precedence (tests pass one with a fake sweep program).
    """
    app = Flask(__name__)
    app.json.sort_keys = False

    if runtime is None:
        runtime = Runtime.from_settings(settings or load_settings())
    runtime.start(background=start_background)
    app.extensions["sweepwatch"] = runtime

    # ------------------------------------------------------------------
    # Error ring buffer (exposed via api_debug blueprint)
    # ------------------------------------------------------------------
    app.extensions["sweepwatch_errors"] = []

    def _capture(exc: BaseException) -> None:
        ring: List[Dict[str, Any]] = app.extensions["sweepwatch_errors"]
        ring.append(
            {
                "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
                "path": request.path,
                "method": request.method,
                "error": str(exc),
                "type": type(exc).__name__,
                "traceback": tb.format_exc(),
            }
        )
        while len(ring) > ERROR_RING_MAX:
            ring.pop(0)

    # ------------------------------------------------------------------
    # Request timing middleware
    # ------------------------------------------------------------------

    @app.before_request
    def log_request_start():
        request._start_time = perf_counter()

    @app.after_request
    def log_request_end(response):
        if hasattr(request, "_start_time"):
            duration_ms = (perf_counter() - request._start_time) * 1000
            # Slow requests (>500ms, long polls excepted) and errors only
            if (duration_ms > 500 and request.endpoint != "api_stream.api_stream_poll") or response.status_code >= 400:
                logger.debug(
                    "%s %s -> %d (%.1fms)",
                    request.method,
                    request.path,
                    response.status_code,
                    duration_ms,
                    extra={"duration_ms": duration_ms},
                )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(SweepwatchError)
    def handle_sweepwatch_error(exc: SweepwatchError):
        status, code = error_status(exc)
        if status >= 500:
            _capture(exc)
        return jsonify({"error": code, "detail": str(exc)}), status

    @app.errorhandler(Exception)
    def capture_error_to_ring(exc):
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.name.lower().replace(" ", "_"), "detail": exc.description}), exc.code
        _capture(exc)
        # Re-raise to let Flask handle normally
        raise exc

    # ------------------------------------------------------------------
    # Register blueprints
    # ------------------------------------------------------------------
    from sweepwatch_web.blueprints.api_db import bp as api_db_bp
    from sweepwatch_web.blueprints.api_debug import bp as api_debug_bp
    from sweepwatch_web.blueprints.api_signals import bp as api_signals_bp
    from sweepwatch_web.blueprints.api_stream import bp as api_stream_bp
    from sweepwatch_web.blueprints.api_sweep import bp as api_sweep_bp

    app.register_blueprint(api_debug_bp)
    app.register_blueprint(api_sweep_bp)
    app.register_blueprint(api_signals_bp)
    app.register_blueprint(api_stream_bp)
    app.register_blueprint(api_db_bp)

    # ------------------------------------------------------------------
    # Socket.IO stream
    # ------------------------------------------------------------------
    from sweepwatch_web.stream import StreamNamespace

    socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")
    socketio.on_namespace(StreamNamespace("/", runtime.hub))

    return app
