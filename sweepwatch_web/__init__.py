"""
Sweepwatch Web: Flask application and Socket.IO stream for sweepwatch.

This package provides the HTTP surface that:
- Starts, stops and resets the sweep supervisor
- Serves stored signals, relationships and database statistics
- Streams supervisor events to Socket.IO clients, with a long-poll fallback

Usage:
    from sweepwatch_web import create_app
    app = create_app()
    app.extensions["socketio"].run(app, host="0.0.0.0", port=8080)
"""
from __future__ import annotations

from sweepwatch import __version__

# Import create_app so it's accessible from package root
from sweepwatch_web.app import create_app

__all__ = ["create_app", "__version__"]
