#!/usr/bin/env python3
"""
Sweepwatch Web entry point.

Thin CLI shim that parses arguments and runs the Flask + Socket.IO application.

Run:
    SWEEPWATCH_DB=sweepwatch.db python sweepwatch-web.py --host 0.0.0.0 --port 8080

Environment:
    SWEEPWATCH_DB             SQLite database path (required)
    SWEEPWATCH_SWEEP_BIN      Sweep program (default hackrf_sweep)
    SWEEPWATCH_DETECT_URL     Device-detection collaborator URL (optional)
"""
from __future__ import annotations

import argparse
import sys


def parse_args():
    ap = argparse.ArgumentParser(
        description="Sweepwatch Web: sweep supervisor API and event stream"
    )
    ap.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind the web server (default: 0.0.0.0)",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port to listen on (default: 8080)",
    )
    return ap.parse_args()


def main():
    args = parse_args()

    from sweepwatch.cli import main as cli_main

    return cli_main(["serve", "--host", args.host, "--port", str(args.port)])


if __name__ == "__main__":
    sys.exit(main())
