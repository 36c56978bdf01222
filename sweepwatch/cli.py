"""Command-line entry point: ``sweepwatch <command>``.

Configuration comes from SWEEPWATCH_* environment variables (see
sweepwatch.config); the flags here only cover per-invocation choices.
"""
from __future__ import annotations

import argparse
import json
import sqlite3
import sys
import threading
from typing import List, Optional

from sweepwatch import __version__
from sweepwatch.config import Settings, load_settings
from sweepwatch.errors import SweepwatchError
from sweepwatch.events import Event, StatusChange, SupervisorPhase, to_wire
from sweepwatch.retention.backup import backup_database
from sweepwatch.retention.cleanup import CleanupScheduler
from sweepwatch.store import migrations
from sweepwatch.store.store import SignalStore
from sweepwatch.sweep.plan import FrequencyRange, SweepPlan
from sweepwatch.sweep.supervisor import SweepSupervisor
from sweepwatch.util.exit_codes import ExitCode
from sweepwatch.util.logging import configure_logging, get_logger

logger = get_logger(__name__)


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    from sweepwatch_web import create_app

    app = create_app(settings)
    socketio = app.extensions["socketio"]
    runtime = app.extensions["sweepwatch"]
    try:
        socketio.run(app, host=args.host, port=args.port, allow_unsafe_werkzeug=True)
    finally:
        runtime.stop()
    return ExitCode.SUCCESS


def cmd_migrate(args: argparse.Namespace, settings: Settings) -> int:
    store = SignalStore(settings.db_path, migrate=False)
    try:
        applied = migrations.migrate(store.con, args.target)
        problems = migrations.validate(store.con)
        _print_json({"applied": applied, "version": migrations.current_version(store.con), "problems": problems})
    finally:
        store.close()
    return ExitCode.DB_ERROR if problems else ExitCode.SUCCESS


def cmd_rollback(args: argparse.Namespace, settings: Settings) -> int:
    store = SignalStore(settings.db_path, migrate=False)
    try:
        reverted = migrations.rollback(store.con, args.target)
        _print_json({"reverted": reverted, "version": migrations.current_version(store.con)})
    finally:
        store.close()
    return ExitCode.SUCCESS


def cmd_cleanup(args: argparse.Namespace, settings: Settings) -> int:
    store = SignalStore(settings.db_path)
    try:
        scheduler = CleanupScheduler(store, settings.retention_policy(), settings.cleanup_config())
        report = scheduler.run_pass(full=args.full)
        if report is None:
            print("error: cleanup already running", file=sys.stderr)
            return ExitCode.GENERAL_ERROR
        _print_json(report.to_dict())
    finally:
        store.close()
    return ExitCode.GENERAL_ERROR if report.errors else ExitCode.SUCCESS


def cmd_backup(args: argparse.Namespace, settings: Settings) -> int:
    backup_dir = args.dir or settings.backup_dir
    if not backup_dir:
        print("error: no backup directory (set SWEEPWATCH_BACKUP_DIR or pass --dir)", file=sys.stderr)
        return ExitCode.INVALID_ARGS
    store = SignalStore(settings.db_path)
    try:
        path = backup_database(store, backup_dir, keep=settings.backup_keep)
        print(str(path))
    finally:
        store.close()
    return ExitCode.SUCCESS


def cmd_stats(args: argparse.Namespace, settings: Settings) -> int:
    store = SignalStore(settings.db_path)
    try:
        _print_json(store.stats())
    finally:
        store.close()
    return ExitCode.SUCCESS


def _plan_from_args(args: argparse.Namespace) -> SweepPlan:
    if args.plan:
        with open(args.plan, "r", encoding="utf-8") as fh:
            return SweepPlan.from_dict(json.load(fh))
    ranges = [
        FrequencyRange(start_hz=args.start * 1e6, stop_hz=args.stop * 1e6, step_hz=args.step)
    ]
    return SweepPlan(ranges=tuple(ranges), cycle_time_sec=args.cycle)


def cmd_sweep(args: argparse.Namespace, settings: Settings) -> int:
    plan = _plan_from_args(args)
    out_lock = threading.Lock()
    finished = threading.Event()

    def _print_event(event: Event) -> None:
        line = json.dumps(to_wire(event), separators=(",", ":"))
        with out_lock:
            sys.stdout.write(line + "\n")
            sys.stdout.flush()
        if isinstance(event, StatusChange) and event.current in (
            SupervisorPhase.IDLE,
            SupervisorPhase.EMERGENCY_STOPPED,
        ):
            finished.set()

    supervisor = SweepSupervisor(settings.supervisor_config(), listeners=[_print_event])
    supervisor.start(plan)
    try:
        while not finished.wait(0.5):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping sweep")
    finally:
        supervisor.stop()
    if supervisor.phase is SupervisorPhase.EMERGENCY_STOPPED:
        return ExitCode.DEVICE_UNAVAILABLE
    return ExitCode.SUCCESS


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sweepwatch", description="Spectrum sweep supervisor and signal store")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR (default from SWEEPWATCH_LOG_LEVEL)")
    p.add_argument("--log-json", default=None, help="Also write JSON log lines to this file")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("serve", help="Run the HTTP API and Socket.IO stream")
    s.add_argument("--host", default="127.0.0.1")
    s.add_argument("--port", type=int, default=8080)
    s.set_defaults(func=cmd_serve)

    s = sub.add_parser("migrate", help="Apply pending schema migrations")
    s.add_argument("--target", type=int, default=None, help="Stop at this version (default: latest)")
    s.set_defaults(func=cmd_migrate)

    s = sub.add_parser("rollback", help="Revert schema migrations down to a version")
    s.add_argument("--target", type=int, required=True)
    s.set_defaults(func=cmd_rollback)

    s = sub.add_parser("cleanup", help="Run one retention pass")
    s.add_argument("--full", action="store_true", help="Include backup and integrity/compaction steps")
    s.set_defaults(func=cmd_cleanup)

    s = sub.add_parser("backup", help="Write an online backup of the database")
    s.add_argument("--dir", default=None, help="Backup directory (default: SWEEPWATCH_BACKUP_DIR)")
    s.set_defaults(func=cmd_backup)

    s = sub.add_parser("stats", help="Print database statistics as JSON")
    s.set_defaults(func=cmd_stats)

    s = sub.add_parser("sweep", help="Run the sweep supervisor in the foreground, printing events as JSON lines")
    s.add_argument("--plan", default=None, help="JSON plan file (frequencyRanges, cycleTimeSec, gains)")
    s.add_argument("--start", type=float, default=2400.0, help="Start frequency (MHz)")
    s.add_argument("--stop", type=float, default=2500.0, help="Stop frequency (MHz)")
    s.add_argument("--step", type=float, default=1_000_000.0, help="Bin width (Hz)")
    s.add_argument("--cycle", type=float, default=10.0, help="Seconds per range before retuning")
    s.set_defaults(func=cmd_sweep)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)
    configure_logging(level=args.log_level, json_file=args.log_json, use_color=sys.stderr.isatty())
    try:
        settings = load_settings()
        code = args.func(args, settings)
    except (SweepwatchError, sqlite3.Error, OSError, ValueError) as e:
        code = ExitCode.for_error(e)
        print(f"{ExitCode.message(code)}: {e}", file=sys.stderr)
    if code != ExitCode.SUCCESS:
        logger.debug("Exiting with %d (%s)", code, ExitCode.message(code))
    return code


if __name__ == "__main__":
    sys.exit(main())
