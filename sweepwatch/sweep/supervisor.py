"""Lifecycle supervision of the external sweep process.

The supervisor owns exactly one subprocess at a time. A single worker thread
drives the session: it spawns the sweep program, consumes its output through
one bounded line queue (fed by one reader per pipe), classifies every line and
decides on recovery. The public methods only flip state and signal the worker.

States::

    idle -> starting -> running -> stopping -> idle
                        running -> recovering -> running | idle
    any  -> emergency_stopped   (left only through reset())
"""

from __future__ import annotations

import queue
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from sweepwatch.errors import (
    AlreadyRunningError,
    BufferOverflowWarning,
    EmergencyStoppedError,
    HardwareFaultError,
    ProcessStartupError,
    ProcessStartupTimeoutError,
    SupervisorError,
)
from sweepwatch.events import ErrorEvent, Event, SampleEvent, StatusChange, SupervisorPhase
from sweepwatch.model import Sample
from sweepwatch.sweep.parser import (
    DEFAULT_FAULT_PATTERNS,
    DEFAULT_OVERFLOW_PATTERNS,
    LineClassifier,
    LineKind,
)
from sweepwatch.sweep.plan import SweepPlan, build_sweep_command
from sweepwatch.util.logging import RateLimitedLog, get_logger, log_exception
from sweepwatch.util.time import now_ms

logger = get_logger(__name__)

Listener = Callable[[Event], None]


@dataclass(frozen=True)
class SupervisorConfig:
    program: Tuple[str, ...] = ("hackrf_sweep",)
    device_serial: Optional[str] = None
    startup_timeout_sec: float = 20.0
    stop_grace_sec: float = 5.0
    kill_timeout_sec: float = 5.0
    overflow_threshold: int = 10
    overflow_window_sec: float = 30.0
    max_fault_recovery_failures: int = 2
    max_recovery_attempts: int = 5
    backoff_initial_sec: float = 1.0
    backoff_max_sec: float = 30.0
    line_queue_size: int = 4096
    poll_interval_sec: float = 0.1
    log_interval_sec: float = 10.0
    fault_patterns: Tuple[str, ...] = DEFAULT_FAULT_PATTERNS
    overflow_patterns: Tuple[str, ...] = DEFAULT_OVERFLOW_PATTERNS

    @property
    def shutdown_budget_sec(self) -> float:
        return self.stop_grace_sec + self.kill_timeout_sec + 2.0


@dataclass
class SupervisorState:
    phase: SupervisorPhase = SupervisorPhase.IDLE
    pid: Optional[int] = None
    plan: Optional[SweepPlan] = None
    current_range: Optional[int] = None
    samples_parsed: int = 0
    overflow_count: int = 0
    consecutive_recovery_failures: int = 0
    recoveries: int = 0
    last_error: Optional[str] = None
    started_at_ms: Optional[int] = None
    updated_at_ms: int = field(default_factory=now_ms)

    def snapshot(self) -> Dict[str, Any]:
        current = None
        if self.plan is not None and self.current_range is not None:
            current = self.plan.ranges[self.current_range].to_dict()
        return {
            "state": self.phase.value,
            "pid": self.pid,
            "plan": self.plan.to_dict() if self.plan is not None else None,
            "currentRange": current,
            "samplesParsed": self.samples_parsed,
            "overflowCount": self.overflow_count,
            "consecutiveRecoveryFailures": self.consecutive_recovery_failures,
            "recoveries": self.recoveries,
            "lastError": self.last_error,
            "startedAtMs": self.started_at_ms,
            "updatedAtMs": self.updated_at_ms,
        }


class _Outcome(Enum):
    STARTED = "started"
    STOP = "stop"
    FAULT = "fault"
    OVERFLOW = "overflow"
    EXITED = "exited"
    TIMEOUT = "timeout"
    CYCLE = "cycle"
    SPAWN_FAILED = "spawn_failed"


@dataclass
class _Startup:
    done: threading.Event = field(default_factory=threading.Event)
    error: Optional[SupervisorError] = None


@dataclass
class _Session:
    proc: subprocess.Popen
    range_index: int
    lines: "queue.Queue[Tuple[str, Optional[str]]]"
    closed: threading.Event = field(default_factory=threading.Event)
    readers: List[threading.Thread] = field(default_factory=list)


class SweepSupervisor:
    """Own the sweep subprocess and turn its output into events."""

    def __init__(
        self,
        config: Optional[SupervisorConfig] = None,
        *,
        listeners: Sequence[Listener] = (),
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SupervisorConfig()
        self._listeners: List[Listener] = list(listeners)
        self._popen = popen
        self._clock = clock
        self._classifier = LineClassifier(self.config.fault_patterns, self.config.overflow_patterns)
        self._rl = RateLimitedLog(logger, self.config.log_interval_sec)

        self._lock = threading.RLock()
        self._state = SupervisorState()
        self._stop_evt = threading.Event()
        self._emergency = False
        self._worker: Optional[threading.Thread] = None
        self._session: Optional[_Session] = None
        self._overflow_times: Deque[float] = deque()
        self._session_seq = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    @property
    def phase(self) -> SupervisorPhase:
        with self._lock:
            return self._state.phase

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return self._state.snapshot()

    def start(self, plan: SweepPlan) -> Dict[str, Any]:
        """Spawn the sweep program and block until the first valid sample.

        Raises AlreadyRunningError when a session is active,
        EmergencyStoppedError until reset() is called, and
        ProcessStartupTimeoutError / ProcessStartupError when the program
        does not produce data. On failure the supervisor is back in idle.
        """
        with self._lock:
            phase = self._state.phase
            if phase is SupervisorPhase.EMERGENCY_STOPPED:
                raise EmergencyStoppedError("emergency stopped; operator reset required")
            if phase is not SupervisorPhase.IDLE:
                raise AlreadyRunningError(f"sweep session already {phase.value}")
            self._stop_evt.clear()
            self._emergency = False
            startup = _Startup()
            self._overflow_times.clear()
            self._state.plan = plan
            self._state.current_range = None
            self._state.samples_parsed = 0
            self._state.overflow_count = 0
            self._state.consecutive_recovery_failures = 0
            self._state.recoveries = 0
            self._state.last_error = None
            self._state.started_at_ms = now_ms()
            self._transition(SupervisorPhase.STARTING, "start requested")
            self._session_seq += 1
            worker = threading.Thread(
                target=self._run,
                args=(plan, self._session_seq, startup),
                name=f"sweep-supervisor-{self._session_seq}",
                daemon=True,
            )
            self._worker = worker
            worker.start()

        budget = self.config.startup_timeout_sec + self.config.shutdown_budget_sec + 1.0
        if not startup.done.wait(timeout=budget):
            logger.error("Supervisor worker did not report startup within %.1fs", budget)
            self.stop()
            raise ProcessStartupTimeoutError(f"no startup report within {budget:.1f}s")
        if startup.error is not None:
            worker.join(timeout=self.config.shutdown_budget_sec)
            raise startup.error
        return self.status()

    def stop(self) -> Dict[str, Any]:
        """Gracefully stop the session; idempotent from idle."""
        with self._lock:
            phase = self._state.phase
            if phase in (SupervisorPhase.IDLE, SupervisorPhase.EMERGENCY_STOPPED):
                return self._state.snapshot()
            self._stop_evt.set()
            self._transition(SupervisorPhase.STOPPING, "stop requested")
            worker = self._worker
        self._join(worker)
        return self.status()

    def emergency_stop(self, reason: str = "operator request") -> Dict[str, Any]:
        """Kill the sweep program immediately and latch emergency_stopped."""
        with self._lock:
            self._emergency = True
            self._stop_evt.set()
            session = self._session
            if session is not None:
                self._kill_now(session.proc)
            if self._state.phase is not SupervisorPhase.EMERGENCY_STOPPED:
                self._record_error(
                    EmergencyStoppedError.__name__,
                    f"emergency stop: {reason}; operator intervention required",
                    fatal=True,
                )
                self._transition(SupervisorPhase.EMERGENCY_STOPPED, reason)
            worker = self._worker
        self._join(worker, budget=self.config.kill_timeout_sec + 2.0)
        return self.status()

    def reset(self) -> Dict[str, Any]:
        """Clear an emergency stop after operator intervention."""
        with self._lock:
            if self._state.phase is not SupervisorPhase.EMERGENCY_STOPPED:
                raise SupervisorError(f"reset requires emergency_stopped, state is {self._state.phase.value}")
            worker = self._worker
        self._join(worker)
        with self._lock:
            self._emergency = False
            self._stop_evt.clear()
            self._state.consecutive_recovery_failures = 0
            self._state.overflow_count = 0
            self._state.last_error = None
            self._state.current_range = None
            self._transition(SupervisorPhase.IDLE, "operator reset")
            return self._state.snapshot()

    # ------------------------------------------------------------------
    # State helpers (caller holds no lock unless noted)
    # ------------------------------------------------------------------

    def _transition(self, phase: SupervisorPhase, reason: str) -> None:
        # caller holds self._lock
        prev = self._state.phase
        if prev is phase:
            return
        self._state.phase = phase
        self._state.updated_at_ms = now_ms()
        logger.info("Supervisor %s -> %s (%s)", prev.value, phase.value, reason, extra={"pid": self._state.pid})
        self._emit(StatusChange(previous=prev, current=phase, reason=reason, pid=self._state.pid))

    def _record_error(self, error_type: str, message: str, *, fatal: bool = False) -> None:
        with self._lock:
            self._state.last_error = f"{error_type}: {message}"
            self._state.updated_at_ms = now_ms()
        self._emit(ErrorEvent(error_type=error_type, message=message, fatal=fatal))

    def _emit(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log_exception(logger, "Event listener failed", error_type="listener")

    def _mark_running(self) -> None:
        with self._lock:
            if self._stop_evt.is_set():
                return
            if self._state.phase in (SupervisorPhase.STARTING, SupervisorPhase.RECOVERING):
                if self._state.phase is SupervisorPhase.RECOVERING:
                    self._state.recoveries += 1
                self._state.consecutive_recovery_failures = 0
                self._transition(SupervisorPhase.RUNNING, "first sample received")

    def _join(self, worker: Optional[threading.Thread], budget: Optional[float] = None) -> None:
        if worker is None or worker is threading.current_thread():
            return
        worker.join(timeout=budget if budget is not None else self.config.shutdown_budget_sec)
        if worker.is_alive():
            logger.error("Supervisor worker still alive after %.1fs", budget or self.config.shutdown_budget_sec)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self, plan: SweepPlan, seq: int, startup: _Startup) -> None:
        range_index = 0
        started = False
        failures = 0
        fault_involved = False
        backoff = self.config.backoff_initial_sec
        emergency = False
        reason = "stopped"
        try:
            while not self._stop_evt.is_set():
                outcome, detail = self._launch(plan, range_index, seq)
                was_running = outcome is _Outcome.STARTED
                if was_running:
                    if not started:
                        started = True
                        startup.done.set()
                    cycle_deadline = None
                    if len(plan.ranges) > 1:
                        cycle_deadline = self._clock() + plan.cycle_time_sec
                    outcome, detail = self._pump(self._session, cycle_deadline=cycle_deadline)

                if outcome is _Outcome.STOP:
                    if not started:
                        startup.error = ProcessStartupError("sweep start cancelled")
                    break
                if outcome is _Outcome.CYCLE:
                    self._release(graceful=True)
                    range_index = (range_index + 1) % len(plan.ranges)
                    logger.debug("Retuning to range %d", range_index)
                    continue

                self._release(graceful=False)
                if not started:
                    if outcome is _Outcome.TIMEOUT:
                        startup.error = ProcessStartupTimeoutError(detail)
                    else:
                        startup.error = ProcessStartupError(detail)
                    self._record_error(type(startup.error).__name__, detail)
                    reason = "startup failed"
                    break

                if was_running:
                    failures = 0
                    fault_involved = False
                    backoff = self.config.backoff_initial_sec
                else:
                    failures += 1
                fault_involved = fault_involved or outcome is _Outcome.FAULT
                with self._lock:
                    self._state.consecutive_recovery_failures = failures

                if fault_involved and failures >= self.config.max_fault_recovery_failures:
                    self._record_error(
                        HardwareFaultError.__name__,
                        f"recovery failed {failures} times after hardware fault; operator intervention required",
                        fatal=True,
                    )
                    emergency = True
                    reason = "repeated hardware faults"
                    break
                if failures >= self.config.max_recovery_attempts:
                    self._record_error(SupervisorError.__name__, f"giving up after {failures} recovery attempts")
                    reason = "recovery attempts exhausted"
                    break

                with self._lock:
                    if self._stop_evt.is_set():
                        break
                    self._transition(SupervisorPhase.RECOVERING, f"{outcome.value}: {detail}")
                logger.warning("Recovering sweep in %.1fs (attempt %d)", backoff, failures + 1)
                if self._stop_evt.wait(backoff):
                    break
                backoff = min(backoff * 2, self.config.backoff_max_sec)
        except Exception as exc:
            log_exception(logger, "Supervisor worker crashed", error_type="supervisor")
            if not started and startup.error is None:
                startup.error = ProcessStartupError(f"supervisor error: {exc}")
            reason = "supervisor error"
        finally:
            self._release(graceful=not self._emergency)
            with self._lock:
                if self._emergency or emergency:
                    self._emergency = True
                    self._transition(SupervisorPhase.EMERGENCY_STOPPED, reason)
                else:
                    self._transition(SupervisorPhase.IDLE, reason)
                self._state.current_range = None
                startup.done.set()

    def _launch(self, plan: SweepPlan, range_index: int, seq: int) -> Tuple[_Outcome, str]:
        cmd = build_sweep_command(
            plan,
            range_index,
            program=self.config.program,
            device_serial=self.config.device_serial,
        )
        try:
            proc = self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                errors="replace",
            )
        except OSError as exc:
            return _Outcome.SPAWN_FAILED, f"cannot execute {cmd[0]}: {exc}"

        session = _Session(proc=proc, range_index=range_index, lines=queue.Queue(self.config.line_queue_size))
        for name, stream in (("stdout", proc.stdout), ("stderr", proc.stderr)):
            reader = threading.Thread(
                target=self._read_stream,
                args=(session, name, stream),
                name=f"sweep-{seq}-{name}",
                daemon=True,
            )
            session.readers.append(reader)
            reader.start()
        with self._lock:
            self._session = session
            self._state.pid = proc.pid
            self._state.current_range = range_index
            if self._emergency:
                self._kill_now(proc)
        logger.info("Spawned sweep process: %s", " ".join(cmd), extra={"pid": proc.pid, "session_id": seq})
        return self._pump(session, startup_deadline=self._clock() + self.config.startup_timeout_sec)

    def _read_stream(self, session: _Session, name: str, stream: Any) -> None:
        try:
            for line in iter(stream.readline, ""):
                if not self._offer(session, (name, line.rstrip("\r\n"))):
                    return
        except (OSError, ValueError) as exc:
            logger.debug("Reader %s closed: %s", name, exc)
        finally:
            self._offer(session, (name, None))

    def _offer(self, session: _Session, item: Tuple[str, Optional[str]]) -> bool:
        while not session.closed.is_set():
            try:
                session.lines.put(item, timeout=0.2)
                return True
            except queue.Full:
                continue
        return False

    def _pump(
        self,
        session: Optional[_Session],
        *,
        startup_deadline: Optional[float] = None,
        cycle_deadline: Optional[float] = None,
    ) -> Tuple[_Outcome, str]:
        if session is None:
            return _Outcome.STOP, "no session"
        eof_count = 0
        while True:
            if self._stop_evt.is_set():
                return _Outcome.STOP, "stop requested"
            now = self._clock()
            if startup_deadline is not None and now >= startup_deadline:
                return _Outcome.TIMEOUT, f"no valid sample within {self.config.startup_timeout_sec:g}s"
            if cycle_deadline is not None and now >= cycle_deadline:
                return _Outcome.CYCLE, "cycle time elapsed"
            try:
                stream, line = session.lines.get(timeout=self.config.poll_interval_sec)
            except queue.Empty:
                continue
            if line is None:
                eof_count += 1
                if eof_count >= 2:
                    try:
                        rc = session.proc.wait(timeout=self.config.kill_timeout_sec)
                    except subprocess.TimeoutExpired:
                        rc = None
                    return _Outcome.EXITED, f"sweep process exited with code {rc}"
                continue

            parsed = self._classifier.classify(line, received_ms=now_ms())
            if parsed.kind is LineKind.SAMPLE and parsed.sample is not None:
                if startup_deadline is not None:
                    self._mark_running()
                self._on_sample(parsed.sample)
                if startup_deadline is not None:
                    return _Outcome.STARTED, ""
            elif parsed.kind is LineKind.FAULT:
                logger.error("Hardware fault from %s: %s", stream, parsed.text, extra={"pid": session.proc.pid})
                self._record_error(HardwareFaultError.__name__, parsed.text)
                return _Outcome.FAULT, parsed.text
            elif parsed.kind is LineKind.OVERFLOW:
                if self._on_overflow(parsed.text):
                    return _Outcome.OVERFLOW, parsed.text
            else:
                self._rl.debug("unparseable", "Dropped unparseable %s line: %.120s", stream, parsed.text)

    def _on_sample(self, sample: Sample) -> None:
        with self._lock:
            self._state.samples_parsed += 1
        self._emit(SampleEvent(sample=sample))

    def _on_overflow(self, text: str) -> bool:
        """Count an overflow line; True once the sliding-window threshold is reached."""
        now = self._clock()
        window = self._overflow_times
        window.append(now)
        while window and now - window[0] > self.config.overflow_window_sec:
            window.popleft()
        with self._lock:
            self._state.overflow_count += 1
        self._rl.warning(
            "overflow",
            "Sweep buffer overflow (%d within %.0fs): %s",
            len(window),
            self.config.overflow_window_sec,
            text,
            error_type=BufferOverflowWarning.__name__,
        )
        if len(window) >= self.config.overflow_threshold:
            count = len(window)
            window.clear()
            self._record_error(
                BufferOverflowWarning.__name__,
                f"{count} overflow warnings within {self.config.overflow_window_sec:g}s",
            )
            return True
        return False

    # ------------------------------------------------------------------
    # Process teardown
    # ------------------------------------------------------------------

    def _kill_now(self, proc: subprocess.Popen) -> None:
        if proc.poll() is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    def _release(self, *, graceful: bool) -> None:
        with self._lock:
            session = self._session
            self._session = None
        if session is None:
            return
        proc = session.proc
        try:
            self._terminate(proc, graceful=graceful)
        finally:
            session.closed.set()
            for reader in session.readers:
                reader.join(timeout=1.0)
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()
            with self._lock:
                self._state.pid = None
            logger.debug("Released sweep process", extra={"pid": proc.pid})

    def _terminate(self, proc: subprocess.Popen, *, graceful: bool) -> None:
        if proc.poll() is not None:
            return
        if graceful:
            proc.terminate()
            try:
                proc.wait(timeout=self.config.stop_grace_sec)
                return
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Sweep process ignored SIGTERM for %.1fs; killing",
                    self.config.stop_grace_sec,
                    extra={"pid": proc.pid},
                )
        proc.kill()
        try:
            proc.wait(timeout=self.config.kill_timeout_sec)
        except subprocess.TimeoutExpired:
            logger.error("Sweep process survived SIGKILL", extra={"pid": proc.pid})
