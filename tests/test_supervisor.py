import os
import signal
import subprocess
import sys
import time
from typing import Callable, List

import pytest

from sweepwatch.errors import (
    AlreadyRunningError,
    EmergencyStoppedError,
    ProcessStartupError,
    ProcessStartupTimeoutError,
    SupervisorError,
)
from sweepwatch.events import ErrorEvent, Event, SampleEvent, StatusChange, SupervisorPhase
from sweepwatch.sweep.plan import FrequencyRange, SweepPlan
from sweepwatch.sweep.supervisor import SupervisorConfig, SweepSupervisor

FAKE = os.path.join(os.path.dirname(__file__), "fake_sweep.py")


def _config(*fake_args: str, **overrides) -> SupervisorConfig:
    values = dict(
        program=(sys.executable, FAKE, *fake_args),
        startup_timeout_sec=5.0,
        stop_grace_sec=2.0,
        kill_timeout_sec=2.0,
        backoff_initial_sec=0.05,
        backoff_max_sec=0.2,
        poll_interval_sec=0.02,
    )
    values.update(overrides)
    return SupervisorConfig(**values)


def _plan(*ranges_mhz) -> SweepPlan:
    ranges = ranges_mhz or ((2400, 2410),)
    return SweepPlan(
        ranges=tuple(FrequencyRange(lo * 1e6, hi * 1e6, 1e6) for lo, hi in ranges),
        cycle_time_sec=0.4,
    )


def _supervisor(config: SupervisorConfig, events: List[Event], procs: List[subprocess.Popen]) -> SweepSupervisor:
    def _popen(*args, **kwargs):
        proc = subprocess.Popen(*args, **kwargs)
        procs.append(proc)
        return proc

    return SweepSupervisor(config, listeners=[events.append], popen=_popen)


def _wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _phases(events: List[Event]) -> List[SupervisorPhase]:
    return [e.current for e in list(events) if isinstance(e, StatusChange)]


def _all_released(procs: List[subprocess.Popen]) -> bool:
    return all(p.poll() is not None and p.stdout.closed and p.stderr.closed for p in procs)


def test_start_streams_samples_and_stop_releases_process() -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    sup = _supervisor(_config(), events, procs)

    status = sup.start(_plan())
    assert status["state"] == "running"
    assert status["pid"] == procs[0].pid
    assert _wait_for(lambda: sup.status()["samplesParsed"] >= 5)

    final = sup.stop()
    assert final["state"] == "idle"
    assert final["pid"] is None
    assert len(procs) == 1
    assert _all_released(procs)
    assert _phases(events) == [
        SupervisorPhase.STARTING,
        SupervisorPhase.RUNNING,
        SupervisorPhase.STOPPING,
        SupervisorPhase.IDLE,
    ]

    samples = [e.sample for e in events if isinstance(e, SampleEvent)]
    assert samples
    assert all(s.power_dbm == -40.0 for s in samples)
    assert all(2400e6 <= s.frequency_hz <= 2410e6 for s in samples)
    stamps = [s.timestamp_ms for s in samples]
    assert stamps == sorted(stamps)


def test_stop_from_idle_is_a_no_op() -> None:
    sup = SweepSupervisor(_config())
    assert sup.stop()["state"] == "idle"
    assert sup.stop()["state"] == "idle"


def test_second_start_is_rejected_while_running() -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    sup = _supervisor(_config(), events, procs)
    sup.start(_plan())
    try:
        with pytest.raises(AlreadyRunningError):
            sup.start(_plan())
        assert len(procs) == 1
    finally:
        sup.stop()
    assert _all_released(procs)


def test_startup_timeout_kills_process_and_returns_to_idle() -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    sup = _supervisor(_config("--silent", startup_timeout_sec=0.5), events, procs)

    with pytest.raises(ProcessStartupTimeoutError):
        sup.start(_plan())

    assert sup.phase is SupervisorPhase.IDLE
    assert _all_released(procs)
    errors = [e for e in events if isinstance(e, ErrorEvent)]
    assert errors[-1].error_type == "ProcessStartupTimeoutError"
    assert "ProcessStartupTimeoutError" in sup.status()["lastError"]


def test_missing_program_reports_startup_error() -> None:
    sup = SweepSupervisor(_config(program=("/nonexistent/hackrf_sweep",)))
    with pytest.raises(ProcessStartupError):
        sup.start(_plan())
    assert sup.phase is SupervisorPhase.IDLE


def test_stop_escalates_to_kill_when_sigterm_is_ignored() -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    sup = _supervisor(_config("--ignore-term", stop_grace_sec=0.3), events, procs)
    sup.start(_plan())

    sup.stop()

    assert sup.phase is SupervisorPhase.IDLE
    assert _all_released(procs)
    assert procs[0].returncode == -signal.SIGKILL


def test_overflow_burst_at_threshold_recovers_exactly_once(tmp_path) -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    once = str(tmp_path / "once")
    sup = _supervisor(_config("--overflow-burst", "10", "--once-file", once), events, procs)
    sup.start(_plan())
    try:
        assert _wait_for(lambda: sup.status()["recoveries"] == 1 and sup.phase is SupervisorPhase.RUNNING)
        time.sleep(0.3)
        phases = _phases(events)
        assert phases.count(SupervisorPhase.RECOVERING) == 1
        assert phases[-2:] == [SupervisorPhase.RECOVERING, SupervisorPhase.RUNNING]
        assert sup.status()["overflowCount"] == 10
        overflow_errors = [e for e in events if isinstance(e, ErrorEvent) and e.error_type == "BufferOverflowWarning"]
        assert len(overflow_errors) == 1
        assert len(procs) == 2
        assert procs[0].poll() is not None
    finally:
        sup.stop()
    assert _all_released(procs)


def test_overflow_below_threshold_keeps_running(tmp_path) -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    sup = _supervisor(_config("--overflow-burst", "9"), events, procs)
    sup.start(_plan())
    try:
        assert _wait_for(lambda: sup.status()["overflowCount"] == 9)
        time.sleep(0.3)
        assert SupervisorPhase.RECOVERING not in _phases(events)
        assert sup.phase is SupervisorPhase.RUNNING
        assert len(procs) == 1
    finally:
        sup.stop()


def test_repeated_hardware_fault_escalates_to_emergency_stop(tmp_path) -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    once = str(tmp_path / "once")
    sup = _supervisor(_config("--fault-after", "1", "--once-file", once), events, procs)
    sup.start(_plan())

    assert _wait_for(lambda: sup.phase is SupervisorPhase.EMERGENCY_STOPPED)
    assert _all_released(procs)
    # one faulted session plus two failed relaunches
    assert len(procs) == 3
    fatal = [e for e in events if isinstance(e, ErrorEvent) and e.fatal]
    assert fatal and fatal[-1].error_type == "HardwareFaultError"
    assert sup.status()["consecutiveRecoveryFailures"] == 2

    with pytest.raises(EmergencyStoppedError):
        sup.start(_plan())
    assert len(procs) == 3

    assert sup.reset()["state"] == "idle"
    assert sup.status()["consecutiveRecoveryFailures"] == 0


def test_emergency_stop_kills_immediately_and_latches() -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    sup = _supervisor(_config("--ignore-term"), events, procs)
    sup.start(_plan())

    t0 = time.monotonic()
    status = sup.emergency_stop("test")
    assert time.monotonic() - t0 < 2.0
    assert status["state"] == "emergency_stopped"
    assert _all_released(procs)
    assert procs[0].returncode == -signal.SIGKILL

    assert sup.stop()["state"] == "emergency_stopped"
    with pytest.raises(EmergencyStoppedError):
        sup.start(_plan())
    assert any(isinstance(e, ErrorEvent) and e.fatal for e in events)

    sup.reset()
    assert sup.phase is SupervisorPhase.IDLE
    with pytest.raises(SupervisorError):
        sup.reset()


def test_unexpected_exit_is_recovered() -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    sup = _supervisor(_config("--exit-after", "3"), events, procs)
    sup.start(_plan())
    try:
        assert _wait_for(lambda: sup.status()["recoveries"] >= 1)
        assert len(procs) >= 2
        assert procs[0].poll() == 1
    finally:
        sup.stop()
    assert sup.phase is SupervisorPhase.IDLE
    assert _all_released(procs)


def test_multi_range_plan_retunes_between_ranges() -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    sup = _supervisor(_config(), events, procs)
    sup.start(_plan((2400, 2410), (2450, 2460)))
    try:
        assert _wait_for(lambda: len(procs) >= 3)
        lows = {e.sample.band_low_hz for e in list(events) if isinstance(e, SampleEvent)}
        assert any(lo < 2450e6 for lo in lows)
        assert any(lo >= 2450e6 for lo in lows)
        assert SupervisorPhase.RECOVERING not in _phases(events)
    finally:
        sup.stop()
    assert _all_released(procs)


def test_failing_listener_does_not_stop_the_session() -> None:
    seen: List[Event] = []

    def _broken(event: Event) -> None:
        raise RuntimeError("listener bug")

    sup = SweepSupervisor(_config(), listeners=[_broken, seen.append])
    sup.start(_plan())
    try:
        assert _wait_for(lambda: sum(isinstance(e, SampleEvent) for e in list(seen)) >= 3)
        assert sup.phase is SupervisorPhase.RUNNING
    finally:
        sup.stop()


def test_restart_after_escalation_reports_its_own_startup(tmp_path) -> None:
    events: List[Event] = []
    procs: List[subprocess.Popen] = []
    once = tmp_path / "once"
    sup = _supervisor(_config("--fault-after", "1", "--once-file", str(once)), events, procs)
    sup.start(_plan())
    assert _wait_for(lambda: sup.phase is SupervisorPhase.EMERGENCY_STOPPED)
    sup.reset()

    once.unlink()
    try:
        status = sup.start(_plan())
        assert status["state"] == "running"
        assert status["samplesParsed"] >= 1
        assert status["pid"] == procs[-1].pid
    finally:
        sup.stop()


def test_back_to_back_sessions_each_wait_for_first_sample() -> None:
    procs: List[subprocess.Popen] = []
    sup = _supervisor(_config(), [], procs)
    for _ in range(5):
        status = sup.start(_plan())
        assert status["state"] == "running"
        assert status["samplesParsed"] >= 1
        assert sup.stop()["state"] == "idle"
    assert len(procs) == 5
    assert _all_released(procs)
