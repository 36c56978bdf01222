import json
import logging
from typing import List

from sweepwatch.util.logging import ConsoleFormatter, JSONFormatter, RateLimitedLog, get_logger


class _Collect(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: List[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("sweepwatch.sweep.supervisor", logging.WARNING, __file__, 1, "overflow x%d", (3,), None)
    record.created = 0.25
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_console_line_carries_component_and_context() -> None:
    line = ConsoleFormatter(use_color=False).format(_record(pid=42, step="expire", suppressed=5))
    assert line.startswith("[00:00:00.250] WARNING  [sweep.supervisor] overflow x3")
    assert "pid=42 step=expire" in line
    assert line.endswith("(+5 suppressed)")


def test_json_line_uses_record_time() -> None:
    data = json.loads(JSONFormatter().format(_record(subscriber_id="s1")))
    assert data["ts"] == "1970-01-01T00:00:00.250Z"
    assert data["component"] == "sweep.supervisor"
    assert data["message"] == "overflow x3"
    assert data["subscriber_id"] == "s1"
    assert "suppressed" not in data


def test_rate_limited_log_counts_quiet_occurrences() -> None:
    now = [100.0]
    logger = get_logger("tests.ratelimit")
    sink = _Collect()
    logger.addHandler(sink)
    try:
        rl = RateLimitedLog(logger, 10.0, clock=lambda: now[0])
        assert rl.warning("overflow", "overflow")
        assert not rl.warning("overflow", "overflow")
        assert not rl.warning("overflow", "overflow")
        assert rl.warning("other", "other key is independent")
        assert rl.suppressed("overflow") == 2

        now[0] += 10.0
        assert rl.warning("overflow", "overflow again")
        assert rl.suppressed("overflow") == 0
    finally:
        logger.removeHandler(sink)

    assert [r.getMessage() for r in sink.records] == ["overflow", "other key is independent", "overflow again"]
    assert [r.suppressed for r in sink.records] == [0, 0, 2]
