"""Frequency plans and sweep command construction."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sweepwatch.errors import InvalidPlanError

MIN_FREQ_MHZ = 1
MAX_FREQ_MHZ = 7250
MAX_RANGES = 10
MIN_BIN_HZ = 2445
MAX_BIN_HZ = 5_000_000


@dataclass(frozen=True)
class FrequencyRange:
    start_hz: float
    stop_hz: float
    step_hz: float

    def to_dict(self) -> Dict[str, float]:
        return {"startHz": self.start_hz, "stopHz": self.stop_hz, "stepHz": self.step_hz}


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _number(value: Any, name: str) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        raise InvalidPlanError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(out):
        raise InvalidPlanError(f"{name} must be finite")
    return out


@dataclass(frozen=True)
class SweepPlan:
    ranges: Tuple[FrequencyRange, ...]
    cycle_time_sec: float = 10.0
    lna_gain: int = 32
    vga_gain: int = 20

    def __post_init__(self) -> None:
        if not self.ranges:
            raise InvalidPlanError("plan needs at least one frequency range")
        if len(self.ranges) > MAX_RANGES:
            raise InvalidPlanError(f"plan supports at most {MAX_RANGES} ranges")
        for r in self.ranges:
            if r.start_hz >= r.stop_hz:
                raise InvalidPlanError(f"range start {r.start_hz:.0f} must be below stop {r.stop_hz:.0f}")
            if r.start_hz < MIN_FREQ_MHZ * 1e6 or r.stop_hz > MAX_FREQ_MHZ * 1e6:
                raise InvalidPlanError(f"range must lie within {MIN_FREQ_MHZ}-{MAX_FREQ_MHZ} MHz")
            if r.step_hz <= 0:
                raise InvalidPlanError("stepHz must be positive")
        if self.cycle_time_sec <= 0:
            raise InvalidPlanError("cycleTimeSec must be positive")
        if not 0 <= self.lna_gain <= 40 or self.lna_gain % 8:
            raise InvalidPlanError("lnaGain must be 0-40 in steps of 8")
        if not 0 <= self.vga_gain <= 62 or self.vga_gain % 2:
            raise InvalidPlanError("vgaGain must be 0-62 in steps of 2")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SweepPlan":
        """Build a plan from a JSON body.

        Accepts ``frequencyRanges`` (or ``ranges``) entries keyed either
        ``startHz/stopHz/stepHz`` or ``start/stop/step``.
        """
        if not isinstance(data, Mapping):
            raise InvalidPlanError("plan must be an object")
        raw_ranges = _pick(data, "frequencyRanges", "ranges")
        if not isinstance(raw_ranges, list) or not raw_ranges:
            raise InvalidPlanError("frequencyRanges must be a non-empty list")
        ranges: List[FrequencyRange] = []
        for idx, item in enumerate(raw_ranges):
            if not isinstance(item, Mapping):
                raise InvalidPlanError(f"frequencyRanges[{idx}] must be an object")
            ranges.append(
                FrequencyRange(
                    start_hz=_number(_pick(item, "startHz", "start"), f"frequencyRanges[{idx}].startHz"),
                    stop_hz=_number(_pick(item, "stopHz", "stop"), f"frequencyRanges[{idx}].stopHz"),
                    step_hz=_number(_pick(item, "stepHz", "step"), f"frequencyRanges[{idx}].stepHz"),
                )
            )
        cycle = _pick(data, "cycleTimeSec", "cycleTime")
        lna = data.get("lnaGain", 32)
        vga = data.get("vgaGain", 20)
        return cls(
            ranges=tuple(ranges),
            cycle_time_sec=_number(cycle, "cycleTimeSec") if cycle is not None else 10.0,
            lna_gain=int(_number(lna, "lnaGain")),
            vga_gain=int(_number(vga, "vgaGain")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frequencyRanges": [r.to_dict() for r in self.ranges],
            "cycleTimeSec": self.cycle_time_sec,
            "lnaGain": self.lna_gain,
            "vgaGain": self.vga_gain,
        }


def build_sweep_command(
    plan: SweepPlan,
    range_index: int = 0,
    *,
    program: Sequence[str] = ("hackrf_sweep",),
    device_serial: Optional[str] = None,
) -> List[str]:
    """Argument vector for sweeping ``plan.ranges[range_index]``."""
    r = plan.ranges[range_index]
    start_mhz = max(MIN_FREQ_MHZ, int(math.floor(r.start_hz / 1e6)))
    stop_mhz = min(MAX_FREQ_MHZ, int(math.ceil(r.stop_hz / 1e6)))
    if stop_mhz <= start_mhz:
        stop_mhz = start_mhz + 1
    bin_hz = int(min(MAX_BIN_HZ, max(MIN_BIN_HZ, r.step_hz)))

    cmd = list(program)
    if device_serial:
        cmd += ["-d", device_serial]
    cmd += [
        "-f", f"{start_mhz}:{stop_mhz}",
        "-w", str(bin_hz),
        "-l", str(plan.lna_gain),
        "-g", str(plan.vga_gain),
    ]
    return cmd
