"""Classification of sweep program output lines.

hackrf_sweep writes one line per frequency block on stdout::

    2024-05-01, 12:00:00.123456, 2400000000, 2405000000, 1000000.00, 20, -71.2, -64.0, -80.3, -77.9, -79.1

followed by any number of dB values. Each sample line is reduced to its peak
bin. Everything else (stderr chatter, USB errors, overflow notices) is matched
against fault and overflow patterns; lines that match nothing are unparseable
and dropped by the caller.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Tuple

import numpy as np  # type: ignore

from sweepwatch.errors import ParseError
from sweepwatch.model import Sample

DEFAULT_FAULT_PATTERNS: Tuple[str, ...] = (
    "libusb_submit_transfer",
    "hackrf_is_streaming",
    "usb error",
    "device not found",
    "usb_claim_interface error",
    "hackrf_error",
    "no hackrf boards found",
    "hackrf_open() failed",
    "resource busy",
    "libusb_open() failed",
    "hackrf_start_rx() failed",
)

DEFAULT_OVERFLOW_PATTERNS: Tuple[str, ...] = (
    "overflow",
    "overrun",
    "buffer full",
    "dropped samples",
)

_SPLIT_RE = re.compile(r"[,\s]+")
_MIN_FIELDS = 7


class LineKind(str, Enum):
    SAMPLE = "sample"
    OVERFLOW = "overflow"
    FAULT = "fault"
    UNPARSEABLE = "unparseable"


@dataclass(frozen=True)
class ParsedLine:
    kind: LineKind
    text: str
    sample: Optional[Sample] = None


def _line_timestamp_ms(date_part: str, time_part: str) -> Optional[int]:
    stamp = f"{date_part} {time_part}"
    for fmt in ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S"):
        try:
            return int(datetime.strptime(stamp, fmt).timestamp() * 1000)
        except ValueError:
            continue
    return None


def parse_sample_line(line: str, *, received_ms: Optional[int] = None) -> Sample:
    """Parse one sweep line into its peak-bin Sample.

    Raises ParseError if the line is not a well-formed sample line.
    """
    parts = [p for p in _SPLIT_RE.split(line.strip()) if p]
    if len(parts) < _MIN_FIELDS:
        raise ParseError(f"expected at least {_MIN_FIELDS} fields, got {len(parts)}")
    try:
        hz_low = float(parts[2])
        hz_high = float(parts[3])
        bin_hz = float(parts[4])
        powers = np.asarray([float(p) for p in parts[6:]], dtype=np.float64)
    except ValueError as exc:
        raise ParseError(f"non-numeric field: {exc}") from exc
    if bin_hz <= 0 or hz_high <= hz_low:
        raise ParseError(f"invalid band {hz_low:.0f}-{hz_high:.0f} / bin {bin_hz:g}")
    finite = np.isfinite(powers)
    if not finite.any():
        raise ParseError("no finite power values")
    masked = np.where(finite, powers, -np.inf)
    idx = int(np.argmax(masked))

    ts = _line_timestamp_ms(parts[0], parts[1])
    if ts is None:
        ts = received_ms if received_ms is not None else int(time.time() * 1000)

    return Sample(
        frequency_hz=hz_low + idx * bin_hz + bin_hz / 2.0,
        power_dbm=float(masked[idx]),
        timestamp_ms=ts,
        bin_width_hz=bin_hz,
        band_low_hz=hz_low,
        band_high_hz=hz_high,
    )


class LineClassifier:
    """Stateless classifier bound to a set of fault and overflow patterns.

    Patterns are matched case-insensitively as substrings. Fault patterns
    take precedence over overflow patterns.
    """

    def __init__(
        self,
        fault_patterns: Iterable[str] = DEFAULT_FAULT_PATTERNS,
        overflow_patterns: Iterable[str] = DEFAULT_OVERFLOW_PATTERNS,
    ) -> None:
        self.fault_patterns = tuple(p.lower() for p in fault_patterns if p)
        self.overflow_patterns = tuple(p.lower() for p in overflow_patterns if p)

    def classify(self, line: str, *, received_ms: Optional[int] = None) -> ParsedLine:
        text = line.strip()
        if not text:
            return ParsedLine(LineKind.UNPARSEABLE, text)
        if text[0].isdigit():
            try:
                return ParsedLine(LineKind.SAMPLE, text, parse_sample_line(text, received_ms=received_ms))
            except ParseError:
                pass
        lowered = text.lower()
        if any(p in lowered for p in self.fault_patterns):
            return ParsedLine(LineKind.FAULT, text)
        if any(p in lowered for p in self.overflow_patterns):
            return ParsedLine(LineKind.OVERFLOW, text)
        return ParsedLine(LineKind.UNPARSEABLE, text)
