"""Retention policy: a pure mapping of source and frequency band to TTL."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sweepwatch.model import Source
from sweepwatch.util.duration import parse_duration_to_seconds
from sweepwatch.util.time import DAY_MS, HOUR_MS

DEFAULT_TTLS_MS: Dict[Source, int] = {
    Source.HARDWARE_SWEEP: HOUR_MS,
    Source.WIFI_DETECT: 7 * DAY_MS,
    Source.BLUETOOTH_DETECT: 7 * DAY_MS,
    Source.MANUAL: 3 * DAY_MS,
    Source.OTHER: HOUR_MS,
}


@dataclass(frozen=True)
class BandRule:
    """TTL override for one source inside ``[min_hz, max_hz)``."""

    source: Source
    min_hz: float
    max_hz: float
    ttl_ms: int

    def matches(self, source: Source, frequency_hz: float) -> bool:
        return source is self.source and self.min_hz <= frequency_hz < self.max_hz


@dataclass(frozen=True)
class RetentionPolicy:
    ttl_by_source: Mapping[Source, int] = field(default_factory=lambda: dict(DEFAULT_TTLS_MS))
    band_rules: Tuple[BandRule, ...] = ()

    def __post_init__(self) -> None:
        missing = [s.value for s in Source if s not in self.ttl_by_source]
        if missing:
            raise ValueError(f"no TTL for sources: {', '.join(missing)}")
        for ttl in list(self.ttl_by_source.values()) + [r.ttl_ms for r in self.band_rules]:
            if ttl <= 0:
                raise ValueError("TTL values must be positive")

    def ttl_for(self, source: Source, frequency_hz: float) -> int:
        for rule in self.band_rules:
            if rule.matches(source, frequency_hz):
                return rule.ttl_ms
        return int(self.ttl_by_source[source])

    @property
    def max_ttl_ms(self) -> int:
        return max(list(self.ttl_by_source.values()) + [r.ttl_ms for r in self.band_rules])

    def expiry_clauses(self, now_ms: int) -> List[Tuple[str, Tuple[Any, ...]]]:
        """WHERE clauses selecting expired signals, one per rule.

        Band rules are evaluated first-match-wins, so each clause excludes the
        bands already claimed by earlier rules for the same source.
        """
        clauses: List[Tuple[str, Tuple[Any, ...]]] = []
        for idx, rule in enumerate(self.band_rules):
            sql = "source = ? AND frequency_hz >= ? AND frequency_hz < ? AND timestamp_ms < ?"
            params: List[Any] = [rule.source.value, rule.min_hz, rule.max_hz, now_ms - rule.ttl_ms]
            excl_sql, excl_params = _exclusions(self.band_rules[:idx], rule.source)
            clauses.append((sql + excl_sql, tuple(params + excl_params)))
        for source in Source:
            sql = "source = ? AND timestamp_ms < ?"
            params = [source.value, now_ms - int(self.ttl_by_source[source])]
            excl_sql, excl_params = _exclusions(self.band_rules, source)
            clauses.append((sql + excl_sql, tuple(params + excl_params)))
        return clauses

    def describe(self) -> Dict[str, Any]:
        return {
            "ttlMs": {s.value: int(v) for s, v in self.ttl_by_source.items()},
            "bands": [
                {"source": r.source.value, "minHz": r.min_hz, "maxHz": r.max_hz, "ttlMs": r.ttl_ms}
                for r in self.band_rules
            ],
        }


def _exclusions(rules: Sequence[BandRule], source: Source) -> Tuple[str, List[Any]]:
    sql = ""
    params: List[Any] = []
    for rule in rules:
        if rule.source is source:
            sql += " AND NOT (frequency_hz >= ? AND frequency_hz < ?)"
            params.extend([rule.min_hz, rule.max_hz])
    return sql, params


def parse_band_rules(text: Optional[str]) -> Tuple[BandRule, ...]:
    """Parse ``source:minMHz-maxMHz=duration`` entries separated by ``;``.

    Example: ``hardware-sweep:2400-2500=24h;wifi-detect:5150-5850=14d``.
    Raises ValueError on malformed entries.
    """
    if not text or not text.strip():
        return ()
    rules: List[BandRule] = []
    for chunk in text.split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            head, dur = chunk.split("=", 1)
            source_text, band = head.split(":", 1)
            lo_text, hi_text = band.split("-", 1)
            lo_hz = float(lo_text) * 1e6
            hi_hz = float(hi_text) * 1e6
        except ValueError as exc:
            raise ValueError(f"malformed band rule '{chunk}'") from exc
        source = Source(source_text.strip())
        if hi_hz <= lo_hz:
            raise ValueError(f"band rule '{chunk}' has an empty range")
        seconds = parse_duration_to_seconds(dur)
        if not seconds:
            raise ValueError(f"band rule '{chunk}' has no duration")
        rules.append(BandRule(source=source, min_hz=lo_hz, max_hz=hi_hz, ttl_ms=int(seconds * 1000)))
    return tuple(rules)
