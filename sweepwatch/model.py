"""Data model shared by the supervisor, store and retention layers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

# Fixed-point scale for the spatial grid (1e-4 degree cells, roughly 11 m).
GRID_SCALE = 10_000

PATTERN_PRIORITIES = ("low", "medium", "high")


class Source(str, Enum):
    HARDWARE_SWEEP = "hardware-sweep"
    WIFI_DETECT = "wifi-detect"
    BLUETOOTH_DETECT = "bluetooth-detect"
    MANUAL = "manual"
    OTHER = "other"


def grid_cell(latitude: float, longitude: float) -> Tuple[int, int]:
    """Quantize a coordinate pair into its grid cell.

    Truncates toward zero, matching SQLite's ``CAST(x AS INTEGER)`` so the
    Python side and the expression index agree on every cell boundary.
    """
    return int(latitude * GRID_SCALE), int(longitude * GRID_SCALE)


def infer_device_type(frequency_hz: float, source: Optional[Source] = None) -> str:
    """Best-effort device classification from the carrier frequency."""
    mhz = float(frequency_hz) / 1e6
    if source is Source.BLUETOOTH_DETECT and 2400 <= mhz <= 2483.5:
        return "bluetooth"
    if 2400 <= mhz <= 2500 or 5150 <= mhz <= 5850:
        return "wifi"
    if 800 <= mhz <= 900 or 1800 <= mhz <= 1900:
        return "cellular"
    return "unknown"


def strength_category(power_dbm: float) -> str:
    if power_dbm >= -30:
        return "very_strong"
    if power_dbm >= -50:
        return "strong"
    if power_dbm >= -70:
        return "moderate"
    if power_dbm >= -85:
        return "weak"
    return "very_weak"


@dataclass(frozen=True)
class Sample:
    """One frequency/power reading produced by the sweep program."""

    frequency_hz: float
    power_dbm: float
    timestamp_ms: int
    bin_width_hz: Optional[float] = None
    band_low_hz: Optional[float] = None
    band_high_hz: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "frequencyHz": self.frequency_hz,
            "powerDbm": self.power_dbm,
            "timestampMs": self.timestamp_ms,
            "binWidthHz": self.bin_width_hz,
            "bandLowHz": self.band_low_hz,
            "bandHighHz": self.band_high_hz,
            "strength": strength_category(self.power_dbm),
        }


@dataclass
class Signal:
    """A persisted, geolocated detection."""

    signal_id: str
    timestamp_ms: int
    latitude: float
    longitude: float
    power_dbm: float
    frequency_hz: float
    source: Source
    device_id: Optional[str] = None
    altitude: float = 0.0
    bandwidth_hz: Optional[float] = None
    modulation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.signal_id:
            raise ValueError("signal_id is required")
        if not -90.0 <= float(self.latitude) <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= float(self.longitude) <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")
        if float(self.frequency_hz) <= 0:
            raise ValueError(f"frequency_hz must be positive: {self.frequency_hz}")
        self.source = Source(self.source)

    @property
    def grid(self) -> Tuple[int, int]:
        return grid_cell(self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signalId": self.signal_id,
            "deviceId": self.device_id,
            "timestampMs": self.timestamp_ms,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "altitude": self.altitude,
            "powerDbm": self.power_dbm,
            "frequencyHz": self.frequency_hz,
            "bandwidthHz": self.bandwidth_hz,
            "modulation": self.modulation,
            "source": self.source.value,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, default_source: Source = Source.MANUAL) -> "Signal":
        """Build a Signal from a camelCase payload; raises ValueError on bad input."""
        missing = [k for k in ("signalId", "timestampMs", "latitude", "longitude", "powerDbm", "frequencyHz") if data.get(k) is None]
        if missing:
            raise ValueError(f"missing fields: {', '.join(missing)}")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be an object")
        modulation = data.get("modulation")
        if modulation is not None and not isinstance(modulation, str):
            raise ValueError("modulation must be a string")
        try:
            return cls(
                signal_id=str(data["signalId"]),
                device_id=str(data["deviceId"]) if data.get("deviceId") else None,
                timestamp_ms=int(data["timestampMs"]),
                latitude=float(data["latitude"]),
                longitude=float(data["longitude"]),
                altitude=float(data.get("altitude") or 0.0),
                power_dbm=float(data["powerDbm"]),
                frequency_hz=float(data["frequencyHz"]),
                bandwidth_hz=float(data["bandwidthHz"]) if data.get("bandwidthHz") is not None else None,
                modulation=modulation,
                source=Source(data.get("source") or default_source),
                metadata=metadata,
            )
        except (TypeError, KeyError) as exc:
            raise ValueError(str(exc)) from exc

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Signal":
        return cls(
            signal_id=row["signal_id"],
            device_id=row["device_id"],
            timestamp_ms=int(row["timestamp_ms"]),
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            altitude=float(row["altitude"] or 0.0),
            power_dbm=float(row["power_dbm"]),
            frequency_hz=float(row["frequency_hz"]),
            bandwidth_hz=float(row["bandwidth_hz"]) if row["bandwidth_hz"] is not None else None,
            modulation=row["modulation"],
            source=Source(row["source"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )


@dataclass
class Device:
    device_id: str
    type: str
    first_seen_ms: int
    last_seen_ms: int
    avg_power_dbm: float
    freq_min_hz: float
    freq_max_hz: float
    signal_count: int
    manufacturer: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Device":
        return cls(
            device_id=row["device_id"],
            type=row["type"],
            manufacturer=row["manufacturer"],
            first_seen_ms=int(row["first_seen_ms"]),
            last_seen_ms=int(row["last_seen_ms"]),
            avg_power_dbm=float(row["avg_power_dbm"]),
            freq_min_hz=float(row["freq_min_hz"]),
            freq_max_hz=float(row["freq_max_hz"]),
            signal_count=int(row["signal_count"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "type": self.type,
            "manufacturer": self.manufacturer,
            "firstSeenMs": self.first_seen_ms,
            "lastSeenMs": self.last_seen_ms,
            "avgPowerDbm": self.avg_power_dbm,
            "freqMinHz": self.freq_min_hz,
            "freqMaxHz": self.freq_max_hz,
            "signalCount": self.signal_count,
            "metadata": self.metadata,
        }


@dataclass
class Pattern:
    pattern_id: str
    pattern_type: str
    timestamp_ms: int
    expires_at_ms: Optional[int] = None
    priority: str = "low"
    confidence: float = 0.0
    description: str = ""
    signal_ids: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Pattern":
        """Build a Pattern from a camelCase payload; raises ValueError on bad input."""
        missing = [k for k in ("patternId", "type", "timestampMs") if data.get(k) is None]
        if missing:
            raise ValueError(f"missing fields: {', '.join(missing)}")
        signal_ids = data.get("signalIds") or []
        if not isinstance(signal_ids, list) or not all(isinstance(s, str) for s in signal_ids):
            raise ValueError("signalIds must be a list of strings")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be an object")
        priority = data.get("priority") or "low"
        if priority not in PATTERN_PRIORITIES:
            raise ValueError(f"priority must be one of {', '.join(PATTERN_PRIORITIES)}")
        try:
            confidence = float(data.get("confidence") or 0.0)
            pattern = cls(
                pattern_id=str(data["patternId"]),
                pattern_type=str(data["type"]),
                timestamp_ms=int(data["timestampMs"]),
                expires_at_ms=int(data["expiresAtMs"]) if data.get("expiresAtMs") is not None else None,
                priority=priority,
                confidence=confidence,
                description=str(data.get("description") or ""),
                signal_ids=list(signal_ids),
                metadata=metadata,
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(str(exc)) from exc
        if not 0.0 <= pattern.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1]: {pattern.confidence}")
        return pattern


@dataclass(frozen=True)
class Relationship:
    """A directed, typed edge between two devices."""

    source_device_id: str
    target_device_id: str
    relationship_type: str
    timestamp_ms: int
    strength: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_edge(cls, edge: Mapping[str, Any], *, default_ts_ms: int) -> "Relationship":
        """Build from a graph edge ``{source, target, type, strength, metadata}``.

        The edge time is ``metadata.lastSeen`` when present.
        """
        if not isinstance(edge, Mapping):
            raise ValueError("edge must be an object")
        missing = [k for k in ("source", "target", "type") if not edge.get(k)]
        if missing:
            raise ValueError(f"edge missing fields: {', '.join(missing)}")
        metadata = edge.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("edge metadata must be an object")
        try:
            last_seen = metadata.get("lastSeen")
            return cls(
                source_device_id=str(edge["source"]),
                target_device_id=str(edge["target"]),
                relationship_type=str(edge["type"]),
                timestamp_ms=int(last_seen) if last_seen is not None else int(default_ts_ms),
                strength=float(edge.get("strength") or 0.0),
                metadata=metadata,
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"bad edge: {exc}") from exc
