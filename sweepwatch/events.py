"""Typed events emitted by the supervisor and consumed by the hub and ingestion.

The event set is closed: every consumer dispatches on the concrete class and
treats anything else as a programming error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union

from sweepwatch.model import Sample
from sweepwatch.util.time import now_ms


class EventKind(str, Enum):
    SAMPLE = "sample"
    STATUS = "status"
    ERROR = "error"


class SupervisorPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    RECOVERING = "recovering"
    EMERGENCY_STOPPED = "emergency_stopped"


@dataclass(frozen=True)
class SampleEvent:
    kind: ClassVar[EventKind] = EventKind.SAMPLE

    sample: Sample

    @property
    def timestamp_ms(self) -> int:
        return self.sample.timestamp_ms


@dataclass(frozen=True)
class StatusChange:
    kind: ClassVar[EventKind] = EventKind.STATUS

    previous: SupervisorPhase
    current: SupervisorPhase
    reason: str = ""
    pid: Optional[int] = None
    timestamp_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class ErrorEvent:
    kind: ClassVar[EventKind] = EventKind.ERROR

    error_type: str
    message: str
    fatal: bool = False
    component: str = "supervisor"
    timestamp_ms: int = field(default_factory=now_ms)


Event = Union[SampleEvent, StatusChange, ErrorEvent]


def event_payload(event: Event) -> Dict[str, Any]:
    if isinstance(event, SampleEvent):
        return event.sample.to_payload()
    if isinstance(event, StatusChange):
        return {
            "previous": event.previous.value,
            "state": event.current.value,
            "reason": event.reason,
            "pid": event.pid,
        }
    if isinstance(event, ErrorEvent):
        return {
            "errorType": event.error_type,
            "message": event.message,
            "fatal": event.fatal,
            "component": event.component,
        }
    raise TypeError(f"unknown event type: {type(event).__name__}")


def to_wire(event: Event) -> Dict[str, Any]:
    """Wire envelope: ``{type, payload, timestampMs}``."""
    return {
        "type": event.kind.value,
        "payload": event_payload(event),
        "timestampMs": event.timestamp_ms,
    }


def heartbeat_frame(seq: int, ts_ms: Optional[int] = None) -> Dict[str, Any]:
    return {
        "type": "heartbeat",
        "payload": {"seq": seq},
        "timestampMs": ts_ms if ts_ms is not None else now_ms(),
    }
