"""Error taxonomy shared by every sweepwatch component."""

from __future__ import annotations


class SweepwatchError(Exception):
    """Base class for all sweepwatch errors."""


class ConfigurationError(SweepwatchError):
    """Environment configuration is missing or malformed."""

    def __init__(self, variable: str, message: str) -> None:
        super().__init__(f"{variable}: {message}")
        self.variable = variable


class InvalidPlanError(SweepwatchError, ValueError):
    """A frequency plan cannot be turned into a sweep command."""


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class SupervisorError(SweepwatchError):
    """Raised across the supervisor's public boundary."""


class AlreadyRunningError(SupervisorError):
    """start() was called while a sweep session is active."""


class EmergencyStoppedError(SupervisorError):
    """The supervisor is emergency-stopped and needs an operator reset."""


class ProcessStartupError(SupervisorError):
    """The sweep process could not be started or died before producing data."""


class ProcessStartupTimeoutError(ProcessStartupError):
    """No valid sample arrived before the startup deadline."""


class HardwareFaultError(SweepwatchError):
    """The sweep program reported a device or USB fault."""


class BufferOverflowWarning(SweepwatchError):
    """The sweep program reported dropped samples or a buffer overrun."""


class ParseError(SweepwatchError, ValueError):
    """A line of sweep output is not a valid sample line."""


# ---------------------------------------------------------------------------
# Store / broadcast / collectors
# ---------------------------------------------------------------------------


class PersistenceError(SweepwatchError):
    """A store write failed after bounded retries."""


class SubscriberDeliveryError(SweepwatchError):
    """A frame could not be delivered to one subscriber."""


class CollectorError(SweepwatchError):
    """The device-detection collaborator could not be queried."""
