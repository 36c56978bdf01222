"""Process exit codes for the sweepwatch CLI and how errors map onto them."""

from __future__ import annotations

import sqlite3
from typing import Tuple, Type

from sweepwatch.errors import (
    ConfigurationError,
    InvalidPlanError,
    PersistenceError,
    SupervisorError,
)


class ExitCode:
    SUCCESS: int = 0
    GENERAL_ERROR: int = 1
    INVALID_ARGS: int = 2
    CONFIG_ERROR: int = 3
    # sweep program could not start, or escalated to an emergency stop
    DEVICE_UNAVAILABLE: int = 4
    DB_ERROR: int = 5

    @classmethod
    def message(cls, code: int) -> str:
        messages = {
            cls.SUCCESS: "ok",
            cls.GENERAL_ERROR: "error",
            cls.INVALID_ARGS: "invalid arguments",
            cls.CONFIG_ERROR: "configuration error",
            cls.DEVICE_UNAVAILABLE: "sweep error",
            cls.DB_ERROR: "database error",
        }
        return messages.get(code, f"exit code {code}")

    @classmethod
    def for_error(cls, exc: BaseException) -> int:
        """First matching code for ``exc``; GENERAL_ERROR when nothing matches."""
        for types, code in _ERROR_CODES:
            if isinstance(exc, types):
                return code
        return cls.GENERAL_ERROR


# Order matters: InvalidPlanError is also a ValueError.
_ERROR_CODES: Tuple[Tuple[Tuple[Type[BaseException], ...], int], ...] = (
    ((ConfigurationError,), ExitCode.CONFIG_ERROR),
    ((InvalidPlanError,), ExitCode.INVALID_ARGS),
    ((SupervisorError,), ExitCode.DEVICE_UNAVAILABLE),
    ((PersistenceError, sqlite3.Error), ExitCode.DB_ERROR),
)
