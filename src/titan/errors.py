"""Exception hierarchy for titan dev mode.

Build failures are recovered by the orchestrator; supervision failures are
surfaced by the server process manager. Terminating a process that already
exited is not an error and never raises.
"""

from __future__ import annotations

from typing import Any


class TitanError(Exception):
    """Base exception class for titan errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message: str = message
        self.details: dict[str, Any] = details or {}


class ConfigError(TitanError):
    """Raised when titan.json cannot be read or validated."""


class BuildError(TitanError):
    """Raised when a build pipeline step fails, times out, or cannot be spawned."""

    def __init__(
        self,
        message: str,
        *,
        step: str,
        returncode: int | None = None,
        output_tail: str = "",
    ):
        super().__init__(
            message,
            details={"step": step, "returncode": returncode},
        )
        self.step: str = step
        self.returncode: int | None = returncode
        self.output_tail: str = output_tail


class SupervisionError(TitanError):
    """Base class for server process supervision failures."""


class LaunchFailure(SupervisionError):
    """Raised when the server process cannot be spawned at all."""


class CrashExit(SupervisionError):
    """Raised when the server exits non-zero shortly after starting."""

    def __init__(self, returncode: int, runtime: float):
        super().__init__(
            f"Server exited with code {returncode} after {runtime:.1f}s",
            details={"returncode": returncode, "runtime": runtime},
        )
        self.returncode: int = returncode
        self.runtime: float = runtime


class FatalSupervisionFailure(SupervisionError):
    """Raised when the server keeps crashing after the retry budget is spent."""

    def __init__(self, attempts: int, last_crash: CrashExit | None = None):
        message = f"Server crashed {attempts} time(s) in a row, giving up"
        if last_crash is not None:
            message = f"{message} (last exit code {last_crash.returncode})"
        super().__init__(message, details={"attempts": attempts})
        self.attempts: int = attempts
        self.last_crash: CrashExit | None = last_crash
