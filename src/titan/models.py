"""Centralized Pydantic models, enums, and type aliases for titan."""

from __future__ import annotations

import time
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field

from titan.constants import (
    BUNDLE_ACTIONS_SCRIPT,
    DEFAULT_BUILD_TIMEOUT,
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_ENV_PATTERNS,
    DEFAULT_FAST_CRASH_THRESHOLD,
    DEFAULT_IGNORE_DIRS,
    DEFAULT_IGNORE_PATTERNS,
    DEFAULT_MAX_CRASH_RETRIES,
    DEFAULT_READY_DELAY,
    DEFAULT_RELEASE_BINARY,
    DEFAULT_RETRY_BACKOFF_INITIAL,
    DEFAULT_RETRY_BACKOFF_MAX,
    DEFAULT_SERVER_DIR,
    DEFAULT_SETTLE_DELAY,
    DEFAULT_SIGINT_TIMEOUT,
    DEFAULT_SIGKILL_TIMEOUT,
    DEFAULT_SIGTERM_TIMEOUT,
    DEFAULT_WATCH_PATTERNS,
)


# === Enums ===


class ChangeKind(str, Enum):
    """Kind of a filesystem change."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class TriggerReason(str, Enum):
    """Why a rebuild cycle was requested."""

    INITIAL = "initial"
    CHANGE = "change"


class ServerState(str, Enum):
    """Lifecycle state of the supervised server process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"
    FAILED = "failed"


class OrchestratorState(str, Enum):
    """Lifecycle state of the dev orchestrator."""

    IDLE = "idle"
    BUILDING_AND_DEPLOYING = "building_and_deploying"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class RestartOutcome(str, Enum):
    """What happened to the server at the end of a rebuild cycle."""

    RESTARTED = "restarted"
    SKIPPED = "skipped"
    LAUNCH_FAILED = "launch_failed"
    FATAL = "fatal"


# === Watch Models ===


class ChangeEvent(BaseModel):
    """A single (path, kind) filesystem change."""

    path: str
    kind: ChangeKind

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class RebuildRequest(BaseModel):
    """A debounced "rebuild needed" signal."""

    reason: TriggerReason = TriggerReason.CHANGE
    path: str | None = None
    kind: ChangeKind | None = None
    is_env: bool = False
    coalesced: int = 0

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @classmethod
    def initial(cls) -> RebuildRequest:
        return cls(reason=TriggerReason.INITIAL)


# === Process Models ===


class ServerHandle(BaseModel):
    """The currently supervised child server process.

    started_at and exited_at are monotonic timestamps, so the restart ordering
    (old exit observed before the new spawn) can be checked directly.
    create_time protects against PID reuse; pgid enables POSIX process-group
    shutdown even after the root process has exited.
    """

    pid: int
    pgid: int | None = None
    create_time: float | None = None
    started_at: float = Field(default_factory=time.monotonic)
    exited_at: float | None = None
    returncode: int | None = None
    alive: bool = True

    @property
    def runtime(self) -> float:
        """Seconds the process has been (or was) running."""
        end = self.exited_at if self.exited_at is not None else time.monotonic()
        return end - self.started_at


class BackoffState(BaseModel):
    """Crash bookkeeping for one supervised-process lifetime."""

    consecutive_crashes: int = 0
    waits: list[float] = Field(default_factory=list)


# === Build Models ===


class BuildStep(BaseModel):
    """One external command of the build pipeline."""

    name: str
    command: list[str]
    requires: str | None = Field(
        default=None,
        description="Path relative to the project root; the step is skipped when it is missing.",
    )


class CommandResult(BaseModel):
    """Result of running a shell command."""

    command: list[str]
    cwd: str
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int


class BuildOutcome(BaseModel):
    """Outcome of the build half of a rebuild cycle."""

    success: bool
    message: str = ""
    results: list[CommandResult] = Field(default_factory=list)


class RebuildCycle(BaseModel):
    """One build-then-restart attempt."""

    trigger: RebuildRequest
    build: BuildOutcome | None = None
    restart: RestartOutcome = RestartOutcome.SKIPPED
    started_at: float = Field(default_factory=time.monotonic)
    finished_at: float | None = None


# === Configuration Models ===


def _default_build_steps() -> list[BuildStep]:
    return [
        BuildStep(name="routes", command=["node", "app/app.js"]),
        BuildStep(
            name="bundle",
            command=["node", "--input-type=module", "-e", BUNDLE_ACTIONS_SCRIPT],
            requires="titan/bundle.js",
        ),
    ]


class DevServerConfig(BaseModel):
    """Complete configuration for dev mode.

    This is the single source of truth for all dev configuration.
    All default values are defined here and should not be repeated elsewhere.
    """

    debounce_ms: int = Field(default=DEFAULT_DEBOUNCE_MS, ge=0)
    watch_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_WATCH_PATTERNS)
    )
    ignore_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS)
    )
    ignore_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_DIRS))
    env_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_ENV_PATTERNS))

    build_steps: list[BuildStep] = Field(default_factory=_default_build_steps)
    build_timeout: float | None = DEFAULT_BUILD_TIMEOUT

    server_dir: str = DEFAULT_SERVER_DIR
    server_command: list[str] = Field(
        default_factory=lambda: ["cargo", "run", "--jobs", "1"]
    )
    server_env: dict[str, str] = Field(
        default_factory=lambda: {"CARGO_INCREMENTAL": "0"}
    )
    release_command: list[str] = Field(
        default_factory=lambda: ["cargo", "build", "--release"]
    )
    release_binary: str = Field(
        default=DEFAULT_RELEASE_BINARY,
        description="Release server path relative to server_dir; `.exe` is appended on Windows.",
    )

    ready_delay: float = Field(default=DEFAULT_READY_DELAY, ge=0)
    settle_delay: float = Field(default=DEFAULT_SETTLE_DELAY, ge=0)
    fast_crash_threshold: float = Field(default=DEFAULT_FAST_CRASH_THRESHOLD, ge=0)
    max_crash_retries: int = Field(default=DEFAULT_MAX_CRASH_RETRIES, ge=0)
    retry_backoff_initial: float = Field(default=DEFAULT_RETRY_BACKOFF_INITIAL, ge=0)
    retry_backoff_max: float = Field(default=DEFAULT_RETRY_BACKOFF_MAX, ge=0)

    sigint_timeout: float = DEFAULT_SIGINT_TIMEOUT
    sigterm_timeout: float = DEFAULT_SIGTERM_TIMEOUT
    sigkill_timeout: float = DEFAULT_SIGKILL_TIMEOUT

    exit_on_fatal_crash: bool = False

    @property
    def debounce_window(self) -> float:
        """Debounce window in seconds."""
        return self.debounce_ms / 1000


class ProjectConfig(BaseModel):
    """Configuration stored in titan.json."""

    dev: DevServerConfig = Field(default_factory=DevServerConfig)

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="ignore")


# === Log Models ===


class LogChannel(str, Enum):
    """Logical log channel for dev logging."""

    TITAN = "titan"
    BUILD = "build"


class LogEntry(BaseModel):
    """Strongly typed log entry model."""

    timestamp: str
    level: str
    channel: LogChannel
    component: str
    content: str
