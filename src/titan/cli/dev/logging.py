"""Centralized logging for `titan dev` (buffering, routing, and CLI formatting)."""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import ClassVar, TypeAlias

from pydantic import BaseModel, ConfigDict
from rich.text import Text
from typing_extensions import override

from titan.models import LogChannel, LogEntry
from titan.utils import console

LogBuffer: TypeAlias = deque[LogEntry]


class DevLogComponent(str, Enum):
    """Where a log originated (used for fine-grained filtering)."""

    ORCHESTRATOR = "orchestrator"
    WATCHER = "watcher"
    BUILD = "build"
    BUILD_OUTPUT = "build_output"
    SERVER = "server"
    PROCESS_CONTROL = "process_control"
    RETRY = "retry"


_COMPONENT_DEFAULT_CHANNEL: dict[DevLogComponent, LogChannel] = {
    DevLogComponent.BUILD_OUTPUT: LogChannel.BUILD,
}


class _DevLogState(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    buffer: LogBuffer | None = None
    echo: bool = True
    configured: bool = False


_STATE = _DevLogState()


def _now_timestamp(created: float | None = None) -> str:
    t = time.localtime(created if created is not None else time.time())
    return time.strftime("%Y-%m-%d %H:%M:%S", t)


class _DevLogHandler(logging.Handler):
    """Turn records into LogEntry objects, buffer them and echo them to the console."""

    component: DevLogComponent
    channel: LogChannel

    def __init__(self, *, channel: LogChannel, component: DevLogComponent):
        super().__init__()
        self.channel = channel
        self.component = component

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                timestamp=_now_timestamp(record.created),
                level=record.levelname,
                channel=self.channel,
                component=self.component.value,
                content=self.format(record),
            )
            if _STATE.buffer is not None:
                _STATE.buffer.append(entry)
            if _STATE.echo:
                print_log_entry(entry)
        except Exception:
            self.handleError(record)


def configure_dev_logging(
    *,
    buffer: LogBuffer | None = None,
    echo: bool = True,
    verbose: bool = False,
) -> None:
    """Configure all dev loggers.

    Args:
        buffer: Optional in-memory buffer that receives every entry
        echo: Print entries to the console as they arrive
        verbose: Include DEBUG records
    """
    _STATE.buffer = buffer
    _STATE.echo = echo

    level = logging.DEBUG if verbose else logging.INFO
    for component in DevLogComponent:
        channel = _COMPONENT_DEFAULT_CHANNEL.get(component, LogChannel.TITAN)
        logger = logging.getLogger(f"titan.dev.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        handler = _DevLogHandler(channel=channel, component=component)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False

    _STATE.configured = True


def get_logger(component: DevLogComponent) -> logging.Logger:
    """Get a dev logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"titan.dev.{component.value}")
    if not _STATE.configured:
        # Avoid "No handlers could be found" warnings in contexts that don't configure dev logging.
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
        logger.propagate = False
    return logger


def print_log_entry(entry: LogEntry) -> None:
    """Print a single log entry with `[titan]`/`[build]` prefixes."""
    prefix_style = "bright_blue" if entry.channel == LogChannel.TITAN else "magenta"
    content_style = (
        "red"
        if entry.level in ("ERROR", "CRITICAL")
        else "yellow"
        if entry.level == "WARNING"
        else ""
    )

    ts = Text(entry.timestamp, style="dim")
    sep = Text(" | ")
    prefix = Text(f"[{entry.channel.value}]", style=prefix_style)
    content = Text(entry.content, style=content_style)
    console.print(ts + sep + prefix + sep + content)
