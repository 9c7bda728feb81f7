"""Coalesce bursts of filesystem events into a single rebuild request."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from fnmatch import fnmatch
from pathlib import PurePath

from titan.cli.dev.logging import DevLogComponent, get_logger
from titan.constants import DEFAULT_ENV_PATTERNS
from titan.models import ChangeEvent, RebuildRequest, TriggerReason

logger = get_logger(DevLogComponent.WATCHER)


def is_env_file(path: str, env_patterns: Sequence[str] = DEFAULT_ENV_PATTERNS) -> bool:
    """Return True if the path's basename matches one of the env file patterns."""
    name = PurePath(path).name
    return any(fnmatch(name, pattern) for pattern in env_patterns)


class ChangeDebouncer:
    """Quiescence-window debouncer.

    Every pushed event re-arms the timer. The callback fires once, with the most
    recent event, after `window` seconds without input. Must be used from inside
    a running event loop.
    """

    def __init__(
        self,
        window: float,
        on_trigger: Callable[[RebuildRequest], None],
        env_patterns: Sequence[str] = DEFAULT_ENV_PATTERNS,
    ) -> None:
        self.window: float = window
        self._on_trigger: Callable[[RebuildRequest], None] = on_trigger
        self._env_patterns: tuple[str, ...] = tuple(env_patterns)
        self._timer: asyncio.TimerHandle | None = None
        self._last: ChangeEvent | None = None
        self._count: int = 0

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def push(self, event: ChangeEvent) -> None:
        """Record an event and restart the quiescence timer."""
        self._last = event
        self._count += 1
        logger.debug(f"{event.kind.value}: {event.path}")

        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.window, self._fire)

    def cancel(self) -> None:
        """Drop any pending trigger without emitting it."""
        if self._timer is not None:
            self._timer.cancel()
        self._reset()

    def _reset(self) -> None:
        self._timer = None
        self._last = None
        self._count = 0

    def _fire(self) -> None:
        event, count = self._last, self._count
        self._reset()
        if event is None:
            return

        request = RebuildRequest(
            reason=TriggerReason.CHANGE,
            path=event.path,
            kind=event.kind,
            is_env=is_env_file(event.path, self._env_patterns),
            coalesced=count,
        )
        self._on_trigger(request)
