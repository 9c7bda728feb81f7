"""Filesystem watching for titan dev, built on watchfiles."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Sequence
from fnmatch import fnmatch
from pathlib import Path
from typing import Any

import watchfiles
from typing_extensions import override

from titan.cli.dev.logging import DevLogComponent, get_logger
from titan.models import ChangeEvent, ChangeKind

logger = get_logger(DevLogComponent.WATCHER)

_WILDCARDS = ("*", "?", "[")

_CHANGE_KINDS: dict[watchfiles.Change, ChangeKind] = {
    watchfiles.Change.added: ChangeKind.CREATED,
    watchfiles.Change.modified: ChangeKind.MODIFIED,
    watchfiles.Change.deleted: ChangeKind.DELETED,
}

# Events from the notifier are already grouped; our own debouncer does the real coalescing.
_NOTIFIER_DEBOUNCE_MS = 50


def _relative_posix(path: str, root: Path) -> str:
    try:
        return Path(path).resolve().relative_to(root).as_posix()
    except ValueError:
        return Path(path).as_posix()


class SourceFilter(watchfiles.DefaultFilter):
    """DefaultFilter plus project-relative include and ignore globs.

    Patterns use fnmatch semantics, so `*` also matches `/`: `app/*` covers the
    whole `app` tree.
    """

    def __init__(
        self,
        project_dir: Path,
        patterns: Sequence[str],
        ignore_patterns: Sequence[str] = (),
        ignore_dirs: Sequence[str] = (),
    ) -> None:
        super().__init__()
        self.project_dir: Path = project_dir.resolve()
        self.patterns: tuple[str, ...] = tuple(patterns)
        self.ignore_patterns: tuple[str, ...] = tuple(ignore_patterns)
        self.extra_ignore_dirs: frozenset[str] = frozenset(ignore_dirs)

    def matches(self, path: str) -> bool:
        """Apply only the include/ignore globs and the project-relative ignored dirs."""
        rel = _relative_posix(path, self.project_dir)
        if self.extra_ignore_dirs.intersection(rel.split("/")[:-1]):
            return False
        if any(fnmatch(rel, pattern) for pattern in self.ignore_patterns):
            return False
        return any(fnmatch(rel, pattern) for pattern in self.patterns)

    @override
    def __call__(self, change: watchfiles.Change, path: str) -> bool:
        return super().__call__(change, path) and self.matches(path)


def pattern_root(project_dir: Path, pattern: str) -> Path:
    """Directory to watch for a pattern: its wildcard-free prefix, or a file's parent."""
    parts = Path(pattern).parts
    static: list[str] = []
    for part in parts:
        if any(ch in part for ch in _WILDCARDS):
            break
        static.append(part)

    if len(static) == len(parts):
        # Plain file pattern (e.g. ".env"): watch its directory so creation is seen too.
        return (project_dir / pattern).parent
    return project_dir.joinpath(*static)


class SourceWatcher:
    """Watch the project source tree and forward changes as ChangeEvents.

    Patterns with a directory prefix (`app/*`) are watched recursively from that
    directory. Patterns without one (`.env`, `.env.*`) only cover files at the
    project root, which is watched non-recursively so build output elsewhere in
    the project never registers OS watches.
    """

    def __init__(
        self,
        project_dir: Path,
        patterns: Sequence[str],
        ignore_patterns: Sequence[str] = (),
        ignore_dirs: Sequence[str] = (),
    ) -> None:
        self.project_dir: Path = project_dir.resolve()
        self.patterns: tuple[str, ...] = tuple(patterns)
        self.watch_filter: SourceFilter = SourceFilter(
            self.project_dir, patterns, ignore_patterns, ignore_dirs
        )
        self._stop_event: asyncio.Event | None = None

    def _pattern_roots(self) -> set[Path]:
        return {
            pattern_root(self.project_dir, pattern).resolve() for pattern in self.patterns
        }

    def watch_roots(self) -> list[Path]:
        """Existing directories to watch recursively, with nested roots collapsed."""
        existing = sorted(
            p for p in self._pattern_roots() if p != self.project_dir and p.is_dir()
        )
        roots: list[Path] = []
        for path in existing:
            if any(path == root or root in path.parents for root in roots):
                continue
            roots.append(path)
        return roots

    def shallow_roots(self) -> list[Path]:
        """Directories watched without recursion (the project root, for top-level files)."""
        if self.project_dir in self._pattern_roots() and self.project_dir.is_dir():
            return [self.project_dir]
        return []

    async def run(self, on_event: Callable[[ChangeEvent], None]) -> None:
        """Forward changes to on_event until stop() is called or the task is cancelled."""
        recursive_roots = self.watch_roots()
        shallow_roots = self.shallow_roots()
        if not recursive_roots and not shallow_roots:
            logger.warning(
                f"Nothing to watch in {self.project_dir} for patterns {list(self.patterns)}"
            )
            return

        self._stop_event = asyncio.Event()
        logger.info(
            "Watching for changes in "
            + ", ".join(
                _relative_posix(str(r), self.project_dir) or "."
                for r in recursive_roots + shallow_roots
            )
        )

        watches: list[Coroutine[Any, Any, None]] = []
        if recursive_roots:
            watches.append(self._forward(recursive_roots, True, on_event))
        if shallow_roots:
            watches.append(self._forward(shallow_roots, False, on_event))
        try:
            await asyncio.gather(*watches)
        finally:
            self._stop_event.set()

    async def _forward(
        self,
        roots: list[Path],
        recursive: bool,
        on_event: Callable[[ChangeEvent], None],
    ) -> None:
        async for changes in watchfiles.awatch(
            *roots,
            watch_filter=self.watch_filter,
            debounce=_NOTIFIER_DEBOUNCE_MS,
            recursive=recursive,
            stop_event=self._stop_event,
        ):
            for change, path in sorted(changes, key=lambda c: c[1]):
                on_event(ChangeEvent(path=path, kind=_CHANGE_KINDS[change]))

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
