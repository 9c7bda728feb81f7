"""Cross-platform termination of the supervised server process.

Design goals:
- One `terminate(process, handle)` capability that returns only after the exit
  has been observed; callers never branch on the platform.
- POSIX: signal the whole process group (SIGINT -> SIGTERM -> SIGKILL), then
  wait for the group to drain so a grandchild cannot keep the port bound.
- Windows: forceful tree kill (no signal delivery to rely on).
- Signalling a process that already exited is a no-op.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from typing import Protocol

import psutil

from titan.cli.dev.logging import DevLogComponent, get_logger
from titan.models import ServerHandle

logger = get_logger(DevLogComponent.PROCESS_CONTROL)


def _get_pgid_safe(pid: int) -> int | None:
    # Windows doesn't have pgid.
    if os.name == "nt":
        return None
    try:
        return os.getpgid(pid)
    except Exception:
        return None


def track_process(pid: int) -> ServerHandle:
    """Create a ServerHandle for a freshly spawned PID, recording create_time and pgid."""
    create_time: float | None = None
    try:
        create_time = float(psutil.Process(pid).create_time())
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass
    return ServerHandle(pid=pid, pgid=_get_pgid_safe(pid), create_time=create_time)


def validate_tracked(handle: ServerHandle) -> psutil.Process | None:
    """Return a psutil.Process only if PID matches create_time (prevents PID reuse bugs)."""
    try:
        proc = psutil.Process(handle.pid)
        if handle.create_time is not None and (
            abs(float(proc.create_time()) - handle.create_time) > 0.001
        ):
            return None
        return proc
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def list_group_members(pgid: int) -> list[int]:
    """Return PIDs in a process group (POSIX only)."""
    if os.name == "nt":
        return []
    pids: list[int] = []
    for proc in psutil.process_iter(["pid"]):
        try:
            pid = int(proc.pid)
            if _get_pgid_safe(pid) == pgid:
                pids.append(pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return pids


def _wait_for_pgid_empty(pgid: int, timeout: float, poll: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not list_group_members(pgid):
            return True
        time.sleep(poll)
    return not list_group_members(pgid)


def _kill_tree(root: psutil.Process, timeout: float) -> None:
    """Kill a process tree, children first (blocking)."""
    try:
        children = root.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    for proc in children + [root]:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(children + [root], timeout=timeout)
    for proc in alive:
        logger.warning(f"pid={proc.pid} survived tree kill")


async def _wait_exit(process: asyncio.subprocess.Process, timeout: float) -> bool:
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


class ProcessTerminator(Protocol):
    """Stops a child process and returns once its exit has been observed."""

    async def terminate(
        self, process: asyncio.subprocess.Process, handle: ServerHandle
    ) -> int | None: ...


class PosixTerminator:
    """Graceful process-group shutdown with deterministic escalation."""

    def __init__(
        self,
        *,
        sigint_timeout: float = 2.0,
        sigterm_timeout: float = 2.0,
        sigkill_timeout: float = 1.0,
    ) -> None:
        self.sigint_timeout: float = sigint_timeout
        self.sigterm_timeout: float = sigterm_timeout
        self.sigkill_timeout: float = sigkill_timeout

    def _signal(
        self,
        process: asyncio.subprocess.Process,
        pgid: int | None,
        sig: signal.Signals,
    ) -> None:
        try:
            if pgid is not None:
                os.killpg(pgid, sig)
            else:
                process.send_signal(sig)
        except (ProcessLookupError, PermissionError):
            # Already gone (or a zombie group leader on macOS).
            logger.debug(f"{sig.name} not delivered to pid={process.pid}: already exited")

    async def terminate(
        self, process: asyncio.subprocess.Process, handle: ServerHandle
    ) -> int | None:
        pgid = handle.pgid
        steps = (
            (signal.SIGINT, self.sigint_timeout),
            (signal.SIGTERM, self.sigterm_timeout),
            (signal.SIGKILL, self.sigkill_timeout),
        )
        for sig, timeout in steps:
            if process.returncode is not None:
                break
            logger.debug(f"Sending {sig.name} to pid={process.pid} pgid={pgid}")
            self._signal(process, pgid, sig)
            if await _wait_exit(process, timeout):
                break

        # SIGKILL cannot be ignored; this only waits for the kernel to reap.
        returncode = await process.wait()

        if pgid is not None:
            drained = await asyncio.to_thread(
                _wait_for_pgid_empty, pgid, self.sigterm_timeout
            )
            if not drained:
                logger.warning(f"Process group {pgid} still has members, killing")
                self._signal(process, pgid, signal.SIGKILL)
                await asyncio.to_thread(_wait_for_pgid_empty, pgid, self.sigkill_timeout)

        return returncode


class WindowsTerminator:
    """Forceful tree kill, equivalent to `taskkill /T /F`."""

    def __init__(self, *, kill_timeout: float = 3.0) -> None:
        self.kill_timeout: float = kill_timeout

    async def terminate(
        self, process: asyncio.subprocess.Process, handle: ServerHandle
    ) -> int | None:
        if process.returncode is None:
            proc = validate_tracked(handle)
            if proc is not None:
                logger.debug(f"Killing process tree of pid={handle.pid}")
                await asyncio.to_thread(_kill_tree, proc, self.kill_timeout)
        return await process.wait()


def select_terminator(
    *,
    sigint_timeout: float = 2.0,
    sigterm_timeout: float = 2.0,
    sigkill_timeout: float = 1.0,
) -> ProcessTerminator:
    """Pick the termination backend for the host OS."""
    if os.name == "nt":
        return WindowsTerminator(kill_timeout=sigterm_timeout + sigkill_timeout)
    return PosixTerminator(
        sigint_timeout=sigint_timeout,
        sigterm_timeout=sigterm_timeout,
        sigkill_timeout=sigkill_timeout,
    )
