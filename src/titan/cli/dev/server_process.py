"""Supervision of the single dev server process.

The manager owns the only ServerHandle. A restart always observes the previous
process's exit before spawning the next one. Fast crashes are retried with
exponential backoff via tenacity; once the budget is spent the failure is
surfaced instead of retried forever.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import psutil
from dotenv import dotenv_values
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from titan.cli.dev.logging import DevLogComponent, get_logger
from titan.cli.dev.process_control import (
    ProcessTerminator,
    select_terminator,
    track_process,
)
from titan.errors import (
    CrashExit,
    FatalSupervisionFailure,
    LaunchFailure,
    SupervisionError,
)
from titan.models import BackoffState, DevServerConfig, ServerHandle, ServerState

logger = get_logger(DevLogComponent.SERVER)
retry_logger = get_logger(DevLogComponent.RETRY)

ReadyFuture = asyncio.Future[ServerHandle | None]


class ServerProcessManager:
    """Start, stop, restart and crash-supervise the dev server binary."""

    def __init__(
        self,
        project_dir: Path,
        config: DevServerConfig,
        *,
        terminator: ProcessTerminator | None = None,
        on_failure: Callable[[SupervisionError], None] | None = None,
    ) -> None:
        self.project_dir: Path = project_dir
        self.server_dir: Path = project_dir / config.server_dir
        self.config: DevServerConfig = config
        self.on_failure: Callable[[SupervisionError], None] | None = on_failure
        self._terminator: ProcessTerminator = terminator or select_terminator(
            sigint_timeout=config.sigint_timeout,
            sigterm_timeout=config.sigterm_timeout,
            sigkill_timeout=config.sigkill_timeout,
        )
        self._lock: asyncio.Lock = asyncio.Lock()
        self._process: asyncio.subprocess.Process | None = None
        self._handle: ServerHandle | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._state: ServerState = ServerState.STOPPED
        self._backoff: BackoffState = BackoffState()
        self._launch_count: int = 0
        self._closed: bool = False

    # === Read-only views ===

    @property
    def handle(self) -> ServerHandle | None:
        return self._handle

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def backoff(self) -> BackoffState:
        return self._backoff

    @property
    def launch_count(self) -> int:
        """Total number of spawns since the manager was created."""
        return self._launch_count

    @property
    def is_running(self) -> bool:
        return self._handle is not None and self._handle.alive

    # === Lifecycle ===

    async def restart(self) -> ServerHandle | None:
        """Replace the running server (if any) with a fresh one.

        Returns:
            The new handle once it is considered ready, or None if the manager is
            shutting down or the server exited cleanly before becoming ready

        Raises:
            LaunchFailure: If the server could not be spawned
            FatalSupervisionFailure: If it kept crashing right after start
        """
        async with self._lock:
            if self._closed:
                return None
            await self._stop_current()

            if self.config.settle_delay > 0:
                # Give the OS a moment to release the port and file locks on the binary
                await asyncio.sleep(self.config.settle_delay)
            if self._closed:
                return None

            self._backoff = BackoffState()
            ready: ReadyFuture = asyncio.get_running_loop().create_future()
            supervisor = asyncio.create_task(
                self._supervise(ready), name="titan-server-supervisor"
            )
            self._supervisor = supervisor

            try:
                await asyncio.wait(
                    {ready, supervisor}, return_when=asyncio.FIRST_COMPLETED
                )
            except asyncio.CancelledError:
                # Later failures go to on_failure instead of an abandoned future.
                ready.cancel()
                raise
            if not ready.done():
                # Supervision was cancelled by a shutdown before the server became ready.
                ready.cancel()
                return None
            return ready.result()

    async def launch_and_wait(self) -> ServerHandle:
        """Spawn the server and wait for it to settle.

        There is no readiness handshake with the server binary, so "ready" means
        the process survived `ready_delay` seconds. If it exits inside that window
        the returned handle is already marked dead.
        """
        if not self.server_dir.is_dir():
            raise LaunchFailure(f"Server directory {self.server_dir} does not exist")

        self._state = ServerState.STARTING
        popen_kwargs: dict[str, Any] = {}
        if os.name == "nt":
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
        else:
            popen_kwargs["start_new_session"] = True

        try:
            process = await asyncio.create_subprocess_exec(
                *self.config.server_command,
                cwd=self.server_dir,
                env=self._server_env(),
                stdin=asyncio.subprocess.DEVNULL,
                **popen_kwargs,
            )
        except OSError as e:
            self._state = ServerState.STOPPED
            raise LaunchFailure(
                f"Failed to start {' '.join(self.config.server_command)}: {e}"
            ) from e

        handle = track_process(process.pid)
        self._process = process
        self._handle = handle
        self._launch_count += 1
        logger.info(f"Server process started (pid={process.pid})")

        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.ready_delay)
        except asyncio.TimeoutError:
            self._state = ServerState.RUNNING
        else:
            self._mark_exited(handle, process.returncode)
        return handle

    async def kill_for_shutdown(self) -> None:
        """Stop the server for good; no further launches happen after this."""
        self._closed = True
        supervisor = self._supervisor
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()

        async with self._lock:
            try:
                await self._stop_current()
            except (ProcessLookupError, psutil.NoSuchProcess):
                # Exited on its own between checks; nothing left to stop.
                pass

    async def wait_for_exit(self) -> None:
        """Wait until the current supervision ends (server stopped, failed, or cancelled)."""
        supervisor = self._supervisor
        if supervisor is not None:
            await asyncio.wait({supervisor})

    # === Internals ===

    def _server_env(self) -> dict[str, str]:
        env = dict(os.environ)
        dotenv_file = self.project_dir / ".env"
        if dotenv_file.exists():
            # Re-read on every launch so .env edits take effect on restart
            env.update(
                {k: v for k, v in dotenv_values(dotenv_file).items() if v is not None}
            )
        env.update(self.config.server_env)
        return env

    def _mark_exited(self, handle: ServerHandle, returncode: int | None) -> None:
        if not handle.alive:
            return
        handle.alive = False
        handle.returncode = returncode
        handle.exited_at = time.monotonic()

    async def _stop_current(self) -> None:
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            try:
                await supervisor
            except asyncio.CancelledError:
                pass

        process, handle = self._process, self._handle
        if handle is not None:
            if process is not None and process.returncode is None:
                self._state = ServerState.STOPPING
                logger.info(f"Stopping server (pid={handle.pid})...")
                returncode = await self._terminator.terminate(process, handle)
                self._mark_exited(handle, returncode)
                logger.info(f"Server stopped (exit code {returncode})")
            else:
                self._mark_exited(handle, process.returncode if process else None)

        self._process = None
        self._handle = None
        self._state = ServerState.STOPPED

    async def _supervise(self, ready: ReadyFuture) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_crash_retries + 1),
            wait=wait_exponential(
                multiplier=self.config.retry_backoff_initial,
                min=self.config.retry_backoff_initial,
                max=self.config.retry_backoff_max,
            ),
            retry=retry_if_exception_type(CrashExit),
            before_sleep=self._log_relaunch,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._run_attempt(ready)
        except CrashExit as e:
            self._state = ServerState.FAILED
            failure = FatalSupervisionFailure(
                attempts=self._backoff.consecutive_crashes, last_crash=e
            )
            logger.error(f"{failure.message}. Waiting for changes...")
            self._report(ready, failure)
            return
        except LaunchFailure as e:
            logger.error(e.message)
            self._report(ready, e)
            return

        if not ready.done():
            ready.set_result(None)

    async def _run_attempt(self, ready: ReadyFuture) -> None:
        handle = await self.launch_and_wait()
        if handle.alive and not ready.done():
            ready.set_result(handle)

        process = self._process
        if process is not None:
            returncode = await process.wait()
            self._mark_exited(handle, returncode)
        self._check_exit(handle)

    def _check_exit(self, handle: ServerHandle) -> None:
        """Classify an exit; raises CrashExit for a fast non-zero exit."""
        code = handle.returncode
        runtime = handle.runtime
        logger.info(f"Server exited: {code}")

        # Negative codes mean "killed by a signal", which is not a crash.
        if code is not None and code > 0 and runtime < self.config.fast_crash_threshold:
            self._backoff.consecutive_crashes += 1
            self._state = ServerState.CRASHED
            raise CrashExit(code, runtime)

        if code is not None and code > 0:
            logger.warning(
                f"Server exited with code {code} after {runtime:.1f}s; not retrying"
            )
        self._backoff.consecutive_crashes = 0
        self._state = ServerState.STOPPED

    def _log_relaunch(self, retry_state: RetryCallState) -> None:
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self._backoff.waits.append(wait)
        retry_logger.warning(
            f"Server crash detected (possibly file lock). Retrying in {wait:.1f}s "
            f"(attempt {retry_state.attempt_number}/{self.config.max_crash_retries})..."
        )

    def _report(self, ready: ReadyFuture, error: SupervisionError) -> None:
        if not ready.done():
            ready.set_exception(error)
        elif self.on_failure is not None:
            self.on_failure(error)
