"""Dev mode composition root: watch -> debounce -> build -> restart.

Only one rebuild cycle runs at a time. A request that arrives while a cycle is
running is parked as the single pending request (the newest one wins) and is
started as soon as the current cycle ends. A failed build never touches the
running server.
"""

from __future__ import annotations

import asyncio
import signal
import time
from collections import deque
from pathlib import Path
from typing import Any

from titan.cli.dev.debouncer import ChangeDebouncer
from titan.cli.dev.logging import DevLogComponent, get_logger
from titan.cli.dev.pipeline import BuildPipelineRunner
from titan.cli.dev.server_process import ServerProcessManager
from titan.cli.dev.watcher import SourceWatcher
from titan.constants import CYCLE_HISTORY_SIZE
from titan.errors import (
    BuildError,
    FatalSupervisionFailure,
    LaunchFailure,
    SupervisionError,
)
from titan.models import (
    BuildOutcome,
    DevServerConfig,
    OrchestratorState,
    RebuildCycle,
    RebuildRequest,
    RestartOutcome,
    TriggerReason,
)

logger = get_logger(DevLogComponent.ORCHESTRATOR)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class DevOrchestrator:
    """Drive rebuild cycles for one project until asked to shut down."""

    def __init__(
        self,
        project_dir: Path,
        config: DevServerConfig,
        *,
        builder: BuildPipelineRunner | None = None,
        server: ServerProcessManager | None = None,
        watcher: SourceWatcher | None = None,
    ) -> None:
        self.project_dir: Path = project_dir
        self.config: DevServerConfig = config
        self.builder: BuildPipelineRunner = builder or BuildPipelineRunner(
            project_dir, config.build_steps, timeout=config.build_timeout
        )
        self.server: ServerProcessManager = server or ServerProcessManager(
            project_dir, config, on_failure=self._handle_supervision_failure
        )
        self.watcher: SourceWatcher = watcher or SourceWatcher(
            project_dir,
            config.watch_patterns,
            ignore_patterns=config.ignore_patterns,
            ignore_dirs=config.ignore_dirs,
        )
        self.debouncer: ChangeDebouncer = ChangeDebouncer(
            config.debounce_window, self.request_rebuild, config.env_patterns
        )
        self.history: deque[RebuildCycle] = deque(maxlen=CYCLE_HISTORY_SIZE)

        self._state: OrchestratorState = OrchestratorState.IDLE
        self._cycle_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._pending: RebuildRequest | None = None
        self._shutdown_event: asyncio.Event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_handlers: dict[signal.Signals, Any] = {}
        self._exit_code: int = 0
        self._initial_build_failed: bool = False
        self._server_ever_ran: bool = False

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def pending(self) -> RebuildRequest | None:
        return self._pending

    @property
    def exit_code(self) -> int:
        return self._exit_code

    @property
    def _shutting_down(self) -> bool:
        return self._state in (
            OrchestratorState.SHUTTING_DOWN,
            OrchestratorState.TERMINATED,
        )

    # === Entry point ===

    async def run(self) -> int:
        """Run dev mode until SIGINT/SIGTERM, then shut down.

        Returns:
            The process exit code
        """
        self._loop = asyncio.get_running_loop()
        self._install_signal_handlers()
        try:
            logger.info("Dev mode starting...")
            if any(
                any(self.project_dir.glob(pattern))
                for pattern in self.config.env_patterns
            ):
                logger.warning("Env configured")

            self.request_rebuild(RebuildRequest.initial())
            self._watch_task = asyncio.create_task(self._watch(), name="titan-watcher")
            await self._shutdown_event.wait()
        finally:
            await self.shutdown()
            self._remove_signal_handlers()
        return self._exit_code

    def request_shutdown(self) -> None:
        """Ask run() to shut down. Safe to call from signal handlers."""
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._shutdown_event.set)
        else:
            self._shutdown_event.set()

    # === Cycles ===

    def request_rebuild(self, request: RebuildRequest) -> None:
        """Start a cycle now, or park the request if one is already running."""
        if self._shutting_down:
            return
        if self._cycle_task is not None and not self._cycle_task.done():
            if self._pending is not None:
                logger.debug(f"Replacing pending rebuild ({self._pending.path})")
            self._pending = request
            return
        self._cycle_task = asyncio.create_task(
            self._run_cycles(request), name="titan-rebuild-cycle"
        )

    async def _run_cycles(self, request: RebuildRequest) -> None:
        self._state = OrchestratorState.BUILDING_AND_DEPLOYING
        try:
            next_request: RebuildRequest | None = request
            while next_request is not None and not self._shutting_down:
                self.history.append(await self.run_cycle(next_request))
                next_request, self._pending = self._pending, None
        finally:
            if not self._shutting_down:
                self._state = OrchestratorState.IDLE

    async def run_cycle(self, request: RebuildRequest) -> RebuildCycle:
        """Build, then restart the server if the build succeeded."""
        cycle = RebuildCycle(trigger=request)
        self._log_trigger(request)

        try:
            # Blocking subprocess calls run in a worker thread so signals stay responsive.
            results = await asyncio.to_thread(self.builder.run)
        except BuildError as e:
            cycle.build = BuildOutcome(success=False, message=e.message)
            logger.error(e.message)
            if e.output_tail:
                logger.error(e.output_tail)
            if request.reason == TriggerReason.INITIAL:
                self._initial_build_failed = True
                logger.error("Initial build failed. Waiting for changes...")
            else:
                logger.error("Build failed -- waiting for changes...")
            return self._finish(cycle)

        cycle.build = BuildOutcome(success=True, results=results)
        if self._shutting_down:
            logger.info("Shutdown requested, skipping server restart")
            return self._finish(cycle)

        logger.info(
            "Restarting server..." if self.server.is_running else "Starting server..."
        )
        try:
            handle = await self.server.restart()
        except LaunchFailure as e:
            cycle.restart = RestartOutcome.LAUNCH_FAILED
            logger.error(f"{e.message}. Waiting for changes...")
        except FatalSupervisionFailure as e:
            cycle.restart = RestartOutcome.FATAL
            self._handle_supervision_failure(e)
        else:
            if handle is not None:
                cycle.restart = RestartOutcome.RESTARTED
                self._server_ever_ran = True
        return self._finish(cycle)

    def _finish(self, cycle: RebuildCycle) -> RebuildCycle:
        cycle.finished_at = time.monotonic()
        return cycle

    def _log_trigger(self, request: RebuildRequest) -> None:
        if request.reason == TriggerReason.INITIAL:
            logger.info("Initial build...")
        elif request.is_env:
            logger.warning("Env refreshed")
        else:
            logger.info(f"Change detected: {request.path}")

    def _handle_supervision_failure(self, error: SupervisionError) -> None:
        if isinstance(error, FatalSupervisionFailure) and self.config.exit_on_fatal_crash:
            logger.error("Server keeps crashing, stopping dev mode")
            self._exit_code = 1
            self.request_shutdown()
        elif isinstance(error, LaunchFailure):
            logger.error(f"{error.message}. Waiting for changes...")

    # === Watching ===

    async def _watch(self) -> None:
        try:
            await self.watcher.run(self.debouncer.push)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"File watcher failed: {e}")
            self._exit_code = 1
            self.request_shutdown()

    # === Shutdown ===

    async def shutdown(self) -> None:
        """Stop watching, abandon pending work and kill the server (runs once)."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(
                self._shutdown(), name="titan-shutdown"
            )
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        self._state = OrchestratorState.SHUTTING_DOWN
        logger.info("Stopping server...")

        self.debouncer.cancel()
        self._pending = None
        self.watcher.stop()

        for task in (self._watch_task, self._cycle_task):
            if task is None or task.done():
                continue
            # An in-flight build keeps running in its worker thread; only the restart is skipped.
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"{task.get_name()} failed during shutdown: {e}")

        await self.server.kill_for_shutdown()

        if self._initial_build_failed and not self._server_ever_ran:
            self._exit_code = 1
        self._state = OrchestratorState.TERMINATED

    # === Signals ===

    def _install_signal_handlers(self) -> None:
        assert self._loop is not None
        for sig in _SHUTDOWN_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self.request_shutdown)
                self._previous_handlers[sig] = None
            except (NotImplementedError, RuntimeError):
                # Windows event loops don't support add_signal_handler.
                try:
                    self._previous_handlers[sig] = signal.signal(
                        sig, lambda _signum, _frame: self.request_shutdown()
                    )
                except ValueError:
                    logger.debug(f"Cannot install {sig.name} handler outside the main thread")

    def _remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for sig, previous in self._previous_handlers.items():
            if previous is None:
                if not self._loop.is_closed():
                    self._loop.remove_signal_handler(sig)
            else:
                signal.signal(sig, previous)
        self._previous_handlers.clear()
