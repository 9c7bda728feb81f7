"""Tests for the dev orchestrator, with the build and server faked out."""

import asyncio
import threading
from collections import deque
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from titan.cli.dev.logging import configure_dev_logging
from titan.cli.dev.orchestrator import DevOrchestrator
from titan.errors import BuildError, FatalSupervisionFailure, LaunchFailure
from titan.models import (
    ChangeEvent,
    ChangeKind,
    DevServerConfig,
    LogEntry,
    OrchestratorState,
    RebuildRequest,
    RestartOutcome,
    ServerHandle,
    TriggerReason,
)


class FakeBuilder:
    """Stands in for BuildPipelineRunner; optionally blocks until released."""

    def __init__(self, *, fail: bool = False, gated: bool = False) -> None:
        self.fail = fail
        self.calls = 0
        self.started = threading.Event()
        self.gate = threading.Event()
        if not gated:
            self.gate.set()

    def run(self) -> list:
        self.calls += 1
        self.started.set()
        self.gate.wait(timeout=10)
        if self.fail:
            raise BuildError(
                "Build step 'routes' failed with exit code 1",
                step="routes",
                returncode=1,
                output_tail="SyntaxError: Unexpected token",
            )
        return []


class FakeWatcher:
    """Stands in for SourceWatcher; tests push events through `emit`."""

    def __init__(self) -> None:
        self.on_event: Callable[[ChangeEvent], None] | None = None
        self.stopped = asyncio.Event()

    async def run(self, on_event: Callable[[ChangeEvent], None]) -> None:
        self.on_event = on_event
        await self.stopped.wait()

    def stop(self) -> None:
        self.stopped.set()

    def emit(self, path: str) -> None:
        assert self.on_event is not None
        self.on_event(ChangeEvent(path=path, kind=ChangeKind.MODIFIED))


def _server(**restart_kwargs) -> Mock:
    server = Mock()
    server.is_running = False
    if not restart_kwargs:
        restart_kwargs = {"return_value": ServerHandle(pid=4242)}
    server.restart = AsyncMock(**restart_kwargs)
    server.kill_for_shutdown = AsyncMock()
    return server


def _orchestrator(
    tmp_path: Path,
    *,
    builder: FakeBuilder | None = None,
    server: Mock | None = None,
    watcher: FakeWatcher | None = None,
    **config,
) -> DevOrchestrator:
    return DevOrchestrator(
        tmp_path,
        DevServerConfig(debounce_ms=20, **config),
        builder=builder or FakeBuilder(),
        server=server or _server(),
        watcher=watcher or FakeWatcher(),
    )


async def _until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def log_buffer() -> deque[LogEntry]:
    buffer: deque[LogEntry] = deque()
    configure_dev_logging(buffer=buffer, echo=False)
    return buffer


class TestRunCycle:
    """A single build-then-restart cycle."""

    @pytest.mark.asyncio
    async def test_successful_build_restarts_server(self, tmp_path: Path) -> None:
        builder = FakeBuilder()
        server = _server()
        orchestrator = _orchestrator(tmp_path, builder=builder, server=server)

        cycle = await orchestrator.run_cycle(RebuildRequest(path="app/app.js"))

        assert builder.calls == 1
        server.restart.assert_awaited_once()
        assert cycle.build is not None and cycle.build.success
        assert cycle.restart == RestartOutcome.RESTARTED
        assert cycle.finished_at is not None

    @pytest.mark.asyncio
    async def test_failed_build_leaves_server_alone(
        self, tmp_path: Path, log_buffer: deque[LogEntry]
    ) -> None:
        server = _server()
        orchestrator = _orchestrator(
            tmp_path, builder=FakeBuilder(fail=True), server=server
        )

        cycle = await orchestrator.run_cycle(RebuildRequest(path="app/app.js"))

        server.restart.assert_not_awaited()
        server.kill_for_shutdown.assert_not_awaited()
        assert cycle.build is not None and not cycle.build.success
        assert cycle.restart == RestartOutcome.SKIPPED
        messages = [entry.content for entry in log_buffer]
        assert "SyntaxError: Unexpected token" in messages
        assert "Build failed -- waiting for changes..." in messages

    @pytest.mark.asyncio
    async def test_launch_failure_is_recorded(self, tmp_path: Path) -> None:
        server = _server(side_effect=LaunchFailure("cargo not found"))
        orchestrator = _orchestrator(tmp_path, server=server)

        cycle = await orchestrator.run_cycle(RebuildRequest(path="app/app.js"))

        assert cycle.restart == RestartOutcome.LAUNCH_FAILED

    @pytest.mark.asyncio
    async def test_fatal_failure_is_recorded(self, tmp_path: Path) -> None:
        server = _server(side_effect=FatalSupervisionFailure(attempts=4))
        orchestrator = _orchestrator(tmp_path, server=server)

        cycle = await orchestrator.run_cycle(RebuildRequest(path="app/app.js"))

        assert cycle.restart == RestartOutcome.FATAL
        assert orchestrator.exit_code == 0

    @pytest.mark.asyncio
    async def test_env_change_is_announced(
        self, tmp_path: Path, log_buffer: deque[LogEntry]
    ) -> None:
        orchestrator = _orchestrator(tmp_path)

        await orchestrator.run_cycle(RebuildRequest(path=".env", is_env=True))

        assert "Env refreshed" in [entry.content for entry in log_buffer]


class TestSingleFlight:
    """Requests arriving during a cycle are coalesced into one follow-up."""

    @pytest.mark.asyncio
    async def test_pending_requests_keep_only_the_newest(self, tmp_path: Path) -> None:
        builder = FakeBuilder(gated=True)
        server = _server()
        orchestrator = _orchestrator(tmp_path, builder=builder, server=server)
        first = RebuildRequest(path="app/a.ts")
        newest = RebuildRequest(path="app/d.ts")

        orchestrator.request_rebuild(first)
        await _until(builder.started.is_set)
        assert orchestrator.state == OrchestratorState.BUILDING_AND_DEPLOYING

        orchestrator.request_rebuild(RebuildRequest(path="app/b.ts"))
        orchestrator.request_rebuild(RebuildRequest(path="app/c.ts"))
        orchestrator.request_rebuild(newest)
        assert orchestrator.pending == newest

        builder.gate.set()
        await _until(lambda: len(orchestrator.history) == 2)
        await _until(lambda: orchestrator.state == OrchestratorState.IDLE)

        assert [cycle.trigger for cycle in orchestrator.history] == [first, newest]
        assert builder.calls == 2
        assert server.restart.await_count == 2
        assert orchestrator.pending is None

    @pytest.mark.asyncio
    async def test_debounced_changes_trigger_one_cycle(self, tmp_path: Path) -> None:
        watcher = FakeWatcher()
        builder = FakeBuilder()
        orchestrator = _orchestrator(tmp_path, builder=builder, watcher=watcher)
        task = asyncio.create_task(orchestrator.run())
        try:
            await _until(lambda: len(orchestrator.history) == 1 and watcher.on_event is not None)

            for name in ("a.ts", "b.ts", "c.ts"):
                watcher.emit(str(tmp_path / "app" / name))
            await _until(lambda: len(orchestrator.history) == 2)
            await asyncio.sleep(0.1)
        finally:
            orchestrator.request_shutdown()
            await task

        assert builder.calls == 2
        change_cycle = orchestrator.history[1]
        assert change_cycle.trigger.reason == TriggerReason.CHANGE
        assert change_cycle.trigger.path == str(tmp_path / "app" / "c.ts")
        assert change_cycle.trigger.coalesced == 3


class TestShutdown:
    """Shutdown ordering and exit codes."""

    @pytest.mark.asyncio
    async def test_clean_run_exits_zero(self, tmp_path: Path) -> None:
        server = _server()
        orchestrator = _orchestrator(tmp_path, server=server)
        task = asyncio.create_task(orchestrator.run())

        await _until(lambda: len(orchestrator.history) == 1)
        orchestrator.request_shutdown()
        exit_code = await task

        assert exit_code == 0
        assert orchestrator.state == OrchestratorState.TERMINATED
        server.kill_for_shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_initial_build_failure_exits_nonzero(self, tmp_path: Path) -> None:
        server = _server()
        orchestrator = _orchestrator(
            tmp_path, builder=FakeBuilder(fail=True), server=server
        )
        task = asyncio.create_task(orchestrator.run())

        await _until(lambda: len(orchestrator.history) == 1)
        orchestrator.request_shutdown()
        exit_code = await task

        assert exit_code == 1
        server.restart.assert_not_awaited()
        server.kill_for_shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_during_build_skips_restart(self, tmp_path: Path) -> None:
        builder = FakeBuilder(gated=True)
        server = _server()
        server_stopped = asyncio.Event()

        async def slow_kill() -> None:
            await asyncio.sleep(0.05)
            server_stopped.set()

        server.kill_for_shutdown.side_effect = slow_kill
        orchestrator = _orchestrator(tmp_path, builder=builder, server=server)
        task = asyncio.create_task(orchestrator.run())
        try:
            await _until(builder.started.is_set)
            orchestrator.request_shutdown()
            exit_code = await task
        finally:
            builder.gate.set()

        assert exit_code == 0
        assert server_stopped.is_set()
        server.restart.assert_not_awaited()
        server.kill_for_shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_runs_once(self, tmp_path: Path) -> None:
        server = _server()
        orchestrator = _orchestrator(tmp_path, server=server)

        await asyncio.gather(orchestrator.shutdown(), orchestrator.shutdown())
        await orchestrator.shutdown()

        server.kill_for_shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_requests_after_shutdown_are_ignored(self, tmp_path: Path) -> None:
        builder = FakeBuilder()
        orchestrator = _orchestrator(tmp_path, builder=builder)

        await orchestrator.shutdown()
        orchestrator.request_rebuild(RebuildRequest(path="app/app.js"))
        await asyncio.sleep(0.05)

        assert builder.calls == 0
        assert orchestrator.pending is None
        assert not orchestrator.history

    @pytest.mark.asyncio
    async def test_fatal_crash_can_stop_dev_mode(self, tmp_path: Path) -> None:
        server = _server(side_effect=FatalSupervisionFailure(attempts=4))
        orchestrator = _orchestrator(tmp_path, server=server, exit_on_fatal_crash=True)

        exit_code = await asyncio.wait_for(orchestrator.run(), timeout=5)

        assert exit_code == 1
        server.kill_for_shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fatal_crash_keeps_waiting_by_default(self, tmp_path: Path) -> None:
        server = _server(side_effect=FatalSupervisionFailure(attempts=4))
        orchestrator = _orchestrator(tmp_path, server=server)
        task = asyncio.create_task(orchestrator.run())

        await _until(lambda: len(orchestrator.history) == 1)
        await asyncio.sleep(0.05)
        assert not task.done()

        orchestrator.request_shutdown()
        assert await task == 0
