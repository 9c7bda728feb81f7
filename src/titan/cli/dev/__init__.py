"""Dev mode for the titan CLI."""

from titan.cli.dev.debouncer import ChangeDebouncer
from titan.cli.dev.orchestrator import DevOrchestrator
from titan.cli.dev.pipeline import BuildPipelineRunner
from titan.cli.dev.server_process import ServerProcessManager
from titan.cli.dev.watcher import SourceWatcher

__all__ = [
    "BuildPipelineRunner",
    "ChangeDebouncer",
    "DevOrchestrator",
    "ServerProcessManager",
    "SourceWatcher",
]
