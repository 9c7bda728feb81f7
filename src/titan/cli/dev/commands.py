"""Dev commands for the titan CLI."""

import asyncio
from pathlib import Path
from typing import Annotated

from typer import Argument, Exit, Option

from titan.cli.dev.config import load_dev_config
from titan.cli.dev.logging import configure_dev_logging
from titan.cli.dev.orchestrator import DevOrchestrator
from titan.errors import ConfigError
from titan.models import DevServerConfig
from titan.utils import console, is_executable_available


def check_prerequisites(project_dir: Path, config: DevServerConfig) -> list[str]:
    """Return human-readable problems that would prevent dev mode from working."""
    problems: list[str] = []

    server_dir = project_dir / config.server_dir
    if not server_dir.is_dir():
        problems.append(f"Server directory not found: {server_dir}")

    if not config.server_command:
        problems.append("server_command is empty")
    elif not is_executable_available(config.server_command[0]):
        problems.append(f"{config.server_command[0]} is not installed or not on PATH")

    for step in config.build_steps:
        if not step.command:
            problems.append(f"Build step '{step.name}' has an empty command")
            continue
        if step.requires and not (project_dir / step.requires).exists():
            continue
        if not is_executable_available(step.command[0]):
            problems.append(f"{step.command[0]} is not installed or not on PATH")

    # De-duplicate while keeping order (several steps usually share `node`).
    return list(dict.fromkeys(problems))


def dev(
    project_dir: Annotated[
        Path | None,
        Argument(
            help="The path to the project. If not provided, current working directory will be used"
        ),
    ] = None,
    debounce_ms: Annotated[
        int | None, Option(help="Quiet period after the last change before rebuilding")
    ] = None,
    ready_delay: Annotated[
        float | None,
        Option(help="Seconds a new server must stay up before it counts as started"),
    ] = None,
    settle_delay: Annotated[
        float | None,
        Option(help="Seconds to wait after the old server exits before starting a new one"),
    ] = None,
    max_crash_retries: Annotated[
        int | None,
        Option(help="Automatic restarts after a server crashes right after starting"),
    ] = None,
    exit_on_fatal_crash: Annotated[
        bool | None,
        Option(help="Stop dev mode when the server keeps crashing"),
    ] = None,
    verbose: Annotated[
        bool, Option("--verbose", "-v", help="Show debug logs")
    ] = False,
) -> None:
    """Build the project, run the server, and rebuild + restart on every change."""
    if project_dir is None:
        project_dir = Path.cwd()
    project_dir = project_dir.resolve()

    try:
        config = load_dev_config(
            project_dir,
            debounce_ms=debounce_ms,
            ready_delay=ready_delay,
            settle_delay=settle_delay,
            max_crash_retries=max_crash_retries,
            exit_on_fatal_crash=exit_on_fatal_crash,
        )
    except ConfigError as e:
        console.print(f"[red]❌ {e.message}[/red]")
        raise Exit(code=1)

    problems = check_prerequisites(project_dir, config)
    if problems:
        for problem in problems:
            console.print(f"[red]❌ {problem}[/red]")
        raise Exit(code=1)

    configure_dev_logging(verbose=verbose)

    console.print("[bold cyan]Titan Dev Mode: hot reload enabled[/bold cyan]")
    console.print(f"[cyan]Project:[/cyan] {project_dir}")
    console.print(f"[cyan]Server:[/cyan] {' '.join(config.server_command)}")
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    console.print()

    orchestrator = DevOrchestrator(project_dir, config)
    exit_code = asyncio.run(orchestrator.run())
    raise Exit(code=exit_code)
