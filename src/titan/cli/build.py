import os
import subprocess
import time
from pathlib import Path
from typing import Annotated

from typer import Argument, Exit, Option

from titan.cli.dev.config import load_dev_config
from titan.cli.dev.logging import configure_dev_logging
from titan.cli.dev.pipeline import BuildPipelineRunner
from titan.errors import BuildError, ConfigError
from titan.utils import console, format_elapsed_ms, progress_spinner


def build(
    project_dir: Annotated[
        Path | None,
        Argument(
            help="The path to the project. If not provided, current working directory will be used",
        ),
    ] = None,
    skip_release: Annotated[
        bool, Option(help="Only generate routes and bundle actions")
    ] = False,
) -> None:
    """
    Build the project for production by:
    1. Running the build pipeline (routes + action bundles)
    2. Compiling the server in release mode (unless skipped)
    """
    if project_dir is None:
        project_dir = Path.cwd()
    project_dir = project_dir.resolve()

    try:
        config = load_dev_config(project_dir)
    except ConfigError as e:
        console.print(f"[red]❌ {e.message}[/red]")
        raise Exit(code=1)

    configure_dev_logging()
    console.print(f"🔧 Building project in {project_dir}")
    start_time_perf = time.perf_counter()

    # === PHASE 1: Routes and action bundles ===
    runner = BuildPipelineRunner(
        project_dir, config.build_steps, timeout=config.build_timeout
    )
    with progress_spinner("📦 Generating routes and bundling actions...", "✅ Actions bundled"):
        try:
            runner.run()
        except BuildError as e:
            console.print(f"[red]❌ {e.message}[/red]")
            if e.output_tail:
                console.print(f"[red]{e.output_tail}[/red]")
            raise Exit(code=1)

    # === PHASE 2: Release server ===
    if skip_release:
        console.print("[yellow]⏭️  Skipping release build[/yellow]")
    else:
        server_dir = project_dir / config.server_dir
        with progress_spinner("🦀 Building release server...", "✅ Release server built"):
            try:
                result = subprocess.run(
                    config.release_command,
                    cwd=server_dir,
                    capture_output=True,
                    text=True,
                    env=os.environ,
                )
            except OSError as e:
                console.print(f"[red]❌ Failed to start release build: {e}[/red]")
                raise Exit(code=1)

            if result.returncode != 0:
                console.print("[red]❌ Failed to build release server[/red]")
                if result.stderr:
                    console.print(f"[red]{result.stderr}[/red]")
                if result.stdout:
                    console.print(f"[red]{result.stdout}[/red]")
                raise Exit(code=1)

    console.print(f"✅ Full build completed in ({format_elapsed_ms(start_time_perf)})")
