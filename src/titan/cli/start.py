import os
import subprocess
from pathlib import Path
from typing import Annotated

from typer import Argument, Exit

from titan.cli.dev.config import load_dev_config
from titan.errors import ConfigError
from titan.models import DevServerConfig
from titan.utils import console


def release_binary_path(project_dir: Path, config: DevServerConfig) -> Path:
    """Location of the release server produced by `titan build`."""
    binary = project_dir / config.server_dir / config.release_binary
    if os.name == "nt" and binary.suffix != ".exe":
        binary = binary.with_name(binary.name + ".exe")
    return binary


def start(
    project_dir: Annotated[
        Path | None,
        Argument(
            help="The path to the project. If not provided, current working directory will be used",
        ),
    ] = None,
) -> None:
    """Run the production server built by `titan build`, exiting with its exit code."""
    if project_dir is None:
        project_dir = Path.cwd()
    project_dir = project_dir.resolve()

    try:
        config = load_dev_config(project_dir)
    except ConfigError as e:
        console.print(f"[red]❌ {e.message}[/red]")
        raise Exit(code=1)

    binary = release_binary_path(project_dir, config)
    if not binary.is_file():
        console.print(f"[red]❌ Release server not found: {binary}[/red]")
        console.print("[yellow]Run `titan build` first[/yellow]")
        raise Exit(code=1)

    console.print(f"🚀 Starting {binary}")
    try:
        result = subprocess.run([str(binary)], cwd=project_dir, env=os.environ)
    except OSError as e:
        console.print(f"[red]❌ Failed to start release server: {e}[/red]")
        raise Exit(code=1)
    except KeyboardInterrupt:
        # subprocess.run has already waited for (or killed) the server.
        raise Exit(code=130)

    raise Exit(code=result.returncode)
