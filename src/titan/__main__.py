from typing import Annotated

from typer import Exit, Option, Typer

from titan import __version__
from titan.cli.build import build
from titan.cli.dev.commands import dev
from titan.cli.start import start
from titan.utils import console

app = Typer(
    name="titan",
    help="Titan development tooling: hot-reload dev mode, production builds and the release server.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"titan-dev {__version__}")
        raise Exit()


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show the version and exit",
        ),
    ] = False,
) -> None:
    """Titan development tooling."""


app.command(name="dev", help="Run the dev server with rebuild-and-restart on change")(dev)
app.command(name="build", help="Build routes, action bundles and the release server")(build)
app.command(name="start", help="Run the release server built by `titan build`")(start)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
