"""Tests for the titan command line."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from titan import __version__
from titan.__main__ import app
from titan.cli.dev.commands import check_prerequisites
from titan.cli.start import release_binary_path
from titan.constants import PROJECT_CONFIG_FILE
from titan.models import BuildStep, DevServerConfig

runner = CliRunner()


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project whose build and release commands are small Python scripts."""
    (tmp_path / "app").mkdir()
    (tmp_path / "server").mkdir()
    config = {
        "dev": {
            "build_steps": [
                {"name": "routes", "command": _python("print('routes generated')")},
                {"name": "bundle", "command": _python("print('actions bundled')")},
            ],
            "server_command": _python("import time; time.sleep(60)"),
            "release_command": _python("open('release.txt', 'w').write('ok')"),
        }
    }
    (tmp_path / PROJECT_CONFIG_FILE).write_text(json.dumps(config))
    return tmp_path


class TestVersion:
    """Top-level options."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output


class TestBuildCommand:
    """`titan build`."""

    def test_build_runs_pipeline_and_release(self, project: Path) -> None:
        result = runner.invoke(app, ["build", str(project)])

        assert result.exit_code == 0, result.output
        assert "Full build completed" in result.output
        assert (project / "server" / "release.txt").read_text() == "ok"

    def test_skip_release(self, project: Path) -> None:
        result = runner.invoke(app, ["build", str(project), "--skip-release"])

        assert result.exit_code == 0, result.output
        assert not (project / "server" / "release.txt").exists()

    def test_failing_step_exits_nonzero(self, project: Path) -> None:
        config_path = project / PROJECT_CONFIG_FILE
        config = json.loads(config_path.read_text())
        config["dev"]["build_steps"][1]["command"] = _python(
            "import sys; print('bundle exploded', file=sys.stderr); sys.exit(2)"
        )
        config_path.write_text(json.dumps(config))

        result = runner.invoke(app, ["build", str(project)])

        assert result.exit_code == 1
        assert "bundle exploded" in result.output
        assert not (project / "server" / "release.txt").exists()

    def test_invalid_config_exits_nonzero(self, tmp_path: Path) -> None:
        (tmp_path / PROJECT_CONFIG_FILE).write_text("{broken")

        result = runner.invoke(app, ["build", str(tmp_path)])

        assert result.exit_code == 1


class TestDevCommand:
    """`titan dev` preflight checks (the long-running loop is covered elsewhere)."""

    def test_missing_server_dir_exits_nonzero(self, project: Path) -> None:
        (project / "server").rmdir()

        result = runner.invoke(app, ["dev", str(project)])

        assert result.exit_code == 1
        assert "Server directory not found" in result.output

    def test_invalid_option_exits_nonzero(self, project: Path) -> None:
        result = runner.invoke(app, ["dev", str(project), "--max-crash-retries", "-1"])

        assert result.exit_code == 1


class TestCheckPrerequisites:
    """Preflight problem reporting."""

    def test_ok_project_has_no_problems(self, project: Path) -> None:
        config = DevServerConfig(
            server_command=_python("pass"),
            build_steps=[BuildStep(name="routes", command=_python("pass"))],
        )

        assert check_prerequisites(project, config) == []

    def test_missing_tools_are_reported_once(self, project: Path) -> None:
        config = DevServerConfig(
            server_command=["titan-no-such-server-xyz"],
            build_steps=[
                BuildStep(name="routes", command=["titan-no-such-node-xyz", "app/app.js"]),
                BuildStep(name="bundle", command=["titan-no-such-node-xyz", "bundle.js"]),
            ],
        )

        problems = check_prerequisites(project, config)

        assert problems == [
            "titan-no-such-server-xyz is not installed or not on PATH",
            "titan-no-such-node-xyz is not installed or not on PATH",
        ]

    def test_optional_step_is_not_checked(self, project: Path) -> None:
        config = DevServerConfig(
            server_command=_python("pass"),
            build_steps=[
                BuildStep(
                    name="bundle",
                    command=["titan-no-such-node-xyz", "titan/bundle.js"],
                    requires="titan/bundle.js",
                )
            ],
        )

        assert check_prerequisites(project, config) == []


def _install_release_server(project_dir: Path, body: str, relative: str = "target/release/titan-server") -> Path:
    binary = project_dir / "server" / relative
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text(f"#!{sys.executable}\n{body}\n")
    binary.chmod(0o755)
    return binary


class TestStartCommand:
    """`titan start`."""

    @pytest.mark.skipif(sys.platform == "win32", reason="uses a shebang script as the server")
    def test_runs_release_server_and_passes_exit_code(self, project: Path) -> None:
        _install_release_server(
            project,
            "import os, sys\nopen('started.txt', 'w').write(os.getcwd())\nsys.exit(3)",
        )

        result = runner.invoke(app, ["start", str(project)])

        assert result.exit_code == 3
        assert (project / "started.txt").read_text() == str(project.resolve())

    @pytest.mark.skipif(sys.platform == "win32", reason="uses a shebang script as the server")
    def test_clean_exit(self, project: Path) -> None:
        _install_release_server(project, "pass")

        result = runner.invoke(app, ["start", str(project)])

        assert result.exit_code == 0, result.output

    @pytest.mark.skipif(sys.platform == "win32", reason="uses a shebang script as the server")
    def test_custom_release_binary(self, project: Path) -> None:
        config_path = project / PROJECT_CONFIG_FILE
        config = json.loads(config_path.read_text())
        config["dev"]["release_binary"] = "bin/my-server"
        config_path.write_text(json.dumps(config))
        _install_release_server(project, "import sys; sys.exit(4)", relative="bin/my-server")

        result = runner.invoke(app, ["start", str(project)])

        assert result.exit_code == 4

    def test_missing_binary_exits_nonzero(self, project: Path) -> None:
        result = runner.invoke(app, ["start", str(project)])

        assert result.exit_code == 1
        assert "Release server not found" in result.output

    def test_windows_binary_gets_exe_suffix(self, tmp_path: Path) -> None:
        with patch("titan.cli.start.os") as mock_os:
            mock_os.name = "nt"
            binary = release_binary_path(tmp_path, DevServerConfig())

        assert binary == tmp_path / "server" / "target" / "release" / "titan-server.exe"

    def test_default_binary_location(self, tmp_path: Path) -> None:
        with patch("titan.cli.start.os") as mock_os:
            mock_os.name = "posix"
            binary = release_binary_path(tmp_path, DevServerConfig())

        assert binary == tmp_path / "server" / "target" / "release" / "titan-server"
