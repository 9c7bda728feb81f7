"""Run the external build pipeline (route generation + action bundling)."""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Sequence
from pathlib import Path

from titan.cli.dev.logging import DevLogComponent, get_logger
from titan.constants import BUILD_OUTPUT_TAIL_LINES
from titan.errors import BuildError
from titan.models import BuildStep, CommandResult
from titan.utils import tail_lines

logger = get_logger(DevLogComponent.BUILD)
output_logger = get_logger(DevLogComponent.BUILD_OUTPUT)


def _combined_output(stdout: str | bytes | None, stderr: str | bytes | None) -> str:
    parts: list[str] = []
    for stream in (stdout, stderr):
        if not stream:
            continue
        if isinstance(stream, bytes):
            stream = stream.decode("utf-8", errors="replace")
        parts.append(stream)
    return "\n".join(parts)


class BuildPipelineRunner:
    """Run each build step synchronously in the project root.

    Each call to run() is independent: nothing is kept between invocations.
    """

    def __init__(
        self,
        project_dir: Path,
        steps: Sequence[BuildStep],
        *,
        timeout: float | None = None,
        tail: int = BUILD_OUTPUT_TAIL_LINES,
    ) -> None:
        self.project_dir: Path = project_dir
        self.steps: list[BuildStep] = list(steps)
        self.timeout: float | None = timeout
        self.tail: int = tail

    def run(self) -> list[CommandResult]:
        """Run the whole pipeline, stopping at the first failing step.

        Returns:
            One CommandResult per executed step

        Raises:
            BuildError: If a step exits non-zero, times out, or cannot be started
        """
        results: list[CommandResult] = []
        for step in self.steps:
            if step.requires and not (self.project_dir / step.requires).exists():
                logger.warning(f"Skipping {step.name}: {step.requires} is missing")
                continue
            results.append(self._run_step(step))
        return results

    def _run_step(self, step: BuildStep) -> CommandResult:
        logger.info(f"Running {step.name}: {' '.join(step.command)}")
        start = time.perf_counter()
        try:
            result = subprocess.run(
                step.command,
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                env=os.environ,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise BuildError(
                f"Build step '{step.name}' timed out after {self.timeout}s",
                step=step.name,
                output_tail=tail_lines(_combined_output(e.stdout, e.stderr), self.tail),
            ) from e
        except OSError as e:
            raise BuildError(
                f"Build step '{step.name}' could not be started: {e}",
                step=step.name,
            ) from e

        duration_ms = int((time.perf_counter() - start) * 1000)
        command_result = CommandResult(
            command=step.command,
            cwd=str(self.project_dir),
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            duration_ms=duration_ms,
        )

        if result.returncode != 0:
            raise BuildError(
                f"Build step '{step.name}' failed with exit code {result.returncode}",
                step=step.name,
                returncode=result.returncode,
                output_tail=tail_lines(
                    _combined_output(result.stdout, result.stderr), self.tail
                ),
            )

        for line in command_result.stdout.splitlines():
            if line.strip():
                output_logger.info(line.rstrip())
        logger.debug(f"{step.name} finished in {duration_ms}ms")
        return command_result
