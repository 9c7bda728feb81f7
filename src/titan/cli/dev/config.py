"""Loading the project's titan.json dev configuration."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from titan.constants import PROJECT_CONFIG_FILE
from titan.errors import ConfigError
from titan.models import DevServerConfig, ProjectConfig


def project_config_path(project_dir: Path) -> Path:
    return project_dir / PROJECT_CONFIG_FILE


def read_project_config(file_path: Path) -> ProjectConfig:
    """Read project config from file.

    Args:
        file_path: Path to titan.json

    Returns:
        ProjectConfig instance (defaults if the file does not exist)

    Raises:
        ConfigError: If the file is not valid JSON or fails validation
    """
    if not file_path.exists():
        return ProjectConfig()

    try:
        data: dict[str, Any] = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read {file_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{file_path} must contain a JSON object")

    try:
        return ProjectConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {file_path}:\n{e}") from e


def load_dev_config(project_dir: Path, **overrides: Any) -> DevServerConfig:
    """Build the effective dev config: defaults < titan.json < explicit overrides.

    Overrides whose value is None are ignored, so CLI options can be passed through as-is.
    """
    config = read_project_config(project_config_path(project_dir)).dev
    updates = {key: value for key, value in overrides.items() if value is not None}
    if not updates:
        return config
    try:
        return DevServerConfig.model_validate(
            {**config.model_dump(), **updates}
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid dev option:\n{e}") from e
