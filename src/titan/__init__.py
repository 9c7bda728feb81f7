"""titan-dev: development-mode orchestrator for Titan projects."""

__version__ = "0.1.0"
