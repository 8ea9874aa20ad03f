"""Configuration module for migrapack settings.

Process-level settings only (state directory, logging). Per-project migration
behaviour lives in ``config_loader.MigrationConfig`` and is read from the
project's ``migrapack.yaml``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="MIGRAPACK_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Relative to the project root; holds checkpoint, logs, results and locks
    state_dir: str = ".migrapack"

    log_level: str = "INFO"
    log_dir: Optional[str] = None

    # Name of the per-project config file looked up in the project root
    config_filename: str = "migrapack.yaml"


settings = Settings()


# Checkpoint/report format version
CONFIG_VERSION = "1.0.0"


def get_state_dir(project_path: Path) -> Path:
    """Resolve the state directory for a project.

    An absolute ``MIGRAPACK_STATE_DIR`` is used as-is; a relative one is
    resolved against the project root.
    """
    state_dir = Path(settings.state_dir)
    if state_dir.is_absolute():
        return state_dir
    return Path(project_path) / state_dir
