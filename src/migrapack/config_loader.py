"""Configuration loader for migration runs.

Loads per-project migration settings from ``<project>/migrapack.yaml`` with
fallback to sensible defaults.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .config import settings

logger = logging.getLogger(__name__)


# Build/test command presets per target language
LANGUAGE_PRESETS: Dict[str, Dict[str, Any]] = {
    "go": {
        "build_command": "go build ./...",
        "test_command": "go test -v -coverprofile=coverage.out ./...",
        "coverage_file": "coverage.out",
        "coverage_command": "go tool cover -func=coverage.out",
        "tidy_command": "go mod tidy",
        "source_extensions": [".go"],
    },
    "python": {
        "build_command": "python -m compileall -q .",
        "test_command": "python -m pytest -q",
        "coverage_file": "coverage.xml",
        "coverage_command": None,
        "tidy_command": None,
        "source_extensions": [".py"],
    },
    "typescript": {
        "build_command": "npm run build",
        "test_command": "npm test",
        "coverage_file": "coverage/coverage-summary.json",
        "coverage_command": None,
        "tidy_command": None,
        "source_extensions": [".ts", ".tsx"],
    },
}


@dataclass
class MigrationConfig:
    """Configuration for a staged migration run.

    Attributes:
        language: Target language preset ("go", "python", "typescript")
        build_command: Command that builds the project
        test_command: Command that runs the project's tests
        coverage_file: Coverage artifact produced by the test command
        coverage_command: Command that summarizes the coverage artifact
        tidy_command: Dependency consolidation command run after dependency fixes
        source_extensions: File extensions scanned when a fix has no file
        build_timeout_seconds: Timeout for one build invocation
        test_timeout_seconds: Timeout for one test invocation
        vcs_timeout_seconds: Timeout for one git invocation
        max_stage_size: Max patches per trailing batch stage
        max_retries: Extra attempts for stages that decide "retry"
        retry_backoff_seconds: Linear backoff unit between retry attempts
        continue_on_non_critical_failure: Keep going past medium/low failures
        create_stage_backups: Snapshot before every stage
        checkpoint_interval: Processed items between checkpoint writes
        terminal_save_attempts: Attempts for the final checkpoint write
        generate_progress_report: Write the JSON run report
    """

    language: str = "go"
    build_command: str = "go build ./..."
    test_command: str = "go test -v -coverprofile=coverage.out ./..."
    coverage_file: Optional[str] = "coverage.out"
    coverage_command: Optional[str] = "go tool cover -func=coverage.out"
    tidy_command: Optional[str] = "go mod tidy"
    source_extensions: List[str] = field(default_factory=lambda: [".go"])
    build_timeout_seconds: int = 120
    test_timeout_seconds: int = 300
    vcs_timeout_seconds: int = 30
    max_stage_size: int = 5
    max_retries: int = 2
    retry_backoff_seconds: float = 0.0
    continue_on_non_critical_failure: bool = True
    create_stage_backups: bool = True
    checkpoint_interval: int = 5
    terminal_save_attempts: int = 3
    generate_progress_report: bool = True

    def __post_init__(self):
        if self.max_stage_size < 1:
            raise ValueError(f"max_stage_size must be >= 1, got {self.max_stage_size}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.checkpoint_interval < 1:
            raise ValueError(f"checkpoint_interval must be >= 1, got {self.checkpoint_interval}")
        # Terminal write is always retried at least once
        self.terminal_save_attempts = max(2, self.terminal_save_attempts)

    @classmethod
    def for_language(cls, language: str, **overrides: Any) -> "MigrationConfig":
        """Build a config from a language preset plus explicit overrides."""
        preset = LANGUAGE_PRESETS.get(language)
        if preset is None:
            raise ValueError(
                f"Unknown language '{language}'. Expected one of: {sorted(LANGUAGE_PRESETS)}"
            )
        values: Dict[str, Any] = {"language": language, **preset}
        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


def load_migration_config(
    project_path: Path,
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> MigrationConfig:
    """Load migration configuration for a project.

    Falls back to default values if:
    - File doesn't exist
    - File is malformed
    - Keys are unknown (ignored with a warning)

    Args:
        project_path: Project root
        config_path: Explicit config file (defaults to <project>/migrapack.yaml)
        overrides: Values that win over the file (e.g. from CLI flags)

    Returns:
        MigrationConfig instance with loaded or default values
    """
    path = config_path or Path(project_path) / settings.config_filename
    data: Dict[str, Any] = {}

    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
            if isinstance(loaded, dict):
                data = loaded.get("migration", loaded)
            elif loaded is not None:
                logger.warning(f"Config file {path} is not a mapping, using defaults")
        except yaml.YAMLError as e:
            logger.warning(f"Failed to parse {path}: {e}; using defaults")
    else:
        logger.debug(f"Config file {path} not found, using default migration configuration")

    if overrides:
        data = {**data, **{k: v for k, v in overrides.items() if v is not None}}

    known = {f.name for f in fields(MigrationConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown migration config keys: {unknown}")
    data = {k: v for k, v in data.items() if k in known}

    language = data.pop("language", "go")
    return MigrationConfig.for_language(language, **data)
