"""Per-run execution context passed explicitly through the pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Set

from .checkpoint import Checkpoint, ResumeOptions
from .config_loader import MigrationConfig
from .manifest import MigrationContext


def new_run_id() -> str:
    return f"mig-{datetime.now().strftime('%Y%m%d-%H%M%S')}"


@dataclass
class ExecutionContext:
    """Everything one pipeline run needs to know about itself.

    Attributes:
        run_id: Identifier used in log file and backup branch names
        project_path: Project root
        state_dir: Directory holding checkpoint, logs, results and lock
        config: Migration configuration
        migration_context: Package/symbol relocations for the build fixer
        dry_run: Perform no filesystem write and no VCS call
        auto_apply: Commit on success, roll back on failed final verification
        skip_tests: Skip test runs (stages and final verification)
        resume_options: How checkpointed files are treated
        checkpoint: Checkpoint loaded for resume, if any
        skip_stages: Stage ids the operator asked to skip
        resume_from_stage: Stages with a smaller id are not executed
    """

    run_id: str
    project_path: Path
    state_dir: Path
    config: MigrationConfig
    migration_context: MigrationContext = field(default_factory=MigrationContext)
    dry_run: bool = False
    auto_apply: bool = False
    skip_tests: bool = False
    resume_options: ResumeOptions = field(default_factory=ResumeOptions)
    checkpoint: Optional[Checkpoint] = None
    skip_stages: Set[int] = field(default_factory=set)
    resume_from_stage: Optional[int] = None

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def results_dir(self) -> Path:
        return self.state_dir / "results"

    def flags(self) -> Dict[str, Any]:
        """Mode flags recorded in the checkpoint configuration."""
        return {
            "run_id": self.run_id,
            "language": self.config.language,
            "dry_run": self.dry_run,
            "auto_apply": self.auto_apply,
            "skip_tests": self.skip_tests,
            "retry_failed": self.resume_options.retry_failed,
            "only_files": list(self.resume_options.only_files),
            "skip_stages": sorted(self.skip_stages),
            "resume_from_stage": self.resume_from_stage,
        }
