"""
Durable, resumable progress record for migration runs.

The checkpoint lives at a fixed path under the project's state directory:

    <project>/.migrapack/checkpoint.json

It is overwritten (never appended) at a bounded cadence while stages run and
unconditionally at every terminal state. Ordinary saves are best effort: a
failed write is logged and the pipeline continues. The terminal save is
retried and raises CheckpointIOError when every attempt fails.

Usage:
    store = CheckpointStore(project_path)
    checkpoint = store.load()            # None when there is nothing to resume
    if store.should_process("a.go", checkpoint, ResumeOptions()):
        ...
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .config import CONFIG_VERSION, get_state_dir
from .exceptions import CheckpointIOError

CHECKPOINT_FILENAME = "checkpoint.json"


class CheckpointProgress(BaseModel):
    """File-level progress of the current step."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_files: int = 0
    processed_files: List[str] = Field(default_factory=list)
    failed_files: List[str] = Field(default_factory=list)
    current_index: int = 0


class Checkpoint(BaseModel):
    """Resumable snapshot of pipeline progress.

    Serialized with camelCase keys; accepts either case when loading.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: str = CONFIG_VERSION
    timestamp: str
    project_path: str
    current_step: str
    progress: CheckpointProgress = Field(default_factory=CheckpointProgress)
    step_results: Dict[str, Any] = Field(default_factory=dict)
    configuration: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


@dataclass
class ResumeOptions:
    """How a resumed run treats files recorded in the checkpoint.

    Attributes:
        retry_failed: Reprocess files even when already recorded as processed
        from_step: Pipeline step to restart from
        only_files: Allow-list of path fragments; other files are not processed
    """

    retry_failed: bool = False
    from_step: Optional[str] = None
    only_files: List[str] = field(default_factory=list)


@dataclass
class ResumeAnalysis:
    """Whether and how a run can be resumed."""

    can_resume: bool
    last_step: str
    progress: str
    time_elapsed: str
    recommendations: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_resume": self.can_resume,
            "last_step": self.last_step,
            "progress": self.progress,
            "time_elapsed": self.time_elapsed,
            "recommendations": list(self.recommendations),
        }


class CheckpointStore:
    """Reads and writes the checkpoint file of one project."""

    def __init__(
        self,
        project_path: Path,
        state_dir: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.project_path = Path(project_path)
        self.state_dir = Path(state_dir) if state_dir else get_state_dir(self.project_path)
        self.path = self.state_dir / CHECKPOINT_FILENAME
        self.logger = logger or logging.getLogger(__name__)

    def create(
        self,
        current_step: str,
        total_files: int,
        processed_files: Optional[List[str]] = None,
        failed_files: Optional[List[str]] = None,
        current_index: int = 0,
        step_results: Optional[Dict[str, Any]] = None,
        configuration: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        """Build a new checkpoint stamped with the current time."""
        return Checkpoint(
            version=CONFIG_VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            project_path=str(self.project_path),
            current_step=current_step,
            progress=CheckpointProgress(
                total_files=total_files,
                processed_files=list(processed_files or []),
                failed_files=list(failed_files or []),
                current_index=current_index,
            ),
            step_results=dict(step_results or {}),
            configuration=dict(configuration or {}),
        )

    def save(self, checkpoint: Checkpoint) -> bool:
        """Write the checkpoint atomically (temp -> replace).

        Returns:
            True on success; False (with a warning) on any failure. Never raises.
        """
        try:
            self._write(checkpoint)
        except (OSError, TypeError, ValueError) as e:
            self.logger.warning(f"[Checkpoint] Failed to save checkpoint to {self.path}: {e}")
            return False

        progress = checkpoint.progress
        self.logger.debug(
            f"[Checkpoint] Saved: {checkpoint.current_step} "
            f"({len(progress.processed_files)}/{progress.total_files})"
        )
        return True

    def save_terminal(
        self, checkpoint: Checkpoint, attempts: int = 2, delay_seconds: float = 0.1
    ) -> None:
        """Write the checkpoint at a terminal state, retrying at least once.

        Raises:
            CheckpointIOError: If every attempt fails
        """
        attempts = max(2, attempts)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                self._write(checkpoint)
                self.logger.info(
                    f"[Checkpoint] Terminal checkpoint saved ({checkpoint.current_step})"
                )
                return
            except (OSError, TypeError, ValueError) as e:
                last_error = e
                self.logger.warning(
                    f"[Checkpoint] Terminal save attempt {attempt}/{attempts} failed: {e}"
                )
                if attempt < attempts and delay_seconds:
                    time.sleep(delay_seconds)
        raise CheckpointIOError(
            f"Failed to save terminal checkpoint to {self.path} after {attempts} attempts: "
            f"{last_error}"
        )

    def load(self) -> Optional[Checkpoint]:
        """Return the last saved checkpoint, or None when missing or unreadable."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return Checkpoint.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            self.logger.warning(f"[Checkpoint] Ignoring unreadable checkpoint {self.path}: {e}")
            return None

    def exists(self) -> bool:
        return self.path.exists()

    def clear(self) -> bool:
        """Delete the checkpoint file.

        Returns:
            True if a checkpoint was removed
        """
        if not self.path.exists():
            return False
        self.path.unlink()
        self.logger.info(f"[Checkpoint] Cleared checkpoint {self.path}")
        return True

    @staticmethod
    def should_process(
        file_path: str, checkpoint: Optional[Checkpoint], options: ResumeOptions
    ) -> bool:
        """Decide whether a file is (re)processed on this run.

        Previously failed files are retried by default. A processed file is
        skipped unless ``retry_failed`` was requested.
        """
        processed = checkpoint.progress.processed_files if checkpoint else []
        if file_path in processed and not options.retry_failed:
            return False
        if options.only_files:
            return any(pattern in file_path for pattern in options.only_files)
        return True

    def analyze_resumability(self) -> ResumeAnalysis:
        checkpoint = self.load()
        if checkpoint is None:
            return ResumeAnalysis(
                can_resume=False,
                last_step="none",
                progress="0%",
                time_elapsed="0s",
                recommendations=["Start a new run"],
            )

        progress = checkpoint.progress
        percent = progress_percent(checkpoint)
        recommendations = []
        if progress.failed_files:
            recommendations.append(f"{len(progress.failed_files)} failed files can be retried")
        if percent >= 100.0:
            recommendations.append("Resume from the next step")
        else:
            recommendations.append("Resume from the unprocessed files")

        return ResumeAnalysis(
            can_resume=True,
            last_step=checkpoint.current_step,
            progress=f"{percent:.1f}%",
            time_elapsed=format_elapsed(_seconds_since(checkpoint.timestamp)),
            recommendations=recommendations,
        )

    def render_resume_report(self, checkpoint: Checkpoint) -> str:
        """Human-readable summary of a resumable checkpoint."""
        progress = checkpoint.progress
        lines = [
            "Resumable migration found",
            "",
            f"Last run:     {checkpoint.timestamp}",
            f"Project:      {checkpoint.project_path}",
            f"Stopped at:   {checkpoint.current_step}",
            f"Progress:     {len(progress.processed_files)}/{progress.total_files} "
            f"({progress_percent(checkpoint):.1f}%)",
        ]
        if progress.failed_files:
            lines.append(f"Failed:       {len(progress.failed_files)} files")
        if checkpoint.configuration:
            lines.append("")
            lines.append("Configuration:")
            for key in ("language", "auto_apply", "dry_run", "skip_tests"):
                if key in checkpoint.configuration:
                    lines.append(f"  - {key}: {checkpoint.configuration[key]}")
        lines.extend(
            [
                "",
                "Resume options:",
                "  migrapack run --resume                  # continue where it stopped",
                "  migrapack run --resume --retry-failed   # also reprocess processed files",
                "  migrapack run --resume --from-step verify",
                "  migrapack run --clear-checkpoint        # start over",
            ]
        )
        return "\n".join(lines)

    def _write(self, checkpoint: Checkpoint) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        temp_path.write_text(checkpoint.to_json(), encoding="utf-8")
        temp_path.replace(self.path)


class ProgressTracker:
    """Records per-file progress and writes the checkpoint at a bounded cadence.

    A full checkpoint is written after every ``interval`` newly recorded files
    and at terminal states. A tracker without a store records in memory only
    (dry runs).
    """

    def __init__(
        self,
        checkpoint: Checkpoint,
        store: Optional[CheckpointStore] = None,
        interval: int = 5,
        terminal_attempts: int = 2,
        logger: Optional[logging.Logger] = None,
    ):
        self.checkpoint = checkpoint
        self.store = store
        self.interval = max(1, interval)
        self.terminal_attempts = terminal_attempts
        self.logger = logger or logging.getLogger(__name__)
        self._pending = 0
        self.saves = 0

    @property
    def progress(self) -> CheckpointProgress:
        return self.checkpoint.progress

    def set_step(self, step: str) -> None:
        self.checkpoint.current_step = step
        self.flush()

    def mark_processed(self, file_path: str, index: Optional[int] = None) -> None:
        if file_path in self.progress.failed_files:
            self.progress.failed_files.remove(file_path)
        if file_path not in self.progress.processed_files:
            self.progress.processed_files.append(file_path)
        self._advance(index)

    def mark_failed(self, file_path: str, index: Optional[int] = None) -> None:
        if file_path in self.progress.processed_files:
            self.progress.processed_files.remove(file_path)
        if file_path not in self.progress.failed_files:
            self.progress.failed_files.append(file_path)
        self._advance(index)

    def record_step_result(self, name: str, value: Any) -> None:
        self.checkpoint.step_results[name] = value

    def flush(self) -> bool:
        """Write the checkpoint now (best effort)."""
        self._pending = 0
        self.checkpoint.timestamp = datetime.now(timezone.utc).isoformat()
        if self.store is None:
            return False
        saved = self.store.save(self.checkpoint)
        if saved:
            self.saves += 1
        return saved

    def finalize(self, step: str) -> None:
        """Terminal write; raises CheckpointIOError when it cannot be persisted."""
        self.checkpoint.current_step = step
        self.checkpoint.timestamp = datetime.now(timezone.utc).isoformat()
        self._pending = 0
        if self.store is None:
            return
        self.store.save_terminal(self.checkpoint, attempts=self.terminal_attempts)
        self.saves += 1

    def _advance(self, index: Optional[int]) -> None:
        if index is not None:
            self.progress.current_index = max(self.progress.current_index, index)
        self._pending += 1
        if self._pending >= self.interval:
            self.flush()


def progress_percent(checkpoint: Checkpoint) -> float:
    total = checkpoint.progress.total_files
    if total <= 0:
        return 0.0
    return len(checkpoint.progress.processed_files) / total * 100


def format_elapsed(seconds: float) -> str:
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _seconds_since(timestamp: str) -> float:
    try:
        then = datetime.fromisoformat(timestamp)
    except ValueError:
        return 0.0
    if then.tzinfo is None:
        return (datetime.now() - then).total_seconds()
    return (datetime.now(timezone.utc) - then).total_seconds()
