"""Pipeline driver: plan -> apply -> verify -> report.

The runner owns everything around stage execution:

- loading the manifest and building the execution context
- checkpoint handling (--clear-checkpoint, --resume, --retry-failed, --from-step)
- auto-apply preconditions and the pipeline snapshot
- final verification, the single rollback, and the auto-apply commit
- the run report and the terminal checkpoint save

RollbackFailure is re-raised after the terminal checkpoint save was attempted.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .backup_manager import BackupManager
from .checkpoint import Checkpoint, CheckpointStore, ProgressTracker, ResumeOptions
from .ci.build_verifier import BuildVerifier
from .config import get_state_dir
from .config_loader import MigrationConfig, load_migration_config
from .context import ExecutionContext, new_run_id
from .exceptions import CheckpointIOError, PreconditionError, RollbackFailure, SnapshotError
from .manifest import build_migration_context, load_manifest
from .models import BuildResult, Decision, Stage, StageResult, TestResult
from .planner import PatchPlanner
from .report import (
    MigrationReport,
    RollbackInfo,
    build_summary,
    generate_recommendations,
    latest_results,
    write_report,
)
from .stage_executor import StageExecutor

STEPS = ("plan", "apply", "verify", "report")


@dataclass
class RunOptions:
    """Operator choices for one run (mirrors the CLI flags)."""

    resume: bool = False
    retry_failed: bool = False
    from_step: Optional[str] = None
    clear_checkpoint: bool = False
    dry_run: bool = False
    auto_apply: bool = False
    skip_tests: bool = False
    only_files: List[str] = field(default_factory=list)
    skip_stages: List[int] = field(default_factory=list)
    resume_from_stage: Optional[int] = None
    run_id: Optional[str] = None

    def __post_init__(self):
        if self.from_step is not None and self.from_step not in STEPS:
            raise ValueError(f"Unknown step '{self.from_step}'. Expected one of: {list(STEPS)}")


class MigrationRunner:
    """Runs one migration pipeline for a project."""

    def __init__(
        self,
        project_path: Path,
        manifest_path: Path,
        options: Optional[RunOptions] = None,
        config: Optional[MigrationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.project_path = Path(project_path).resolve()
        self.manifest_path = Path(manifest_path)
        self.options = options or RunOptions()
        self.config = config or load_migration_config(self.project_path)
        self.logger = logger or logging.getLogger(__name__)
        self.state_dir = get_state_dir(self.project_path)
        self.store = CheckpointStore(self.project_path, self.state_dir, logger=self.logger)
        self.run_id = self.options.run_id or new_run_id()

    def run(self) -> MigrationReport:
        """Execute the pipeline and return its report.

        Raises:
            ManifestError: If the manifest cannot be loaded
            PreconditionError: If auto-apply preconditions are not met
            RollbackFailure: If restoring the pipeline snapshot failed
            CheckpointIOError: If the terminal checkpoint cannot be written
        """
        opts = self.options
        start = time.monotonic()
        self.logger.info(
            f"[Runner] Starting migration run {self.run_id} for {self.project_path}"
            + (" (dry run)" if opts.dry_run else "")
        )

        if opts.clear_checkpoint:
            if opts.dry_run:
                self.logger.info("[Runner] Dry run: not clearing checkpoint")
            else:
                self.store.clear()

        resumed = self._load_resume_checkpoint()
        manifest = load_manifest(self.manifest_path)
        context = ExecutionContext(
            run_id=self.run_id,
            project_path=self.project_path,
            state_dir=self.state_dir,
            config=self.config,
            migration_context=build_migration_context(manifest, self.project_path),
            dry_run=opts.dry_run,
            auto_apply=opts.auto_apply,
            skip_tests=opts.skip_tests,
            resume_options=ResumeOptions(
                retry_failed=opts.retry_failed,
                from_step=opts.from_step,
                only_files=list(opts.only_files),
            ),
            checkpoint=resumed.model_copy(deep=True) if resumed else None,
            skip_stages=set(opts.skip_stages),
            resume_from_stage=opts.resume_from_stage,
        )

        backups = BackupManager(
            self.project_path,
            self.run_id,
            state_dir_name=self.state_dir.name,
            dry_run=opts.dry_run,
            timeout_seconds=self.config.vcs_timeout_seconds,
            logger=self.logger,
        )
        if opts.auto_apply:
            self._check_preconditions(backups)

        tracker = ProgressTracker(
            self._working_checkpoint(resumed, len(manifest.patches), context),
            store=None if opts.dry_run else self.store,
            interval=self.config.checkpoint_interval,
            terminal_attempts=self.config.terminal_save_attempts,
            logger=self.logger,
        )

        try:
            return self._run_steps(context, manifest.patches, backups, tracker, start)
        except (RollbackFailure, CheckpointIOError):
            raise
        except Exception:
            self._finalize_quietly(tracker, "failed")
            raise

    def _run_steps(self, context, patches, backups, tracker, start) -> MigrationReport:
        opts = self.options
        first = STEPS.index(opts.from_step) if opts.from_step else 0

        planner = PatchPlanner(self.config.max_stage_size, logger=self.logger)
        stages = planner.plan(patches)
        tracker.record_step_result(
            "plan", {"stages": len(stages), "warnings": list(planner.warnings)}
        )
        tracker.set_step("plan")

        snapshot_id = None
        if opts.auto_apply:
            try:
                snapshot_id = backups.snapshot("pipeline")
            except SnapshotError as e:
                raise PreconditionError(f"Cannot create pipeline snapshot: {e}") from e

        results: List[StageResult] = []
        if first <= STEPS.index("apply"):
            tracker.set_step("apply")
            executor = StageExecutor(context, backups=backups, tracker=tracker, logger=self.logger)
            results = executor.execute(stages)
        else:
            self.logger.info(f"[Runner] Starting from step '{opts.from_step}'; stages not executed")

        verifier = BuildVerifier(
            self.project_path,
            self.config,
            log_dir=None if opts.dry_run else context.log_dir,
            dry_run=opts.dry_run,
            logger=self.logger,
        )
        final_build: Optional[BuildResult] = None
        final_test: Optional[TestResult] = None
        if first <= STEPS.index("verify"):
            tracker.set_step("verify")
            final_build, final_test = self._verify(verifier)

        verified = final_build is None or (
            final_build.success and (final_test is None or final_test.success)
        )
        stages_ok = all(r.decision == Decision.CONTINUE for r in latest_results(results))
        success = stages_ok and verified

        rollback = RollbackInfo(snapshot_id=snapshot_id)
        rollback_error: Optional[RollbackFailure] = None
        commit = None
        if opts.auto_apply and not verified and snapshot_id:
            rollback_error = self._rollback(backups, verifier, rollback)
        elif opts.auto_apply and success:
            try:
                commit = backups.commit_all(
                    f"migrapack: apply {sum(len(r.applied_patches) for r in results)} patches "
                    f"({self.run_id})"
                )
            except SnapshotError as e:
                self.logger.error(f"[Runner] Failed to commit migration result: {e}")
                success = False

        tracker.set_step("report")
        report = self._build_report(
            stages, results, final_build, final_test, rollback, planner.warnings, success, start
        )
        report.commit = commit
        if not opts.dry_run and self.config.generate_progress_report:
            write_report(report, context.results_dir)

        tracker.record_step_result(
            "report", {"success": report.success, "rolled_back": rollback.rolled_back}
        )
        tracker.finalize("completed" if report.success else "failed")

        if rollback_error is not None:
            raise rollback_error

        self.logger.info(
            f"[Runner] Run {self.run_id} {'succeeded' if report.success else 'failed'}: "
            f"{report.summary.successful_stages}/{report.summary.total_stages} stages continued"
        )
        return report

    def _verify(self, verifier: BuildVerifier) -> Tuple[BuildResult, Optional[TestResult]]:
        self.logger.info("[Runner] Final verification")
        build = verifier.build()
        test = None
        if build.success and not self.options.skip_tests:
            test = verifier.test()
        return build, test

    def _rollback(
        self, backups: BackupManager, verifier: BuildVerifier, rollback: RollbackInfo
    ) -> Optional[RollbackFailure]:
        """Restore the pipeline snapshot once, then record a post-rollback build."""
        self.logger.warning(f"[Runner] Final verification failed; restoring {rollback.snapshot_id}")
        try:
            backups.restore(rollback.snapshot_id)
        except RollbackFailure as e:
            rollback.error = str(e)
            return e
        rollback.rolled_back = True
        rollback.post_rollback_build = verifier.build()
        state = "builds" if rollback.post_rollback_build.success else "does NOT build"
        self.logger.warning(f"[Runner] Rolled back; restored tree {state}")
        return None

    def _build_report(
        self,
        stages: Sequence[Stage],
        results: Sequence[StageResult],
        final_build: Optional[BuildResult],
        final_test: Optional[TestResult],
        rollback: RollbackInfo,
        warnings: Sequence[str],
        success: bool,
        start: float,
    ) -> MigrationReport:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        return MigrationReport(
            run_id=self.run_id,
            project_path=str(self.project_path),
            # A rolled-back run is never a success
            success=success and not rollback.rolled_back,
            stages=list(stages),
            stage_results=list(results),
            summary=build_summary(stages, results, final_build, final_test, elapsed_ms),
            final_build=final_build,
            final_test=final_test,
            rollback=rollback,
            plan_warnings=list(warnings),
            recommendations=generate_recommendations(results, rollback, warnings),
            dry_run=self.options.dry_run,
        )

    def _check_preconditions(self, backups: BackupManager) -> None:
        if not backups.ensure_repository():
            raise PreconditionError(f"--auto-apply requires a git repository: {self.project_path}")
        if not backups.is_clean():
            raise PreconditionError(
                "--auto-apply requires a clean working tree; commit or stash changes first"
            )

    def _load_resume_checkpoint(self) -> Optional[Checkpoint]:
        if not self.options.resume:
            return None
        checkpoint = self.store.load()
        if checkpoint is None:
            self.logger.warning("[Runner] No resumable checkpoint found; starting fresh")
            return None
        self.logger.info("[Runner] " + self.store.render_resume_report(checkpoint))
        return checkpoint

    def _working_checkpoint(
        self, resumed: Optional[Checkpoint], total: int, context: ExecutionContext
    ) -> Checkpoint:
        if resumed is None:
            return self.store.create(
                current_step="plan", total_files=total, configuration=context.flags()
            )
        checkpoint = resumed.model_copy(deep=True)
        checkpoint.progress.total_files = total
        checkpoint.configuration = context.flags()
        return checkpoint

    def _finalize_quietly(self, tracker: ProgressTracker, step: str) -> None:
        try:
            tracker.finalize(step)
        except CheckpointIOError as e:
            self.logger.error(f"[Runner] {e}")


def plan_manifest(
    manifest_path: Path, config: MigrationConfig, logger: Optional[logging.Logger] = None
) -> Tuple[List[Stage], List[str]]:
    """Plan a manifest without executing it."""
    manifest = load_manifest(manifest_path)
    planner = PatchPlanner(config.max_stage_size, logger=logger)
    stages = planner.plan(manifest.patches)
    return stages, list(planner.warnings)
