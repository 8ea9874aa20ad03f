"""Stage-by-stage execution with build gating, repair and decisions.

Per stage, strictly sequential:

    pending -> snapshot -> applying -> building -> (fixing -> rebuilding)?
            -> testing? -> decided

A stage only runs when every dependency stage's latest result is
``continue``. Each attempt produces one immutable StageResult appended to the
result log. Only RollbackFailure escapes a stage; every other exception is
turned into a synthetic result (abort for critical stages, skip otherwise).

Retries re-run the whole stage. Patch application is idempotent, so patches
already written by an earlier attempt are simply written again.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .backup_manager import BackupManager
from .build_fixer import BuildFixer
from .checkpoint import CheckpointStore, ProgressTracker
from .ci.build_verifier import BuildVerifier
from .context import ExecutionContext
from .exceptions import PatchApplicationError, RollbackFailure, SnapshotError
from .manifest import Patch
from .models import (
    BuildResult,
    Decision,
    FixResult,
    Priority,
    RollbackStrategy,
    Stage,
    StageResult,
    StageState,
    TestResult,
)
from .patch_applier import PatchApplier


def decide(
    stage: Stage,
    success: bool,
    has_failed_patches: bool,
    retries_left: bool,
) -> Decision:
    """Map a stage outcome to a decision.

    ``success`` already folds in the tests: a test failure counts as a build
    failure. A failed patch in a critical stage aborts even when the build
    passes. Medium and low stages never abort.
    """
    if stage.priority == Priority.CRITICAL:
        return Decision.CONTINUE if success and not has_failed_patches else Decision.ABORT
    if success:
        return Decision.CONTINUE
    if stage.priority == Priority.HIGH:
        if stage.rollback_strategy == RollbackStrategy.RETRY and retries_left:
            return Decision.RETRY
        return Decision.SKIP
    return Decision.SKIP


class StageExecutor:
    """Runs planned stages against the project."""

    def __init__(
        self,
        context: ExecutionContext,
        applier: Optional[PatchApplier] = None,
        verifier: Optional[BuildVerifier] = None,
        fixer: Optional[BuildFixer] = None,
        backups: Optional[BackupManager] = None,
        tracker: Optional[ProgressTracker] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.context = context
        self.config = context.config
        self.logger = logger or logging.getLogger(__name__)
        state_dir_name = context.state_dir.name
        self.applier = applier or PatchApplier(
            context.project_path,
            state_dir=context.state_dir,
            dry_run=context.dry_run,
            logger=self.logger,
        )
        self.verifier = verifier or BuildVerifier(
            context.project_path,
            context.config,
            log_dir=None if context.dry_run else context.log_dir,
            dry_run=context.dry_run,
            logger=self.logger,
        )
        self.fixer = fixer or BuildFixer(
            context.project_path,
            context.config,
            state_dir_name=state_dir_name,
            dry_run=context.dry_run,
            logger=self.logger,
        )
        self.backups = backups or BackupManager(
            context.project_path,
            context.run_id,
            state_dir_name=state_dir_name,
            dry_run=context.dry_run,
            timeout_seconds=context.config.vcs_timeout_seconds,
            logger=self.logger,
        )
        self.tracker = tracker
        self._sleep = sleep
        self.results: List[StageResult] = []
        self._latest: Dict[int, Decision] = {}
        self._patch_index: Dict[str, int] = {}

    @property
    def aborted(self) -> bool:
        return any(r.decision == Decision.ABORT for r in self.results)

    def execute(self, stages: Sequence[Stage]) -> List[StageResult]:
        """Run every stage in order until one aborts.

        Returns:
            The ordered result log (one entry per stage attempt)
        """
        self._patch_index = {}
        for stage in stages:
            for patch in stage.patches:
                self._patch_index.setdefault(patch.id, len(self._patch_index))

        for stage in stages:
            result = self._execute_stage(stage)
            if result.decision == Decision.ABORT:
                remaining = [s.id for s in stages if s.id > stage.id]
                self.logger.error(
                    f"[Stage {stage.id}] ABORT: pipeline halted"
                    + (f", stages {remaining} not executed" if remaining else "")
                )
                break
        return list(self.results)

    def _execute_stage(self, stage: Stage) -> StageResult:
        resume_from = self.context.resume_from_stage
        if resume_from is not None and stage.id < resume_from:
            return self._record(
                self._synthetic(
                    stage, Decision.CONTINUE, "Before resume stage; not executed", restored=True
                )
            )

        if stage.id in self.context.skip_stages:
            self.logger.info(f"[Stage {stage.id}] Skipped by operator")
            return self._record(self._synthetic(stage, Decision.SKIP, "Skipped by operator"))

        unmet = [d for d in stage.depends_on_stage_ids if self._latest.get(d) != Decision.CONTINUE]
        if unmet:
            decision = Decision.ABORT if stage.priority == Priority.CRITICAL else Decision.SKIP
            self.logger.warning(
                f"[Stage {stage.id}] Dependencies {unmet} did not continue; decision={decision.value}"
            )
            result = self._synthetic(
                stage, decision, f"Unmet dependencies: {unmet}", failed=stage.patch_ids
            )
            self._track(stage, list(stage.patches), result)
            return self._record(result)

        selected = self._select_patches(stage)
        if not selected:
            self.logger.info(f"[Stage {stage.id}] All patches already processed; restoring result")
            return self._record(
                self._synthetic(
                    stage,
                    Decision.CONTINUE,
                    "All patches processed in a previous run",
                    restored=True,
                )
            )

        attempt = 1
        while True:
            retries_left = attempt <= self.config.max_retries
            result = self._run_attempt(stage, selected, attempt, retries_left)
            self._record(result)
            if result.decision != Decision.RETRY:
                break
            backoff = self.config.retry_backoff_seconds * attempt
            self.logger.info(
                f"[Stage {stage.id}] Retrying (attempt {attempt + 1}/{self.config.max_retries + 1})"
                + (f" after {backoff:.1f}s" if backoff > 0 else "")
            )
            if backoff > 0:
                self._sleep(backoff)
            attempt += 1

        self._track(stage, selected, result)
        return result

    def _select_patches(self, stage: Stage) -> List[Patch]:
        checkpoint = self.context.checkpoint
        options = self.context.resume_options
        selected = []
        for patch in stage.patches:
            if CheckpointStore.should_process(patch.target_file, checkpoint, options):
                selected.append(patch)
            else:
                self.logger.debug(f"[Stage {stage.id}] Not reprocessing {patch.target_file}")
        return selected

    def _run_attempt(
        self, stage: Stage, patches: List[Patch], attempt: int, retries_left: bool
    ) -> StageResult:
        start = time.monotonic()
        try:
            return self._run_stage(stage, patches, attempt, retries_left, start)
        except RollbackFailure:
            raise
        except Exception as e:
            self.logger.exception(f"[Stage {stage.id}] Unhandled error: {e}")
            decision = Decision.ABORT if stage.priority == Priority.CRITICAL else Decision.SKIP
            return self._synthetic(
                stage,
                decision,
                f"Unhandled error: {type(e).__name__}: {e}",
                failed=stage.patch_ids,
                attempt=attempt,
                elapsed_ms=int((time.monotonic() - start) * 1000),
            )

    def _run_stage(
        self,
        stage: Stage,
        patches: List[Patch],
        attempt: int,
        retries_left: bool,
        start: float,
    ) -> StageResult:
        trace = [StageState.PENDING]
        notes: List[str] = []
        self.logger.info(
            f"[Stage {stage.id}] {stage.name}: {len(patches)} patches "
            f"(priority={stage.priority.value}, attempt={attempt})"
        )

        trace.append(StageState.SNAPSHOT)
        backup_id = None
        if self.config.create_stage_backups:
            try:
                backup_id = self.backups.snapshot(f"stage-{stage.id}-attempt-{attempt}")
            except SnapshotError as e:
                self.logger.warning(f"[Stage {stage.id}] Snapshot failed, continuing: {e}")
                notes.append(f"Snapshot failed: {e}")

        trace.append(StageState.APPLYING)
        applied: List[str] = []
        failed: List[str] = []
        for patch in patches:
            try:
                self.applier.apply(patch)
                applied.append(patch.id)
            except (PatchApplicationError, OSError) as e:
                failed.append(patch.id)
                notes.append(f"Patch {patch.id} failed: {e}")
                self.logger.warning(f"[Stage {stage.id}] Patch {patch.id} failed: {e}")

        trace.append(StageState.BUILDING)
        build_result = self.verifier.build()
        fix_result: Optional[FixResult] = None

        if not build_result.success:
            trace.append(StageState.FIXING)
            errors = self.verifier.parse_build_errors(build_result)
            fix_result = self.fixer.fix(errors, self.context.migration_context.for_stage(stage.name))
            if fix_result.changed_anything:
                trace.append(StageState.REBUILDING)
                build_result = self.verifier.build()
                fix_result.rebuild_result = build_result
            else:
                notes.append("No fix applied; rebuild skipped")

        test_result: Optional[TestResult] = None
        if build_result.success and not self.context.skip_tests:
            trace.append(StageState.TESTING)
            test_result = self.verifier.test()

        success = build_result.success and (test_result is None or test_result.success)
        decision = decide(stage, success, bool(failed), retries_left)
        if (
            decision == Decision.SKIP
            and stage.priority in (Priority.MEDIUM, Priority.LOW)
            and not self.config.continue_on_non_critical_failure
        ):
            notes.append("Non-critical failure skipped; this tier never aborts the pipeline")
        trace.append(StageState.DECIDED)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        log = self.logger.info if decision == Decision.CONTINUE else self.logger.warning
        log(
            f"[Stage {stage.id}] decision={decision.value} applied={len(applied)} "
            f"failed={len(failed)} build={'ok' if build_result.success else 'failed'}"
            + (f" tests={'ok' if test_result.success else 'failed'}" if test_result else "")
        )
        return StageResult(
            stage=stage,
            applied_patches=tuple(applied),
            failed_patches=tuple(failed),
            build_result=build_result,
            test_result=test_result,
            fix_result=fix_result,
            decision=decision,
            elapsed_ms=elapsed_ms,
            attempt=attempt,
            backup_id=backup_id,
            notes=tuple(notes),
            trace=tuple(trace),
        )

    def _synthetic(
        self,
        stage: Stage,
        decision: Decision,
        note: str,
        failed: Sequence[str] = (),
        restored: bool = False,
        attempt: int = 1,
        elapsed_ms: int = 0,
    ) -> StageResult:
        return StageResult(
            stage=stage,
            applied_patches=(),
            failed_patches=tuple(failed),
            build_result=BuildResult(success=decision == Decision.CONTINUE),
            decision=decision,
            elapsed_ms=elapsed_ms,
            attempt=attempt,
            notes=(note,),
            restored=restored,
            trace=(StageState.PENDING, StageState.DECIDED),
        )

    def _record(self, result: StageResult) -> StageResult:
        self.results.append(result)
        self._latest[result.stage.id] = result.decision
        return result

    def _track(self, stage: Stage, patches: Sequence[Patch], result: StageResult) -> None:
        """Record the final attempt's files in the progress tracker."""
        if self.tracker is None:
            return
        failed_ids = set(result.failed_patches)
        for patch in patches:
            index = self._patch_index.get(patch.id)
            if result.decision == Decision.CONTINUE and patch.id not in failed_ids:
                self.tracker.mark_processed(patch.target_file, index)
            else:
                self.tracker.mark_failed(patch.target_file, index)
        self.tracker.record_step_result(
            f"stage_{stage.id}",
            {"decision": result.decision.value, "attempts": result.attempt},
        )


def summarize_decisions(results: Sequence[StageResult]) -> Tuple[int, int, int]:
    """Count (continued, skipped, aborted) stages by their latest result."""
    latest: Dict[int, StageResult] = {}
    for result in results:
        latest[result.stage.id] = result
    continued = sum(1 for r in latest.values() if r.decision == Decision.CONTINUE)
    skipped = sum(1 for r in latest.values() if r.decision == Decision.SKIP)
    aborted = sum(1 for r in latest.values() if r.decision == Decision.ABORT)
    return continued, skipped, aborted
