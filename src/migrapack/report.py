"""Run report for a migration pipeline.

Two files are written under ``<state_dir>/results/``:

- migration-result.json: stages, every stage attempt, final verification,
  rollback info, plan warnings and recommendations
- migration-summary.json: the flat summary block only
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .models import BuildResult, Decision, Stage, StageResult, TestResult

logger = logging.getLogger(__name__)

RESULT_FILENAME = "migration-result.json"
SUMMARY_FILENAME = "migration-summary.json"


@dataclass
class RollbackInfo:
    """Pipeline snapshot and what happened to it."""

    snapshot_id: Optional[str] = None
    rolled_back: bool = False
    post_rollback_build: Optional[BuildResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "rolled_back": self.rolled_back,
            "post_rollback_build": (
                self.post_rollback_build.to_dict() if self.post_rollback_build else None
            ),
            "error": self.error,
        }


@dataclass
class RunSummary:
    total_stages: int = 0
    successful_stages: int = 0
    failed_stages: int = 0
    skipped_stages: int = 0
    total_patches: int = 0
    applied_patches: int = 0
    failed_patches: int = 0
    final_build_success: bool = False
    final_test_success: Optional[bool] = None
    coverage_percent: Optional[float] = None
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class MigrationReport:
    """Everything a run produced."""

    run_id: str
    project_path: str
    success: bool
    stages: List[Stage]
    stage_results: List[StageResult]
    summary: RunSummary
    final_build: Optional[BuildResult] = None
    final_test: Optional[TestResult] = None
    rollback: RollbackInfo = field(default_factory=RollbackInfo)
    plan_warnings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    commit: Optional[str] = None
    dry_run: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "project_path": self.project_path,
            "success": self.success,
            "dry_run": self.dry_run,
            "summary": self.summary.to_dict(),
            "stages": [s.to_dict() for s in self.stages],
            "stage_results": [r.to_dict() for r in self.stage_results],
            "final_build": self.final_build.to_dict() if self.final_build else None,
            "final_test": self.final_test.to_dict() if self.final_test else None,
            "rollback": self.rollback.to_dict(),
            "commit": self.commit,
            "plan_warnings": list(self.plan_warnings),
            "recommendations": list(self.recommendations),
        }

    def summary_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "success": self.success,
            "rolled_back": self.rollback.rolled_back,
            **self.summary.to_dict(),
        }


def latest_results(results: Sequence[StageResult]) -> List[StageResult]:
    """Latest attempt per stage, in stage order."""
    latest: Dict[int, StageResult] = {}
    for result in results:
        latest[result.stage.id] = result
    return [latest[k] for k in sorted(latest)]


def build_summary(
    stages: Sequence[Stage],
    results: Sequence[StageResult],
    final_build: Optional[BuildResult],
    final_test: Optional[TestResult],
    elapsed_ms: int,
) -> RunSummary:
    final = latest_results(results)
    return RunSummary(
        total_stages=len(stages),
        successful_stages=sum(1 for r in final if r.decision == Decision.CONTINUE),
        failed_stages=sum(1 for r in final if r.decision == Decision.ABORT),
        skipped_stages=sum(1 for r in final if r.decision == Decision.SKIP),
        total_patches=sum(len(s.patches) for s in stages),
        applied_patches=sum(len(r.applied_patches) for r in final),
        failed_patches=sum(len(r.failed_patches) for r in final),
        final_build_success=bool(final_build and final_build.success),
        final_test_success=final_test.success if final_test else None,
        coverage_percent=final_test.coverage_percent if final_test else None,
        elapsed_ms=elapsed_ms,
    )


def generate_recommendations(
    results: Sequence[StageResult],
    rollback: Optional[RollbackInfo] = None,
    plan_warnings: Sequence[str] = (),
) -> List[str]:
    recommendations: List[str] = []
    final = latest_results(results)

    failed = [r for r in final if r.decision == Decision.ABORT or r.failed_patches]
    if failed:
        recommendations.append("Review failed stages and consider manual intervention")
        for result in failed:
            if not result.build_result.success and result.build_result.errors:
                errors = ", ".join(result.build_result.errors[:3])
                recommendations.append(f"Stage {result.stage.id}: Fix build errors - {errors}")
            elif result.failed_patches:
                recommendations.append(
                    f"Stage {result.stage.id}: {len(result.failed_patches)} patches failed to apply"
                )

    skipped = [r for r in final if r.decision == Decision.SKIP]
    if skipped:
        recommendations.append(
            f"{len(skipped)} stages were skipped - consider manual completion"
        )

    if any(r.fix_result and r.fix_result.applied_fixes for r in results):
        recommendations.append("Build fixes were applied automatically - review changes")

    if rollback and rollback.rolled_back:
        post = rollback.post_rollback_build
        if post is not None and not post.success:
            recommendations.append(
                "Build still fails after rollback - the snapshot itself does not build"
            )
        else:
            recommendations.append(
                f"Changes were rolled back to {rollback.snapshot_id}; rerun after fixing the failures"
            )

    if plan_warnings:
        recommendations.append(f"Check {len(plan_warnings)} plan warnings about patch dependencies")
    return recommendations


def write_report(report: MigrationReport, results_dir: Path) -> Path:
    """Write the result and summary files; returns the result file path."""
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    result_path = results_dir / RESULT_FILENAME
    summary_path = results_dir / SUMMARY_FILENAME
    _write_json(result_path, report.to_dict())
    _write_json(summary_path, report.summary_dict())
    logger.info(f"[Report] Saved migration results: {result_path}, {summary_path}")
    return result_path


def load_summary(results_dir: Path) -> Optional[Dict[str, Any]]:
    path = Path(results_dir) / SUMMARY_FILENAME
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"[Report] Could not read {path}: {e}")
        return None


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    temp_path = path.with_suffix(".tmp")
    temp_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
    temp_path.replace(path)
