"""Tests for run summaries, recommendations and report persistence."""

import json

import pytest

from migrapack.models import (
    BuildResult,
    Decision,
    Fix,
    FixKind,
    FixResult,
    Priority,
    RollbackStrategy,
    Stage,
    StageResult,
    TestResult,
)
from migrapack.report import (
    MigrationReport,
    RollbackInfo,
    build_summary,
    generate_recommendations,
    latest_results,
    load_summary,
    write_report,
)


@pytest.fixture
def stages(make_patch):
    return [
        Stage(1, "Foundation Setup", (make_patch("mod", "go.mod"),), (), Priority.CRITICAL, RollbackStrategy.ABORT),
        Stage(2, "Domain Entity Creation", (make_patch("ent", "entity.go"), make_patch("e2", "e2.go")), (1,), Priority.HIGH, RollbackStrategy.RETRY),
        Stage(3, "Batch 1", (make_patch("x", "x.go"),)),
    ]


def _result(stage, decision, applied=(), failed=(), attempt=1, build=None, fix_result=None):
    return StageResult(
        stage=stage,
        applied_patches=tuple(applied),
        failed_patches=tuple(failed),
        build_result=build or BuildResult(success=decision == Decision.CONTINUE),
        decision=decision,
        attempt=attempt,
        fix_result=fix_result,
    )


@pytest.fixture
def results(stages):
    foundation, entity, batch = stages
    return [
        _result(foundation, Decision.CONTINUE, applied=["mod"]),
        _result(entity, Decision.RETRY, applied=["ent", "e2"], build=BuildResult(False, errors=["a.go:1: boom"])),
        _result(entity, Decision.CONTINUE, applied=["ent", "e2"], attempt=2),
        _result(batch, Decision.SKIP, failed=["x"], build=BuildResult(False, errors=["x.go:1: undefined: Y"])),
    ]


def test_latest_results_keeps_last_attempt(results):
    latest = latest_results(results)
    assert [(r.stage.id, r.attempt) for r in latest] == [(1, 1), (2, 2), (3, 1)]


def test_build_summary(stages, results):
    summary = build_summary(
        stages,
        results,
        BuildResult(success=True),
        TestResult(success=True, total=4, passed=4, coverage_percent=72.5),
        elapsed_ms=1200,
    )

    assert summary.total_stages == 3
    assert summary.successful_stages == 2
    assert summary.skipped_stages == 1
    assert summary.failed_stages == 0
    assert summary.total_patches == 4
    assert summary.applied_patches == 3
    assert summary.failed_patches == 1
    assert summary.final_build_success is True
    assert summary.coverage_percent == 72.5


def test_recommendations(results):
    rollback = RollbackInfo(snapshot_id="abc", rolled_back=True, post_rollback_build=BuildResult(True))
    recommendations = generate_recommendations(results, rollback, ["Patch x depends on unknown patch y"])

    assert "Review failed stages and consider manual intervention" in recommendations
    assert "Stage 3: Fix build errors - x.go:1: undefined: Y" in recommendations
    assert "1 stages were skipped - consider manual completion" in recommendations
    assert any("rolled back to abc" in r for r in recommendations)
    assert "Check 1 plan warnings about patch dependencies" in recommendations


def test_recommendation_for_applied_fixes(stages):
    fix = Fix(FixKind.IMPORT, "a.go", "Update import", "package a\n", 0.9)
    results = [_result(stages[2], Decision.CONTINUE, applied=["x"], fix_result=FixResult(applied_fixes=[fix]))]
    assert "Build fixes were applied automatically - review changes" in generate_recommendations(results)


def test_write_and_load(tmp_path, stages, results):
    report = MigrationReport(
        run_id="mig-test",
        project_path=str(tmp_path),
        success=False,
        stages=stages,
        stage_results=results,
        summary=build_summary(stages, results, BuildResult(False), None, 10),
        final_build=BuildResult(False, errors=["boom"]),
        rollback=RollbackInfo(snapshot_id="abc"),
    )
    results_dir = tmp_path / "results"

    path = write_report(report, results_dir)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["run_id"] == "mig-test"
    assert [r["attempt"] for r in data["stage_results"]] == [1, 1, 2, 1]
    assert data["stages"][1]["depends_on_stage_ids"] == [1]
    assert data["final_build"]["errors"] == ["boom"]
    assert data["rollback"]["snapshot_id"] == "abc"
    assert not list(results_dir.glob("*.tmp"))

    summary = load_summary(results_dir)
    assert summary["success"] is False
    assert summary["rolled_back"] is False
    assert summary["total_stages"] == 3


def test_load_summary_missing(tmp_path):
    assert load_summary(tmp_path) is None
