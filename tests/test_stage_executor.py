"""Tests for stage execution, the decision table and retry handling."""

from unittest.mock import Mock

import pytest

from migrapack.checkpoint import CheckpointStore, ProgressTracker, ResumeOptions
from migrapack.exceptions import PatchApplicationError, RollbackFailure, SnapshotError
from migrapack.models import (
    BuildResult,
    Decision,
    Fix,
    FixKind,
    FixResult,
    Priority,
    RollbackStrategy,
    Stage,
    StageState,
    TestResult,
)
from migrapack.stage_executor import StageExecutor, decide, summarize_decisions


def _stage(stage_id, patches, priority=Priority.LOW, strategy=RollbackStrategy.SKIP, depends=()):
    return Stage(
        id=stage_id,
        name=f"Stage {stage_id}",
        patches=tuple(patches),
        depends_on_stage_ids=tuple(depends),
        priority=priority,
        rollback_strategy=strategy,
    )


def _fix():
    return Fix(
        kind=FixKind.IMPORT,
        file="main.go",
        description="Update import",
        patch_body="package main\n",
        confidence=0.9,
    )


@pytest.fixture
def verifier():
    verifier = Mock()
    verifier.build.return_value = BuildResult(success=True)
    verifier.test.return_value = TestResult(success=True, total=1, passed=1)
    verifier.parse_build_errors.return_value = []
    return verifier


@pytest.fixture
def fixer():
    fixer = Mock()
    fixer.fix.side_effect = lambda errors, context: FixResult()
    return fixer


@pytest.fixture
def backups():
    backups = Mock()
    backups.snapshot.return_value = "abc123"
    return backups


@pytest.fixture
def applier():
    applier = Mock()
    applier.apply.return_value = []
    return applier


@pytest.fixture
def make_executor(execution_context, applier, verifier, fixer, backups):
    sleep = Mock()

    def _make(tracker=None):
        executor = StageExecutor(
            execution_context,
            applier=applier,
            verifier=verifier,
            fixer=fixer,
            backups=backups,
            tracker=tracker,
            sleep=sleep,
        )
        executor.sleep_mock = sleep
        return executor

    return _make


class TestDecide:
    @pytest.mark.parametrize(
        "priority, strategy, success, failed_patches, retries_left, expected",
        [
            (Priority.CRITICAL, RollbackStrategy.ABORT, True, False, True, Decision.CONTINUE),
            (Priority.CRITICAL, RollbackStrategy.ABORT, True, True, True, Decision.ABORT),
            (Priority.CRITICAL, RollbackStrategy.ABORT, False, False, True, Decision.ABORT),
            (Priority.HIGH, RollbackStrategy.RETRY, True, True, True, Decision.CONTINUE),
            (Priority.HIGH, RollbackStrategy.RETRY, False, False, True, Decision.RETRY),
            (Priority.HIGH, RollbackStrategy.RETRY, False, False, False, Decision.SKIP),
            (Priority.HIGH, RollbackStrategy.SKIP, False, False, True, Decision.SKIP),
            (Priority.MEDIUM, RollbackStrategy.RETRY, False, False, True, Decision.SKIP),
            (Priority.LOW, RollbackStrategy.SKIP, False, True, True, Decision.SKIP),
            (Priority.LOW, RollbackStrategy.SKIP, True, False, False, Decision.CONTINUE),
        ],
    )
    def test_decision_table(
        self, make_patch, priority, strategy, success, failed_patches, retries_left, expected
    ):
        stage = _stage(1, [make_patch("p", "a.go")], priority=priority, strategy=strategy)
        assert decide(stage, success, failed_patches, retries_left) == expected


class TestStageExecution:
    def test_successful_stage_trace(self, make_executor, make_patch, verifier, backups):
        stage = _stage(1, [make_patch("p1", "a.go"), make_patch("p2", "b.go")])

        results = make_executor().execute([stage])

        assert len(results) == 1
        result = results[0]
        assert result.decision == Decision.CONTINUE
        assert result.applied_patches == ("p1", "p2")
        assert result.backup_id == "abc123"
        assert result.trace == (
            StageState.PENDING,
            StageState.SNAPSHOT,
            StageState.APPLYING,
            StageState.BUILDING,
            StageState.TESTING,
            StageState.DECIDED,
        )
        backups.snapshot.assert_called_once_with("stage-1-attempt-1")
        verifier.build.assert_called_once()

    def test_critical_failure_aborts_pipeline(self, make_executor, make_patch, verifier, applier):
        verifier.build.return_value = BuildResult(success=False, errors=["main.go:1:1: boom"])
        foundation = _stage(
            1, [make_patch("mod", "go.mod")], Priority.CRITICAL, RollbackStrategy.ABORT
        )
        later = _stage(2, [make_patch("x", "cmd/main.go")])

        executor = make_executor()
        results = executor.execute([foundation, later])

        assert [r.stage.id for r in results] == [1]
        assert results[0].decision == Decision.ABORT
        assert executor.aborted
        applied = [call.args[0].id for call in applier.apply.call_args_list]
        assert applied == ["mod"]

    def test_critical_patch_failure_aborts_even_if_build_passes(
        self, make_executor, make_patch, applier
    ):
        applier.apply.side_effect = PatchApplicationError("bad path", patch_id="mod")
        foundation = _stage(
            1, [make_patch("mod", "go.mod")], Priority.CRITICAL, RollbackStrategy.ABORT
        )

        result = make_executor().execute([foundation])[0]

        assert result.decision == Decision.ABORT
        assert result.failed_patches == ("mod",)
        assert any("bad path" in note for note in result.notes)

    def test_single_rebuild_after_fixes(self, make_executor, make_patch, verifier, fixer):
        verifier.build.side_effect = [
            BuildResult(success=False, errors=["main.go:3:2: cannot find package \"a\""]),
            BuildResult(success=True),
        ]
        fixer.fix.side_effect = lambda errors, context: FixResult(
            fixes=[_fix()], applied_fixes=[_fix()]
        )

        result = make_executor().execute([_stage(1, [make_patch("p", "main.go")])])[0]

        assert result.decision == Decision.CONTINUE
        assert verifier.build.call_count == 2
        assert result.trace.count(StageState.REBUILDING) == 1
        assert result.fix_result.rebuild_result.success is True
        context = fixer.fix.call_args.args[1]
        assert context.stage_name == "Stage 1"

    def test_no_rebuild_when_nothing_fixed(self, make_executor, make_patch, verifier):
        verifier.build.return_value = BuildResult(success=False, errors=["x.go:1: syntax error"])

        result = make_executor().execute([_stage(1, [make_patch("p", "x.go")])])[0]

        assert verifier.build.call_count == 1
        assert StageState.REBUILDING not in result.trace
        assert "No fix applied; rebuild skipped" in result.notes
        assert result.decision == Decision.SKIP

    def test_at_most_one_rebuild_per_attempt(self, make_executor, make_patch, verifier, fixer):
        verifier.build.return_value = BuildResult(success=False, errors=["a.go:1: undefined: X"])
        fixer.fix.side_effect = lambda errors, context: FixResult(applied_fixes=[_fix()])
        stage = _stage(
            1, [make_patch("e", "internal/user/entity.go")], Priority.HIGH, RollbackStrategy.RETRY
        )

        results = make_executor().execute([stage])

        assert [r.attempt for r in results] == [1, 2, 3]
        assert [r.decision for r in results] == [Decision.RETRY, Decision.RETRY, Decision.SKIP]
        assert verifier.build.call_count == 6
        assert all(r.trace.count(StageState.REBUILDING) == 1 for r in results)

    def test_retry_backoff_is_linear(self, make_executor, make_patch, verifier, config):
        config.retry_backoff_seconds = 1.5
        verifier.build.return_value = BuildResult(success=False, errors=["a.go:1: boom"])
        stage = _stage(1, [make_patch("e", "entity.go")], Priority.HIGH, RollbackStrategy.RETRY)

        executor = make_executor()
        executor.execute([stage])

        assert [c.args[0] for c in executor.sleep_mock.call_args_list] == [1.5, 3.0]

    def test_retry_succeeds_on_second_attempt(self, make_executor, make_patch, verifier):
        verifier.build.side_effect = [
            BuildResult(success=False, errors=["a.go:1: boom"]),
            BuildResult(success=True),
        ]
        stage = _stage(1, [make_patch("e", "entity.go")], Priority.HIGH, RollbackStrategy.RETRY)

        results = make_executor().execute([stage])

        assert [r.decision for r in results] == [Decision.RETRY, Decision.CONTINUE]
        assert results[-1].attempt == 2

    def test_failed_tests_count_as_failure(self, make_executor, make_patch, verifier):
        verifier.test.return_value = TestResult(success=False, total=2, passed=1, failed=1)

        result = make_executor().execute([_stage(1, [make_patch("p", "a.go")])])[0]

        assert result.decision == Decision.SKIP
        assert result.test_result.failed == 1

    def test_skip_tests(self, make_executor, make_patch, verifier, execution_context):
        execution_context.skip_tests = True

        result = make_executor().execute([_stage(1, [make_patch("p", "a.go")])])[0]

        verifier.test.assert_not_called()
        assert StageState.TESTING not in result.trace

    def test_snapshot_failure_is_not_fatal(self, make_executor, make_patch, backups):
        backups.snapshot.side_effect = SnapshotError("no HEAD")

        result = make_executor().execute([_stage(1, [make_patch("p", "a.go")])])[0]

        assert result.decision == Decision.CONTINUE
        assert result.backup_id is None
        assert any("Snapshot failed" in note for note in result.notes)

    def test_stage_backups_disabled(self, make_executor, make_patch, backups, config):
        config.create_stage_backups = False
        make_executor().execute([_stage(1, [make_patch("p", "a.go")])])
        backups.snapshot.assert_not_called()

    def test_unexpected_error_becomes_synthetic_result(self, make_executor, make_patch, verifier):
        verifier.build.side_effect = RuntimeError("tool exploded")
        stages = [
            _stage(1, [make_patch("a", "a.go")]),
            _stage(2, [make_patch("mod", "go.mod")], Priority.CRITICAL, RollbackStrategy.ABORT),
        ]

        results = make_executor().execute(stages)

        assert [r.decision for r in results] == [Decision.SKIP, Decision.ABORT]
        assert "tool exploded" in results[0].notes[0]
        assert results[1].failed_patches == ("mod",)

    def test_rollback_failure_propagates(self, make_executor, make_patch, verifier):
        verifier.build.side_effect = RollbackFailure("reset failed", snapshot_id="abc")

        with pytest.raises(RollbackFailure):
            make_executor().execute([_stage(1, [make_patch("a", "a.go")])])

    def test_unmet_dependency(self, make_executor, make_patch, verifier, applier):
        verifier.build.side_effect = [
            BuildResult(success=False, errors=["a.go:1: boom"]),
            BuildResult(success=True),
        ]
        first = _stage(1, [make_patch("a", "a.go")], Priority.HIGH, RollbackStrategy.SKIP)
        second = _stage(2, [make_patch("b", "b.go")], depends=(1,))

        results = make_executor().execute([first, second])

        assert results[0].decision == Decision.SKIP
        assert results[1].decision == Decision.SKIP
        assert results[1].failed_patches == ("b",)
        assert "Unmet dependencies" in results[1].notes[0]
        assert applier.apply.call_count == 1

    def test_unmet_dependency_on_critical_stage_aborts(self, make_executor, make_patch, verifier):
        verifier.build.return_value = BuildResult(success=False, errors=["a.go:1: boom"])
        first = _stage(1, [make_patch("a", "a.go")])
        second = _stage(
            2, [make_patch("mod", "go.mod")], Priority.CRITICAL, RollbackStrategy.ABORT, (1,)
        )

        results = make_executor().execute([first, second])

        assert [r.decision for r in results] == [Decision.SKIP, Decision.ABORT]

    def test_operator_skip_and_resume_from_stage(
        self, make_executor, make_patch, applier, execution_context
    ):
        execution_context.skip_stages = {2}
        execution_context.resume_from_stage = 2
        stages = [
            _stage(1, [make_patch("a", "a.go")]),
            _stage(2, [make_patch("b", "b.go")]),
            _stage(3, [make_patch("c", "c.go")]),
        ]

        results = make_executor().execute(stages)

        assert [r.decision for r in results] == [Decision.CONTINUE, Decision.SKIP, Decision.CONTINUE]
        assert results[0].restored is True
        assert [c.args[0].id for c in applier.apply.call_args_list] == ["c"]

    def test_non_critical_skip_note(self, make_executor, make_patch, verifier, config):
        config.continue_on_non_critical_failure = False
        verifier.build.return_value = BuildResult(success=False, errors=["a.go:1: boom"])

        result = make_executor().execute([_stage(1, [make_patch("a", "a.go")])])[0]

        assert result.decision == Decision.SKIP
        assert any("never aborts" in note for note in result.notes)


class TestResumeSelection:
    def test_reprocesses_failed_and_unprocessed_files(
        self, make_executor, make_patch, applier, execution_context
    ):
        store = CheckpointStore(execution_context.project_path, execution_context.state_dir)
        execution_context.checkpoint = store.create(
            current_step="apply",
            total_files=5,
            processed_files=["a.go", "b.go"],
            failed_files=["c.go"],
        )
        stage = _stage(1, [make_patch(name, f"{name}.go") for name in "abcde"])

        result = make_executor().execute([stage])[0]

        assert [c.args[0].target_file for c in applier.apply.call_args_list] == [
            "c.go",
            "d.go",
            "e.go",
        ]
        assert result.applied_patches == ("c", "d", "e")

    def test_fully_processed_stage_is_restored(
        self, make_executor, make_patch, applier, verifier, execution_context
    ):
        store = CheckpointStore(execution_context.project_path, execution_context.state_dir)
        execution_context.checkpoint = store.create(
            current_step="apply", total_files=1, processed_files=["a.go"]
        )

        result = make_executor().execute([_stage(1, [make_patch("a", "a.go")])])[0]

        assert result.decision == Decision.CONTINUE
        assert result.restored is True
        applier.apply.assert_not_called()
        verifier.build.assert_not_called()

    def test_only_files_filter(self, make_executor, make_patch, applier, execution_context):
        execution_context.resume_options = ResumeOptions(only_files=["user"])
        stage = _stage(1, [make_patch("u", "internal/user/a.go"), make_patch("o", "order/b.go")])

        make_executor().execute([stage])

        assert [c.args[0].id for c in applier.apply.call_args_list] == ["u"]


class TestProgressTracking:
    def test_tracker_records_final_attempt(self, make_executor, make_patch, verifier, execution_context):
        store = CheckpointStore(execution_context.project_path, execution_context.state_dir)
        tracker = ProgressTracker(store.create(current_step="apply", total_files=3))
        verifier.build.side_effect = [
            BuildResult(success=True),
            BuildResult(success=False, errors=["b.go:1: boom"]),
        ]
        stages = [
            _stage(1, [make_patch("a", "a.go")]),
            _stage(2, [make_patch("b", "b.go"), make_patch("c", "c.go")]),
        ]

        make_executor(tracker=tracker).execute(stages)

        assert tracker.progress.processed_files == ["a.go"]
        assert tracker.progress.failed_files == ["b.go", "c.go"]
        assert tracker.progress.current_index == 2
        assert tracker.checkpoint.step_results["stage_2"] == {"decision": "skip", "attempts": 1}


def test_summarize_decisions_uses_latest_attempt(make_patch):
    stage = _stage(1, [make_patch("a", "a.go")], Priority.HIGH, RollbackStrategy.RETRY)
    other = _stage(2, [make_patch("b", "b.go")])

    def result(s, decision, attempt=1):
        from migrapack.models import StageResult

        return StageResult(
            stage=s,
            applied_patches=(),
            failed_patches=(),
            build_result=BuildResult(success=decision == Decision.CONTINUE),
            decision=decision,
            attempt=attempt,
        )

    results = [
        result(stage, Decision.RETRY),
        result(stage, Decision.CONTINUE, attempt=2),
        result(other, Decision.SKIP),
    ]
    assert summarize_decisions(results) == (1, 1, 0)
