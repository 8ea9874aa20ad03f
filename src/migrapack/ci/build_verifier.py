"""Build and test verification for migration stages.

Runs the project's configured build and test commands as blocking external
processes and turns their output into BuildResult/TestResult values. A
timeout is reported exactly like a tool failure.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from ..config_loader import MigrationConfig
from ..error_classifier import parse_build_errors
from ..models import BuildError, BuildResult, TestResult
from ..process import CommandResult, run_command
from .output_parsing import (
    extract_error_lines,
    extract_warning_lines,
    parse_coverage_total,
    parse_test_counts,
    trim_output,
)


class BuildVerifier:
    """Runs build/test commands for a project.

    Responsibilities:
    1. Execute the build and test commands with explicit cwd and timeout
    2. Extract error/warning lines and test counts
    3. Read coverage when the coverage artifact exists
    4. Persist full tool output under the run's log directory
    """

    def __init__(
        self,
        project_path: Path,
        config: MigrationConfig,
        log_dir: Optional[Path] = None,
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None,
        runner: Callable[..., CommandResult] = run_command,
    ):
        self.project_path = Path(project_path)
        self.config = config
        self.log_dir = log_dir
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger(__name__)
        self._run = runner
        self._sequence = 0

    def build(self, timeout_seconds: Optional[float] = None) -> BuildResult:
        """Run the build command once.

        Returns:
            BuildResult; on failure ``errors`` holds the extracted error lines,
            on success ``warnings`` holds warning lines from stderr.
        """
        if self.dry_run:
            self.logger.info("[Build] Dry run: skipping build command")
            return BuildResult(success=True)

        timeout = timeout_seconds or self.config.build_timeout_seconds
        self.logger.info(f"[Build] Running: {self.config.build_command}")
        result = self._run(self.config.build_command, cwd=self.project_path, timeout=timeout)
        self._persist_log("build", result)

        if result.ok:
            warnings = extract_warning_lines(result.stderr)
            self.logger.info(
                f"[Build] PASSED in {result.duration_ms}ms ({len(warnings)} warnings)"
            )
            return BuildResult(
                success=True,
                warnings=warnings,
                duration_ms=result.duration_ms,
                output=trim_output(result.output),
            )

        if result.timed_out:
            errors = [f"Build timed out after {timeout}s"]
        else:
            errors = extract_error_lines(result.output)
            if not errors:
                errors = [f"Build command exited with code {result.returncode}"]
        self.logger.warning(f"[Build] FAILED with {len(errors)} errors")
        return BuildResult(
            success=False,
            errors=errors,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
            output=trim_output(result.output),
        )

    def test(self, timeout_seconds: Optional[float] = None) -> TestResult:
        """Run the test command once, then read coverage if available."""
        if self.dry_run:
            self.logger.info("[Test] Dry run: skipping test command")
            return TestResult(success=True)

        timeout = timeout_seconds or self.config.test_timeout_seconds
        self.logger.info(f"[Test] Running: {self.config.test_command}")
        result = self._run(self.config.test_command, cwd=self.project_path, timeout=timeout)
        self._persist_log("test", result)

        total, passed, failed = parse_test_counts(result.stdout + "\n" + result.stderr)
        coverage = None if result.timed_out else self._read_coverage(result)

        success = result.ok
        if success:
            self.logger.info(
                f"[Test] PASSED: {passed}/{max(total, 1)} tests"
                + (f", coverage {coverage}%" if coverage is not None else "")
            )
        elif result.timed_out:
            self.logger.warning(f"[Test] Timed out after {timeout}s")
        else:
            self.logger.warning(f"[Test] FAILED: {failed} failed of {total}")

        return TestResult(
            success=success,
            total=total,
            passed=passed,
            failed=failed,
            coverage_percent=coverage,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
        )

    def parse_build_errors(self, build_result: BuildResult) -> List[BuildError]:
        """Classify a failed build's error lines."""
        return parse_build_errors("\n".join(build_result.errors))

    def _read_coverage(self, test_run: CommandResult) -> Optional[float]:
        coverage_file = self.config.coverage_file
        if coverage_file and self.config.coverage_command:
            if (self.project_path / coverage_file).exists():
                cover = self._run(
                    self.config.coverage_command,
                    cwd=self.project_path,
                    timeout=self.config.build_timeout_seconds,
                )
                if cover.ok:
                    value = parse_coverage_total(cover.stdout)
                    if value is not None:
                        return value
                else:
                    self.logger.debug(f"[Test] Coverage command failed: {cover.stderr.strip()}")
        return parse_coverage_total(test_run.stdout)

    def _persist_log(self, kind: str, result: CommandResult) -> Optional[Path]:
        """Persist the full output of a run (best effort)."""
        if self.log_dir is None:
            return None
        self._sequence += 1
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = Path(self.log_dir) / f"{kind}_{self._sequence:03d}_{timestamp}.log"
        content = (
            f"$ {' '.join(result.command)}\n"
            f"exit: {result.returncode} timed_out: {result.timed_out}\n\n"
            + result.stdout
            + "\n\n--- STDERR ---\n\n"
            + result.stderr
        )
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text(content, encoding="utf-8")
            self.logger.debug(f"[{kind.title()}] Output written to: {log_path}")
            return log_path
        except OSError as e:
            self.logger.warning(f"[{kind.title()}] Failed to write log ({log_path}): {e}")
            return None
