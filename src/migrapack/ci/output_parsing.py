"""Parsing helpers for build/test tool output.

The formats recognized here are a compatibility surface: ``go build`` and
``go test -v`` output, ``go tool cover -func`` summaries, and the
``N passed, M failed`` summary line printed by pytest/jest style runners.
"""

import re
from typing import List, Optional, Tuple

_ERROR_MARKERS = ("error:", "Error:", "cannot find", "undefined:")
_LOCATION_RE = re.compile(r"[\w./\\-]+\.[A-Za-z0-9]+:\d+(?::\d+)?:")

_GO_PASS_RE = re.compile(r"^\s*--- PASS:")
_GO_FAIL_RE = re.compile(r"^\s*--- FAIL:")
_GO_RUN_RE = re.compile(r"^=== RUN\s+(\S+)")

_SUMMARY_PASSED_RE = re.compile(r"(\d+)\s+passed", re.IGNORECASE)
_SUMMARY_FAILED_RE = re.compile(r"(\d+)\s+failed", re.IGNORECASE)

_COVER_TOTAL_RE = re.compile(r"^total:.*?(\d+(?:\.\d+)?)%", re.MULTILINE)
_COVER_STATEMENTS_RE = re.compile(r"coverage:\s+(\d+(?:\.\d+)?)% of statements")


def extract_error_lines(output: str) -> List[str]:
    """Return the lines of build output that report an error."""
    lines = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if any(marker in stripped for marker in _ERROR_MARKERS) or _LOCATION_RE.search(stripped):
            lines.append(stripped)
    return lines


def extract_warning_lines(output: str) -> List[str]:
    """Return lines carrying a ``warning:`` marker."""
    return [line.strip() for line in output.splitlines() if "warning:" in line.lower()]


def parse_test_counts(output: str) -> Tuple[int, int, int]:
    """Parse test output into (total, passed, failed).

    ``go test -v`` result lines are preferred. Subtests are counted like
    top-level tests. When no such lines exist the last ``N passed`` /
    ``M failed`` summary wins.
    """
    passed = failed = runs = 0
    for line in output.splitlines():
        if _GO_PASS_RE.match(line):
            passed += 1
        elif _GO_FAIL_RE.match(line):
            failed += 1
        elif _GO_RUN_RE.match(line):
            runs += 1

    if passed or failed or runs:
        return max(runs, passed + failed), passed, failed

    for line in output.splitlines():
        passed_match = _SUMMARY_PASSED_RE.search(line)
        if passed_match:
            passed = int(passed_match.group(1))
        failed_match = _SUMMARY_FAILED_RE.search(line)
        if failed_match:
            failed = int(failed_match.group(1))
    return passed + failed, passed, failed


def parse_coverage_total(output: str) -> Optional[float]:
    """Parse a coverage percentage.

    Uses the ``total:`` line of ``go tool cover -func``; otherwise averages the
    per-package ``coverage: X% of statements`` lines.
    """
    match = _COVER_TOTAL_RE.search(output)
    if match:
        return float(match.group(1))

    values = [float(v) for v in _COVER_STATEMENTS_RE.findall(output)]
    if values:
        return round(sum(values) / len(values), 1)
    return None


def trim_output(output: str, limit: int = 10000) -> str:
    """Trim tool output to reasonable size."""
    if len(output) <= limit:
        return output
    return output[: limit // 2] + "\n\n... (truncated) ...\n\n" + output[-limit // 2 :]
