"""
Build error classification.

Maps raw build-tool error lines onto a small set of kinds so the build fixer
can pick a repair heuristic. Classification is purely textual; an unmatched
message is treated as a syntax error, which no heuristic repairs.
"""

import logging
import re
from typing import Iterable, List, Optional, Tuple

from .models import BuildError, ErrorKind

logger = logging.getLogger(__name__)


IMPORT_PATTERNS = [
    r"cannot find package",
    r"cannot find module",
    r"no required module provides package",
    r"No module named",
    r"ModuleNotFoundError",
    r"Cannot find module",
    r"Module not found",
    r"could not import",
]

DEPENDENCY_PATTERNS = [
    r"go\.mod",
    r"missing go\.sum entry",
    r"updates to go\.mod needed",
    r"module declares its path",
]

TYPE_PATTERNS = [
    r"undefined:",
    r"cannot find type",
    r"cannot use",
    r"has no field or method",
    r"NameError",
    r"is not defined",
]

# go/gcc style "file:line:col: message" and "file:line: message"
_LOCATION_RE = re.compile(
    r"^\s*(?P<file>[^\s:][^:]*?\.[A-Za-z0-9]+):(?P<line>\d+)(?::(?P<col>\d+))?:\s*(?P<msg>.*)$"
)
# tsc style "file(line,col): error TS1234: message"
_TSC_LOCATION_RE = re.compile(
    r"^\s*(?P<file>[^\s(][^(]*?\.[A-Za-z0-9]+)\((?P<line>\d+),(?P<col>\d+)\):\s*(?P<msg>.*)$"
)
# python traceback 'File "x.py", line N'
_PY_LOCATION_RE = re.compile(r'File "(?P<file>[^"]+)", line (?P<line>\d+)')


class BuildErrorClassifier:
    """Classify build-tool error lines into BuildError records."""

    def __init__(self):
        self._import = [re.compile(p) for p in IMPORT_PATTERNS]
        self._dependency = [re.compile(p) for p in DEPENDENCY_PATTERNS]
        self._type = [re.compile(p) for p in TYPE_PATTERNS]

    def classify_message(self, message: str) -> ErrorKind:
        """Return the error kind for one message.

        Import patterns are checked before dependency patterns: a missing
        package report that mentions go.mod is still an import problem.
        """
        if any(p.search(message) for p in self._import):
            return ErrorKind.IMPORT
        if any(p.search(message) for p in self._dependency):
            return ErrorKind.DEPENDENCY
        if any(p.search(message) for p in self._type):
            return ErrorKind.TYPE
        return ErrorKind.SYNTAX

    def parse_line(self, line: str) -> Optional[BuildError]:
        stripped = line.strip()
        if not stripped:
            return None

        file_path, line_no, column, message = self._split_location(stripped)
        return BuildError(
            file=file_path,
            line=line_no,
            column=column,
            kind=self.classify_message(message),
            message=message,
            context=stripped if message != stripped else None,
        )

    def parse(self, lines: Iterable[str]) -> List[BuildError]:
        """Parse error lines, dropping blanks and exact duplicates."""
        seen = set()
        errors: List[BuildError] = []
        for raw in lines:
            for line in str(raw).splitlines():
                error = self.parse_line(line)
                if error is None:
                    continue
                key = (error.file, error.line, error.column, error.message)
                if key in seen:
                    continue
                seen.add(key)
                errors.append(error)
        if errors:
            kinds = {}
            for e in errors:
                kinds[e.kind.value] = kinds.get(e.kind.value, 0) + 1
            logger.debug(f"Classified {len(errors)} build errors: {kinds}")
        return errors

    @staticmethod
    def _split_location(line: str) -> Tuple[str, int, int, str]:
        for pattern in (_LOCATION_RE, _TSC_LOCATION_RE):
            match = pattern.match(line)
            if match:
                return (
                    match.group("file").strip(),
                    int(match.group("line")),
                    int(match.group("col") or 0),
                    match.group("msg").strip(),
                )
        match = _PY_LOCATION_RE.search(line)
        if match:
            return match.group("file"), int(match.group("line")), 0, line
        return "", 0, 0, line


def parse_build_errors(output: str) -> List[BuildError]:
    """Convert raw error output into classified BuildError records."""
    return BuildErrorClassifier().parse(output.splitlines())
