"""Run-time data model for staged migrations.

Stages, per-stage results, build/test results and fix candidates. These are
produced in-process and serialized into the checkpoint and run report through
their ``to_dict`` methods.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .manifest import Patch


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RollbackStrategy(str, Enum):
    ABORT = "abort"
    SKIP = "skip"
    RETRY = "retry"


class Decision(str, Enum):
    """Per-stage outcome that determines pipeline continuation."""

    CONTINUE = "continue"
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


class StageState(str, Enum):
    """States a stage passes through, strictly in this order."""

    PENDING = "pending"
    SNAPSHOT = "snapshot"
    APPLYING = "applying"
    BUILDING = "building"
    FIXING = "fixing"
    REBUILDING = "rebuilding"
    TESTING = "testing"
    DECIDED = "decided"


class ErrorKind(str, Enum):
    IMPORT = "import"
    TYPE = "type"
    SYNTAX = "syntax"
    DEPENDENCY = "dependency"


class FixKind(str, Enum):
    IMPORT = "import"
    DEPENDENCY = "dependency"
    TYPE = "type"
    CONFIG = "config"


@dataclass
class Stage:
    """A dependency-ordered, atomically-decided batch of patches."""

    id: int
    name: str
    patches: Tuple[Patch, ...]
    depends_on_stage_ids: Tuple[int, ...] = ()
    priority: Priority = Priority.LOW
    rollback_strategy: RollbackStrategy = RollbackStrategy.SKIP

    @property
    def patch_ids(self) -> List[str]:
        return [p.id for p in self.patches]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "patches": self.patch_ids,
            "depends_on_stage_ids": list(self.depends_on_stage_ids),
            "priority": self.priority.value,
            "rollback_strategy": self.rollback_strategy.value,
        }


@dataclass
class BuildResult:
    """Outcome of one build invocation."""

    success: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duration_ms: int = 0
    timed_out: bool = False
    output: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
        }


@dataclass
class TestResult:
    """Outcome of one test invocation."""

    __test__ = False

    success: bool
    total: int = 0
    passed: int = 0
    failed: int = 0
    coverage_percent: Optional[float] = None
    duration_ms: int = 0
    timed_out: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "coverage_percent": self.coverage_percent,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
        }


@dataclass
class BuildError:
    """A classified build error location."""

    file: str
    line: int
    column: int
    kind: ErrorKind
    message: str
    context: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "kind": self.kind.value,
            "message": self.message,
            "context": self.context,
        }


@dataclass
class Fix:
    """A mechanically generated remediation for a classified build error.

    ``patch_body`` is the full new content of ``file``.
    """

    kind: FixKind
    file: str
    description: str
    patch_body: str
    confidence: float

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Fix confidence must be within [0, 1], got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "file": self.file,
            "description": self.description,
            "confidence": self.confidence,
        }


@dataclass
class FixResult:
    """What the fixing state did for one stage attempt."""

    fixes: List[Fix] = field(default_factory=list)
    applied_fixes: List[Fix] = field(default_factory=list)
    failed_fixes: List[Tuple[Fix, str]] = field(default_factory=list)
    tidy_ran: bool = False
    rebuild_result: Optional[BuildResult] = None

    @property
    def changed_anything(self) -> bool:
        return bool(self.applied_fixes) or self.tidy_ran

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fixes": [f.to_dict() for f in self.fixes],
            "applied_fixes": [f.to_dict() for f in self.applied_fixes],
            "failed_fixes": [{**f.to_dict(), "error": err} for f, err in self.failed_fixes],
            "tidy_ran": self.tidy_ran,
            "rebuild_result": self.rebuild_result.to_dict() if self.rebuild_result else None,
        }


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage attempt. Appended to the result log, never mutated."""

    stage: Stage
    applied_patches: Tuple[str, ...]
    failed_patches: Tuple[str, ...]
    build_result: BuildResult
    decision: Decision
    elapsed_ms: int = 0
    test_result: Optional[TestResult] = None
    fix_result: Optional[FixResult] = None
    attempt: int = 1
    backup_id: Optional[str] = None
    notes: Tuple[str, ...] = ()
    restored: bool = False
    trace: Tuple[StageState, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage.id,
            "stage_name": self.stage.name,
            "priority": self.stage.priority.value,
            "attempt": self.attempt,
            "decision": self.decision.value,
            "applied_patches": list(self.applied_patches),
            "failed_patches": list(self.failed_patches),
            "build_result": self.build_result.to_dict(),
            "test_result": self.test_result.to_dict() if self.test_result else None,
            "fix_result": self.fix_result.to_dict() if self.fix_result else None,
            "elapsed_ms": self.elapsed_ms,
            "backup_id": self.backup_id,
            "notes": list(self.notes),
            "restored": self.restored,
            "trace": [s.value for s in self.trace],
        }
