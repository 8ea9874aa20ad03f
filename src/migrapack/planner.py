"""Partition an unordered patch set into dependency-ordered stages.

Each patch lands in the first bucket whose signal matches its target file,
patch id, or any change target path. Buckets run foundation scaffolding
first, then domain entities, persistence, services and finally inbound
handlers. Unmatched patches are grouped into trailing low-priority batches.

Contract:
- every input patch appears in exactly one stage
- every stage dependency id is smaller than the stage's own id
"""

import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .manifest import Patch
from .models import Priority, RollbackStrategy, Stage

FOUNDATION_FILES = {
    "go.mod",
    "go.sum",
    "package.json",
    "tsconfig.json",
    "pyproject.toml",
    "setup.cfg",
    "__init__.py",
    "doc.go",
}


@dataclass(frozen=True)
class Bucket:
    key: str
    name: str
    pattern: Optional[re.Pattern]
    priority: Priority
    rollback_strategy: RollbackStrategy
    depends_on: Tuple[str, ...] = ()


BUCKETS: List[Bucket] = [
    Bucket("foundation", "Foundation Setup", None, Priority.CRITICAL, RollbackStrategy.ABORT),
    Bucket(
        "entity",
        "Domain Entity Creation",
        re.compile(r"entit(?:y|ies)|domain|(?<![a-z])models?(?![a-z])"),
        Priority.HIGH,
        RollbackStrategy.RETRY,
        ("foundation",),
    ),
    Bucket(
        "repository",
        "Repository Layer",
        re.compile(
            r"repositor(?:y|ies)|(?<![a-z])repos?(?![a-z])|persistence|(?<![a-z])stores?(?![a-z])"
        ),
        Priority.HIGH,
        RollbackStrategy.RETRY,
        ("foundation", "entity"),
    ),
    Bucket(
        "service",
        "Service Layer",
        re.compile(r"service|usecase|use_case"),
        Priority.MEDIUM,
        RollbackStrategy.SKIP,
        ("entity", "repository"),
    ),
    Bucket(
        "handler",
        "Handler Layer",
        re.compile(r"handler|controller|router|(?<![a-z])api(?![a-z])"),
        Priority.MEDIUM,
        RollbackStrategy.SKIP,
        ("repository", "service"),
    ),
]


def _signals(patch: Patch) -> List[str]:
    """Lower-cased, camelCase-split strings a bucket can match on."""
    raw = [patch.target_file, patch.id] + [c.target_path for c in patch.changes]
    return [re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", s).replace("\\", "/").lower() for s in raw]


def _is_foundation(patch: Patch) -> bool:
    paths = [patch.target_file] + [c.target_path for c in patch.changes]
    for path in paths:
        normalized = path.replace("\\", "/")
        if normalized.endswith("/"):
            return True
        if posixpath.basename(normalized) in FOUNDATION_FILES:
            return True
    return False


def classify_patch(patch: Patch) -> Optional[str]:
    """Return the key of the first matching bucket, or None."""
    if _is_foundation(patch):
        return "foundation"
    signals = _signals(patch)
    for bucket in BUCKETS:
        if bucket.pattern is None:
            continue
        if any(bucket.pattern.search(s) for s in signals):
            return bucket.key
    return None


class PatchPlanner:
    """Turns a flat list of patches into ordered stages."""

    def __init__(self, max_stage_size: int = 5, logger: Optional[logging.Logger] = None):
        if max_stage_size < 1:
            raise ValueError(f"max_stage_size must be >= 1, got {max_stage_size}")
        self.max_stage_size = max_stage_size
        self.logger = logger or logging.getLogger(__name__)
        self.warnings: List[str] = []

    def plan(self, patches: Sequence[Patch]) -> List[Stage]:
        """Partition patches into stages.

        Plan warnings (unknown or non-backward patch dependencies) are left in
        ``self.warnings``.
        """
        self.warnings = []
        buckets: Dict[str, List[Patch]] = {b.key: [] for b in BUCKETS}
        remaining: List[Patch] = []
        for patch in patches:
            key = classify_patch(patch)
            if key is None:
                remaining.append(patch)
            else:
                buckets[key].append(patch)

        stages: List[Stage] = []
        stage_for_bucket: Dict[str, int] = {}
        for bucket in BUCKETS:
            members = buckets[bucket.key]
            if not members:
                continue
            stage_id = len(stages) + 1
            depends = sorted(
                stage_for_bucket[dep] for dep in bucket.depends_on if dep in stage_for_bucket
            )
            stages.append(
                Stage(
                    id=stage_id,
                    name=bucket.name,
                    patches=tuple(members),
                    depends_on_stage_ids=tuple(depends),
                    priority=bucket.priority,
                    rollback_strategy=bucket.rollback_strategy,
                )
            )
            stage_for_bucket[bucket.key] = stage_id

        for batch_no, start in enumerate(range(0, len(remaining), self.max_stage_size), start=1):
            stages.append(
                Stage(
                    id=len(stages) + 1,
                    name=f"Batch {batch_no}",
                    patches=tuple(remaining[start : start + self.max_stage_size]),
                    depends_on_stage_ids=(),
                    priority=Priority.LOW,
                    rollback_strategy=RollbackStrategy.SKIP,
                )
            )

        stages = self._add_patch_dependencies(stages)

        self.logger.info(
            f"[Planner] Planned {len(stages)} stages for {len(patches)} patches"
            + (f" ({len(self.warnings)} warnings)" if self.warnings else "")
        )
        for warning in self.warnings:
            self.logger.warning(f"[Planner] {warning}")
        return stages

    def _add_patch_dependencies(self, stages: List[Stage]) -> List[Stage]:
        """Add backward stage edges implied by patch-level dependencies."""
        stage_of: Dict[str, int] = {}
        for stage in stages:
            for patch in stage.patches:
                stage_of[patch.id] = stage.id

        result = []
        for stage in stages:
            depends = set(stage.depends_on_stage_ids)
            for patch in stage.patches:
                for dep in patch.dependencies:
                    dep_stage = stage_of.get(dep)
                    if dep_stage is None:
                        self.warnings.append(
                            f"Patch {patch.id} depends on unknown patch {dep}"
                        )
                    elif dep_stage == stage.id:
                        self.warnings.append(
                            f"Patch {patch.id} depends on {dep} in the same stage {stage.id}"
                        )
                    elif dep_stage > stage.id:
                        self.warnings.append(
                            f"Patch {patch.id} (stage {stage.id}) depends on {dep} "
                            f"in later stage {dep_stage}; dependency ignored"
                        )
                    else:
                        depends.add(dep_stage)
            if depends != set(stage.depends_on_stage_ids):
                stage = Stage(
                    id=stage.id,
                    name=stage.name,
                    patches=stage.patches,
                    depends_on_stage_ids=tuple(sorted(depends)),
                    priority=stage.priority,
                    rollback_strategy=stage.rollback_strategy,
                )
            result.append(stage)
        return result
