"""Pydantic schemas for the patch manifest.

The manifest is produced by an external patch producer:

    {
      "summary": {"total_patches": 3, "target_modules": ["user"], "estimated_time": "5m"},
      "patches": [{"id": "...", "target_file": "...", "changes": [...], ...}],
      "migration_context": {"moved_packages": {...}, "moved_symbols": {...}}
    }

Keys are accepted in snake_case or camelCase; ``type`` is accepted as an alias
for a change's ``kind``.
"""

from __future__ import annotations

import json
import logging
import posixpath
import re
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .exceptions import ManifestError

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    """Kind of file-level change carried by a patch."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    MOVE = "move"


class Change(BaseModel):
    """A single file-level change."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    kind: ChangeKind = Field(validation_alias=AliasChoices("kind", "type"))
    target_path: str = Field(validation_alias=AliasChoices("target_path", "targetPath"))
    source_path: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("source_path", "sourcePath")
    )
    content: Optional[str] = None
    description: str = ""


class Patch(BaseModel):
    """A description of one or more file-level changes tied to a target file."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    target_file: str = Field(validation_alias=AliasChoices("target_file", "targetFile"))
    changes: List[Change] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    test_requirements: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("test_requirements", "testRequirements"),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return self.model_dump(mode="json")


class ManifestSummary(BaseModel):
    """Summary block of a patch manifest."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    total_patches: int = Field(
        default=0, validation_alias=AliasChoices("total_patches", "totalPatches")
    )
    target_modules: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("target_modules", "targetModules")
    )
    estimated_time: Optional[Union[str, float]] = Field(
        default=None, validation_alias=AliasChoices("estimated_time", "estimatedTime")
    )


class NewModule(BaseModel):
    """A module introduced by the migration that needs its own manifest file."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str


class MigrationContext(BaseModel):
    """Rename/relocation knowledge the build fixer uses to repair builds.

    Attributes:
        moved_packages: Old import path -> new import path
        moved_symbols: Symbol name -> import path of the package that now holds it
        new_modules: Modules created by the migration
        module_path: Root module path (e.g. the ``module`` line of go.mod)
        stage_name: Name of the stage the context is being used for
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    moved_packages: Dict[str, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("moved_packages", "movedPackages")
    )
    moved_symbols: Dict[str, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("moved_symbols", "movedSymbols")
    )
    new_modules: List[NewModule] = Field(
        default_factory=list, validation_alias=AliasChoices("new_modules", "newModules")
    )
    module_path: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("module_path", "modulePath")
    )
    stage_name: Optional[str] = None

    def for_stage(self, stage_name: str) -> "MigrationContext":
        return self.model_copy(update={"stage_name": stage_name})

    def resolve_package(self, old_path: str) -> Optional[tuple]:
        """Find the new location of an import path.

        Returns:
            (new_path, exact) or None. Exact matches win; otherwise the longest
            moved prefix is rewritten (``foo/bar/baz`` with ``foo/bar -> foo/x``
            becomes ``foo/x/baz``).
        """
        if old_path in self.moved_packages:
            return self.moved_packages[old_path], True
        best = None
        for old, new in self.moved_packages.items():
            for sep in ("/", "."):
                prefix = old + sep
                if old_path.startswith(prefix) and (best is None or len(old) > len(best[0])):
                    best = (old, new + sep + old_path[len(prefix):])
        if best:
            return best[1], False
        return None


class PatchManifest(BaseModel):
    """Top-level patch manifest."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    summary: ManifestSummary = Field(default_factory=ManifestSummary)
    patches: List[Patch] = Field(default_factory=list)
    migration_context: MigrationContext = Field(
        default_factory=MigrationContext,
        validation_alias=AliasChoices("migration_context", "migrationContext"),
    )

    def duplicate_ids(self) -> List[str]:
        seen: set = set()
        dupes: List[str] = []
        for patch in self.patches:
            if patch.id in seen and patch.id not in dupes:
                dupes.append(patch.id)
            seen.add(patch.id)
        return dupes


def load_manifest(path: Path) -> PatchManifest:
    """Load and validate a patch manifest.

    Raises:
        ManifestError: If the file is missing, not JSON, fails validation or
            contains duplicate patch ids.
    """
    path = Path(path)
    if not path.exists():
        raise ManifestError(f"Patch manifest not found: {path}")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ManifestError(f"Patch manifest is not valid JSON ({path}): {e}") from e

    try:
        manifest = PatchManifest.model_validate(data)
    except ValidationError as e:
        raise ManifestError(f"Patch manifest failed validation ({path}): {e}") from e

    dupes = manifest.duplicate_ids()
    if dupes:
        raise ManifestError(f"Patch manifest has duplicate patch ids: {dupes}")

    if manifest.summary.total_patches and manifest.summary.total_patches != len(manifest.patches):
        logger.warning(
            f"Manifest summary reports {manifest.summary.total_patches} patches "
            f"but {len(manifest.patches)} were found"
        )
    return manifest


def normalize_relpath(path: object) -> str:
    """Normalize a relative path to POSIX form without leading ``./``."""
    s = str(path or "").strip()
    s = s.replace("\\", "/")
    while s.startswith("./"):
        s = s[2:]
    s = re.sub(r"/{2,}", "/", s)
    return s


_GO_MODULE_RE = re.compile(r"^module\s+(\S+)", re.MULTILINE)


def read_module_path(project_path: Path) -> Optional[str]:
    """Read the root module path from go.mod, if present."""
    go_mod = Path(project_path) / "go.mod"
    if not go_mod.exists():
        return None
    match = _GO_MODULE_RE.search(go_mod.read_text(encoding="utf-8", errors="replace"))
    return match.group(1) if match else None


def derive_package_moves(patches: List[Patch], module_path: Optional[str] = None) -> Dict[str, str]:
    """Derive import-path renames from ``move`` changes.

    A Python file move maps dotted module names; any other move maps the
    containing directories, prefixed with the module path when known.
    """
    moves: Dict[str, str] = {}
    for patch in patches:
        for change in patch.changes:
            if change.kind != ChangeKind.MOVE or not change.source_path:
                continue
            src = normalize_relpath(change.source_path)
            dst = normalize_relpath(change.target_path)
            if src.endswith(".py") and dst.endswith(".py"):
                old = src[:-3].replace("/", ".")
                new = dst[:-3].replace("/", ".")
            else:
                old = posixpath.dirname(src)
                new = posixpath.dirname(dst)
                if module_path:
                    old = f"{module_path}/{old}" if old else module_path
                    new = f"{module_path}/{new}" if new else module_path
            if old and new and old != new:
                moves.setdefault(old, new)
    return moves


def build_migration_context(manifest: PatchManifest, project_path: Path) -> MigrationContext:
    """Merge the manifest's explicit context with renames derived from moves.

    Explicit entries win over derived ones.
    """
    explicit = manifest.migration_context
    module_path = explicit.module_path or read_module_path(project_path)
    derived = derive_package_moves(manifest.patches, module_path)
    moved = {**derived, **explicit.moved_packages}
    if derived:
        logger.debug(f"Derived {len(derived)} package moves from move changes")
    return explicit.model_copy(update={"moved_packages": moved, "module_path": module_path})
