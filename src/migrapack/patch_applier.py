"""Patch application and path validation.

Applies a patch's file-level changes to the working tree. Every target is
validated against the project root before anything is written:

- Paths are normalized to POSIX-style relative paths
- Absolute paths and ``..`` escapes are rejected
- Protected paths (``.git/`` and the migrapack state directory) are never touched

Application is idempotent so that a retried stage can re-apply its patches:
a delete of a missing file is a no-op, and a move whose source is gone but
whose target exists counts as already applied.

Files are written to a temporary sibling that then replaces the target. A
dry run writes nothing but remembers what each validated change would have
done, so a later patch can modify a file an earlier one created.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from .exceptions import PatchApplicationError
from .manifest import Change, ChangeKind, Patch, normalize_relpath

PROTECTED_PATHS = [".git/"]

_FILE = "file"
_DIR = "dir"


def is_path_protected(file_path: str, protected_paths: List[str]) -> bool:
    """Check if a relative path falls under a protected prefix."""
    normalized = normalize_relpath(file_path).rstrip("/") + "/"
    for protected in protected_paths:
        prefix = normalize_relpath(protected).rstrip("/") + "/"
        if normalized.startswith(prefix):
            return True
    return False


class PatchApplier:
    """Applies patches to a project working tree."""

    def __init__(
        self,
        project_path: Path,
        state_dir: Optional[Path] = None,
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.project_path = Path(project_path).resolve()
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger(__name__)
        self.protected_paths = list(PROTECTED_PATHS)
        self._planned: Dict[Path, Optional[str]] = {}
        if state_dir is not None:
            try:
                rel = Path(state_dir).resolve().relative_to(self.project_path)
                self.protected_paths.append(rel.as_posix() + "/")
            except ValueError:
                pass  # state dir outside the project cannot be targeted anyway

    def resolve(self, rel_path: str, patch_id: Optional[str] = None) -> Path:
        """Resolve a patch path inside the project root.

        Raises:
            PatchApplicationError: If the path is empty, escapes the project or
                is protected.
        """
        normalized = normalize_relpath(rel_path)
        if not normalized:
            raise PatchApplicationError("Empty target path", patch_id=patch_id, path=rel_path)
        if normalized.startswith("/") or re.match(r"^[A-Za-z]:", normalized):
            raise PatchApplicationError(
                f"Absolute paths are not allowed: {rel_path}", patch_id=patch_id, path=rel_path
            )

        resolved = (self.project_path / normalized).resolve()
        try:
            resolved.relative_to(self.project_path)
        except ValueError:
            raise PatchApplicationError(
                f"Path escapes project root: {rel_path}", patch_id=patch_id, path=rel_path
            )

        if is_path_protected(normalized, self.protected_paths):
            self.logger.warning(f"[Apply] BLOCKED: protected path {rel_path}")
            raise PatchApplicationError(
                f"Protected path: {rel_path}", patch_id=patch_id, path=rel_path
            )
        return resolved

    def apply(self, patch: Patch) -> List[str]:
        """Apply every change of a patch.

        Returns:
            Relative paths touched by the patch

        Raises:
            PatchApplicationError: On the first change that cannot be applied.
                Changes before it stay applied; the stage snapshot covers them.
        """
        if not patch.changes:
            raise PatchApplicationError(f"Patch {patch.id} has no changes", patch_id=patch.id)

        touched: List[str] = []
        for change in patch.changes:
            touched.extend(self._apply_change(patch.id, change))

        verb = "Validated" if self.dry_run else "Applied"
        self.logger.info(f"[Apply] {verb} patch {patch.id} ({len(patch.changes)} changes)")
        return touched

    def _apply_change(self, patch_id: str, change: Change) -> List[str]:
        target = self.resolve(change.target_path, patch_id)
        is_directory = change.target_path.replace("\\", "/").endswith("/")

        if change.kind == ChangeKind.CREATE:
            if is_directory:
                if self.dry_run:
                    self._planned[target] = _DIR
                else:
                    target.mkdir(parents=True, exist_ok=True)
                return [change.target_path]
            if change.content is None:
                raise PatchApplicationError(
                    f"Create change for {change.target_path} has no content",
                    patch_id=patch_id,
                    path=change.target_path,
                )
            self._write(target, change.content)
            return [change.target_path]

        if change.kind == ChangeKind.MODIFY:
            if change.content is None:
                raise PatchApplicationError(
                    f"Modify change for {change.target_path} has no content",
                    patch_id=patch_id,
                    path=change.target_path,
                )
            if self._state(target) != _FILE:
                raise PatchApplicationError(
                    f"Cannot modify missing file: {change.target_path}",
                    patch_id=patch_id,
                    path=change.target_path,
                )
            self._write(target, change.content)
            return [change.target_path]

        if change.kind == ChangeKind.DELETE:
            state = self._state(target)
            if state is None:
                self.logger.debug(f"[Apply] {change.target_path} already absent")
                return []
            if state == _DIR:
                raise PatchApplicationError(
                    f"Refusing to delete directory: {change.target_path}",
                    patch_id=patch_id,
                    path=change.target_path,
                )
            if self.dry_run:
                self._planned[target] = None
            else:
                target.unlink()
            return [change.target_path]

        if change.kind == ChangeKind.MOVE:
            return self._apply_move(patch_id, change, target)

        raise PatchApplicationError(
            f"Unsupported change kind: {change.kind}", patch_id=patch_id, path=change.target_path
        )

    def _apply_move(self, patch_id: str, change: Change, target: Path) -> List[str]:
        if not change.source_path:
            raise PatchApplicationError(
                f"Move change for {change.target_path} has no source path",
                patch_id=patch_id,
                path=change.target_path,
            )
        source = self.resolve(change.source_path, patch_id)

        if self._state(source) is None:
            if self._state(target) is not None:
                self.logger.debug(f"[Apply] Move to {change.target_path} already applied")
                if change.content is not None:
                    self._write(target, change.content)
                return [change.target_path]
            raise PatchApplicationError(
                f"Move source does not exist: {change.source_path}",
                patch_id=patch_id,
                path=change.source_path,
            )

        if self.dry_run:
            self._planned[target] = self._state(source)
            self._planned[source] = None
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, target)
        if change.content is not None:
            self._write(target, change.content)
        return [change.source_path, change.target_path]

    def _state(self, path: Path) -> Optional[str]:
        """What is at ``path``: a file, a directory or nothing.

        A dry run answers from the changes it has already validated, so a
        later patch sees files an earlier one created, moved or deleted.
        """
        if self.dry_run and path in self._planned:
            return self._planned[path]
        if path.is_file():
            return _FILE
        if path.is_dir():
            return _DIR
        return None

    def _write(self, target: Path, content: str) -> None:
        if self.dry_run:
            self._planned[target] = _FILE
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path = target.with_name(f"{target.name}.{os.getpid()}.tmp")
        temp_path.write_text(content, encoding="utf-8")
        if target.exists():
            shutil.copymode(target, temp_path)
        os.replace(temp_path, target)
