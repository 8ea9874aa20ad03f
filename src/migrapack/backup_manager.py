"""Git-based snapshots and rollback for migration runs.

Mechanism:
- A snapshot resolves HEAD and points a backup branch at it:
  migrapack/backup-{run_id}-{label}. The active branch is never switched.
- Restore hard-resets the working tree to the snapshot revision and removes
  untracked files, keeping the migrapack state directory.
- In dry-run mode no git command is run and snapshots return a sentinel id.

Restore is the only operation allowed to discard uncommitted work. Its failure
raises RollbackFailure and must never be swallowed.

Cleanup:
- Backup branches are kept after the run for manual recovery
- ``cleanup_snapshots`` deletes the branches created by one run
"""

import logging
import re
from pathlib import Path
from typing import Callable, List, Optional

from .exceptions import RollbackFailure, SnapshotError
from .process import CommandResult, run_command

DRY_RUN_SNAPSHOT_ID = "dry-run-backup"
BACKUP_BRANCH_PREFIX = "migrapack/backup-"


class BackupManager:
    """Creates and restores version-control snapshots of the project."""

    def __init__(
        self,
        project_path: Path,
        run_id: str,
        state_dir_name: str = ".migrapack",
        dry_run: bool = False,
        timeout_seconds: float = 30,
        logger: Optional[logging.Logger] = None,
        runner: Callable[..., CommandResult] = run_command,
    ):
        """
        Initialize backup manager.

        Args:
            project_path: Path to git repository root
            run_id: Current run ID (part of every backup branch name)
            state_dir_name: State directory excluded from cleaning and commits
            dry_run: Perform no VCS call at all
            timeout_seconds: Timeout for each git invocation
        """
        self.project_path = Path(project_path)
        self.run_id = run_id
        self.state_dir_name = state_dir_name
        self.dry_run = dry_run
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._run = runner
        self.created_branches: List[str] = []

    def _git(self, *args: str) -> CommandResult:
        return self._run(["git", *args], cwd=self.project_path, timeout=self.timeout_seconds)

    def branch_name(self, label: str) -> str:
        safe_run_id = _sanitize_ref(self.run_id)
        safe_label = _sanitize_ref(label)
        return f"{BACKUP_BRANCH_PREFIX}{safe_run_id}-{safe_label}"

    def ensure_repository(self) -> bool:
        """Check that the project is inside a git work tree."""
        if self.dry_run:
            return True
        result = self._git("rev-parse", "--is-inside-work-tree")
        return result.ok and result.stdout.strip() == "true"

    def is_clean(self) -> bool:
        """Check for uncommitted changes, ignoring the state directory."""
        if self.dry_run:
            return True
        result = self._git("status", "--porcelain")
        if not result.ok:
            self.logger.warning(f"[Backup] git status failed: {result.stderr.strip()}")
            return False
        prefix = self.state_dir_name.rstrip("/") + "/"
        for line in result.stdout.splitlines():
            path = line[3:].strip().strip('"')
            if path and not path.startswith(prefix):
                return False
        return True

    def snapshot(self, label: str) -> str:
        """Create a named restore point at HEAD without switching branches.

        Returns:
            Revision id of the snapshot

        Raises:
            SnapshotError: If HEAD cannot be resolved or the branch cannot be created
        """
        if self.dry_run:
            self.logger.info(f"[Backup] Dry run: would create snapshot '{label}'")
            return DRY_RUN_SNAPSHOT_ID

        head = self._git("rev-parse", "HEAD")
        if not head.ok:
            raise SnapshotError(f"Cannot resolve HEAD: {head.stderr.strip() or 'timeout'}")
        revision = head.stdout.strip()

        branch = self.branch_name(label)
        created = self._git("branch", "-f", branch, revision)
        if not created.ok:
            raise SnapshotError(
                f"Failed to create backup branch {branch}: {created.stderr.strip() or 'timeout'}"
            )

        if branch not in self.created_branches:
            self.created_branches.append(branch)
        self.logger.info(f"[Backup] Created snapshot {branch} at {revision[:12]}")
        return revision

    def restore(self, snapshot_id: str) -> None:
        """Hard-reset the working tree to a snapshot.

        Raises:
            RollbackFailure: If reset or clean fails; never swallowed here
        """
        if self.dry_run:
            self.logger.info(f"[Backup] Dry run: would restore snapshot {snapshot_id}")
            return

        self.logger.warning(f"[Backup] Rolling back to snapshot {snapshot_id}")
        reset = self._git("reset", "--hard", snapshot_id)
        if not reset.ok:
            stderr = reset.stderr.strip()
            self.logger.error(f"[Backup] Failed to reset to {snapshot_id}: {stderr}")
            raise RollbackFailure(
                f"git reset --hard {snapshot_id} failed: {stderr or 'timeout'}",
                snapshot_id=snapshot_id,
                stderr=stderr,
            )

        # reset --hard leaves untracked files behind
        clean = self._git("clean", "-fd", "-e", self.state_dir_name.rstrip("/") + "/")
        if not clean.ok:
            stderr = clean.stderr.strip()
            self.logger.error(f"[Backup] Failed to clean untracked files: {stderr}")
            raise RollbackFailure(
                f"git clean after reset to {snapshot_id} failed: {stderr or 'timeout'}",
                snapshot_id=snapshot_id,
                stderr=stderr,
            )

        self.logger.info(f"[Backup] Working tree restored to {snapshot_id}")

    def commit_all(self, message: str) -> Optional[str]:
        """Stage and commit every change outside the state directory.

        Returns:
            New HEAD revision, or None when there was nothing to commit

        Raises:
            SnapshotError: If staging or committing fails
        """
        if self.dry_run:
            self.logger.info("[Backup] Dry run: skipping commit")
            return None

        added = self._git("add", "-A", "--", ".", f":(exclude){self.state_dir_name}")
        if not added.ok:
            raise SnapshotError(f"git add failed: {added.stderr.strip() or 'timeout'}")

        if self.is_clean():
            self.logger.info("[Backup] Nothing to commit")
            return None

        committed = self._git("commit", "-m", message)
        if not committed.ok:
            raise SnapshotError(f"git commit failed: {committed.stderr.strip() or 'timeout'}")

        head = self._git("rev-parse", "HEAD")
        revision = head.stdout.strip() if head.ok else None
        self.logger.info(f"[Backup] Committed migration result {revision[:12] if revision else ''}")
        return revision

    def cleanup_snapshots(self) -> int:
        """Delete the backup branches of this run.

        Returns:
            Number of branches deleted
        """
        if self.dry_run:
            return 0

        pattern = f"{BACKUP_BRANCH_PREFIX}{_sanitize_ref(self.run_id)}-*"
        listed = self._git("branch", "--list", pattern, "--format=%(refname:short)")
        if not listed.ok:
            self.logger.warning(f"[Backup] Failed to list backup branches: {listed.stderr.strip()}")
            return 0

        deleted = 0
        for branch in (b.strip() for b in listed.stdout.splitlines()):
            if not branch:
                continue
            result = self._git("branch", "-D", branch)
            if result.ok:
                deleted += 1
                self.logger.debug(f"[Backup] Deleted backup branch {branch}")
            else:
                self.logger.warning(
                    f"[Backup] Failed to delete backup branch {branch}: {result.stderr.strip()}"
                )
        if deleted:
            self.logger.info(f"[Backup] Cleaned up {deleted} backup branches")
        return deleted


def _sanitize_ref(value: str) -> str:
    """Make a value safe for use inside a git ref name."""
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-.")
    return value or "snapshot"
