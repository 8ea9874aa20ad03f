"""Custom exceptions for the migrapack engine."""

from typing import Optional


class MigrapackError(Exception):
    """Base exception for all migrapack errors."""

    pass


class ManifestError(MigrapackError):
    """Exception raised when a patch manifest cannot be loaded or validated."""

    pass


class PatchApplicationError(MigrapackError):
    """Exception raised when a single patch cannot be applied.

    Recorded per patch in the stage result, never escalated on its own.
    """

    def __init__(self, message: str, patch_id: Optional[str] = None, path: Optional[str] = None):
        """
        Initialize patch application error.

        Args:
            message: Error message
            patch_id: Optional id of the patch being applied
            path: Optional path of the change that failed
        """
        super().__init__(message)
        self.patch_id = patch_id
        self.path = path


class CheckpointIOError(MigrapackError):
    """Exception raised when the mandatory terminal checkpoint write fails."""

    pass


class SnapshotError(MigrapackError):
    """Exception raised when a restore point cannot be created."""

    pass


class RollbackFailure(MigrapackError):
    """Exception raised when restoring a snapshot fails.

    This is fatal: the working tree may no longer match any known-good state.
    Callers must let it propagate.
    """

    def __init__(self, message: str, snapshot_id: Optional[str] = None, stderr: str = ""):
        super().__init__(message)
        self.snapshot_id = snapshot_id
        self.stderr = stderr


class PreconditionError(MigrapackError):
    """Exception raised when auto-apply preconditions are not met."""

    pass


class ProjectLockedError(MigrapackError):
    """Exception raised when another pipeline already holds the project lock."""

    pass
