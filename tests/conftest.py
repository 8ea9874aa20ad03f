"""Pytest configuration and fixtures for migrapack tests"""

import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure src directory is in Python path before any imports
project_root = Path(__file__).resolve().parent.parent
src_path = project_root / "src"

for path in (project_root, src_path):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from migrapack.config_loader import MigrationConfig  # noqa: E402
from migrapack.context import ExecutionContext  # noqa: E402
from migrapack.manifest import Change, ChangeKind, Patch  # noqa: E402
from migrapack.process import CommandResult, split_command  # noqa: E402


class FakeRunner:
    """Scripted stand-in for ``process.run_command``.

    Responses are keyed by command prefix; the last scripted response for a
    prefix repeats. Unscripted commands succeed with empty output.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self._scripts: Dict[str, List[CommandResult]] = {}

    def when(
        self,
        prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
        not_found: bool = False,
    ) -> "FakeRunner":
        self._scripts.setdefault(prefix, []).append(
            CommandResult(
                command=prefix.split(),
                returncode=returncode,
                stdout=stdout,
                stderr=stderr,
                duration_ms=5,
                timed_out=timed_out,
                not_found=not_found,
            )
        )
        return self

    def commands(self, prefix: str = "") -> List[str]:
        return [" ".join(c) for c in self.calls if " ".join(c).startswith(prefix)]

    def __call__(self, command, cwd, timeout=None, env=None) -> CommandResult:
        argv = split_command(command)
        self.calls.append(argv)
        line = " ".join(argv)
        match: Optional[str] = None
        for prefix in self._scripts:
            if line.startswith(prefix) and (match is None or len(prefix) > len(match)):
                match = prefix
        if match is None:
            return CommandResult(command=argv, returncode=0, stdout="", stderr="", duration_ms=1)
        queue = self._scripts[match]
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        return CommandResult(
            command=argv,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
            not_found=result.not_found,
        )


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def config():
    """Go preset with retries and snapshots enabled and no backoff."""
    return MigrationConfig()


@pytest.fixture
def project(tmp_path):
    """A minimal Go project root."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "go.mod").write_text("module example.com/app\n\ngo 1.21\n", encoding="utf-8")
    return root


@pytest.fixture
def execution_context(project, config):
    return ExecutionContext(
        run_id="mig-test",
        project_path=project,
        state_dir=project / ".migrapack",
        config=config,
    )


@pytest.fixture
def make_patch():
    """Factory for single-change patches."""

    def _make(
        patch_id: str,
        target_file: str,
        content: Optional[str] = "package x\n",
        kind: ChangeKind = ChangeKind.CREATE,
        dependencies: Optional[List[str]] = None,
        source_path: Optional[str] = None,
    ) -> Patch:
        return Patch(
            id=patch_id,
            target_file=target_file,
            changes=[
                Change(
                    kind=kind,
                    target_path=target_file,
                    source_path=source_path,
                    content=content,
                )
            ],
            dependencies=dependencies or [],
        )

    return _make
