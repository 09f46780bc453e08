"""Git worktree lifecycle for per-item isolation."""

from __future__ import annotations

import logging
import secrets
import shlex
import threading
from dataclasses import dataclass
from pathlib import Path

from taskline.pipeline.errors import WorkspaceError
from taskline.pipeline.git import ensure_safe_branch, git
from taskline.pipeline.models import Workspace
from taskline.pipeline.process import ProcessResult, run_process

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "auto/issue-"


@dataclass(frozen=True, slots=True)
class WorktreeEntry:
    """One record from ``git worktree list --porcelain``."""

    path: str
    branch: str | None = None
    head: str | None = None


class WorkspaceManager:
    """Create, attach and destroy worktrees under one base directory."""

    def __init__(
        self,
        *,
        project_dir: Path,
        worktree_base: Path,
        trunk_branch: str = "main",
        setup_timeout_seconds: float = 900,
    ) -> None:
        self.project_dir = project_dir
        self.worktree_base = worktree_base
        self.trunk_branch = trunk_branch
        self.setup_timeout_seconds = setup_timeout_seconds
        self._lock = threading.Lock()

    def path_for(self, item_number: int) -> Path:
        return self.worktree_base / f"issue-{item_number}"

    def create(self, item_number: int, *, setup_command: str | None = None) -> Workspace:
        branch = f"{BRANCH_PREFIX}{item_number}-{secrets.token_hex(3)}"
        path = self.path_for(item_number)
        with self._lock:
            self.worktree_base.mkdir(parents=True, exist_ok=True)
            result = self._git("worktree", "add", "-b", branch, str(path), self.trunk_branch)
            if not result.ok:
                raise WorkspaceError(f"Failed to create worktree: {result.stderr.strip()}")
        workspace = Workspace(path=path, branch=branch, item_number=item_number)
        logger.info("Created worktree %s on %s", path, branch)
        self._setup_or_remove(workspace, setup_command)
        return workspace

    def attach(
        self,
        item_number: int,
        branch: str,
        *,
        start_point: str | None = None,
        setup_command: str | None = None,
    ) -> Workspace:
        """Check out an existing branch into a fresh worktree.

        With ``start_point`` the local branch is reset to it (``-B``), which is
        how re-review picks up the pushed remote branch.
        """

        ensure_safe_branch(branch)
        path = self.path_for(item_number)
        with self._lock:
            self.worktree_base.mkdir(parents=True, exist_ok=True)
            if start_point is not None:
                ensure_safe_branch(start_point)
                result = self._git("worktree", "add", "-B", branch, str(path), start_point)
            else:
                result = self._git("worktree", "add", str(path), branch)
            if not result.ok:
                raise WorkspaceError(
                    f"Failed to attach worktree for {branch}: {result.stderr.strip()}",
                )
        workspace = Workspace(path=path, branch=branch, item_number=item_number)
        logger.info("Attached worktree %s to %s", path, branch)
        self._setup_or_remove(workspace, setup_command)
        return workspace

    def remove(self, workspace: Workspace) -> None:
        result = self._git("worktree", "remove", "--force", str(workspace.path))
        if not result.ok:
            logger.warning(
                "Could not remove worktree %s: %s",
                workspace.path,
                result.stderr.strip(),
            )
        self.prune()

    def list(self) -> list[WorktreeEntry]:
        result = self._git("worktree", "list", "--porcelain")
        if not result.ok:
            return []
        return parse_worktree_list(result.stdout)

    def prune(self) -> None:
        self._git("worktree", "prune")

    def clean_stale(self) -> list[str]:
        """Remove every worktree under the base directory, continuing past failures."""

        base = self.worktree_base.resolve()
        removed: list[str] = []
        for entry in self.list():
            entry_path = Path(entry.path).resolve()
            if entry_path == self.project_dir.resolve() or not entry_path.is_relative_to(base):
                continue
            result = self._git("worktree", "remove", "--force", entry.path)
            if not result.ok:
                logger.warning("Skipping stale worktree %s: %s", entry.path, result.stderr.strip())
                continue
            removed.append(entry.path)
        self.prune()
        return removed

    def _setup_or_remove(self, workspace: Workspace, setup_command: str | None) -> None:
        try:
            self._run_setup(workspace, setup_command)
        except WorkspaceError:
            self.remove(workspace)
            raise

    def _run_setup(self, workspace: Workspace, setup_command: str | None) -> None:
        if not setup_command:
            return
        try:
            argv = shlex.split(setup_command)
        except ValueError as error:
            raise WorkspaceError(f"Invalid setup command {setup_command!r}: {error}") from error
        result = run_process(argv, cwd=workspace.path, timeout=self.setup_timeout_seconds)
        if not result.ok:
            raise WorkspaceError(f"Setup command failed: {result.stderr.strip()}")

    def _git(self, *args: str) -> ProcessResult:
        return git(*args, cwd=self.project_dir)


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    entries: list[WorktreeEntry] = []
    current: dict[str, str] = {}

    def _flush() -> None:
        if "path" in current:
            entries.append(
                WorktreeEntry(
                    path=current["path"],
                    branch=current.get("branch"),
                    head=current.get("head"),
                ),
            )
        current.clear()

    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            _flush()
        elif line.startswith("worktree "):
            current["path"] = line.removeprefix("worktree ")
        elif line.startswith("branch "):
            current["branch"] = line.removeprefix("branch ").removeprefix("refs/heads/")
        elif line.startswith("HEAD "):
            current["head"] = line.removeprefix("HEAD ")
    _flush()
    return entries
