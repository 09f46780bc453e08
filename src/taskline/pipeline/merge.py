"""Sequential integration of finished workspaces into trunk."""

from __future__ import annotations

import logging
import re
import threading

from taskline.pipeline.backend.base import AgentBackend
from taskline.pipeline.git import commit_changes, conflicted_files, ensure_safe_branch, git
from taskline.pipeline.models import AgentName, Workspace
from taskline.pipeline.prompts import CONFLICT_FILES_TAG, wrap_untrusted
from taskline.pipeline.verification import VerificationService

logger = logging.getLogger(__name__)

_PR_NUMBER_PATTERNS = (
    re.compile(r"pull/(\d+)"),
    re.compile(r"PR #(\d+)"),
)


def parse_pr_number(output: str) -> int | None:
    for pattern in _PR_NUMBER_PATTERNS:
        match = pattern.search(output)
        if match is not None:
            return int(match.group(1))
    return None


class MergeCoordinator:
    """Rebase or merge onto trunk, re-test, push, then hand off to the merger agent.

    Calls are serialized with an internal lock; the orchestrator also only
    ever merges one workspace at a time.
    """

    def __init__(
        self,
        *,
        backend: AgentBackend,
        verification: VerificationService,
        remote: str = "origin",
        trunk_branch: str = "main",
    ) -> None:
        self.backend = backend
        self.verification = verification
        self.remote = ensure_safe_branch(remote)
        self.trunk_branch = ensure_safe_branch(trunk_branch)
        self._lock = threading.Lock()

    def merge(self, number: int, workspace: Workspace) -> bool:
        with self._lock:
            logger.info("Starting merge for #%d", number)
            if not self._prepare(number, workspace):
                return False
            result = self.backend.run_agent(
                AgentName.MERGER.value,
                f"Create a PR, merge it, and close work item #{number}. Branch: {workspace.branch}",
                cwd=workspace.path,
            )
            if not result.success:
                logger.error("Merger agent failed for #%d", number)
                return False
            logger.info("#%d merged successfully", number)
            return True

    def create_pr_only(self, number: int, workspace: Workspace) -> int | None:
        """Push and open a PR without merging; returns the PR number if reported."""

        with self._lock:
            logger.info("Creating review-only PR for #%d", number)
            if not self._prepare(number, workspace):
                return None
            result = self.backend.run_agent(
                AgentName.MERGER.value,
                f"Create a PR for work item #{number} but do NOT merge it and do NOT close "
                f"the work item. Branch: {workspace.branch}. Reply with the PR URL.",
                cwd=workspace.path,
            )
            if not result.success:
                logger.error("PR creation failed for #%d", number)
                return None
            pr_number = parse_pr_number(result.output)
            if pr_number is None:
                logger.warning("Merger agent did not report a PR number for #%d", number)
            return pr_number

    def _prepare(self, number: int, workspace: Workspace) -> bool:
        ensure_safe_branch(workspace.branch)
        if commit_changes(workspace.path, f"chore: finalize work item #{number}"):
            logger.info("Committed pending changes for #%d", number)
        if not self._integrate(workspace):
            logger.error("Could not integrate #%d with %s", number, self.trunk_branch)
            return False
        if self.verification.stack.test_command:
            logger.info("Running tests after integration...")
            tests = self.verification.run_tests(workspace.path)
            if not tests.success:
                logger.warning("Tests failed after integration for #%d", number)
                return False
        pushed = git(
            "push",
            "-u",
            "--force-with-lease",
            self.remote,
            workspace.branch,
            cwd=workspace.path,
        )
        if not pushed.ok:
            logger.error("Push failed for #%d: %s", number, pushed.stderr.strip())
            return False
        return True

    def _integrate(self, workspace: Workspace) -> bool:
        upstream = f"{self.remote}/{self.trunk_branch}"
        fetched = git("fetch", self.remote, self.trunk_branch, cwd=workspace.path)
        if not fetched.ok:
            logger.warning("git fetch failed: %s", fetched.stderr.strip())

        rebased = git("rebase", upstream, cwd=workspace.path)
        if rebased.ok:
            return True
        logger.warning("Rebase conflict, falling back to merge: %s", rebased.stderr.strip()[:300])
        git("rebase", "--abort", cwd=workspace.path)

        merged = git("merge", "--no-edit", upstream, cwd=workspace.path)
        if merged.ok:
            return True
        logger.warning("Merge conflict, asking agent to resolve")
        return self._resolve_conflicts(workspace)

    def _resolve_conflicts(self, workspace: Workspace) -> bool:
        files = conflicted_files(workspace.path)
        if not files:
            git("merge", "--abort", cwd=workspace.path)
            return False

        listing = "\n".join(files)
        result = self.backend.run_agent(
            AgentName.IMPLEMENTER.value,
            "Resolve the merge conflicts in these files. Keep both sides' intent, remove all "
            f"conflict markers, and do not commit:\n\n"
            f"{wrap_untrusted(CONFLICT_FILES_TAG, listing)}",
            cwd=workspace.path,
        )
        if not result.success:
            logger.error("Conflict resolution agent failed")
            git("merge", "--abort", cwd=workspace.path)
            return False

        git("add", "-A", cwd=workspace.path)
        committed = git("commit", "--no-edit", cwd=workspace.path)
        if not committed.ok:
            logger.error("Could not commit conflict resolution: %s", committed.stderr.strip())
            git("merge", "--abort", cwd=workspace.path)
            return False
        return True
