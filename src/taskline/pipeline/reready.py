"""Lighter pass over items a human sent back with review feedback."""

from __future__ import annotations

import logging

from taskline.config import LabelSettings
from taskline.pipeline.backend.base import AgentBackend
from taskline.pipeline.comments import ProgressReporter
from taskline.pipeline.errors import RECOVERABLE_ERRORS
from taskline.pipeline.git import commit_changes, git, safe_branch_name
from taskline.pipeline.models import AgentName, ReviewRequest, Workspace
from taskline.pipeline.prompts import (
    FAILURE_OUTPUT_TAG,
    FEEDBACK_TAG,
    WORK_ITEM_TAG,
    wrap_untrusted,
)
from taskline.pipeline.verification import VerificationService
from taskline.pipeline.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

FEEDBACK_COMMIT_MESSAGE = "fix: address review feedback"


def build_feedback_prompt(request: ReviewRequest, *, trunk: str = "main") -> str:
    reviews = "\n".join(f"- {review}" for review in request.reviews) or "(none)"
    comments = "\n".join(f"- {comment}" for comment in request.comments) or "(none)"
    feedback = f"Reviews:\n{reviews}\nComments:\n{comments}"
    pr = f" on PR #{request.pr_number}" if request.pr_number is not None else ""
    return (
        f"Address the review feedback{pr} for work item #{request.number}.\n\n"
        f"## Original work item: {request.title}\n"
        f"{wrap_untrusted(WORK_ITEM_TAG, request.body)}\n\n"
        f"## Review feedback\n"
        f"{wrap_untrusted(FEEDBACK_TAG, feedback)}\n\n"
        "## Instructions\n"
        f"Read the current changes with `git diff {trunk}`. Address each piece of feedback. "
        "Do NOT revert changes unless explicitly requested. Run tests and lint afterwards."
    )


class RereadyProcessor:
    """Checkout the pushed branch, let the implementer address feedback, push back."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        workspaces: WorkspaceManager,
        verification: VerificationService,
        reporter: ProgressReporter,
        labels: LabelSettings,
        remote: str = "origin",
        trunk_branch: str = "main",
    ) -> None:
        self.backend = backend
        self.workspaces = workspaces
        self.verification = verification
        self.reporter = reporter
        self.labels = labels
        self.remote = remote
        self.trunk_branch = trunk_branch

    def process(self, request: ReviewRequest) -> bool:
        number = request.number
        if not safe_branch_name(request.branch):
            logger.error("#%d: unsafe branch name %r", number, request.branch)
            self._report_failure(number, "Unsafe branch name; refusing to check it out.")
            return False

        logger.info("Re-review for #%d on %s", number, request.branch)
        workspace: Workspace | None = None
        try:
            fetched = git(
                "fetch",
                self.remote,
                request.branch,
                cwd=self.workspaces.project_dir,
            )
            if not fetched.ok:
                logger.error("#%d: could not fetch %s: %s", number, request.branch, fetched.stderr)
                self._report_failure(number, "Failed to fetch the branch. Please check logs.")
                return False
            workspace = self.workspaces.attach(
                number,
                request.branch,
                start_point=f"{self.remote}/{request.branch}",
            )
            if not self._address_feedback(request, workspace):
                self._report_failure(
                    number,
                    "Failed to address feedback automatically. Please check logs.",
                )
                return False
            return self._push(number, workspace)
        except RECOVERABLE_ERRORS as error:
            logger.error("#%d: re-review failed: %s", number, error)
            self._report_failure(number, f"Re-review failed: {error}")
            return False
        finally:
            if workspace is not None:
                self.workspaces.remove(workspace)

    def _address_feedback(self, request: ReviewRequest, workspace: Workspace) -> bool:
        prompt = build_feedback_prompt(request, trunk=self.trunk_branch)
        result = self.backend.run_agent(AgentName.IMPLEMENTER.value, prompt, cwd=workspace.path)
        if not result.success:
            return False

        checks = self.verification.run_checks(workspace.path)
        if checks.success:
            return True

        logger.warning("#%d: checks failed after feedback, retrying once", request.number)
        retry = self.backend.run_agent(
            AgentName.IMPLEMENTER.value,
            "Fix the failing tests and lint errors.\n\n"
            f"{wrap_untrusted(FAILURE_OUTPUT_TAG, checks.output)}\n\n{prompt}",
            cwd=workspace.path,
        )
        if not retry.success:
            return False
        return self.verification.run_checks(workspace.path).success

    def _push(self, number: int, workspace: Workspace) -> bool:
        if not commit_changes(workspace.path, FEEDBACK_COMMIT_MESSAGE):
            logger.warning("#%d: proceeding to push without new commit", number)
        pushed = git(
            "push",
            "--force-with-lease",
            self.remote,
            f"HEAD:{workspace.branch}",
            cwd=workspace.path,
        )
        if not pushed.ok:
            logger.error("#%d: push failed: %s", number, pushed.stderr.strip())
            self._report_failure(number, "Failed to push feedback changes. Please check logs.")
            return False

        self.reporter.transition(
            number,
            from_label=self.labels.reready,
            to_label=self.labels.awaiting_review,
        )
        self.reporter.comment(number, "Feedback addressed. Please re-review.")
        return True

    def _report_failure(self, number: int, message: str) -> None:
        self.reporter.remove_label(number, self.labels.reready)
        self.reporter.comment(number, message)
