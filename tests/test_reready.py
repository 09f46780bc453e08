from __future__ import annotations

from pathlib import Path

import allure
from conftest import AgentCall, FakeTracker, RecordingBackend, run_git

from taskline.config import LabelSettings, StackSettings
from taskline.pipeline.comments import ProgressReporter
from taskline.pipeline.models import AgentResult, ReviewRequest
from taskline.pipeline.reready import (
    FEEDBACK_COMMIT_MESSAGE,
    RereadyProcessor,
    build_feedback_prompt,
)
from taskline.pipeline.verification import VerificationService
from taskline.pipeline.workspace import WorkspaceManager

pytestmark = [
    allure.epic("Integration"),
    allure.feature("Re-review"),
]

BRANCH = "auto/issue-4-abc123"
LABELS = LabelSettings()


def _push_branch(repo: Path) -> None:
    run_git(repo, "checkout", "-b", BRANCH)
    (repo / "feature.py").write_text("VALUE = 1\n", encoding="utf-8")
    run_git(repo, "add", "-A")
    run_git(repo, "commit", "-m", "feat: first pass")
    run_git(repo, "push", "-u", "origin", BRANCH)
    run_git(repo, "checkout", "main")


def _request(branch: str = BRANCH) -> ReviewRequest:
    return ReviewRequest(
        number=4,
        branch=branch,
        title="Add feature",
        body="Feature body",
        pr_number=31,
        reviews=("Please rename VALUE",),
        comments=("Also add a docstring",),
    )


def _processor(repo: Path, backend: RecordingBackend, tracker: FakeTracker) -> RereadyProcessor:
    return RereadyProcessor(
        backend=backend,
        workspaces=WorkspaceManager(
            project_dir=repo,
            worktree_base=repo / ".claude" / "worktrees",
        ),
        verification=VerificationService(StackSettings()),
        reporter=ProgressReporter(tracker, LABELS),
        labels=LABELS,
    )


def test_feedback_is_addressed_and_pushed(git_repo: Path) -> None:
    _push_branch(git_repo)
    tracker = FakeTracker()
    tracker.add_label(4, LABELS.reready)

    def _address(call: AgentCall) -> AgentResult:
        (call.cwd / "feature.py").write_text("RENAMED = 1\n", encoding="utf-8")
        return AgentResult(success=True, output="renamed")

    backend = RecordingBackend({"implementer": [_address]})

    assert _processor(git_repo, backend, tracker).process(_request())

    assert backend.names == ["implementer"]
    remote_log = run_git(git_repo, "log", "-1", "--format=%s", f"origin/{BRANCH}")
    assert remote_log == FEEDBACK_COMMIT_MESSAGE
    assert tracker.transitions == [(4, LABELS.reready, LABELS.awaiting_review)]
    assert tracker.comments[4] == ["Feedback addressed. Please re-review."]
    assert not (git_repo / ".claude" / "worktrees" / "issue-4").exists()


def test_unsafe_branch_is_rejected_without_agent(git_repo: Path) -> None:
    tracker = FakeTracker()
    tracker.add_label(4, LABELS.reready)
    backend = RecordingBackend()

    assert not _processor(git_repo, backend, tracker).process(_request("--upload-pack=x"))

    assert backend.calls == []
    assert LABELS.reready not in tracker.labels[4]
    assert "Unsafe branch name" in tracker.comments[4][0]


def test_missing_remote_branch_is_reported(git_repo: Path) -> None:
    tracker = FakeTracker()
    tracker.add_label(4, LABELS.reready)
    backend = RecordingBackend()

    assert not _processor(git_repo, backend, tracker).process(_request("auto/issue-4-gone00"))

    assert backend.calls == []
    assert tracker.comments[4] == ["Failed to fetch the branch. Please check logs."]


def test_agent_failure_strips_reready_label(git_repo: Path) -> None:
    _push_branch(git_repo)
    tracker = FakeTracker()
    tracker.add_label(4, LABELS.reready)
    backend = RecordingBackend({"implementer": [AgentResult(success=False, output="nope")]})

    assert not _processor(git_repo, backend, tracker).process(_request())

    assert LABELS.reready not in tracker.labels[4]
    assert tracker.comments[4] == [
        "Failed to address feedback automatically. Please check logs.",
    ]
    assert not (git_repo / ".claude" / "worktrees" / "issue-4").exists()


def test_feedback_prompt_wraps_untrusted_text() -> None:
    prompt = build_feedback_prompt(_request(), trunk="develop")

    assert prompt.startswith("Address the review feedback on PR #31 for work item #4.")
    assert "<work_item>\nFeature body\n</work_item>" in prompt
    assert "<review_feedback>\nReviews:\n- Please rename VALUE\n" in prompt
    assert "Comments:\n- Also add a docstring\n</review_feedback>" in prompt
    assert "git diff develop" in prompt
