from __future__ import annotations

import re
import shlex
import sys
from pathlib import Path

import allure
import pytest
from conftest import run_git

from taskline.pipeline.errors import UnsafeBranchError, WorkspaceError
from taskline.pipeline.workspace import WorkspaceManager, WorktreeEntry, parse_worktree_list

pytestmark = [
    allure.epic("Workspaces"),
    allure.feature("Worktree Lifecycle"),
]


def _manager(repo: Path) -> WorkspaceManager:
    return WorkspaceManager(project_dir=repo, worktree_base=repo / ".claude" / "worktrees")


def test_create_and_remove_worktree(git_repo: Path) -> None:
    manager = _manager(git_repo)

    workspace = manager.create(3)

    assert workspace.item_number == 3
    assert workspace.path == git_repo / ".claude" / "worktrees" / "issue-3"
    assert re.fullmatch(r"auto/issue-3-[0-9a-f]{6}", workspace.branch)
    assert (workspace.path / "README.md").exists()
    assert run_git(workspace.path, "rev-parse", "--abbrev-ref", "HEAD") == workspace.branch
    assert workspace.branch in {entry.branch for entry in manager.list()}

    manager.remove(workspace)

    assert not workspace.path.exists()
    assert workspace.branch not in {entry.branch for entry in manager.list()}


def test_create_runs_setup_command(git_repo: Path) -> None:
    manager = _manager(git_repo)
    setup = f"{shlex.quote(sys.executable)} -c \"open('setup.done', 'w').close()\""

    workspace = manager.create(4, setup_command=setup)

    assert (workspace.path / "setup.done").exists()


def test_failing_setup_command_raises(git_repo: Path) -> None:
    manager = _manager(git_repo)
    setup = f"{shlex.quote(sys.executable)} -c \"import sys; sys.exit(3)\""

    with pytest.raises(WorkspaceError, match="Setup command failed"):
        manager.create(5, setup_command=setup)

    assert not manager.path_for(5).exists()
    assert manager.create(5).path == manager.path_for(5)


def test_create_fails_when_trunk_is_missing(git_repo: Path) -> None:
    manager = WorkspaceManager(
        project_dir=git_repo,
        worktree_base=git_repo / ".claude" / "worktrees",
        trunk_branch="does-not-exist",
    )

    with pytest.raises(WorkspaceError, match="Failed to create worktree"):
        manager.create(6)


def test_attach_checks_out_existing_branch(git_repo: Path) -> None:
    run_git(git_repo, "branch", "auto/issue-8-abcdef")
    manager = _manager(git_repo)

    workspace = manager.attach(8, "auto/issue-8-abcdef")

    assert workspace.branch == "auto/issue-8-abcdef"
    assert run_git(workspace.path, "rev-parse", "--abbrev-ref", "HEAD") == "auto/issue-8-abcdef"


def test_attach_resets_branch_to_start_point(git_repo: Path) -> None:
    manager = _manager(git_repo)

    workspace = manager.attach(9, "auto/issue-9-abcdef", start_point="origin/main")

    assert run_git(workspace.path, "rev-parse", "HEAD") == run_git(git_repo, "rev-parse", "main")


def test_attach_rejects_unsafe_branch(git_repo: Path) -> None:
    with pytest.raises(UnsafeBranchError):
        _manager(git_repo).attach(1, "--force")


def test_clean_stale_removes_only_pipeline_worktrees(git_repo: Path, tmp_path: Path) -> None:
    manager = _manager(git_repo)
    first = manager.create(1)
    second = manager.create(2)
    elsewhere = tmp_path / "elsewhere"
    run_git(git_repo, "worktree", "add", "-b", "manual", str(elsewhere), "main")

    removed = manager.clean_stale()

    assert sorted(Path(path).name for path in removed) == ["issue-1", "issue-2"]
    assert not first.path.exists()
    assert not second.path.exists()
    assert elsewhere.exists()
    assert git_repo.exists()


def test_parse_worktree_list() -> None:
    output = (
        "worktree /repo\n"
        "HEAD 1111111111111111111111111111111111111111\n"
        "branch refs/heads/main\n"
        "\n"
        "worktree /repo/.claude/worktrees/issue-4\n"
        "HEAD 2222222222222222222222222222222222222222\n"
        "branch refs/heads/auto/issue-4-abc123\n"
        "\n"
        "worktree /tmp/detached\n"
        "HEAD 3333333333333333333333333333333333333333\n"
        "detached\n"
    )

    assert parse_worktree_list(output) == [
        WorktreeEntry(
            path="/repo",
            branch="main",
            head="1111111111111111111111111111111111111111",
        ),
        WorktreeEntry(
            path="/repo/.claude/worktrees/issue-4",
            branch="auto/issue-4-abc123",
            head="2222222222222222222222222222222222222222",
        ),
        WorktreeEntry(
            path="/tmp/detached",
            branch=None,
            head="3333333333333333333333333333333333333333",
        ),
    ]
