"""Thin git wrappers shared by the workspace, executor and merge layers."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from taskline.pipeline.errors import UnsafeBranchError
from taskline.pipeline.process import ProcessResult, run_process

logger = logging.getLogger(__name__)

_BRANCH_CHARS = re.compile(r"[A-Za-z0-9_./-]+")


def safe_branch_name(name: str | None) -> bool:
    """Whether ``name`` can be passed to git without option or path injection."""

    if not name:
        return False
    return bool(_BRANCH_CHARS.fullmatch(name)) and not name.startswith("-") and ".." not in name


def ensure_safe_branch(name: str | None) -> str:
    if not safe_branch_name(name):
        raise UnsafeBranchError(name)
    assert name is not None
    return name


def git(*args: str, cwd: Path | str, timeout: float | None = 300) -> ProcessResult:
    return run_process(["git", *args], cwd=cwd, timeout=timeout)


def commit_changes(cwd: Path | str, message: str) -> bool:
    """Stage and commit everything; ``False`` when clean or on failure."""

    status = git("status", "--porcelain", cwd=cwd)
    if not status.ok:
        logger.warning("git status --porcelain failed in %s", cwd)
        return False
    if not status.stdout.strip():
        return False

    added = git("add", "-A", cwd=cwd)
    if not added.ok:
        logger.warning("git add failed: %s", added.stderr[:200])
        return False

    committed = git("commit", "-m", message, cwd=cwd)
    if not committed.ok:
        logger.warning("git commit failed: %s", committed.stderr[:200])
        return False
    return True


def current_branch(cwd: Path | str) -> str | None:
    result = git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    if not result.ok:
        return None
    return result.stdout.strip() or None


def conflicted_files(cwd: Path | str) -> list[str]:
    result = git("diff", "--name-only", "--diff-filter=U", cwd=cwd)
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]
