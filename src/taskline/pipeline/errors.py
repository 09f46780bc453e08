"""Recoverable pipeline errors.

Anything raised while processing a work item that is not one of these (or an
``OSError``) is treated as a programming error and re-raised after cleanup.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Expected operational failure for one work item."""


class UnsafeBranchError(PipelineError):
    """Branch name rejected before reaching a git argument list."""

    def __init__(self, branch: str | None) -> None:
        super().__init__(f"Unsafe branch name: {branch!r}")
        self.branch = branch


class WorkspaceError(PipelineError):
    """Worktree creation, attachment or setup failed."""


RECOVERABLE_ERRORS: tuple[type[BaseException], ...] = (PipelineError, OSError)
