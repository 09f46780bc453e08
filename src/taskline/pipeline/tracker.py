"""Contract with the external issue-tracking collaborator."""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol

from taskline.config import ConfigError
from taskline.pipeline.models import ReviewRequest, WorkItem

if TYPE_CHECKING:
    from taskline.config import Settings


class IssueTracker(Protocol):
    """Label-driven work-item store (remote API or local files).

    Implementations persist label state; the orchestrator only drives
    transitions through this interface.
    """

    def fetch_eligible(
        self,
        label: str,
        *,
        exclude_label: str,
        allowed_authors: tuple[str, ...] = (),
    ) -> list[WorkItem]:
        """Items carrying ``label`` but not ``exclude_label``, filtered by author."""

    def fetch_reready(self, label: str) -> list[ReviewRequest]:
        """Items sent back for another pass, with reviewer feedback attached."""

    def add_label(self, number: int, label: str) -> None: ...

    def remove_label(self, number: int, label: str) -> None: ...

    def transition(self, number: int, *, from_label: str, to_label: str) -> None: ...

    def comment(self, number: int, body: str) -> None: ...

    def view(self, number: int) -> WorkItem | None: ...

    def ensure_label(self, label: str) -> None: ...


def load_tracker(path: str | None, settings: Settings) -> IssueTracker:
    """Build the tracker from a ``package.module:factory`` import path."""

    if not path:
        raise ConfigError("TASKLINE_TRACKER is not set (expected 'package.module:factory').")
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Invalid TASKLINE_TRACKER {path!r}: expected 'package.module:factory'.")
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise ConfigError(f"Cannot import tracker module {module_name!r}: {error}") from error
    factory: Callable[[Settings], IssueTracker] | None = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"Tracker factory {path!r} is not callable.")
    return factory(settings)
