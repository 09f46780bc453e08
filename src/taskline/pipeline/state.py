"""Resumable per-item checkpoint files."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineState:
    """Which steps of one work item completed, and where its workspace lives."""

    item_number: int
    completed_steps: list[int] = field(default_factory=list)
    worktree_path: str | None = None
    branch: str | None = None
    updated_at: str = field(default_factory=lambda: datetime.now(tz=UTC).isoformat())

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> PipelineState:
        if not isinstance(payload, dict):
            raise ValueError("checkpoint must be a JSON object")
        steps = payload.get("completed_steps") or []
        if not isinstance(steps, list):
            raise ValueError("completed_steps must be a list")
        worktree_path = payload.get("worktree_path")
        branch = payload.get("branch")
        return cls(
            item_number=int(payload["item_number"]),  # type: ignore[arg-type]
            completed_steps=[int(step) for step in steps],
            worktree_path=str(worktree_path) if worktree_path else None,
            branch=str(branch) if branch else None,
            updated_at=str(payload.get("updated_at") or ""),
        )


class PipelineStateStore:
    """JSON checkpoint files named ``issue-<n>-state.json`` under the log directory."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = log_dir

    def path_for(self, item_number: int) -> Path:
        if isinstance(item_number, bool) or not isinstance(item_number, int) or item_number < 0:
            raise ValueError(f"Invalid work item number: {item_number!r}")
        return self.log_dir / f"issue-{item_number}-state.json"

    def save(
        self,
        item_number: int,
        *,
        completed_steps: list[int],
        worktree_path: Path | str | None = None,
        branch: str | None = None,
    ) -> PipelineState | None:
        state = PipelineState(
            item_number=item_number,
            completed_steps=list(completed_steps),
            worktree_path=str(worktree_path) if worktree_path is not None else None,
            branch=branch,
        )
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.path_for(item_number).write_text(
                json.dumps(asdict(state), indent=2),
                encoding="utf-8",
            )
        except OSError as error:
            logger.warning("Pipeline state save failed for #%d: %s", item_number, error)
            return None
        return state

    def load(self, item_number: int) -> PipelineState | None:
        path = self.path_for(item_number)
        if not path.exists():
            return None
        try:
            return PipelineState.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as error:
            logger.warning("Failed to parse pipeline state for #%d: %s", item_number, error)
            return None

    def delete(self, item_number: int) -> None:
        self.path_for(item_number).unlink(missing_ok=True)

    def list_all(self) -> list[PipelineState]:
        if not self.log_dir.is_dir():
            return []
        states: list[PipelineState] = []
        for path in sorted(self.log_dir.glob("issue-*-state.json")):
            try:
                states.append(PipelineState.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError, TypeError) as error:
                logger.warning("Skipping unreadable state file %s: %s", path.name, error)
        return states
