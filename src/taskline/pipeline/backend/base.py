"""Backend interface for agent step execution."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from taskline.pipeline.models import AgentResult


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def run_agent(
        self,
        name: str,
        prompt: str,
        *,
        cwd: Path,
        model: str | None = None,
    ) -> AgentResult:
        """Run one named agent with ``prompt`` inside ``cwd``."""
