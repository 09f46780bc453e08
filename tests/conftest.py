"""Shared test fixtures."""

from __future__ import annotations

import subprocess
import sys
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from taskline.config import AgentSettings, PipelineSettings, Settings
from taskline.pipeline.models import AgentName, AgentResult, ReviewRequest, WorkItem

ECHO_AGENT_COMMAND = (sys.executable, "-m", "taskline.pipeline.backend.echo_agent")


@dataclass(slots=True)
class AgentCall:
    name: str
    prompt: str
    cwd: Path
    model: str | None


Response = AgentResult | Callable[[AgentCall], AgentResult]


class RecordingBackend:
    """Scripted agent backend.

    ``responses`` maps agent names to a queue; the last entry repeats. An entry
    may be a callable receiving the call, for side effects in the workspace.
    """

    def __init__(
        self,
        responses: dict[str, list[Response]] | None = None,
        default: AgentResult | None = None,
    ) -> None:
        self.responses = {name: list(queue) for name, queue in (responses or {}).items()}
        self.default = default or AgentResult(success=True, output="done", cost_usd=0.01)
        self.calls: list[AgentCall] = []

    @property
    def names(self) -> list[str]:
        return [call.name for call in self.calls]

    def run_agent(
        self,
        name: str,
        prompt: str,
        *,
        cwd: Path,
        model: str | None = None,
    ) -> AgentResult:
        call = AgentCall(name=name, prompt=prompt, cwd=cwd, model=model)
        self.calls.append(call)
        queue = self.responses.get(name)
        if not queue:
            return self.default
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        return response(call) if callable(response) else response


class FakeTracker:
    """In-memory label store that records every write."""

    def __init__(
        self,
        items: list[WorkItem] | None = None,
        reready: list[ReviewRequest] | None = None,
    ) -> None:
        self.items = {item.number: item for item in items or []}
        self.labels: dict[int, set[str]] = defaultdict(set)
        for item in items or []:
            self.labels[item.number].update(item.labels)
        self.reready = list(reready or [])
        self.comments: dict[int, list[str]] = defaultdict(list)
        self.transitions: list[tuple[int, str, str]] = []
        self.ensured: list[str] = []

    def fetch_eligible(
        self,
        label: str,
        *,
        exclude_label: str,
        allowed_authors: tuple[str, ...] = (),
    ) -> list[WorkItem]:
        return [
            item
            for number, item in sorted(self.items.items())
            if label in self.labels[number]
            and exclude_label not in self.labels[number]
            and (not allowed_authors or item.author in allowed_authors)
        ]

    def fetch_reready(self, label: str) -> list[ReviewRequest]:
        return [request for request in self.reready if label in self.labels[request.number]]

    def add_label(self, number: int, label: str) -> None:
        self.labels[number].add(label)

    def remove_label(self, number: int, label: str) -> None:
        self.labels[number].discard(label)

    def transition(self, number: int, *, from_label: str, to_label: str) -> None:
        self.transitions.append((number, from_label, to_label))
        self.labels[number].discard(from_label)
        self.labels[number].add(to_label)

    def comment(self, number: int, body: str) -> None:
        self.comments[number].append(body)

    def view(self, number: int) -> WorkItem | None:
        return self.items.get(number)

    def ensure_label(self, label: str) -> None:
        self.ensured.append(label)


def run_git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout.strip()


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Project repository on ``main`` with a bare ``origin`` remote."""

    origin = tmp_path / "origin.git"
    origin.mkdir()
    run_git(origin, "init", "--bare", "-b", "main")

    repo = tmp_path / "project"
    repo.mkdir()
    run_git(repo, "init", "-b", "main")
    run_git(repo, "config", "user.email", "pipeline@example.com")
    run_git(repo, "config", "user.name", "Pipeline Test")
    run_git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# project\n", encoding="utf-8")
    (repo / ".gitignore").write_text(".claude/\nlogs/\n.taskline/\n", encoding="utf-8")
    run_git(repo, "add", "-A")
    run_git(repo, "commit", "-m", "initial")
    run_git(repo, "remote", "add", "origin", str(origin))
    run_git(repo, "push", "-u", "origin", "main")
    return repo


@pytest.fixture()
def agents_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "agents"
    directory.mkdir()
    for agent in AgentName:
        (directory / f"{agent.value}.md").write_text(
            f"You are the {agent.value} agent.\n",
            encoding="utf-8",
        )
    return directory


@pytest.fixture()
def echo_agent_settings() -> AgentSettings:
    return AgentSettings(
        command=ECHO_AGENT_COMMAND,
        timeout_seconds=30,
        retry_delays_seconds=(5.0, 15.0),
        kill_wait_seconds=0.5,
    )


@pytest.fixture()
def project_settings(git_repo: Path) -> Settings:
    """Settings rooted at ``git_repo`` with agent files for the echo agent."""

    agents = git_repo / ".claude" / "agents"
    agents.mkdir(parents=True)
    for agent in AgentName:
        (agents / f"{agent.value}.md").write_text(f"You are {agent.value}.\n", encoding="utf-8")
    return Settings(
        project_dir=git_repo,
        pipeline=PipelineSettings(max_parallel=2, poll_interval_seconds=0),
        agents=AgentSettings(
            command=ECHO_AGENT_COMMAND,
            timeout_seconds=30,
            retry_delays_seconds=(),
            kill_wait_seconds=0.5,
        ),
    )
