"""Runtime configuration for the ticket pipeline."""

from __future__ import annotations

import json
import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from taskline.pipeline.models import DEFAULT_STEPS, StepSpec

_LINT_FIX_FLAGS = re.compile(r"\s+(?:-A|--fix|--write|--allow-dirty)\b")


class ConfigError(ValueError):
    """Invalid pipeline configuration."""


@dataclass(slots=True)
class PipelineSettings:
    """Scheduling, budget and merge-policy settings."""

    max_parallel: int = 5
    poll_interval_seconds: float = 60.0
    worktree_dir: str = ".claude/worktrees"
    log_dir: str = "logs/pipeline"
    reports_dir: str = ".taskline/reports"
    cost_budget: float | None = None
    manual_review: bool = False
    audit_mode: bool = False
    max_items_per_run: int = 5
    trunk_branch: str = "main"
    remote: str = "origin"


@dataclass(slots=True)
class StackSettings:
    """Project commands used for setup and verification."""

    test_command: str | None = None
    lint_command: str | None = None
    setup_command: str | None = None

    @property
    def lint_check_command(self) -> str | None:
        """Lint command with auto-fix flags stripped."""

        if not self.lint_command:
            return None
        return _LINT_FIX_FLAGS.sub("", self.lint_command).strip() or None


@dataclass(slots=True)
class LabelSettings:
    """Tracker label names for the work-item state machine."""

    ready: str = "auto-ready"
    in_progress: str = "auto-doing"
    completed: str = "completed"
    failed: str = "pipeline-failed"
    reready: str = "auto-reready"
    awaiting_review: str = "auto-pending-human"

    def all(self) -> tuple[str, ...]:
        return (
            self.ready,
            self.in_progress,
            self.completed,
            self.failed,
            self.reready,
            self.awaiting_review,
        )


@dataclass(slots=True)
class AgentSettings:
    """Agent CLI invocation settings."""

    agents_dir: str = ".claude/agents"
    command: tuple[str, ...] = ("claude",)
    timeout_seconds: float = 600.0
    retry_delays_seconds: tuple[float, ...] = (5.0, 15.0)
    kill_wait_seconds: float = 2.0


@dataclass(slots=True)
class SafetySettings:
    """Eligibility filters forwarded to the tracker."""

    allowed_authors: tuple[str, ...] = ()


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_dir: Path = field(default_factory=Path.cwd)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    stack: StackSettings = field(default_factory=StackSettings)
    labels: LabelSettings = field(default_factory=LabelSettings)
    agents: AgentSettings = field(default_factory=AgentSettings)
    safety: SafetySettings = field(default_factory=SafetySettings)
    steps: tuple[StepSpec, ...] = DEFAULT_STEPS
    tracker: str | None = None

    @classmethod
    def from_env(cls, project_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        settings = cls(
            project_dir=project_dir or Path(os.getenv("TASKLINE_PROJECT_DIR", ".")).resolve(),
            pipeline=PipelineSettings(
                max_parallel=int(os.getenv("TASKLINE_MAX_PARALLEL", "5")),
                poll_interval_seconds=float(os.getenv("TASKLINE_POLL_INTERVAL_SECONDS", "60")),
                worktree_dir=os.getenv("TASKLINE_WORKTREE_DIR", ".claude/worktrees"),
                log_dir=os.getenv("TASKLINE_LOG_DIR", "logs/pipeline"),
                reports_dir=os.getenv("TASKLINE_REPORTS_DIR", ".taskline/reports"),
                cost_budget=_env_optional_float("TASKLINE_COST_BUDGET"),
                manual_review=_env_bool("TASKLINE_MANUAL_REVIEW", default=False),
                audit_mode=_env_bool("TASKLINE_AUDIT_MODE", default=False),
                max_items_per_run=int(os.getenv("TASKLINE_MAX_ITEMS_PER_RUN", "5")),
                trunk_branch=os.getenv("TASKLINE_TRUNK_BRANCH", "main"),
                remote=os.getenv("TASKLINE_REMOTE", "origin"),
            ),
            stack=StackSettings(
                test_command=_env_optional_str("TASKLINE_TEST_COMMAND"),
                lint_command=_env_optional_str("TASKLINE_LINT_COMMAND"),
                setup_command=_env_optional_str("TASKLINE_SETUP_COMMAND"),
            ),
            labels=LabelSettings(
                ready=os.getenv("TASKLINE_LABEL_READY", "auto-ready"),
                in_progress=os.getenv("TASKLINE_LABEL_IN_PROGRESS", "auto-doing"),
                completed=os.getenv("TASKLINE_LABEL_COMPLETED", "completed"),
                failed=os.getenv("TASKLINE_LABEL_FAILED", "pipeline-failed"),
                reready=os.getenv("TASKLINE_LABEL_REREADY", "auto-reready"),
                awaiting_review=os.getenv("TASKLINE_LABEL_AWAITING_REVIEW", "auto-pending-human"),
            ),
            agents=AgentSettings(
                agents_dir=os.getenv("TASKLINE_AGENTS_DIR", ".claude/agents"),
                command=tuple(shlex.split(os.getenv("TASKLINE_AGENT_COMMAND", "claude"))),
                timeout_seconds=float(os.getenv("TASKLINE_AGENT_TIMEOUT_SECONDS", "600")),
                retry_delays_seconds=_env_float_tuple(
                    "TASKLINE_AGENT_RETRY_DELAYS_SECONDS",
                    default=(5.0, 15.0),
                ),
                kill_wait_seconds=float(os.getenv("TASKLINE_KILL_WAIT_SECONDS", "2")),
            ),
            safety=SafetySettings(
                allowed_authors=_env_csv("TASKLINE_ALLOWED_AUTHORS"),
            ),
            steps=_collect_steps(),
            tracker=_env_optional_str("TASKLINE_TRACKER"),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for inconsistent settings."""

        if self.pipeline.max_parallel <= 0:
            raise ConfigError("TASKLINE_MAX_PARALLEL must be > 0.")
        if self.pipeline.poll_interval_seconds < 0:
            raise ConfigError("TASKLINE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.pipeline.max_items_per_run <= 0:
            raise ConfigError("TASKLINE_MAX_ITEMS_PER_RUN must be > 0.")
        if self.pipeline.cost_budget is not None and self.pipeline.cost_budget < 0:
            raise ConfigError("TASKLINE_COST_BUDGET must be >= 0.")
        if not self.agents.command:
            raise ConfigError("TASKLINE_AGENT_COMMAND must not be empty.")
        if self.agents.timeout_seconds <= 0:
            raise ConfigError("TASKLINE_AGENT_TIMEOUT_SECONDS must be > 0.")
        if not self.steps:
            raise ConfigError("Pipeline must define at least one step.")
        seen: set[str] = set()
        for step in self.steps:
            if step.role in seen:
                raise ConfigError(f"Duplicate pipeline step role: {step.role!r}")
            seen.add(step.role)

    @property
    def worktree_base(self) -> Path:
        return self.project_dir / self.pipeline.worktree_dir

    @property
    def log_path(self) -> Path:
        return self.project_dir / self.pipeline.log_dir

    @property
    def reports_path(self) -> Path:
        return self.project_dir / self.pipeline.reports_dir

    @property
    def agents_path(self) -> Path:
        return self.project_dir / self.agents.agents_dir


def _collect_steps() -> tuple[StepSpec, ...]:
    raw = os.getenv("TASKLINE_STEPS", "").strip()
    if not raw:
        return DEFAULT_STEPS
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ConfigError(f"TASKLINE_STEPS must be a JSON array: {error}") from error
    if not isinstance(payload, list):
        raise ConfigError("TASKLINE_STEPS must be a JSON array of step objects.")
    steps: list[StepSpec] = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise ConfigError(f"Invalid TASKLINE_STEPS entry: {entry!r}")
        try:
            steps.append(StepSpec.from_dict(entry))
        except ValueError as error:
            raise ConfigError(str(error)) from error
    return tuple(steps)


def _env_optional_str(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as error:
        raise ConfigError(f"Invalid number for {name}: {value!r}") from error


def _env_float_tuple(name: str, *, default: tuple[float, ...]) -> tuple[float, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    parts = [part.strip() for part in value.split(",") if part.strip()]
    try:
        return tuple(float(part) for part in parts)
    except ValueError as error:
        raise ConfigError(f"Invalid number list for {name}: {value!r}") from error


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")
