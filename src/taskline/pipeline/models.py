"""Domain models for work items, pipeline steps and agent results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

RED_MARKER = "\U0001f534"
YELLOW_MARKER = "\U0001f7e1"
GREEN_MARKER = "\U0001f7e2"
BLOCK_TOKEN = "BLOCK"


class Complexity(str, Enum):
    """Work item complexity tag used for step gating."""

    SIMPLE = "simple"
    FULL = "full"

    @classmethod
    def parse(cls, value: str | None, *, default: Complexity | None = None) -> Complexity | None:
        if value is None or not str(value).strip():
            return default
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default


class StepCondition(str, Enum):
    """Data-dependent guard on a pipeline step."""

    HAS_FINDINGS = "has_findings"
    HAD_FIXES = "had_fixes"


class Role(str, Enum):
    """Well-known step roles; unknown role names fall back to a generic prompt."""

    IMPLEMENT = "implement"
    REVIEW = "review"
    VERIFY = "verify"
    SECURITY = "security"
    FIX = "fix"
    SECURITY_FIX = "security-fix"
    DOCUMENT = "document"
    AUDIT = "audit"
    MERGE = "merge"
    CREATE_PR = "create_pr"

    @classmethod
    def lookup(cls, name: str) -> Role | None:
        try:
            return cls(name)
        except ValueError:
            return None


REVIEWING_ROLES = frozenset({Role.REVIEW, Role.VERIFY, Role.SECURITY, Role.AUDIT})
FIX_ROLES = frozenset({Role.FIX, Role.SECURITY_FIX})
FATAL_ROLES = frozenset({Role.IMPLEMENT, Role.MERGE})


class AgentName(str, Enum):
    """Agents with dedicated tool allow-lists and default models."""

    IMPLEMENTER = "implementer"
    REVIEWER = "reviewer"
    SECURITY_REVIEWER = "security-reviewer"
    AUDITOR = "auditor"
    DOCUMENTER = "documenter"
    MERGER = "merger"
    PIPELINE = "pipeline"
    PLANNER = "planner"

    @classmethod
    def lookup(cls, name: str) -> AgentName | None:
        try:
            return cls(name.replace("_", "-"))
        except ValueError:
            return None


class RunStatus(str, Enum):
    """Terminal states of one step-executor run."""

    DONE = "done"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True, slots=True)
class WorkItem:
    """Read-only snapshot of an external ticket."""

    number: int
    title: str = ""
    body: str = ""
    labels: tuple[str, ...] = ()
    complexity: Complexity = Complexity.FULL
    author: str | None = None


@dataclass(frozen=True, slots=True)
class ReviewRequest:
    """Work item sent back by a human reviewer with feedback."""

    number: int
    branch: str
    title: str = ""
    body: str = ""
    pr_number: int | None = None
    reviews: tuple[str, ...] = ()
    comments: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class StepSpec:
    """One entry in the linear pipeline definition."""

    agent: str
    role: str
    condition: StepCondition | None = None
    complexity: Complexity | None = None
    model: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> StepSpec:
        agent = str(payload.get("agent") or "").strip()
        role = str(payload.get("role") or "").strip()
        if not agent or not role:
            raise ValueError(f"Pipeline step requires agent and role: {payload!r}")
        condition_raw = payload.get("condition")
        complexity_raw = payload.get("complexity")
        model_raw = payload.get("model")
        return cls(
            agent=agent,
            role=role,
            condition=StepCondition(str(condition_raw)) if condition_raw else None,
            complexity=Complexity(str(complexity_raw)) if complexity_raw else None,
            model=str(model_raw) if model_raw else None,
        )


@dataclass(frozen=True, slots=True)
class AgentResult:
    """Outcome of one agent invocation."""

    success: bool
    output: str = ""
    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    files_edited: tuple[str, ...] = ()

    @property
    def has_blocking_findings(self) -> bool:
        return RED_MARKER in self.output or BLOCK_TOKEN in self.output

    @property
    def has_warnings(self) -> bool:
        return YELLOW_MARKER in self.output


@dataclass(frozen=True, slots=True)
class Workspace:
    """Isolated worktree owned by exactly one work item."""

    path: Path
    branch: str
    item_number: int


@dataclass(slots=True)
class PipelineResult:
    """Outcome of running the step list for one work item."""

    item_number: int
    status: RunStatus
    phase: str | None = None
    output: str = ""
    total_cost_usd: float = 0.0
    audit_blocked: bool = False
    audit_output: str | None = None
    merged: bool = False
    completed_steps: list[int] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == RunStatus.DONE

    @property
    def interrupted(self) -> bool:
        return self.status == RunStatus.INTERRUPTED


DEFAULT_STEPS: tuple[StepSpec, ...] = (
    StepSpec(agent="implementer", role="implement"),
    StepSpec(agent="reviewer", role="review"),
    StepSpec(agent="implementer", role="fix", condition=StepCondition.HAS_FINDINGS),
    StepSpec(agent="reviewer", role="verify", condition=StepCondition.HAD_FIXES),
    StepSpec(agent="security-reviewer", role="security"),
    StepSpec(
        agent="implementer",
        role="security-fix",
        condition=StepCondition.HAS_FINDINGS,
        complexity=Complexity.FULL,
    ),
    StepSpec(agent="documenter", role="document", complexity=Complexity.FULL),
    StepSpec(agent="auditor", role="audit", complexity=Complexity.FULL),
)
