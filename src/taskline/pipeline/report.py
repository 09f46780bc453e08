"""Per-run reports and their aggregation for ``taskline status --report``."""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from taskline.pipeline.models import AgentResult, Complexity

logger = logging.getLogger(__name__)

STEP_COMPLETED = "completed"
STEP_SKIPPED = "skipped"


def _now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class RunReport:
    """Append-only record of one pipeline run, saved once at the end."""

    complexity: Complexity = Complexity.FULL
    steps: list[dict[str, object]] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    finished_at: datetime | None = None
    success: bool | None = None
    failed_phase: str | None = None

    def record_completed(self, *, index: int, agent: str, role: str, result: AgentResult) -> None:
        self.steps.append(
            {
                "index": index,
                "agent": agent,
                "role": role,
                "status": STEP_COMPLETED,
                "success": result.success,
                "duration_s": round(result.duration_ms / 1000),
                "cost_usd": result.cost_usd,
                "num_turns": result.num_turns,
                "files_edited": list(result.files_edited),
            },
        )

    def record_skipped(self, *, index: int, agent: str, role: str, reason: str) -> None:
        self.steps.append(
            {
                "index": index,
                "agent": agent,
                "role": role,
                "status": STEP_SKIPPED,
                "skip_reason": reason,
            },
        )

    def finish(self, *, success: bool, failed_phase: str | None = None) -> None:
        self.finished_at = _now()
        self.success = success
        self.failed_phase = failed_phase

    @property
    def total_cost_usd(self) -> float:
        costs = (float(step.get("cost_usd", 0.0)) for step in self.steps)  # type: ignore[arg-type]
        return round(sum(costs), 4)

    def to_dict(self, item_number: int) -> dict[str, object]:
        duration = (
            round((self.finished_at - self.started_at).total_seconds())
            if self.finished_at is not None
            else None
        )
        return {
            "item_number": item_number,
            "complexity": self.complexity.value,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total_duration_s": duration,
            "total_cost_usd": self.total_cost_usd,
            "steps": self.steps,
            "failed_phase": self.failed_phase,
        }

    def save(self, item_number: int, *, reports_dir: Path) -> Path | None:
        try:
            reports_dir.mkdir(parents=True, exist_ok=True)
            stamp = _now().strftime("%Y%m%d%H%M%S%f")
            path = reports_dir / f"issue-{item_number}-{stamp}.json"
            path.write_text(json.dumps(self.to_dict(item_number), indent=2), encoding="utf-8")
        except OSError as error:
            logger.warning("Could not save run report for #%d: %s", item_number, error)
            return None
        return path


def load_reports(reports_dir: Path) -> list[dict[str, object]]:
    if not reports_dir.is_dir():
        return []
    reports: list[dict[str, object]] = []
    for path in sorted(reports_dir.glob("issue-*.json")):
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Skipping malformed report %s: %s", path.name, error)
            continue
        if isinstance(payload, dict):
            reports.append(payload)
    return reports


@dataclass(slots=True)
class ReportSummary:
    """Aggregate statistics across saved run reports."""

    runs: int
    succeeded: int
    average_cost_usd: float
    average_duration_s: float
    most_skipped: list[tuple[str, int]]
    failed_phases: list[tuple[str, int]]

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.runs if self.runs else 0.0


def summarize_reports(reports: list[dict[str, object]]) -> ReportSummary:
    runs = len(reports)
    succeeded = sum(1 for report in reports if report.get("success") is True)
    costs = [
        float(report.get("total_cost_usd") or 0.0)  # type: ignore[arg-type]
        for report in reports
    ]
    durations = [
        float(report["total_duration_s"])  # type: ignore[arg-type]
        for report in reports
        if report.get("total_duration_s") is not None
    ]
    skipped: Counter[str] = Counter()
    failed: Counter[str] = Counter()
    for report in reports:
        for step in report.get("steps") or []:  # type: ignore[union-attr]
            if isinstance(step, dict) and step.get("status") == STEP_SKIPPED:
                skipped[str(step.get("role"))] += 1
        if report.get("failed_phase"):
            failed[str(report["failed_phase"])] += 1
    return ReportSummary(
        runs=runs,
        succeeded=succeeded,
        average_cost_usd=sum(costs) / runs if runs else 0.0,
        average_duration_s=sum(durations) / len(durations) if durations else 0.0,
        most_skipped=skipped.most_common(5),
        failed_phases=failed.most_common(5),
    )
