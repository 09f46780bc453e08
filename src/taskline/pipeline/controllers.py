"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field, replace
from pathlib import Path

from taskline.config import Settings
from taskline.pipeline.errors import PipelineError
from taskline.pipeline.report import load_reports, summarize_reports
from taskline.pipeline.runner import PipelineOrchestrator, RunSummary
from taskline.pipeline.shutdown import SHUTDOWN_EXIT_CODE
from taskline.pipeline.state import PipelineStateStore
from taskline.pipeline.tracker import IssueTracker, load_tracker
from taskline.pipeline.workspace import BRANCH_PREFIX, WorkspaceManager

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400


@dataclass(slots=True)
class RunCommand:
    """CLI input for the polling / single-item run."""

    single: int | None = None
    once: bool = False
    max_parallel: int | None = None
    poll_interval: float | None = None
    manual_review: bool = False
    audit: bool = False
    dry_run: bool = False


@dataclass(slots=True)
class ResumeCommand:
    """CLI input for resuming one item from its checkpoint."""

    number: int
    dry_run: bool = False


@dataclass(slots=True)
class CleanCommand:
    """CLI input for worktree / log cleanup."""

    logs: bool = False
    everything: bool = False
    keep_days: int = 7


@dataclass(slots=True)
class StatusCommand:
    """CLI input for the status overview."""

    report: bool = False


@dataclass(slots=True)
class CommandResult:
    """Lines to print plus the process exit code."""

    lines: list[str] = field(default_factory=list)
    exit_code: int = 0


class PipelineCliController:
    """Translate CLI commands into orchestrator calls and printable lines."""

    def __init__(self, settings: Settings | None = None, tracker: IssueTracker | None = None):
        self._settings = settings
        self._tracker = tracker

    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.from_env()
        return self._settings

    def run(self, command: RunCommand) -> CommandResult:
        settings = self._apply_overrides(self.settings(), command)
        orchestrator = self._orchestrator(settings)
        summary = orchestrator.run(
            single=command.single,
            once=command.once,
            dry_run=command.dry_run,
        )
        return _summary_result(summary)

    def resume(self, command: ResumeCommand) -> CommandResult:
        settings = self.settings()
        store = PipelineStateStore(settings.log_path)
        state = store.load(command.number)
        if state is None:
            return CommandResult(
                lines=[f"No saved state for #{command.number}. Nothing to resume."],
                exit_code=1,
            )

        if command.dry_run:
            lines = [
                f"Resume plan for #{command.number}:",
                f"  worktree: {state.worktree_path or '(none)'}",
                f"  branch:   {state.branch or '(none)'}",
            ]
            for index, step in enumerate(settings.steps):
                marker = "done" if index in state.completed_steps else "run"
                lines.append(f"  [{marker}] {index}: {step.role} ({step.agent})")
            return CommandResult(lines=lines)

        orchestrator = self._orchestrator(settings)
        try:
            summary = orchestrator.resume(command.number)
        except PipelineError as error:
            return CommandResult(lines=[str(error)], exit_code=1)
        return _summary_result(summary)

    def clean(self, command: CleanCommand) -> CommandResult:
        settings = self.settings()
        workspaces = _workspaces(settings)
        removed = workspaces.clean_stale()
        lines = [f"Removed worktree: {path}" for path in removed]
        lines.append(f"Stale worktrees removed: {len(removed)}")

        if command.logs or command.everything:
            cutoff = time.time() - command.keep_days * SECONDS_PER_DAY
            log_dir = settings.log_path
            patterns = ["*.log", "issue-*/"]
            if command.everything:
                patterns.append("issue-*-state.json")
            deleted = _delete_older_than(log_dir, patterns, cutoff)
            if command.everything:
                deleted += _delete_older_than(settings.reports_path, ["issue-*.json"], cutoff)
            lines.append(f"Old log files removed: {deleted} (kept last {command.keep_days} days)")
        return CommandResult(lines=lines)

    def status(self, command: StatusCommand) -> CommandResult:
        settings = self.settings()
        lines: list[str] = []

        states = PipelineStateStore(settings.log_path).list_all()
        lines.append(f"Resumable items: {len(states)}")
        for state in states:
            done = ", ".join(
                settings.steps[index].role
                for index in state.completed_steps
                if 0 <= index < len(settings.steps)
            )
            lines.append(
                f"  #{state.item_number} branch={state.branch or '-'} "
                f"completed=[{done}] updated={state.updated_at or '-'}",
            )

        entries = [
            entry
            for entry in _workspaces(settings).list()
            if entry.branch and entry.branch.startswith(BRANCH_PREFIX)
        ]
        lines.append(f"Pipeline worktrees: {len(entries)}")
        lines.extend(f"  {entry.path} [{entry.branch}]" for entry in entries)

        if command.report:
            lines.extend(_report_lines(settings))
        return CommandResult(lines=lines)

    def _orchestrator(self, settings: Settings) -> PipelineOrchestrator:
        tracker = self._tracker or load_tracker(settings.tracker, settings)
        return PipelineOrchestrator(settings=settings, tracker=tracker)

    @staticmethod
    def _apply_overrides(settings: Settings, command: RunCommand) -> Settings:
        pipeline = settings.pipeline
        if command.max_parallel is not None:
            pipeline = replace(pipeline, max_parallel=command.max_parallel)
        if command.poll_interval is not None:
            pipeline = replace(pipeline, poll_interval_seconds=command.poll_interval)
        if command.manual_review:
            pipeline = replace(pipeline, manual_review=True)
        if command.audit:
            pipeline = replace(pipeline, audit_mode=True)
        updated = replace(settings, pipeline=pipeline)
        updated.validate()
        return updated


def _summary_result(summary: RunSummary) -> CommandResult:
    lines = [
        "Pipeline summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} rereviewed={summary.rereviewed} "
        f"interrupted={len(summary.interrupted)}",
    ]
    lines.extend(f"Resume with: taskline resume {number}" for number in summary.interrupted)
    if summary.shutdown_requested:
        lines.append("Shutdown complete.")
        return CommandResult(lines=lines, exit_code=SHUTDOWN_EXIT_CODE)
    return CommandResult(lines=lines, exit_code=1 if summary.failed else 0)


def _workspaces(settings: Settings) -> WorkspaceManager:
    return WorkspaceManager(
        project_dir=settings.project_dir,
        worktree_base=settings.worktree_base,
        trunk_branch=settings.pipeline.trunk_branch,
    )


def _delete_older_than(directory: Path, patterns: list[str], cutoff: float) -> int:
    if not directory.is_dir():
        return 0
    deleted = 0
    for pattern in patterns:
        for path in directory.glob(pattern):
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                deleted += 1
            except OSError as error:
                logger.warning("Could not delete %s: %s", path, error)
    return deleted


def _report_lines(settings: Settings) -> list[str]:
    reports = load_reports(settings.reports_path)
    if not reports:
        return ["Reports: none saved yet"]
    summary = summarize_reports(reports)
    lines = [
        f"Reports: {summary.runs} run(s), success rate {summary.success_rate:.0%}",
        f"  average cost ${summary.average_cost_usd:.3f}, "
        f"average duration {summary.average_duration_s:.0f}s",
    ]
    if summary.most_skipped:
        skipped = ", ".join(f"{role} x{count}" for role, count in summary.most_skipped)
        lines.append(f"  most skipped: {skipped}")
    if summary.failed_phases:
        failed = ", ".join(f"{phase} x{count}" for phase, count in summary.failed_phases)
        lines.append(f"  failed phases: {failed}")
    return lines
