"""Per-item step execution: conditions, budget, checkpoints and the audit gate."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from taskline.config import LabelSettings
from taskline.pipeline.backend.base import AgentBackend
from taskline.pipeline.comments import ProgressReporter
from taskline.pipeline.models import (
    FATAL_ROLES,
    FIX_ROLES,
    REVIEWING_ROLES,
    AgentResult,
    Complexity,
    PipelineResult,
    Role,
    RunStatus,
    StepCondition,
    StepSpec,
    WorkItem,
    Workspace,
)
from taskline.pipeline.prompts import build_step_prompt
from taskline.pipeline.report import RunReport
from taskline.pipeline.state import PipelineStateStore
from taskline.pipeline.verification import VerificationService

logger = logging.getLogger(__name__)

BUDGET_PHASE = "budget"
FINAL_VERIFY_PHASE = "final-verify"


def _never_cancelled() -> bool:
    return False


@dataclass(slots=True)
class ExecutionContext:
    """Everything one run needs that is specific to a single work item."""

    item: WorkItem
    workspace: Workspace
    skip_steps: frozenset[int] = frozenset()
    cancelled: Callable[[], bool] = _never_cancelled


@dataclass(slots=True)
class _RunState:
    completed: list[int] = field(default_factory=list)
    last_review: AgentResult | None = None
    had_fixes: bool = False
    audit_blocked: bool = False
    audit_output: str | None = None
    merged: bool = False
    total_cost: float = 0.0
    total_duration_ms: int = 0
    steps_run: int = 0


class StepExecutor:
    """Runs one work item's step list against an agent backend."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        steps: tuple[StepSpec, ...],
        state_store: PipelineStateStore,
        verification: VerificationService,
        reporter: ProgressReporter | None = None,
        log_dir: Path | None = None,
        reports_dir: Path | None = None,
        cost_budget: float | None = None,
        manual_review: bool = False,
        audit_mode: bool = False,
        trunk_branch: str = "main",
    ) -> None:
        self.backend = backend
        self.steps = steps
        self.state_store = state_store
        self.verification = verification
        self.reporter = reporter or ProgressReporter(None, LabelSettings())
        self.log_dir = log_dir
        self.reports_dir = reports_dir
        self.cost_budget = cost_budget
        self.manual_review = manual_review
        self.audit_mode = audit_mode
        self.trunk_branch = trunk_branch

    def run(self, context: ExecutionContext) -> PipelineResult:
        number = context.item.number
        logger.info(
            "=== Starting pipeline for #%d (%s) ===",
            number,
            context.item.complexity.value,
        )
        report = RunReport(complexity=context.item.complexity)
        run = _RunState(completed=sorted(context.skip_steps))

        outcome = self._run_steps(context, run, report)
        self._log_cost_summary(run.total_cost)
        if outcome is None:
            outcome = self._final_verification(context, run)
        if outcome is None:
            outcome = PipelineResult(
                item_number=number,
                status=RunStatus.DONE,
                output="Pipeline completed successfully",
            )

        outcome.total_cost_usd = run.total_cost
        outcome.audit_blocked = run.audit_blocked
        outcome.audit_output = run.audit_output
        outcome.merged = run.merged
        outcome.completed_steps = list(run.completed)

        if outcome.success:
            self.state_store.delete(number)
            logger.info("=== Pipeline complete for #%d ===", number)
            self.reporter.pipeline_succeeded(
                number,
                steps_run=run.steps_run,
                cost_usd=run.total_cost,
                duration_s=round(run.total_duration_ms / 1000),
            )
        elif outcome.interrupted:
            logger.warning("Pipeline for #%d interrupted before %s", number, outcome.phase)
        else:
            logger.error("Pipeline for #%d failed at phase: %s", number, outcome.phase)

        report.finish(
            success=outcome.success,
            failed_phase=None if outcome.interrupted else outcome.phase,
        )
        if self.reports_dir is not None:
            report.save(number, reports_dir=self.reports_dir)
        return outcome

    def _run_steps(
        self,
        context: ExecutionContext,
        run: _RunState,
        report: RunReport,
    ) -> PipelineResult | None:
        number = context.item.number
        for index, step in enumerate(self.steps):
            if index in context.skip_steps:
                logger.info("Skipping %s (already completed)", step.role)
                report.record_skipped(
                    index=index,
                    agent=step.agent,
                    role=step.role,
                    reason="already completed",
                )
                continue

            if context.cancelled():
                self._save_checkpoint(context, run)
                return PipelineResult(
                    item_number=number,
                    status=RunStatus.INTERRUPTED,
                    phase=step.role,
                    output=f"Shutdown requested before {step.role}",
                )

            reason = self._skip_reason(step, context.item, run)
            if reason is not None:
                logger.info("Skipping %s: %s", step.role, reason)
                report.record_skipped(index=index, agent=step.agent, role=step.role, reason=reason)
                self.reporter.step_skipped(number, step.role, reason)
                continue

            self.reporter.step_started(number, step.role, step.agent)
            result = self._execute(step, context, run)
            report.record_completed(index=index, agent=step.agent, role=step.role, result=result)
            self.reporter.step_finished(number, step.role, result)
            outcome = self._record(index, step, result, context, run)
            if outcome is not None:
                return outcome
        return None

    def _skip_reason(self, step: StepSpec, item: WorkItem, run: _RunState) -> str | None:
        role = Role.lookup(step.role)
        if (
            step.complexity is Complexity.FULL
            and item.complexity is Complexity.SIMPLE
            and not (self.audit_mode and role is Role.AUDIT)
        ):
            return "fast-track item (simple complexity)"
        if role is Role.MERGE:
            if self.manual_review:
                return "manual review mode"
            if run.audit_blocked:
                return "audit reported blocking findings"
        if step.condition is StepCondition.HAS_FINDINGS and not (
            run.last_review is not None and run.last_review.has_blocking_findings
        ):
            return "no blocking findings"
        if step.condition is StepCondition.HAD_FIXES and not run.had_fixes:
            return "no fixes were made"
        return None

    def _execute(self, step: StepSpec, context: ExecutionContext, run: _RunState) -> AgentResult:
        logger.info("--- Phase: %s (%s) ---", step.role, step.agent)
        prompt = build_step_prompt(
            step.role,
            context.item.number,
            findings=run.last_review.output if run.last_review is not None else None,
            trunk=self.trunk_branch,
            item=context.item,
        )
        return self.backend.run_agent(
            step.agent.replace("_", "-"),
            prompt,
            cwd=context.workspace.path,
            model=step.model,
        )

    def _record(  # noqa: PLR0911
        self,
        index: int,
        step: StepSpec,
        result: AgentResult,
        context: ExecutionContext,
        run: _RunState,
    ) -> PipelineResult | None:
        number = context.item.number
        role = Role.lookup(step.role)
        run.total_cost += result.cost_usd
        run.total_duration_ms += result.duration_ms
        run.steps_run += 1

        if role in REVIEWING_ROLES:
            run.last_review = result
        elif role in FIX_ROLES:
            run.had_fixes = True
            run.last_review = None
        elif role is Role.IMPLEMENT:
            run.last_review = None

        if role is Role.AUDIT and (not result.success or result.has_blocking_findings):
            run.audit_blocked = True
            run.audit_output = result.output
            logger.warning("Audit blocked #%d, merge will be skipped", number)
        if role is Role.MERGE and result.success:
            run.merged = True

        if result.success:
            run.completed.append(index)
            self._write_step_output(number, index, step.role, result.output)
        elif context.cancelled():
            self._save_checkpoint(context, run)
            return PipelineResult(
                item_number=number,
                status=RunStatus.INTERRUPTED,
                phase=step.role,
                output=result.output,
            )
        self._save_checkpoint(context, run)

        if not result.success and role in FATAL_ROLES:
            logger.error("%s failed", step.role)
            return PipelineResult(
                item_number=number,
                status=RunStatus.FAILED,
                phase=step.role,
                output=result.output,
            )
        if not result.success:
            logger.warning("%s failed, continuing", step.role)

        if self.cost_budget is not None and run.total_cost > self.cost_budget:
            message = f"Cost budget exceeded: ${run.total_cost:.2f} / ${self.cost_budget:.2f}"
            logger.error(message)
            return PipelineResult(
                item_number=number,
                status=RunStatus.FAILED,
                phase=BUDGET_PHASE,
                output=message,
            )
        return None

    def _final_verification(
        self,
        context: ExecutionContext,
        run: _RunState,
    ) -> PipelineResult | None:
        if not self.verification.configured:
            return None
        number = context.item.number
        if context.cancelled():
            self._save_checkpoint(context, run)
            return PipelineResult(
                item_number=number,
                status=RunStatus.INTERRUPTED,
                phase=FINAL_VERIFY_PHASE,
                output="Shutdown requested before final verification",
            )
        verified = self.verification.verify_with_repair(self.backend, context.workspace.path)
        run.total_cost += verified.repair_cost_usd
        if verified.success:
            return None
        return PipelineResult(
            item_number=number,
            status=RunStatus.FAILED,
            phase=FINAL_VERIFY_PHASE,
            output=verified.output,
        )

    def _save_checkpoint(self, context: ExecutionContext, run: _RunState) -> None:
        self.state_store.save(
            context.item.number,
            completed_steps=run.completed,
            worktree_path=context.workspace.path,
            branch=context.workspace.branch,
        )

    def _write_step_output(self, number: int, index: int, role: str, output: str) -> None:
        if self.log_dir is None or not output.strip():
            return
        path = self.log_dir / f"issue-{number}" / f"step-{index}-{role}.md"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(output, encoding="utf-8")
        except OSError as error:
            logger.debug("Could not write step output %s: %s", path, error)

    def _log_cost_summary(self, total_cost: float) -> None:
        if total_cost == 0:
            return
        budget = f" / ${self.cost_budget:.2f} budget" if self.cost_budget is not None else ""
        logger.info("Pipeline cost: $%.4f%s", total_cost, budget)
