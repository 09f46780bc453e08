"""Top-level control loop: poll, batch, run in parallel, merge one at a time."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from taskline.config import Settings
from taskline.pipeline.backend.base import AgentBackend
from taskline.pipeline.backend.claude_backend import ClaudeAgentBackend
from taskline.pipeline.comments import ProgressReporter
from taskline.pipeline.errors import RECOVERABLE_ERRORS, PipelineError
from taskline.pipeline.executor import ExecutionContext, StepExecutor
from taskline.pipeline.git import commit_changes, current_branch, ensure_safe_branch, git
from taskline.pipeline.merge import MergeCoordinator
from taskline.pipeline.models import PipelineResult, RunStatus, WorkItem, Workspace
from taskline.pipeline.planner import BatchPlanner
from taskline.pipeline.process import ProcessRegistry
from taskline.pipeline.reready import RereadyProcessor
from taskline.pipeline.shutdown import ShutdownController
from taskline.pipeline.state import PipelineState, PipelineStateStore
from taskline.pipeline.tracker import IssueTracker
from taskline.pipeline.verification import VerificationService
from taskline.pipeline.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

SETUP_PHASE = "setup"


@dataclass(slots=True)
class ItemOutcome:
    """Step-execution result of one item plus the workspace it ran in."""

    item: WorkItem
    result: PipelineResult
    workspace: Workspace | None = None


@dataclass(slots=True)
class RunSummary:
    """Aggregate outcome of one ``run``/``resume`` invocation."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    rereviewed: int = 0
    interrupted: list[int] = field(default_factory=list)
    shutdown_requested: bool = False

    def merge(self, other: RunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.rereviewed += other.rereviewed
        self.interrupted.extend(other.interrupted)


class PipelineOrchestrator:
    """Owns the label state machine and every in-flight workspace."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        tracker: IssueTracker,
        registry: ProcessRegistry | None = None,
        shutdown: ShutdownController | None = None,
        backend: AgentBackend | None = None,
        workspaces: WorkspaceManager | None = None,
        state_store: PipelineStateStore | None = None,
    ) -> None:
        self.settings = settings
        self.tracker = tracker
        self.registry = registry or ProcessRegistry()
        self.shutdown = shutdown or ShutdownController(
            self.registry,
            kill_wait=settings.agents.kill_wait_seconds,
        )
        self.backend = backend or ClaudeAgentBackend(
            settings=settings.agents,
            agents_dir=settings.agents_path,
            registry=self.registry,
            cancelled=self.shutdown.cancelled,
        )
        self.workspaces = workspaces or WorkspaceManager(
            project_dir=settings.project_dir,
            worktree_base=settings.worktree_base,
            trunk_branch=settings.pipeline.trunk_branch,
        )
        self.state_store = state_store or PipelineStateStore(settings.log_path)
        self.labels = settings.labels
        self.reporter = ProgressReporter(tracker, settings.labels)
        self.verification = VerificationService(settings.stack)
        self.executor = StepExecutor(
            backend=self.backend,
            steps=settings.steps,
            state_store=self.state_store,
            verification=self.verification,
            reporter=self.reporter,
            log_dir=settings.log_path,
            reports_dir=settings.reports_path,
            cost_budget=settings.pipeline.cost_budget,
            manual_review=settings.pipeline.manual_review,
            audit_mode=settings.pipeline.audit_mode,
            trunk_branch=settings.pipeline.trunk_branch,
        )
        self.merger = MergeCoordinator(
            backend=self.backend,
            verification=self.verification,
            remote=settings.pipeline.remote,
            trunk_branch=settings.pipeline.trunk_branch,
        )
        self.planner = BatchPlanner(self.backend, cwd=settings.project_dir)
        self.rereadier = RereadyProcessor(
            backend=self.backend,
            workspaces=self.workspaces,
            verification=self.verification,
            reporter=self.reporter,
            labels=settings.labels,
            remote=settings.pipeline.remote,
            trunk_branch=settings.pipeline.trunk_branch,
        )
        self._active_lock = threading.Lock()
        self._active: dict[int, Workspace | None] = {}

    def run(
        self,
        *,
        single: int | None = None,
        once: bool = False,
        dry_run: bool = False,
    ) -> RunSummary:
        """Process one item or poll until stopped; interrupts end the run cleanly."""

        with self.shutdown.install():
            if single is not None:
                summary = self.run_single(single, dry_run=dry_run)
            else:
                summary = self.run_loop(once=once, dry_run=dry_run)
        summary.shutdown_requested = self.shutdown.requested
        if summary.interrupted:
            for number in summary.interrupted:
                logger.warning("Resume #%d with: taskline resume %d", number, number)
        return summary

    def run_single(self, number: int, *, dry_run: bool = False) -> RunSummary:
        logger.info("Running single item mode for #%d", number)
        item = self.tracker.view(number) or WorkItem(number=number)
        if dry_run:
            logger.info("[DRY RUN] Would run pipeline for #%d: %s", number, item.title)
            return RunSummary()
        return self.run_batch([item])

    def run_loop(self, *, once: bool = False, dry_run: bool = False) -> RunSummary:
        summary = RunSummary()
        if not dry_run:
            self.reporter.ensure_labels()
            self._clean_stale_worktrees()

        while not self.shutdown.requested:
            if not dry_run:
                summary.merge(self.process_rereadies())
            if self.shutdown.requested:
                break

            logger.info("Checking for %s items...", self.labels.ready)
            try:
                ready = self.tracker.fetch_eligible(
                    self.labels.ready,
                    exclude_label=self.labels.in_progress,
                    allowed_authors=self.settings.safety.allowed_authors,
                )
            except RECOVERABLE_ERRORS as error:
                logger.warning("Fetching eligible items failed: %s", error)
                ready = []

            if ready:
                logger.info(
                    "Found %d ready item(s): %s",
                    len(ready),
                    ", ".join(f"#{item.number}" for item in ready),
                )
                summary.merge(self.process_items(ready, dry_run=dry_run))
            else:
                logger.info("No ready items found")

            if once:
                break
            logger.info("Sleeping %ss...", self.settings.pipeline.poll_interval_seconds)
            if self.shutdown.wait(self.settings.pipeline.poll_interval_seconds):
                break
        return summary

    def process_rereadies(self) -> RunSummary:
        summary = RunSummary()
        try:
            requests = self.tracker.fetch_reready(self.labels.reready)
        except RECOVERABLE_ERRORS as error:
            logger.warning("Fetching re-review items failed: %s", error)
            return summary
        for request in requests:
            if self.shutdown.requested:
                break
            if self.rereadier.process(request):
                summary.rereviewed += 1
        return summary

    def process_items(self, items: list[WorkItem], *, dry_run: bool = False) -> RunSummary:
        cap = self.settings.pipeline.max_items_per_run
        if len(items) > cap:
            logger.warning("Capping to %d items (found %d)", cap, len(items))
            items = items[:cap]

        summary = RunSummary()
        batches = self.planner.plan(items)
        for index, batch in enumerate(batches, start=1):
            if self.shutdown.requested:
                break
            logger.info("Running batch %d/%d (%d items)", index, len(batches), len(batch))
            if dry_run:
                for item in batch:
                    logger.info(
                        "[DRY RUN] Would process #%d (%s): %s",
                        item.number,
                        item.complexity.value,
                        item.title,
                    )
                continue
            summary.merge(self.run_batch(batch))
        return summary

    def run_batch(self, items: list[WorkItem]) -> RunSummary:
        """Run items in parallel, then merge and clean up sequentially."""

        workers = min(self.settings.pipeline.max_parallel, max(1, len(items)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="item") as pool:
            futures = [pool.submit(self._process_one, item) for item in items]
            wait(futures)

        outcomes: list[ItemOutcome] = []
        crash: BaseException | None = None
        for future in futures:
            error = future.exception()
            if error is None:
                outcome = future.result()
                if outcome is not None:
                    outcomes.append(outcome)
            elif crash is None:
                crash = error
        if crash is not None:
            logger.error(
                "Unexpected error while processing a batch, cleaning up",
                exc_info=(type(crash), crash, crash.__traceback__),
            )
            self._cleanup_after_crash()
            raise crash

        return self._finalize_or_clean_up(outcomes)

    def resume(self, number: int) -> RunSummary:
        """Continue a failed or interrupted item from its checkpoint."""

        state = self.state_store.load(number)
        if state is None:
            raise PipelineError(f"No saved state for #{number}. Nothing to resume.")

        with self.shutdown.install():
            item = self.tracker.view(number) or WorkItem(number=number)
            workspace = self._resolve_workspace(state)
            labels = self.labels
            from_label = labels.ready if labels.ready in item.labels else labels.failed
            self.reporter.transition(number, from_label=from_label, to_label=labels.in_progress)
            with self._active_lock:
                self._active[number] = workspace
            try:
                result = self.executor.run(
                    ExecutionContext(
                        item=item,
                        workspace=workspace,
                        skip_steps=frozenset(state.completed_steps),
                        cancelled=self.shutdown.cancelled,
                    ),
                )
            except RECOVERABLE_ERRORS as error:
                result = PipelineResult(
                    item_number=number,
                    status=RunStatus.FAILED,
                    phase=SETUP_PHASE,
                    output=str(error),
                )
            except Exception:
                logger.exception("#%d unexpected error during resume", number)
                self._cleanup_after_crash()
                raise
            if result.status == RunStatus.FAILED:
                self.reporter.pipeline_failed(number, result)
            summary = self._finalize_or_clean_up(
                [ItemOutcome(item=item, result=result, workspace=workspace)],
            )
        summary.shutdown_requested = self.shutdown.requested
        return summary

    def _process_one(self, item: WorkItem) -> ItemOutcome | None:
        number = item.number
        if self.shutdown.requested:
            logger.info("Shutdown requested, not starting #%d", number)
            return None
        with self._active_lock:
            self._active[number] = None
        self.reporter.transition(
            number,
            from_label=self.labels.ready,
            to_label=self.labels.in_progress,
        )

        workspace: Workspace | None = None
        try:
            workspace = self.workspaces.create(
                number,
                setup_command=self.settings.stack.setup_command,
            )
            with self._active_lock:
                self._active[number] = workspace
            result = self.executor.run(
                ExecutionContext(item=item, workspace=workspace, cancelled=self.shutdown.cancelled),
            )
        except RECOVERABLE_ERRORS as error:
            logger.error("#%d could not run: %s", number, error)
            result = PipelineResult(
                item_number=number,
                status=RunStatus.FAILED,
                phase=SETUP_PHASE,
                output=str(error),
            )

        if result.status == RunStatus.FAILED:
            self.reporter.pipeline_failed(number, result)
        return ItemOutcome(item=item, result=result, workspace=workspace)

    def _finalize_or_clean_up(self, outcomes: list[ItemOutcome]) -> RunSummary:
        try:
            return self._finalize(outcomes)
        except Exception:
            logger.exception("Unexpected error while delivering results, cleaning up")
            self._cleanup_after_crash()
            raise

    def _finalize(self, outcomes: list[ItemOutcome]) -> RunSummary:
        summary = RunSummary(processed=len(outcomes))
        for outcome in outcomes:
            number = outcome.item.number
            result = outcome.result
            if result.success and self.shutdown.forced:
                self._checkpoint_before_merge(outcome)
                result.status = RunStatus.INTERRUPTED
            if result.interrupted:
                self._handle_interrupted(outcome)
                summary.interrupted.append(number)
                continue
            if result.success and outcome.workspace is not None and self._deliver(outcome):
                summary.succeeded += 1
                self._release(number, outcome.workspace)
                continue
            summary.failed += 1
            self._release(
                number,
                outcome.workspace,
                wip_message=f"wip: pipeline failed for #{number}",
            )
        return summary

    def _deliver(self, outcome: ItemOutcome) -> bool:
        number = outcome.item.number
        result = outcome.result
        workspace = outcome.workspace
        assert workspace is not None
        if result.merged:
            self.reporter.transition(
                number,
                from_label=self.labels.in_progress,
                to_label=self.labels.completed,
            )
            return True

        if result.audit_blocked or self.settings.pipeline.manual_review:
            reason = "audit findings" if result.audit_blocked else "manual review mode"
            pr_number = self.merger.create_pr_only(number, workspace)
            if pr_number is None:
                logger.error("#%d PR creation failed", number)
                self.reporter.transition(
                    number,
                    from_label=self.labels.in_progress,
                    to_label=self.labels.failed,
                )
                self.reporter.comment(number, "Pipeline could not create a pull request.")
                return False
            if result.audit_blocked:
                self.reporter.comment(number, f"## Audit Report\n\n{result.audit_output or ''}")
            self.reporter.transition(
                number,
                from_label=self.labels.in_progress,
                to_label=self.labels.awaiting_review,
            )
            logger.info("#%d PR #%d created (%s)", number, pr_number, reason)
            return True

        if self.merger.merge(number, workspace):
            self.reporter.transition(
                number,
                from_label=self.labels.in_progress,
                to_label=self.labels.completed,
            )
            return True
        self.reporter.transition(
            number,
            from_label=self.labels.in_progress,
            to_label=self.labels.failed,
        )
        self.reporter.comment(number, "Pipeline failed at phase: merge")
        return False

    def _handle_interrupted(self, outcome: ItemOutcome) -> None:
        number = outcome.item.number
        if outcome.workspace is not None and commit_changes(
            outcome.workspace.path,
            f"wip: pipeline interrupted for #{number}",
        ):
            logger.info("Committed work in progress for #%d", number)
        self.reporter.pipeline_interrupted(number)
        with self._active_lock:
            self._active.pop(number, None)

    def _checkpoint_before_merge(self, outcome: ItemOutcome) -> None:
        if outcome.workspace is None:
            return
        self.state_store.save(
            outcome.item.number,
            completed_steps=list(range(len(self.settings.steps))),
            worktree_path=outcome.workspace.path,
            branch=outcome.workspace.branch,
        )

    def _release(
        self,
        number: int,
        workspace: Workspace | None,
        *,
        wip_message: str | None = None,
    ) -> None:
        if workspace is not None:
            try:
                if wip_message:
                    commit_changes(workspace.path, wip_message)
                self.workspaces.remove(workspace)
            except RECOVERABLE_ERRORS as error:
                logger.warning("Failed to clean worktree for #%d: %s", number, error)
        with self._active_lock:
            self._active.pop(number, None)

    def _cleanup_after_crash(self) -> None:
        with self._active_lock:
            active = dict(self._active)
            self._active.clear()
        for number, workspace in active.items():
            if workspace is not None:
                try:
                    self.workspaces.remove(workspace)
                except RECOVERABLE_ERRORS as error:
                    logger.warning("Failed to remove worktree for #%d: %s", number, error)
            self.reporter.transition(
                number,
                from_label=self.labels.in_progress,
                to_label=self.labels.ready,
            )

    def _resolve_workspace(self, state: PipelineState) -> Workspace:
        number = state.item_number
        if state.worktree_path and Path(state.worktree_path).is_dir():
            path = Path(state.worktree_path)
            branch = state.branch or current_branch(path)
            if branch is None:
                raise PipelineError(f"Cannot determine branch of {path}.")
            return Workspace(path=path, branch=ensure_safe_branch(branch), item_number=number)

        if not state.branch:
            raise PipelineError("Worktree no longer exists and no branch saved. Cannot resume.")
        branch = ensure_safe_branch(state.branch)
        exists = git("rev-parse", "--verify", branch, cwd=self.settings.project_dir)
        if not exists.ok:
            raise PipelineError(
                f"Worktree no longer exists and branch {branch!r} not found. Cannot resume.",
            )
        return self.workspaces.attach(
            number,
            branch,
            setup_command=self.settings.stack.setup_command,
        )

    def _clean_stale_worktrees(self) -> None:
        try:
            for path in self.workspaces.clean_stale():
                logger.info("Cleaned stale worktree: %s", path)
        except RECOVERABLE_ERRORS as error:
            logger.warning("Stale worktree cleanup failed: %s", error)
