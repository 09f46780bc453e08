"""Best-effort progress comments and label updates on the tracker."""

from __future__ import annotations

import logging

from taskline.config import LabelSettings
from taskline.pipeline.models import AgentResult, PipelineResult
from taskline.pipeline.tracker import IssueTracker

logger = logging.getLogger(__name__)

FAILURE_OUTPUT_CHARS = 1000


def sanitize_failure_output(output: str) -> str:
    return output[:FAILURE_OUTPUT_CHARS].replace("```", "'''")


class ProgressReporter:
    """Wraps tracker writes so that none of them can fail the pipeline."""

    def __init__(self, tracker: IssueTracker | None, labels: LabelSettings) -> None:
        self.tracker = tracker
        self.labels = labels

    def comment(self, number: int, body: str) -> None:
        if self.tracker is None:
            return
        try:
            self.tracker.comment(number, body)
        except Exception as error:  # noqa: BLE001
            logger.warning("Could not comment on #%d: %s", number, error)

    def transition(self, number: int, *, from_label: str, to_label: str) -> None:
        if self.tracker is None:
            return
        try:
            self.tracker.transition(number, from_label=from_label, to_label=to_label)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Could not move #%d from %s to %s: %s",
                number,
                from_label,
                to_label,
                error,
            )

    def remove_label(self, number: int, label: str) -> None:
        if self.tracker is None:
            return
        try:
            self.tracker.remove_label(number, label)
        except Exception as error:  # noqa: BLE001
            logger.warning("Could not remove %s from #%d: %s", label, number, error)

    def ensure_labels(self) -> None:
        if self.tracker is None:
            return
        for label in self.labels.all():
            try:
                self.tracker.ensure_label(label)
            except Exception as error:  # noqa: BLE001
                logger.warning("Could not ensure label %s: %s", label, error)

    def step_started(self, number: int, role: str, agent: str) -> None:
        self.comment(number, f"\U0001f504 **Phase: {role}** started ({agent})")

    def step_finished(self, number: int, role: str, result: AgentResult) -> None:
        duration = round(result.duration_ms / 1000)
        cost = f"{result.cost_usd:.3f}"
        if result.success:
            body = f"✅ **Phase: {role}** completed — {duration}s | ${cost}"
        else:
            body = f"❌ **Phase: {role}** failed — {duration}s | ${cost}"
        self.comment(number, body)

    def step_skipped(self, number: int, role: str, reason: str) -> None:
        self.comment(number, f"⏭ **Phase: {role}** skipped — {reason}")

    def pipeline_succeeded(
        self,
        number: int,
        *,
        steps_run: int,
        cost_usd: float,
        duration_s: int,
    ) -> None:
        self.comment(
            number,
            f"\U0001f680 Pipeline complete: {steps_run} step(s) in {duration_s}s, "
            f"total cost ${cost_usd:.3f}",
        )

    def pipeline_failed(self, number: int, result: PipelineResult) -> None:
        self.transition(number, from_label=self.labels.in_progress, to_label=self.labels.failed)
        self.comment(
            number,
            f"Pipeline failed at phase: {result.phase}\n\n"
            f"```\n{sanitize_failure_output(result.output)}\n```",
        )

    def pipeline_interrupted(self, number: int) -> None:
        self.transition(number, from_label=self.labels.in_progress, to_label=self.labels.ready)
        self.comment(
            number,
            "⏸ Pipeline interrupted by shutdown. Work in progress was committed; "
            f"run `taskline resume {number}` to continue.",
        )
