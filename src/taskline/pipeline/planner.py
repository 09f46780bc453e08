"""Best-effort batching of eligible items through the planner agent."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import replace
from pathlib import Path

from taskline.pipeline.backend.base import AgentBackend
from taskline.pipeline.models import AgentName, Complexity, WorkItem
from taskline.pipeline.prompts import ITEMS_TAG, wrap_untrusted

logger = logging.getLogger(__name__)

_BATCHES_JSON = re.compile(r"\{[\s\S]*\"batches\"[\s\S]*\}")


def sequential_batches(items: list[WorkItem]) -> list[list[WorkItem]]:
    return [[item] for item in items]


class BatchPlanner:
    """Groups items into batches that can run in parallel."""

    def __init__(self, backend: AgentBackend, *, cwd: Path) -> None:
        self.backend = backend
        self.cwd = cwd

    def plan(self, items: list[WorkItem]) -> list[list[WorkItem]]:
        if len(items) <= 1:
            return sequential_batches(items)

        payload = json.dumps(
            [{"number": item.number, "title": item.title} for item in items],
            ensure_ascii=False,
        )
        result = self.backend.run_agent(
            AgentName.PLANNER.value,
            "Analyze these work items and output parallelization batches as JSON "
            '({"batches": [{"issues": [{"number": N, "complexity": "simple|full"}]}]}):'
            f"\n\n{wrap_untrusted(ITEMS_TAG, payload)}",
            cwd=self.cwd,
        )
        if not result.success:
            logger.warning("Planner failed, falling back to sequential")
            return sequential_batches(items)
        return parse_planner_output(result.output, items)


def parse_planner_output(output: str, items: list[WorkItem]) -> list[list[WorkItem]]:
    """Map planner JSON onto known items; anything unusable means sequential."""

    match = _BATCHES_JSON.search(output)
    if match is None:
        logger.warning("Could not parse planner output, falling back to sequential")
        return sequential_batches(items)
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as error:
        logger.warning("JSON parse error from planner: %s", error)
        return sequential_batches(items)

    raw_batches = parsed.get("batches") if isinstance(parsed, dict) else None
    if not isinstance(raw_batches, list):
        logger.warning("Planner output has no batch list, falling back to sequential")
        return sequential_batches(items)

    by_number = {item.number: item for item in items}
    seen: set[int] = set()
    batches: list[list[WorkItem]] = []
    for raw_batch in raw_batches:
        entries = raw_batch.get("issues") if isinstance(raw_batch, dict) else None
        if not isinstance(entries, list):
            continue
        batch: list[WorkItem] = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                number = int(entry.get("number"))  # type: ignore[arg-type]
            except (TypeError, ValueError):
                continue
            item = by_number.get(number)
            if item is None or number in seen:
                continue
            seen.add(number)
            complexity = Complexity.parse(entry.get("complexity"), default=item.complexity)
            batch.append(replace(item, complexity=complexity or item.complexity))
        if batch:
            batches.append(batch)

    missing = [item for item in items if item.number not in seen]
    if missing:
        logger.info("Planner omitted %d item(s), running them sequentially", len(missing))
        batches.extend(sequential_batches(missing))
    return batches
