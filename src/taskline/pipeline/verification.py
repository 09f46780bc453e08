"""Final test/lint verification with a single repair attempt."""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from taskline.config import StackSettings
from taskline.pipeline.backend.base import AgentBackend
from taskline.pipeline.models import AgentName
from taskline.pipeline.process import run_process
from taskline.pipeline.prompts import verification_fix_prompt

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VerificationResult:
    success: bool
    output: str = ""
    failures: list[str] = field(default_factory=list)
    repair_cost_usd: float = 0.0


class VerificationService:
    """Runs the configured test and lint-check commands inside a workspace."""

    def __init__(self, stack: StackSettings, *, timeout_seconds: float = 1800) -> None:
        self.stack = stack
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.stack.test_command or self.stack.lint_check_command)

    def run_checks(self, cwd: Path) -> VerificationResult:
        failures: list[str] = []
        outputs: list[str] = []
        for command in (self.stack.test_command, self.stack.lint_check_command):
            if not command:
                continue
            output = self._run(command, cwd)
            if output is None:
                continue
            failures.append(command)
            outputs.append(output)

        if failures:
            logger.warning("Checks failed: %s", ", ".join(failures))
            return VerificationResult(success=False, output="\n\n".join(outputs), failures=failures)
        logger.info("All checks passed")
        return VerificationResult(success=True)

    def run_tests(self, cwd: Path) -> VerificationResult:
        if not self.stack.test_command:
            return VerificationResult(success=True)
        output = self._run(self.stack.test_command, cwd)
        if output is None:
            return VerificationResult(success=True)
        return VerificationResult(success=False, output=output, failures=[self.stack.test_command])

    def verify_with_repair(self, backend: AgentBackend, cwd: Path) -> VerificationResult:
        """Check, let the implementer fix failures once, then check again."""

        if not self.configured:
            return VerificationResult(success=True)
        logger.info("--- Final verification ---")
        first = self.run_checks(cwd)
        if first.success:
            return first

        logger.warning("Final checks failed, attempting fix...")
        repair = backend.run_agent(
            AgentName.IMPLEMENTER.value,
            verification_fix_prompt(first.output),
            cwd=cwd,
        )
        second = self.run_checks(cwd)
        second.repair_cost_usd = repair.cost_usd
        return second

    def _run(self, command: str, cwd: Path) -> str | None:
        """Return failure output, or ``None`` when the command passed."""

        try:
            argv = shlex.split(command)
        except ValueError as error:
            logger.warning("Invalid shell command in config: %r (%s)", command, error)
            return f"=== {command} ===\nInvalid command: {error}"
        result = run_process(argv, cwd=cwd, timeout=self.timeout_seconds)
        if result.ok:
            return None
        return f"=== {command} ===\n{result.stdout}\n{result.stderr}".rstrip()
