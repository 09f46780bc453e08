"""Subprocess-based agent backend for the ``claude`` CLI stream-json protocol."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from taskline.config import AgentSettings
from taskline.pipeline.failure_classifier import classify_agent_failure
from taskline.pipeline.models import AgentName, AgentResult
from taskline.pipeline.process import ProcessRegistry, ProcessResult, run_process
from taskline.pipeline.stream_parser import StreamParser

logger = logging.getLogger(__name__)

_WRITE_TOOLS = "Read,Write,Edit,Glob,Grep,Bash"
_READ_ONLY_TOOLS = "Read,Grep,Glob,Bash"

AGENT_TOOLS: dict[AgentName, str] = {
    AgentName.IMPLEMENTER: _WRITE_TOOLS,
    AgentName.REVIEWER: _READ_ONLY_TOOLS,
    AgentName.SECURITY_REVIEWER: _READ_ONLY_TOOLS,
    AgentName.AUDITOR: _READ_ONLY_TOOLS,
    AgentName.DOCUMENTER: _WRITE_TOOLS,
    AgentName.MERGER: _READ_ONLY_TOOLS,
    AgentName.PIPELINE: _WRITE_TOOLS,
    AgentName.PLANNER: _READ_ONLY_TOOLS,
}

DEFAULT_MODELS: dict[AgentName, str] = {
    AgentName.IMPLEMENTER: "opus",
    AgentName.REVIEWER: "sonnet",
    AgentName.SECURITY_REVIEWER: "sonnet",
    AgentName.AUDITOR: "sonnet",
    AgentName.DOCUMENTER: "sonnet",
    AgentName.MERGER: "haiku",
    AgentName.PIPELINE: "opus",
    AgentName.PLANNER: "haiku",
}
FALLBACK_MODEL = "sonnet"

_DIAGNOSTIC_TAIL_CHARS = 2000


def allowed_tools_for(name: str) -> str:
    agent = AgentName.lookup(name)
    return AGENT_TOOLS[agent] if agent is not None else _READ_ONLY_TOOLS


def default_model_for(name: str) -> str:
    agent = AgentName.lookup(name)
    return DEFAULT_MODELS[agent] if agent is not None else FALLBACK_MODEL


class ClaudeAgentBackend:
    """Run named agents through the CLI and build structured results.

    Failures whose diagnostics look like network or capacity errors are
    re-run after each delay in ``settings.retry_delays_seconds``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: AgentSettings,
        agents_dir: Path,
        registry: ProcessRegistry | None = None,
        cancelled: Callable[[], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.agents_dir = agents_dir
        self.registry = registry
        self.cancelled = cancelled
        self._sleep = sleep

    def agent_path(self, name: str) -> Path:
        return self.agents_dir / f"{name.replace('_', '-')}.md"

    def run_agent(
        self,
        name: str,
        prompt: str,
        *,
        cwd: Path,
        model: str | None = None,
    ) -> AgentResult:
        agent_file = self.agent_path(name)
        if not agent_file.is_file():
            logger.error("[%s] Agent file not found: %s", name, agent_file)
            return AgentResult(success=False, output=f"Agent file not found: {agent_file}")

        instructions = agent_file.read_text(encoding="utf-8")
        argv = self.build_argv(
            instructions=instructions,
            prompt=prompt,
            tools=allowed_tools_for(name),
            model=model or default_model_for(name),
        )

        result = self._invoke(name, argv, cwd=cwd)
        for retry_number, delay in enumerate(self.settings.retry_delays_seconds, start=1):
            if result.success:
                return result
            if self.cancelled is not None and self.cancelled():
                logger.info("[%s] Not retrying, shutdown requested", name)
                return result
            classification = classify_agent_failure(stdout=result.output, stderr="")
            if not classification.transient:
                return result
            logger.warning(
                "[%s] Transient failure (%s), retry %d/%d in %.0fs",
                name,
                classification.matched_pattern,
                retry_number,
                len(self.settings.retry_delays_seconds),
                delay,
            )
            self._sleep(delay)
            result = self._invoke(name, argv, cwd=cwd)
        return result

    def build_argv(self, *, instructions: str, prompt: str, tools: str, model: str) -> list[str]:
        return [
            *self.settings.command,
            "-p",
            "--verbose",
            "--output-format",
            "stream-json",
            "--allowedTools",
            tools,
            "--model",
            model,
            "--",
            f"{instructions}\n\n---\n\nTask: {prompt}",
        ]

    def _invoke(self, name: str, argv: list[str], *, cwd: Path) -> AgentResult:
        logger.info("[%s] Running agent", name)
        parser = StreamParser(name)
        process = run_process(
            argv,
            cwd=cwd,
            on_line=parser.parse_line,
            timeout=self.settings.timeout_seconds,
            registry=self.registry,
            kill_wait=self.settings.kill_wait_seconds,
        )
        success = parser.success and process.ok
        logger.info(
            "[%s] Finished (exit: %s, stream: %s)",
            name,
            process.returncode,
            "success" if parser.success else "incomplete",
        )
        if process.stderr.strip():
            logger.warning("[%s] Stderr: %s", name, process.stderr.strip()[:300])

        output = (
            parser.full_output or parser.result_text or ""
            if success
            else _diagnostic_output(parser, process)
        )
        return AgentResult(
            success=success,
            output=output,
            cost_usd=parser.cost_usd or 0.0,
            duration_ms=parser.duration_ms or 0,
            num_turns=parser.num_turns or 0,
            files_edited=tuple(parser.files_edited),
        )


def _diagnostic_output(parser: StreamParser, process: ProcessResult) -> str:
    parts = [
        part.strip()
        for part in (process.stderr, parser.result_text or parser.full_output)
        if part and part.strip()
    ]
    if parts:
        return "\n".join(parts)
    return process.stdout[-_DIAGNOSTIC_TAIL_CHARS:].strip() or (
        f"Agent exited with status {process.returncode}"
    )
