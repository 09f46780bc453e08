"""Incremental parser for the agent CLI ``stream-json`` protocol.

One parser instance is fed every stdout line of one agent invocation and
accumulates the state needed to build an :class:`AgentResult`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from taskline.pipeline.models import GREEN_MARKER, RED_MARKER, YELLOW_MARKER

logger = logging.getLogger(__name__)

TEXT_EXCERPT_CHARS = 200
COMMAND_DETAIL_CHARS = 100

TEST_COMMAND_PATTERN = re.compile(
    r"\b(rails\stest|bin/rails\stest|rspec|npm\stest|npx\svitest|cargo\stest|pytest"
    r"|go\stest|mix\stest|rubocop|biome|clippy|eslint)\b",
)

_EDIT_TOOLS = frozenset({"Edit", "Write"})
_SEARCH_TOOLS = frozenset({"Glob", "Grep"})


class TestOutcome(str, Enum):
    """Classification of a test-runner tool result."""

    __test__ = False

    PASS = "pass"
    FAIL = "fail"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class SessionInit:
    model: str
    session_id: str | None


@dataclass(frozen=True, slots=True)
class TextChunk:
    text: str
    has_red: bool = False
    has_yellow: bool = False
    has_green: bool = False

    @property
    def has_findings(self) -> bool:
        return self.has_red or self.has_yellow or self.has_green


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    tool: str
    detail: str
    file_path: str | None = None
    command: str | None = None


@dataclass(frozen=True, slots=True)
class ToolResult:
    command: str
    outcome: TestOutcome


@dataclass(frozen=True, slots=True)
class FinalResult:
    subtype: str | None
    result: str
    cost_usd: float | None
    duration_ms: int | None
    num_turns: int | None


StreamEvent = SessionInit | TextChunk | ToolInvocation | ToolResult | FinalResult


@dataclass(slots=True)
class _PendingTool:
    name: str
    tool_input: dict[str, object] = field(default_factory=dict)


class StreamParser:
    """Stateful parser for one agent invocation."""

    def __init__(self, agent_name: str) -> None:
        self.agent_name = agent_name
        self.result_text: str | None = None
        self.cost_usd: float | None = None
        self.duration_ms: int | None = None
        self.num_turns: int | None = None
        self.files_edited: list[str] = []
        self._text_parts: list[str] = []
        self._pending_tools: dict[str, _PendingTool] = {}
        self._success: bool | None = None

    @property
    def success(self) -> bool:
        return self._success is True

    @property
    def full_output(self) -> str:
        return "\n".join(self._text_parts)

    def parse_line(self, line: str) -> list[StreamEvent]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            return []
        if not isinstance(payload, dict):
            return []

        kind = payload.get("type")
        if kind == "system":
            return self._parse_system(payload)
        if kind == "assistant":
            return self._parse_assistant(payload)
        if kind == "user":
            return self._parse_user(payload)
        if kind == "result":
            return self._parse_result(payload)
        return []

    def _parse_system(self, payload: dict[str, object]) -> list[StreamEvent]:
        if payload.get("subtype") != "init":
            return []
        model = str(payload.get("model") or "unknown")
        session_id = payload.get("session_id")
        self._log(logging.INFO, "[INIT] session (model: %s)", model)
        return [SessionInit(model=model, session_id=str(session_id) if session_id else None)]

    def _parse_assistant(self, payload: dict[str, object]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for block in _content_blocks(payload):
            block_type = block.get("type")
            if block_type == "text":
                events.append(self._parse_text(block))
            elif block_type == "tool_use":
                events.append(self._parse_tool_use(block))
        return events

    def _parse_text(self, block: dict[str, object]) -> TextChunk:
        text = str(block.get("text") or "")
        self._text_parts.append(text)
        chunk = TextChunk(
            text=text[:TEXT_EXCERPT_CHARS],
            has_red=RED_MARKER in text,
            has_yellow=YELLOW_MARKER in text,
            has_green=GREEN_MARKER in text,
        )
        if chunk.has_findings:
            if chunk.has_red:
                severity = "BLOCKING"
            elif chunk.has_yellow:
                severity = "WARNING"
            else:
                severity = "PASS"
            self._log(logging.INFO, "[REVIEW] %s", severity)
        return chunk

    def _parse_tool_use(self, block: dict[str, object]) -> ToolInvocation:
        name = str(block.get("name") or "")
        raw_input = block.get("input")
        tool_input = raw_input if isinstance(raw_input, dict) else {}
        tool_id = block.get("id")
        if tool_id:
            self._pending_tools[str(tool_id)] = _PendingTool(name=name, tool_input=tool_input)

        if name in _EDIT_TOOLS:
            file_path = str(tool_input.get("file_path") or "")
            if file_path:
                self.files_edited.append(file_path)
            self._log(logging.INFO, "[EDIT] %s: %s", name, file_path)
            return ToolInvocation(tool=name, detail=file_path, file_path=file_path)
        if name == "Bash":
            command = str(tool_input.get("command") or "")
            detail = (
                f"{command[: COMMAND_DETAIL_CHARS - 3]}..."
                if len(command) > COMMAND_DETAIL_CHARS
                else command
            )
            self._log(logging.INFO, "[BASH] %s", detail)
            return ToolInvocation(tool=name, detail=detail, command=command)
        if name == "Read":
            detail = str(tool_input.get("file_path") or "")
        elif name in _SEARCH_TOOLS:
            detail = str(tool_input.get("pattern") or tool_input.get("glob") or "")
        else:
            detail = ""
        self._log(logging.DEBUG, "[%s] %s", name.upper() or "TOOL", detail)
        return ToolInvocation(tool=name, detail=detail)

    def _parse_user(self, payload: dict[str, object]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for block in _content_blocks(payload):
            if block.get("type") != "tool_result":
                continue
            event = self._parse_tool_result(block)
            if event is not None:
                events.append(event)
        return events

    def _parse_tool_result(self, block: dict[str, object]) -> ToolResult | None:
        pending = self._pending_tools.get(str(block.get("tool_use_id") or ""))
        if pending is None or pending.name != "Bash":
            return None
        command = str(pending.tool_input.get("command") or "")
        match = TEST_COMMAND_PATTERN.search(command)
        if match is None:
            return None

        outcome = detect_test_outcome(_tool_result_text(block.get("content")))
        label = match.group(0)
        self._log(logging.INFO, "[TEST] %s (%s)", outcome.name, label)
        return ToolResult(command=label, outcome=outcome)

    def _parse_result(self, payload: dict[str, object]) -> list[StreamEvent]:
        subtype = payload.get("subtype")
        self.result_text = str(payload.get("result") or "")
        self.cost_usd = _optional_float(payload.get("total_cost_usd"))
        self.duration_ms = _optional_int(payload.get("duration_ms"))
        self.num_turns = _optional_int(payload.get("num_turns"))
        self._success = subtype == "success"

        cost = f"${self.cost_usd:.4f}" if self.cost_usd is not None else "n/a"
        duration = f"{self.duration_ms / 1000:.1f}s" if self.duration_ms is not None else "n/a"
        self._log(
            logging.INFO,
            "[DONE] %s, %s, %s",
            "success" if self._success else "failed",
            cost,
            duration,
        )
        return [
            FinalResult(
                subtype=str(subtype) if subtype is not None else None,
                result=self.result_text,
                cost_usd=self.cost_usd,
                duration_ms=self.duration_ms,
                num_turns=self.num_turns,
            ),
        ]

    def _log(self, level: int, message: str, *args: object) -> None:
        logger.log(level, f"[%s] {message}", self.agent_name, *args)


_PASS_PATTERNS = (
    re.compile(r"0 failures,\s*0 errors"),
    re.compile(r"no offenses detected", re.IGNORECASE),
    re.compile(r"test result: ok", re.IGNORECASE),
)
_FAILURE_COUNT_PATTERNS = (
    re.compile(r"[1-9]\d* failures?"),
    re.compile(r"[1-9]\d* errors?"),
)
_FAIL_WORD = re.compile(r"FAIL", re.IGNORECASE)
_ZERO_FAILED = re.compile(r"0 failed", re.IGNORECASE)
_PASSED_WORD = re.compile(r"passed", re.IGNORECASE)
_FAILED_WORD = re.compile(r"failed", re.IGNORECASE)


def detect_test_outcome(output: str) -> TestOutcome:
    """Classify test-runner output by well-known success and failure phrases."""

    if any(pattern.search(output) for pattern in _PASS_PATTERNS):
        return TestOutcome.PASS
    if any(pattern.search(output) for pattern in _FAILURE_COUNT_PATTERNS):
        return TestOutcome.FAIL
    if _FAIL_WORD.search(output) and not _ZERO_FAILED.search(output):
        return TestOutcome.FAIL
    if _PASSED_WORD.search(output) and not _FAILED_WORD.search(output):
        return TestOutcome.PASS
    return TestOutcome.UNKNOWN


def _content_blocks(payload: dict[str, object]) -> list[dict[str, object]]:
    message = payload.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _tool_result_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            str(item.get("text") or "")
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        )
    return ""


def _optional_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)
