from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from taskline.config import AgentSettings
from taskline.pipeline.backend.claude_backend import (
    ClaudeAgentBackend,
    allowed_tools_for,
    default_model_for,
)
from taskline.pipeline.process import ProcessRegistry

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Agent Process Adapter"),
]


def _backend(
    settings: AgentSettings,
    agents_dir: Path,
    sleeps: list[float],
    **kwargs,
) -> ClaudeAgentBackend:
    return ClaudeAgentBackend(
        settings=settings,
        agents_dir=agents_dir,
        sleep=sleeps.append,
        **kwargs,
    )


def test_echo_agent_round_trip(
    tmp_path: Path,
    agents_dir: Path,
    echo_agent_settings: AgentSettings,
    monkeypatch,
) -> None:
    monkeypatch.setenv("TASKLINE_ECHO_COST", "0.25")
    monkeypatch.setenv("TASKLINE_ECHO_WRITE_FILE", "notes/out.txt")
    registry = ProcessRegistry()
    backend = _backend(echo_agent_settings, agents_dir, [], registry=registry)

    result = backend.run_agent("implementer", "Implement work item #7", cwd=tmp_path)

    assert result.success
    assert result.output == "Echo: Implement work item #7"
    assert result.cost_usd == pytest.approx(0.25)
    assert result.duration_ms == 10
    assert result.num_turns == 1
    assert result.files_edited == ("notes/out.txt",)
    assert (tmp_path / "notes" / "out.txt").read_text(encoding="utf-8") == (
        "Implement work item #7\n"
    )
    assert registry.pids() == frozenset()


def test_missing_agent_file_fails_without_spawning(tmp_path: Path) -> None:
    settings = AgentSettings(command=("taskline-no-such-binary-xyz",))
    backend = _backend(settings, tmp_path / "agents", [])

    result = backend.run_agent("reviewer", "Review", cwd=tmp_path)

    assert not result.success
    assert result.output.startswith("Agent file not found:")


def test_transient_failure_is_retried_after_delay(
    tmp_path: Path,
    agents_dir: Path,
    echo_agent_settings: AgentSettings,
    monkeypatch,
) -> None:
    marker = tmp_path / "failed-once"
    monkeypatch.setenv("TASKLINE_ECHO_FAIL_ONCE", str(marker))
    sleeps: list[float] = []
    backend = _backend(echo_agent_settings, agents_dir, sleeps)

    result = backend.run_agent("implementer", "Implement work item #1", cwd=tmp_path)

    assert result.success
    assert marker.exists()
    assert sleeps == [5.0]


def test_transient_failure_gives_up_after_all_delays(
    tmp_path: Path,
    agents_dir: Path,
    echo_agent_settings: AgentSettings,
    monkeypatch,
) -> None:
    monkeypatch.setenv("TASKLINE_ECHO_STDERR", "Error: 503 overloaded")
    sleeps: list[float] = []
    backend = _backend(echo_agent_settings, agents_dir, sleeps)

    result = backend.run_agent("reviewer", "Review", cwd=tmp_path)

    assert not result.success
    assert "503 overloaded" in result.output
    assert sleeps == [5.0, 15.0]


def test_non_transient_failure_is_not_retried(
    tmp_path: Path,
    agents_dir: Path,
    echo_agent_settings: AgentSettings,
    monkeypatch,
) -> None:
    monkeypatch.setenv("TASKLINE_ECHO_STDERR", "Error: invalid api key")
    monkeypatch.setenv("TASKLINE_ECHO_EXIT", "2")
    sleeps: list[float] = []
    backend = _backend(echo_agent_settings, agents_dir, sleeps)

    result = backend.run_agent("implementer", "Implement", cwd=tmp_path)

    assert not result.success
    assert "invalid api key" in result.output
    assert sleeps == []


def test_no_retry_once_shutdown_is_requested(
    tmp_path: Path,
    agents_dir: Path,
    echo_agent_settings: AgentSettings,
    monkeypatch,
) -> None:
    monkeypatch.setenv("TASKLINE_ECHO_FAIL_ONCE", str(tmp_path / "marker"))
    sleeps: list[float] = []
    backend = _backend(echo_agent_settings, agents_dir, sleeps, cancelled=lambda: True)

    result = backend.run_agent("implementer", "Implement", cwd=tmp_path)

    assert not result.success
    assert sleeps == []


def test_hung_agent_times_out_and_is_not_retried(
    tmp_path: Path,
    agents_dir: Path,
    echo_agent_settings: AgentSettings,
    monkeypatch,
) -> None:
    monkeypatch.setenv("TASKLINE_ECHO_SLEEP", "30")
    settings = replace(echo_agent_settings, timeout_seconds=0.5)
    sleeps: list[float] = []
    backend = _backend(settings, agents_dir, sleeps)

    result = backend.run_agent("reviewer", "Review", cwd=tmp_path)

    assert not result.success
    assert "Timed out after 0.5s" in result.output
    assert sleeps == []


def test_build_argv_places_prompt_after_separator(agents_dir: Path) -> None:
    backend = _backend(AgentSettings(command=("claude",)), agents_dir, [])

    argv = backend.build_argv(
        instructions="Be careful.",
        prompt="Review #3",
        tools=allowed_tools_for("reviewer"),
        model=default_model_for("reviewer"),
    )

    assert argv == [
        "claude",
        "-p",
        "--verbose",
        "--output-format",
        "stream-json",
        "--allowedTools",
        "Read,Grep,Glob,Bash",
        "--model",
        "sonnet",
        "--",
        "Be careful.\n\n---\n\nTask: Review #3",
    ]


def test_tool_allow_lists_and_models() -> None:
    assert allowed_tools_for("implementer") == "Read,Write,Edit,Glob,Grep,Bash"
    assert allowed_tools_for("security_reviewer") == "Read,Grep,Glob,Bash"
    assert allowed_tools_for("custom-agent") == "Read,Grep,Glob,Bash"
    assert default_model_for("implementer") == "opus"
    assert default_model_for("merger") == "haiku"
    assert default_model_for("custom-agent") == "sonnet"


def test_agent_path_uses_dashes(agents_dir: Path) -> None:
    backend = _backend(AgentSettings(), agents_dir, [])

    assert backend.agent_path("security_reviewer") == agents_dir / "security-reviewer.md"
