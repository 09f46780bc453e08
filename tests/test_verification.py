from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
from conftest import AgentCall, RecordingBackend

from taskline.config import StackSettings
from taskline.pipeline.models import AgentResult
from taskline.pipeline.verification import VerificationService

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Final Verification"),
]

PYTHON = shlex.quote(sys.executable)
PASSING = f'{PYTHON} -c "import sys; sys.exit(0)"'
NEEDS_FIX = (
    f'{PYTHON} -c "import pathlib, sys; '
    "print('1 failure'); "
    "sys.exit(0 if pathlib.Path('fixed.txt').exists() else 1)\""
)
REJECTS_AUTOFIX = f"{PYTHON} -c \"import sys; sys.exit('--fix' in sys.argv)\" --fix"


def test_unconfigured_service_passes_without_agent(tmp_path: Path) -> None:
    backend = RecordingBackend()
    service = VerificationService(StackSettings())

    result = service.verify_with_repair(backend, tmp_path)

    assert not service.configured
    assert result.success
    assert backend.calls == []


def test_passing_checks(tmp_path: Path) -> None:
    service = VerificationService(StackSettings(test_command=PASSING, lint_command=PASSING))

    result = service.run_checks(tmp_path)

    assert result.success
    assert result.failures == []


def test_lint_runs_without_autofix_flags(tmp_path: Path) -> None:
    service = VerificationService(StackSettings(lint_command=REJECTS_AUTOFIX))

    assert service.run_checks(tmp_path).success


def test_failures_are_collected_with_output(tmp_path: Path) -> None:
    service = VerificationService(StackSettings(test_command=NEEDS_FIX, lint_command=PASSING))

    result = service.run_checks(tmp_path)

    assert not result.success
    assert result.failures == [NEEDS_FIX]
    assert result.output.startswith(f"=== {NEEDS_FIX} ===")
    assert "1 failure" in result.output


def test_implementer_repairs_once(tmp_path: Path) -> None:
    def _fix(call: AgentCall) -> AgentResult:
        (call.cwd / "fixed.txt").write_text("ok\n", encoding="utf-8")
        return AgentResult(success=True, output="fixed", cost_usd=0.2)

    backend = RecordingBackend({"implementer": [_fix]})
    service = VerificationService(StackSettings(test_command=NEEDS_FIX))

    result = service.verify_with_repair(backend, tmp_path)

    assert result.success
    assert result.repair_cost_usd == 0.2
    assert backend.names == ["implementer"]
    assert "1 failure" in backend.calls[0].prompt


def test_failed_repair_reports_second_run(tmp_path: Path) -> None:
    backend = RecordingBackend({"implementer": [AgentResult(success=False, cost_usd=0.1)]})
    service = VerificationService(StackSettings(test_command=NEEDS_FIX))

    result = service.verify_with_repair(backend, tmp_path)

    assert not result.success
    assert result.repair_cost_usd == 0.1
    assert backend.names == ["implementer"]


def test_invalid_command_counts_as_failure(tmp_path: Path) -> None:
    service = VerificationService(StackSettings(test_command="pytest 'unterminated"))

    result = service.run_tests(tmp_path)

    assert not result.success
    assert "Invalid command" in result.output
