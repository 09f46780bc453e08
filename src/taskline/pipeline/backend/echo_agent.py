"""Local stand-in for the agent CLI used by integration tests.

Accepts the same arguments as ``claude -p --output-format stream-json`` and
emits a deterministic event stream. Behaviour is steered by environment:

- ``TASKLINE_ECHO_REPLY``: assistant text (defaults to an echo of the task).
- ``TASKLINE_ECHO_COST``: reported ``total_cost_usd``.
- ``TASKLINE_ECHO_WRITE_FILE``: relative path to write and report as edited.
- ``TASKLINE_ECHO_STDERR`` / ``TASKLINE_ECHO_EXIT``: fail with this diagnostic.
- ``TASKLINE_ECHO_FAIL_ONCE``: marker path; the first run fails with a
  connection reset and creates the marker.
- ``TASKLINE_ECHO_SLEEP``: seconds to hang before answering.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Emit one stream-json session for the given prompt."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--allowedTools", default="")
    parser.add_argument("--model", default="echo")
    parser.add_argument("prompt", nargs="?", default="")
    args = parser.parse_args(argv)

    fail_once = os.getenv("TASKLINE_ECHO_FAIL_ONCE")
    if fail_once and not Path(fail_once).exists():
        Path(fail_once).write_text("failed once\n", "utf-8")
        sys.stderr.write("Error: read ECONNRESET (connection reset by peer)\n")
        return 1

    stderr_text = os.getenv("TASKLINE_ECHO_STDERR")
    if stderr_text:
        sys.stderr.write(f"{stderr_text}\n")
        return int(os.getenv("TASKLINE_ECHO_EXIT", "1"))

    hang = float(os.getenv("TASKLINE_ECHO_SLEEP", "0"))
    if hang > 0:
        time.sleep(hang)

    _emit({"type": "system", "subtype": "init", "model": args.model, "session_id": "echo"})
    print("this line is not json", flush=True)

    task = args.prompt.rsplit("Task: ", 1)[-1].strip()
    reply = os.getenv("TASKLINE_ECHO_REPLY") or f"Echo: {task.splitlines()[0] if task else ''}"
    content: list[dict[str, object]] = [{"type": "text", "text": reply}]

    write_file = os.getenv("TASKLINE_ECHO_WRITE_FILE")
    if write_file:
        target = Path.cwd() / write_file
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as handle:
            handle.write(f"{task.splitlines()[0] if task else 'echo'}\n")
        content.append(
            {
                "type": "tool_use",
                "id": "tool-1",
                "name": "Write",
                "input": {"file_path": write_file},
            },
        )
    _emit({"type": "assistant", "message": {"content": content}})

    _emit(
        {
            "type": "result",
            "subtype": "success",
            "result": reply,
            "total_cost_usd": float(os.getenv("TASKLINE_ECHO_COST", "0.001")),
            "duration_ms": 10,
            "num_turns": 1,
        },
    )
    return 0


def _emit(payload: dict[str, object]) -> None:
    print(json.dumps(payload), flush=True)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
