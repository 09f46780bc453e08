"""CLI entrypoint for taskline."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import rich_click as click
from rich.logging import RichHandler

from taskline import __version__
from taskline.config import ConfigError
from taskline.pipeline.controllers import (
    CleanCommand,
    CommandResult,
    PipelineCliController,
    ResumeCommand,
    RunCommand,
    StatusCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PipelineCliController()
FILE_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="taskline")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output (tool calls, git commands).")
@click.option("--quiet", "-q", is_flag=True, help="Only log warnings and errors.")
@click.pass_context
def taskline(ctx: click.Context, verbose: bool, quiet: bool) -> None:
    """Autonomous ticket pipeline: agents implement, review and merge work items."""

    ctx.ensure_object(dict)
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    ctx.obj["log_level"] = level
    _configure_logging(level)


@taskline.command("run")
@click.option("--single", type=click.IntRange(min=0), default=None, help="Run one work item.")
@click.option("--once", is_flag=True, help="Poll once instead of looping.")
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel items per batch (overrides TASKLINE_MAX_PARALLEL).",
)
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds between polls (overrides TASKLINE_POLL_INTERVAL_SECONDS).",
)
@click.option("--manual-review", is_flag=True, help="Open PRs for human review instead of merging.")
@click.option("--audit", is_flag=True, help="Always run the audit step, even for simple items.")
@click.option("--dry-run", is_flag=True, help="Show what would be processed without changes.")
@click.pass_context
def run(  # noqa: PLR0913
    ctx: click.Context,
    single: int | None,
    once: bool,
    max_parallel: int | None,
    poll_interval: float | None,
    manual_review: bool,
    audit: bool,
    dry_run: bool,
) -> None:
    """Poll for ready work items and run them through the pipeline."""

    _attach_file_log(ctx)
    _finish(
        ctx,
        _guarded(
            lambda: CONTROLLER.run(
                RunCommand(
                    single=single,
                    once=once,
                    max_parallel=max_parallel,
                    poll_interval=poll_interval,
                    manual_review=manual_review,
                    audit=audit,
                    dry_run=dry_run,
                ),
            ),
        ),
    )


@taskline.command("resume")
@click.argument("number", type=click.IntRange(min=0))
@click.option("--dry-run", is_flag=True, help="List the steps that would re-run.")
@click.pass_context
def resume(ctx: click.Context, number: int, dry_run: bool) -> None:
    """Resume a failed or interrupted work item from its checkpoint."""

    if not dry_run:
        _attach_file_log(ctx)
    _finish(ctx, _guarded(lambda: CONTROLLER.resume(ResumeCommand(number=number, dry_run=dry_run))))


@taskline.command("clean")
@click.option("--logs", is_flag=True, help="Also delete old log files and step outputs.")
@click.option(
    "--all",
    "everything",
    is_flag=True,
    help="Also delete old checkpoints and run reports.",
)
@click.option(
    "--keep",
    "keep_days",
    type=click.IntRange(min=0),
    default=7,
    show_default=True,
    help="Keep files newer than this many days.",
)
@click.pass_context
def clean(ctx: click.Context, logs: bool, everything: bool, keep_days: int) -> None:
    """Remove stale worktrees and, optionally, old logs."""

    _finish(
        ctx,
        _guarded(
            lambda: CONTROLLER.clean(
                CleanCommand(logs=logs, everything=everything, keep_days=keep_days),
            ),
        ),
    )


@taskline.command("status")
@click.option("--report", is_flag=True, help="Include aggregate statistics from run reports.")
@click.pass_context
def status(ctx: click.Context, report: bool) -> None:
    """Show resumable items, pipeline worktrees and run statistics."""

    _finish(ctx, _guarded(lambda: CONTROLLER.status(StatusCommand(report=report))))


def _guarded(call: Callable[[], CommandResult]) -> CommandResult:
    try:
        return call()
    except ConfigError as error:
        raise click.ClickException(str(error)) from error


def _finish(ctx: click.Context, result: CommandResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code:
        ctx.exit(result.exit_code)


def _configure_logging(level: int) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _attach_file_log(ctx: click.Context) -> None:
    try:
        log_dir: Path = CONTROLLER.settings().log_path
    except ConfigError as error:
        raise click.ClickException(str(error)) from error
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logging.getLogger(__name__).warning("Cannot create log dir %s: %s", log_dir, error)
        return
    timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
    handler = logging.FileHandler(log_dir / f"{timestamp}-pipeline.log", encoding="utf-8")
    handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
    handler.setLevel((ctx.obj or {}).get("log_level", logging.INFO))
    logging.getLogger().addHandler(handler)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskline()
