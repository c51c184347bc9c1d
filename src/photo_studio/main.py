"""CLI entrypoint for photo-studio."""

import os
from pathlib import Path

import rich_click as click

from photo_studio import __version__
from photo_studio.credits.ledger import InsufficientCreditsError
from photo_studio.logging_setup import configure_logging
from photo_studio.orchestrator.controllers import (
    CancelTaskCommand,
    CleanupCommand,
    CreditsBalanceCommand,
    CreditsCliController,
    CreditsGrantCommand,
    ListTasksCommand,
    RunCycleCommand,
    StatsCommand,
    TaskCliController,
    TaskIdCommand,
    TaskSubmitCommand,
    WorkerCommand,
)
from photo_studio.orchestrator.errors import TaskNotFoundError
from photo_studio.orchestrator.models import TaskStatus, TaskType

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()
CREDITS_CONTROLLER = CreditsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="photo-studio")
@click.option(
    "--log-level",
    default=lambda: os.getenv("PHOTO_STUDIO_LOG_LEVEL", "INFO"),
    show_default="INFO",
    help="Logging level (DEBUG, INFO, WARNING, ERROR).",
)
def photo_studio(log_level: str) -> None:
    """Photo studio task orchestration CLI."""

    try:
        configure_logging(log_level)
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="--log-level") from error


@photo_studio.group()
def tasks() -> None:
    """Task submission, processing and inspection."""


@tasks.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--task-type",
    type=click.Choice([item.value for item in TaskType], case_sensitive=False),
    required=True,
    help="Job kind.",
)
@click.option("--owner-id", required=True, help="Owner whose credits pay for the task.")
@click.option(
    "--image",
    "images",
    multiple=True,
    help="Input image path or URL. Can be repeated.",
)
@click.option("--prompt", default=None, help="Explicit prompt; overrides the type template.")
@click.option(
    "--count",
    type=click.IntRange(min=1, max=10),
    default=1,
    show_default=True,
    help="Number of images to generate.",
)
@click.option(
    "--credits",
    type=click.IntRange(min=0),
    default=None,
    help="Credits to debit; defaults to the per-type price times count.",
)
@click.option(
    "--business-mode",
    type=click.Choice(["personal", "commercial"], case_sensitive=False),
    default="personal",
    show_default=True,
    help="Personal outputs are watermarked.",
)
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Template variable as key=value. Can be repeated.",
)
def tasks_submit(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    owner_id: str,
    images: tuple[str, ...],
    prompt: str | None,
    count: int,
    credits: int | None,
    business_mode: str,
    params: tuple[str, ...],
) -> None:
    """Debit credits and accept a new task."""

    parameters: dict[str, str] = {}
    for item in params:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise click.BadParameter(f"Expected key=value, got {item!r}", param_hint="--param")
        parameters[key.strip()] = value.strip()

    try:
        lines = TASK_CONTROLLER.submit(
            TaskSubmitCommand(
                db_path=db_path,
                task_type=task_type.lower(),
                owner_id=owner_id,
                images=images,
                prompt=prompt,
                count=count,
                credits=credits,
                business_mode=business_mode.lower(),
                parameters=parameters,
            ),
        )
    except InsufficientCreditsError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@tasks.command("run-cycle")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--wait-seconds",
    type=click.FloatRange(min=0),
    default=30.0,
    show_default=True,
    help="How long to wait for dispatched inference calls to report back.",
)
def tasks_run_cycle(db_path: Path | None, wait_seconds: float) -> None:
    """Run one state machine cycle."""

    _emit_lines(
        TASK_CONTROLLER.run_cycle(
            RunCycleCommand(
                db_path=db_path,
                wait_seconds=wait_seconds,
            ),
        ),
    )


@tasks.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many cycles (default: run until SIGINT/SIGTERM).",
)
@click.option(
    "--poll-interval",
    "poll_interval_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds between cycles (default: PHOTO_STUDIO_POLL_INTERVAL_SECONDS).",
)
def tasks_worker(
    db_path: Path | None,
    max_cycles: int | None,
    poll_interval_seconds: float | None,
) -> None:
    """Run the polling state machine driver."""

    _emit_lines(
        TASK_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                max_cycles=max_cycles,
                poll_interval_seconds=poll_interval_seconds,
            ),
        ),
    )


@tasks.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_stats(db_path: Path | None) -> None:
    """Show task counts by state and status."""

    _emit_lines(TASK_CONTROLLER.stats(StatsCommand(db_path=db_path)))


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--owner-id", default=None, help="Optional owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    owner_id: str | None,
    limit: int,
) -> None:
    """List recent tasks."""

    _emit_lines(
        TASK_CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                status=status,
                owner_id=owner_id,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with artifacts and event history."""

    _emit_lines(
        TASK_CONTROLLER.inspect_task(
            TaskIdCommand(
                db_path=db_path,
                task_id=task_id,
            ),
        ),
    )


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option("--reason", default="cancelled_by_user", show_default=True, help="Cancel reason.")
def tasks_cancel(db_path: Path | None, task_id: str, reason: str) -> None:
    """Cancel an active task and refund its credits."""

    try:
        lines = TASK_CONTROLLER.cancel_task(
            CancelTaskCommand(
                db_path=db_path,
                task_id=task_id,
                reason=reason,
            ),
        )
    except TaskNotFoundError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@tasks.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--retention-hours",
    type=click.IntRange(min=0),
    default=None,
    help="Keep terminal tasks updated within this window (default: PHOTO_STUDIO_RETENTION_HOURS).",
)
def tasks_cleanup(db_path: Path | None, retention_hours: int | None) -> None:
    """Delete expired terminal tasks."""

    _emit_lines(
        TASK_CONTROLLER.cleanup(
            CleanupCommand(
                db_path=db_path,
                retention_hours=retention_hours,
            ),
        ),
    )


@photo_studio.group()
def credits() -> None:
    """Credit balance administration."""


@credits.command("grant")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner-id", required=True, help="Owner to credit.")
@click.option("--amount", type=click.IntRange(min=1), required=True, help="Credits to add.")
def credits_grant(db_path: Path | None, owner_id: str, amount: int) -> None:
    """Top up an owner's credit balance."""

    _emit_lines(
        CREDITS_CONTROLLER.grant(
            CreditsGrantCommand(
                db_path=db_path,
                owner_id=owner_id,
                amount=amount,
            ),
        ),
    )


@credits.command("balance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner-id", required=True, help="Owner to show.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max ledger records to print.",
)
def credits_balance(db_path: Path | None, owner_id: str, limit: int) -> None:
    """Show an owner's balance and recent ledger records."""

    _emit_lines(
        CREDITS_CONTROLLER.balance(
            CreditsBalanceCommand(
                db_path=db_path,
                owner_id=owner_id,
                limit=limit,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    photo_studio()
