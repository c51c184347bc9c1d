"""Controllers for task and credit CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from photo_studio.config import Settings
from photo_studio.credits.ledger import CreditLedger
from photo_studio.orchestrator.engine import OrchestrationEngine, build_engine
from photo_studio.orchestrator.errors import TaskNotFoundError
from photo_studio.orchestrator.models import TaskStatus
from photo_studio.orchestrator.repository import TaskRepository
from photo_studio.orchestrator.services import SubmitTask
from photo_studio.storage.alembic_runner import upgrade_head


@dataclass(slots=True)
class TaskSubmitCommand:
    """CLI input for task acceptance."""

    db_path: Path | None
    task_type: str
    owner_id: str
    images: tuple[str, ...] = ()
    prompt: str | None = None
    count: int = 1
    credits: int | None = None
    business_mode: str = "personal"
    parameters: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class RunCycleCommand:
    """CLI input for a single driver cycle."""

    db_path: Path | None
    wait_seconds: float = 0.0


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for the polling driver loop."""

    db_path: Path | None
    max_cycles: int | None = None
    poll_interval_seconds: float | None = None


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    owner_id: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for single-task operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class CancelTaskCommand:
    db_path: Path | None
    task_id: str
    reason: str = "cancelled_by_user"


@dataclass(slots=True)
class CleanupCommand:
    db_path: Path | None
    retention_hours: int | None = None


@dataclass(slots=True)
class CreditsGrantCommand:
    db_path: Path | None
    owner_id: str
    amount: int


@dataclass(slots=True)
class CreditsBalanceCommand:
    db_path: Path | None
    owner_id: str
    limit: int = 20


class TaskCliController:
    """Coordinates submission, driver runs and inspection CLI operations."""

    def submit(self, command: TaskSubmitCommand) -> list[str]:
        params: dict[str, object] = {"images": list(command.images)}
        if command.prompt:
            params["prompt"] = command.prompt
        if command.parameters:
            params["parameters"] = dict(command.parameters)
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            task = engine.submission.submit(
                SubmitTask(
                    task_type=command.task_type,
                    owner_id=command.owner_id,
                    params=params,
                    count=command.count,
                    credits=command.credits,
                    business_mode=command.business_mode,
                ),
            )
            balance = engine.ledger.balance(command.owner_id)
        return [
            f"Task accepted: task_id={task.task_id} type={task.task_type.value} "
            f"status={task.status.value} credits={task.credits_consumed}",
            f"Balance: {balance}",
        ]

    def run_cycle(self, command: RunCycleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            summary = engine.driver.run_cycle()
            idle = engine.dispatcher.wait_idle(timeout=command.wait_seconds)
        lines = [
            "Cycle summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} skipped={summary.skipped}",
        ]
        for result in summary.results:
            if result.skipped:
                continue
            target = result.next_state.value if result.next_state else "-"
            outcome = "ok" if result.success else f"error={result.error}"
            lines.append(f"  {result.task_id} {result.state.value} -> {target} {outcome}")
        if not idle:
            lines.append("Inference still in flight; results will be timed out on a later cycle.")
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        poll_interval = (
            command.poll_interval_seconds
            if command.poll_interval_seconds is not None
            else settings.orchestrator.poll_interval_seconds
        )
        with _engine(settings) as engine:
            summary = engine.driver.run_loop(
                max_cycles=command.max_cycles,
                poll_interval_seconds=poll_interval,
            )
        return [
            "Worker summary: "
            f"cycles={summary.cycles} processed={summary.processed} "
            f"succeeded={summary.succeeded} failed={summary.failed} skipped={summary.skipped}",
        ]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            by_state = repository.count_by("state")
            by_status = repository.count_by("status")
        total = sum(by_state.values())
        lines = [f"Tasks: {total}", "By status:"]
        lines.extend(f"  {status}: {count}" for status, count in sorted(by_status.items()))
        lines.append("By state:")
        lines.extend(f"  {state}: {count}" for state, count in sorted(by_state.items()))
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = TaskStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                owner_id=command.owner_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type.value} owner={task.owner_id} "
                f"state={task.state.value} status={task.status.value} "
                f"retries={task.retry_count} created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type.value}",
            f"Owner: {task.owner_id}",
            f"State: {task.state.value}",
            f"Status: {task.status.value}",
            f"Retries: {task.retry_count}",
            f"Retry after: {task.retry_after.isoformat() if task.retry_after else '-'}",
            f"Failure reason: {task.failure_reason.value if task.failure_reason else '-'}",
            f"Error: {task.error or '-'}",
            f"Last error: {task.last_error or '-'}",
            f"Credits consumed: {task.credits_consumed}",
            f"Artifacts: {len(details.artifacts)}",
        ]
        for artifact in details.artifacts:
            lines.append(
                f"  #{artifact.position} {artifact.uri} "
                f"sha256={artifact.checksum_sha256 or '-'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.state_from.value if event.state_from else '-'} -> "
                f"{event.state_to.value if event.state_to else '-'} "
                f"[{event.status_to.value if event.status_to else '-'}]",
            )
        return lines

    def cancel_task(self, command: CancelTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            task = engine.repository.get(command.task_id)
            if task is None:
                raise TaskNotFoundError(f"Task not found: {command.task_id}")
            cancelled = engine.failures.cancel(command.task_id, reason=command.reason)
        if not cancelled:
            return [f"Task not cancelled, already {task.status.value}: {command.task_id}"]
        return [f"Task cancelled: {command.task_id} refunded={task.credits_consumed}"]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        hours = (
            command.retention_hours
            if command.retention_hours is not None
            else settings.orchestrator.retention_hours
        )
        with _engine(settings) as engine:
            deleted = engine.driver.cleanup_expired(retention=timedelta(hours=hours))
        return [f"Expired tasks deleted: {deleted} (retention {hours}h)"]


class CreditsCliController:
    """Credit balance administration."""

    def grant(self, command: CreditsGrantCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _ledger(settings) as ledger:
            balance = ledger.grant(command.owner_id, command.amount)
        return [
            f"Credits granted: owner={command.owner_id} amount={command.amount}",
            f"Balance: {balance}",
        ]

    def balance(self, command: CreditsBalanceCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _ledger(settings) as ledger:
            balance = ledger.balance(command.owner_id)
            records = ledger.list_records(owner_id=command.owner_id, limit=command.limit)
        lines = [f"Owner: {command.owner_id}", f"Balance: {balance}", f"Records: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record.created_at.isoformat()} {record.kind} {record.amount} "
                f"task_id={record.task_id or '-'} reason={record.reason or '-'}",
            )
        return lines


@contextmanager
def _engine(settings: Settings) -> Iterator[OrchestrationEngine]:
    settings.validate()
    engine = build_engine(settings)
    engine.repository.init_schema()
    try:
        yield engine
    finally:
        engine.close(wait=engine.dispatcher.in_flight_count() == 0)


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _ledger(settings: Settings) -> Iterator[CreditLedger]:
    upgrade_head(settings.db_path)
    ledger = CreditLedger(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    try:
        yield ledger
    finally:
        ledger.close()
