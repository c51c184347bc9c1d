"""State machine driver: polls task batches per state and runs their handlers."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from photo_studio.orchestrator.failures import FailurePipeline
from photo_studio.orchestrator.handlers import StateHandler
from photo_studio.orchestrator.models import (
    ACTIVE_STATUSES,
    DRIVEN_STATES,
    CycleResult,
    CycleSummary,
    TaskState,
    TaskStats,
)
from photo_studio.orchestrator.repository import TaskRepository
from photo_studio.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_RETENTION = timedelta(hours=24)


@dataclass(slots=True)
class DriverRunSummary:
    """Aggregate loop counters for CLI reporting."""

    cycles: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class StateMachineDriver:
    """Polls active tasks state by state and hands each to its state handler.

    A cycle visits states in pipeline order, fetching up to ``batch_size``
    active tasks per state ordered by ``(created_at, retry_count)``. A task
    advanced early in the cycle is picked up again by later states of the
    same cycle. Handler exceptions go to the failure pipeline; nothing
    escapes ``run_cycle``.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        handlers: Mapping[TaskState, StateHandler],
        failures: FailurePipeline,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        missing = [state.value for state in DRIVEN_STATES if state not in handlers]
        if missing:
            raise ValueError(f"No handler registered for states: {', '.join(missing)}")
        self.repository = repository
        self.handlers = dict(handlers)
        self.failures = failures
        self.batch_size = batch_size
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_cycle(self) -> CycleSummary:
        """Run one pass over all driven states."""

        summary = CycleSummary()
        for state in DRIVEN_STATES:
            try:
                batch = self.repository.find(
                    states=[state],
                    statuses=ACTIVE_STATUSES,
                    limit=self.batch_size,
                    order_by=("created_at", "retry_count"),
                )
            except Exception:  # noqa: BLE001
                logger.exception("Failed to load task batch: state=%s", state.value)
                continue

            handler = self.handlers[state]
            for task in batch:
                try:
                    outcome = handler.handle(task)
                except Exception as error:  # noqa: BLE001
                    logger.warning(
                        "Handler failed: task_id=%s state=%s error=%s",
                        task.task_id,
                        state.value,
                        error,
                    )
                    self.failures.handle_failure(task, error)
                    summary.add(
                        CycleResult(
                            task_id=task.task_id,
                            state=state,
                            success=False,
                            error=str(error) or type(error).__name__,
                        ),
                    )
                    continue
                summary.add(
                    CycleResult(
                        task_id=task.task_id,
                        state=state,
                        success=True,
                        next_state=outcome.next_state,
                        skipped=outcome.skipped,
                    ),
                )

        if summary.processed:
            logger.info(
                "Cycle finished: processed=%d succeeded=%d failed=%d skipped=%d",
                summary.processed,
                summary.succeeded,
                summary.failed,
                summary.skipped,
            )
        return summary

    def get_stats(self) -> TaskStats:
        return TaskStats(
            by_state=self.repository.count_by("state"),
            by_status=self.repository.count_by("status"),
        )

    def cleanup_expired(self, *, retention: timedelta = DEFAULT_RETENTION) -> int:
        """Delete terminal tasks not updated within ``retention``."""

        deleted = self.repository.delete_terminal_before(utc_now() - retention)
        if deleted:
            logger.info("Expired tasks deleted: count=%d retention=%s", deleted, retention)
        return deleted

    def run_loop(
        self,
        *,
        max_cycles: int | None = None,
        poll_interval_seconds: float = 5.0,
    ) -> DriverRunSummary:
        """Run cycles until stopped by signal or ``max_cycles`` is reached."""

        aggregate = DriverRunSummary()
        with self._signal_handlers():
            while not self._stop_requested:
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                summary = self.run_cycle()
                aggregate.cycles += 1
                aggregate.processed += summary.processed
                aggregate.succeeded += summary.succeeded
                aggregate.failed += summary.failed
                aggregate.skipped += summary.skipped
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                self._sleep_with_stop(poll_interval_seconds)
        if self._stop_signal_name is not None:
            logger.info("Driver stopped by signal %s", self._stop_signal_name)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_signal_name = name
            self._stop_requested = True

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
