"""Failure handling: retry scheduling, terminal failure, refund, cancellation."""

from __future__ import annotations

import logging

from photo_studio.credits.ledger import CreditLedger
from photo_studio.orchestrator.errors import as_task_error
from photo_studio.orchestrator.models import FailureReason, TaskState, TaskStatus, TaskView
from photo_studio.orchestrator.repository import TaskRepository
from photo_studio.orchestrator.retry_policy import (
    BASE_DELAY_SECONDS,
    MAX_RETRIES,
    RetryDecision,
    decide_retry,
)
from photo_studio.storage.common import utc_now

logger = logging.getLogger(__name__)


class FailurePipeline:
    """Applies the retry policy to a failed task and compensates credits.

    All writes are guarded by an active status, so a task that already reached
    a terminal status (completed by a callback, cancelled, failed elsewhere) is
    left untouched and no refund is issued for it here. None of the public
    methods raise: store and ledger errors are logged.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        ledger: CreditLedger,
        max_retries: int = MAX_RETRIES,
        retry_base_seconds: float = BASE_DELAY_SECONDS,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds

    def handle_failure(self, task: TaskView, error: BaseException) -> RetryDecision | None:
        """Reschedule or fail ``task``; returns the applied decision or ``None``."""

        task_error = as_task_error(error)
        message = str(task_error) or type(task_error).__name__
        decision = decide_retry(
            retry_count=task.retry_count,
            error=task_error,
            max_retries=self.max_retries,
            base_seconds=self.retry_base_seconds,
        )
        now = utc_now()
        reason = decision.failure_reason or FailureReason.MAX_RETRIES
        try:
            if decision.retry:
                applied = self.repository.update_by_id(
                    task.task_id,
                    {
                        "state": TaskState.PENDING,
                        "retry_count": decision.retry_count,
                        "retry_after": decision.retry_after(now),
                        "last_error": message,
                    },
                    event_type="retry_scheduled",
                    details={
                        "error": message,
                        "code": task_error.code,
                        "failed_state": task.state.value,
                        "delay_seconds": decision.delay_seconds,
                    },
                )
            else:
                applied = self.repository.update_by_id(
                    task.task_id,
                    {
                        "state": TaskState.FAILED,
                        "retry_count": decision.retry_count,
                        "error": message,
                        "last_error": message,
                        "failure_reason": reason,
                        "completed_at": now,
                    },
                    event_type="failed",
                    details={
                        "error": message,
                        "code": task_error.code,
                        "failed_state": task.state.value,
                        "failure_reason": reason.value,
                    },
                )
        except Exception:  # noqa: BLE001
            logger.exception("Failed to record task failure: task_id=%s", task.task_id)
            return None

        if not applied:
            logger.info(
                "Failure not applied, task no longer active: task_id=%s error=%s",
                task.task_id,
                message,
            )
            return None

        if decision.retry:
            logger.warning(
                "Task retry scheduled: task_id=%s retry=%d/%d delay=%.1fs error=%s",
                task.task_id,
                decision.retry_count,
                self.max_retries,
                decision.delay_seconds,
                message,
            )
            return decision

        logger.error(
            "Task failed: task_id=%s reason=%s error=%s",
            task.task_id,
            reason.value,
            message,
        )
        self.refund_if_needed(task, reason=reason.value)
        return decision

    def refund_if_needed(self, task: TaskView, *, reason: str) -> bool:
        """Return consumed credits once; ledger errors leave task state untouched."""

        if task.credits_consumed <= 0:
            return False
        try:
            refunded = self.ledger.refund(
                task.owner_id,
                task.credits_consumed,
                reason,
                task.task_id,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "Credit refund failed: task_id=%s owner=%s amount=%d",
                task.task_id,
                task.owner_id,
                task.credits_consumed,
            )
            return False
        if refunded:
            try:
                self.repository.add_task_event(
                    task_id=task.task_id,
                    event_type="credits_refunded",
                    details={"amount": task.credits_consumed, "reason": reason},
                )
            except Exception:  # noqa: BLE001
                logger.exception("Failed to record refund event: task_id=%s", task.task_id)
        return refunded

    def mark_callback_failed(self, task: TaskView, error: BaseException) -> bool:
        """Patch a task whose inference outcome could not be delivered.

        Only ``status`` moves to ``failed``; ``state`` keeps the last pipeline
        position so the record shows where delivery broke.
        """

        message = f"callback_failed: {error}"
        try:
            applied = self.repository.update_by_id(
                task.task_id,
                {
                    "status": TaskStatus.FAILED,
                    "error": message,
                    "last_error": message,
                    "failure_reason": FailureReason.CALLBACK_FAILED,
                    "completed_at": utc_now(),
                },
                event_type="callback_failed",
                details={"error": str(error)},
            )
        except Exception:  # noqa: BLE001
            logger.exception("Fallback status patch failed: task_id=%s", task.task_id)
            return False
        if not applied:
            return False
        logger.error("Callback delivery failed, task marked failed: task_id=%s", task.task_id)
        self.refund_if_needed(task, reason=FailureReason.CALLBACK_FAILED.value)
        return True

    def cancel(self, task_id: str, *, reason: str = "cancelled_by_user") -> bool:
        """Cancel an active task and refund it; terminal tasks are left alone."""

        task = self.repository.get(task_id)
        if task is None or task.is_terminal:
            return False
        applied = self.repository.update_by_id(
            task_id,
            {
                "state": TaskState.CANCELLED,
                "error": reason,
                "failure_reason": FailureReason.CANCELLED,
                "completed_at": utc_now(),
            },
            event_type="cancelled",
            details={"reason": reason, "cancelled_state": task.state.value},
        )
        if not applied:
            return False
        logger.info("Task cancelled: task_id=%s reason=%s", task_id, reason)
        self.refund_if_needed(task, reason=FailureReason.CANCELLED.value)
        return True
