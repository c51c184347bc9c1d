"""Typed task errors driving the retry/compensation pipeline."""

from __future__ import annotations

from photo_studio.orchestrator.models import FailureReason


class TaskError(Exception):
    """Base class for errors raised while advancing a task."""

    retryable: bool = True
    failure_reason: FailureReason = FailureReason.MAX_RETRIES

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.code = code


class TransientTaskError(TaskError):
    """Dependency failed in a way another attempt may fix."""


class TerminalTaskError(TaskError):
    """Failure that retrying cannot fix (bad input, quota, auth)."""

    retryable = False
    failure_reason = FailureReason.NON_RETRYABLE


class InferenceTimeoutError(TerminalTaskError):
    """External inference produced no result before the deadline."""

    failure_reason = FailureReason.TIMEOUT


class CallbackDeliveryError(Exception):
    """Inference outcome could not be reconciled with the task record."""


class PayloadTooLargeError(CallbackDeliveryError):
    """Serialized outcome exceeds what the callback transport accepts."""

    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            f"Callback payload of {size_bytes} bytes exceeds limit of {limit_bytes} bytes.",
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class TaskNotFoundError(LookupError):
    """No task record exists for the requested id."""


def as_task_error(error: BaseException) -> TaskError:
    """Wrap untyped handler exceptions as transient failures."""

    if isinstance(error, TaskError):
        return error
    return TransientTaskError(f"{type(error).__name__}: {error}")
