"""Retry/backoff policy for failed tasks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from photo_studio.orchestrator.errors import TaskError
from photo_studio.orchestrator.models import FailureReason

MAX_RETRIES = 3
BASE_DELAY_SECONDS = 5.0


@dataclass(slots=True, frozen=True)
class RetryDecision:
    """Outcome of applying the retry policy to one failure."""

    retry: bool
    retry_count: int
    delay_seconds: float
    failure_reason: FailureReason | None

    def retry_after(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_seconds)


def backoff_delay(retry_number: int, *, base_seconds: float = BASE_DELAY_SECONDS) -> float:
    """Exponential backoff: ``base × 2^(retry_number − 1)``."""

    if retry_number < 1:
        raise ValueError(f"retry_number must be >= 1, got {retry_number}")
    return base_seconds * (2 ** (retry_number - 1))


def decide_retry(
    *,
    retry_count: int,
    error: TaskError,
    max_retries: int = MAX_RETRIES,
    base_seconds: float = BASE_DELAY_SECONDS,
) -> RetryDecision:
    """Decide whether a failed task goes back to ``pending`` or fails terminally."""

    new_retry_count = retry_count + 1
    if error.retryable and new_retry_count < max_retries:
        return RetryDecision(
            retry=True,
            retry_count=new_retry_count,
            delay_seconds=backoff_delay(new_retry_count, base_seconds=base_seconds),
            failure_reason=None,
        )
    return RetryDecision(
        retry=False,
        retry_count=min(new_retry_count, max_retries),
        delay_seconds=0.0,
        failure_reason=error.failure_reason if not error.retryable else FailureReason.MAX_RETRIES,
    )
