"""Use-case services for task acceptance."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from photo_studio.config import Settings
from photo_studio.credits.ledger import CreditLedger, InsufficientCreditsError
from photo_studio.orchestrator.models import TaskCreate, TaskType, TaskView
from photo_studio.orchestrator.repository import TaskRepository

logger = logging.getLogger(__name__)

BUSINESS_MODES = ("personal", "commercial")


@dataclass(slots=True)
class SubmitTask:
    """High-level command to accept a new photo task."""

    task_type: str
    owner_id: str
    params: dict[str, Any] = field(default_factory=dict)
    count: int = 1
    credits: int | None = None
    business_mode: str = "personal"


class TaskSubmissionService:
    """Debits credits and inserts the task in ``pending``."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        ledger: CreditLedger,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.settings = settings

    def submit(self, command: SubmitTask) -> TaskView:
        task_type = TaskType(command.task_type)
        if command.count <= 0:
            raise ValueError(f"count must be > 0, got {command.count}")
        if command.business_mode not in BUSINESS_MODES:
            raise ValueError(
                f"business_mode must be one of {', '.join(BUSINESS_MODES)}, "
                f"got {command.business_mode!r}",
            )
        credits = (
            command.credits
            if command.credits is not None
            else self.settings.credits_for(task_type.value) * command.count
        )
        task_id = str(uuid4())
        if not self.ledger.debit(command.owner_id, credits, task_id=task_id):
            raise InsufficientCreditsError(
                f"Owner {command.owner_id} has {self.ledger.balance(command.owner_id)} credits, "
                f"{credits} required.",
            )

        try:
            task = self.repository.insert(
                TaskCreate(
                    task_id=task_id,
                    task_type=task_type,
                    owner_id=command.owner_id,
                    params={**command.params, "count": command.count},
                    credits_consumed=credits,
                    business_mode=command.business_mode,
                ),
            )
        except Exception:
            self.ledger.refund(command.owner_id, credits, "task_insert_failed", task_id)
            raise
        logger.info(
            "Task accepted: task_id=%s type=%s owner=%s credits=%d",
            task.task_id,
            task_type.value,
            command.owner_id,
            credits,
        )
        return task
