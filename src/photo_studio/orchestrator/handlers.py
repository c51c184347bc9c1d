"""Per-state task handlers driven by the state machine driver.

Every transition is a compare-and-set on the task's current state. Losing
the race (another writer moved or finished the task) yields a skipped
result instead of an error.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from photo_studio.orchestrator.backend.base import ArtifactPostProcessor, ArtifactStorage
from photo_studio.orchestrator.errors import InferenceTimeoutError, TerminalTaskError
from photo_studio.orchestrator.models import (
    DRIVEN_STATES,
    GeneratedImage,
    HandlerResult,
    TaskState,
    TaskView,
)
from photo_studio.orchestrator.prompts import build_prompt
from photo_studio.orchestrator.repository import TaskRepository
from photo_studio.storage.common import utc_now

if TYPE_CHECKING:
    from photo_studio.orchestrator.dispatch import InferenceDispatcher

logger = logging.getLogger(__name__)

GENERATED_IMAGES_KEY = "generated_images"


class StateHandler(Protocol):
    """Advances tasks sitting in one pipeline state."""

    state: TaskState

    def handle(self, task: TaskView) -> HandlerResult:
        """Process one task; raise to route it through the failure pipeline."""


def _advance(
    repository: TaskRepository,
    task: TaskView,
    next_state: TaskState,
    *,
    fields: Mapping[str, Any] | None = None,
    details: dict[str, object] | None = None,
) -> HandlerResult:
    applied = repository.update_by_id(
        task.task_id,
        {"state": next_state, **(fields or {})},
        expected_state=task.state,
        details=details,
    )
    if not applied:
        logger.info(
            "Transition skipped, task moved on: task_id=%s %s -> %s",
            task.task_id,
            task.state.value,
            next_state.value,
        )
        return HandlerResult(skipped=True, reason="state_changed")
    return HandlerResult(next_state=next_state)


def staged_images(task: TaskView) -> list[GeneratedImage]:
    payloads = task.state_data.get(GENERATED_IMAGES_KEY) or []
    return [GeneratedImage.from_payload(item) for item in payloads]


def persist_and_complete(
    *,
    repository: TaskRepository,
    storage: ArtifactStorage,
    task: TaskView,
    images: list[GeneratedImage],
    expected_state: TaskState,
) -> bool:
    """Store generated images, record artifact rows and mark the task completed."""

    artifacts = storage.persist(
        task_id=task.task_id,
        task_type=task.task_type.value,
        images=images,
    )
    if not repository.save_artifacts(task_id=task.task_id, artifacts=artifacts):
        logger.info("Artifacts already recorded: task_id=%s", task.task_id)
        artifacts = repository.list_artifacts(task.task_id)

    state_data = {
        key: value for key, value in task.state_data.items() if key != GENERATED_IMAGES_KEY
    }
    state_data["artifact_count"] = len(artifacts)
    completed = repository.update_by_id(
        task.task_id,
        {
            "state": TaskState.COMPLETED,
            "result": [artifact.to_payload() for artifact in artifacts],
            "state_data": state_data,
            "completed_at": utc_now(),
        },
        expected_state=expected_state,
        event_type="completed",
        details={"artifacts": len(artifacts)},
    )
    if completed:
        logger.info("Task completed: task_id=%s artifacts=%d", task.task_id, len(artifacts))
    else:
        logger.warning("Completion skipped, task moved on: task_id=%s", task.task_id)
    return completed


class PendingHandler:
    state = TaskState.PENDING

    def __init__(self, *, repository: TaskRepository) -> None:
        self.repository = repository

    def handle(self, task: TaskView) -> HandlerResult:
        if task.retry_after is not None and utc_now() < task.retry_after:
            return HandlerResult(skipped=True, reason="retry_backoff")
        return _advance(self.repository, task, TaskState.DOWNLOADING)


class DownloadingHandler:
    state = TaskState.DOWNLOADING

    def __init__(self, *, repository: TaskRepository, storage: ArtifactStorage) -> None:
        self.repository = repository
        self.storage = storage

    def handle(self, task: TaskView) -> HandlerResult:
        try:
            inputs = self.storage.stage_inputs(task)
        except FileNotFoundError as error:
            raise TerminalTaskError(
                str(error),
                task_id=task.task_id,
                code="input_missing",
            ) from error
        return _advance(
            self.repository,
            task,
            TaskState.DOWNLOADED,
            fields={"state_data": {**task.state_data, "inputs": inputs}},
            details={"inputs": len(inputs)},
        )


class DownloadedHandler:
    """Builds the prompt, records the dispatch deadline and starts inference."""

    state = TaskState.DOWNLOADED

    def __init__(
        self,
        *,
        repository: TaskRepository,
        dispatcher: InferenceDispatcher,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher

    def handle(self, task: TaskView) -> HandlerResult:
        prompt = build_prompt(task)
        if not prompt:
            raise TerminalTaskError("prompt is empty", task_id=task.task_id, code="invalid_input")

        now = utc_now()
        deadline = now + timedelta(seconds=self.dispatcher.timeout_seconds)
        state_data = {
            **task.state_data,
            "prompt": prompt,
            "dispatched_at": now.isoformat(),
            "dispatch_deadline": deadline.isoformat(),
        }
        result = _advance(
            self.repository,
            task,
            TaskState.INFERENCE_CALLING,
            fields={"state_data": state_data},
            details={"dispatch_deadline": deadline.isoformat()},
        )
        if result.skipped:
            return result

        calling = self.repository.get(task.task_id)
        self.dispatcher.dispatch(calling or task, prompt)
        return result


class AwaitingInferenceHandler:
    """Watches tasks waiting for a callback; times out orphaned dispatches.

    A task whose deadline (plus grace) has passed and that has no inference
    call running in this process, e.g. after a restart, is failed with
    ``InferenceTimeoutError``.
    """

    def __init__(
        self,
        *,
        state: TaskState,
        dispatcher: InferenceDispatcher,
        grace_seconds: float,
    ) -> None:
        self.state = state
        self.dispatcher = dispatcher
        self.grace_seconds = grace_seconds

    def handle(self, task: TaskView) -> HandlerResult:
        if self.dispatcher.is_in_flight(task.task_id):
            return HandlerResult(skipped=True, reason="inference_in_flight")
        deadline = _parse_datetime(task.state_data.get("dispatch_deadline"))
        if deadline is None:
            deadline = task.updated_at + timedelta(seconds=self.dispatcher.timeout_seconds)
        if utc_now() <= deadline + timedelta(seconds=self.grace_seconds):
            return HandlerResult(skipped=True, reason="awaiting_callback")
        raise InferenceTimeoutError(
            f"Inference timeout: no result by {deadline.isoformat()}",
            task_id=task.task_id,
            code="timeout",
        )


class InferenceCompletedHandler:
    """Moves tasks with staged images on to post-processing.

    Tasks the callback receiver is persisting inline are left alone unless the
    receiver stalled for longer than ``stale_after_seconds``.
    """

    state = TaskState.INFERENCE_COMPLETED

    def __init__(self, *, repository: TaskRepository, stale_after_seconds: float) -> None:
        self.repository = repository
        self.stale_after_seconds = stale_after_seconds

    def handle(self, task: TaskView) -> HandlerResult:
        if not task.state_data.get(GENERATED_IMAGES_KEY):
            raise TerminalTaskError(
                "No generated images staged for upload",
                task_id=task.task_id,
                code="missing_output",
            )
        if task.state_data.get("inline_persist"):
            received_at = _parse_datetime(task.state_data.get("callback_received_at"))
            stale_at = (received_at or task.updated_at) + timedelta(
                seconds=self.stale_after_seconds,
            )
            if utc_now() < stale_at:
                return HandlerResult(skipped=True, reason="inline_persist_in_progress")
            logger.warning("Resuming stalled inline persistence: task_id=%s", task.task_id)
        return _advance(self.repository, task, TaskState.POST_PROCESSING)


class PostProcessingHandler:
    state = TaskState.POST_PROCESSING

    def __init__(
        self,
        *,
        repository: TaskRepository,
        post_processor: ArtifactPostProcessor,
    ) -> None:
        self.repository = repository
        self.post_processor = post_processor

    def handle(self, task: TaskView) -> HandlerResult:
        images = self.post_processor.process(task, staged_images(task))
        return _advance(
            self.repository,
            task,
            TaskState.UPLOADING,
            fields={
                "state_data": {
                    **task.state_data,
                    GENERATED_IMAGES_KEY: [image.to_payload() for image in images],
                    "post_processed": True,
                },
            },
        )


class UploadingHandler:
    state = TaskState.UPLOADING

    def __init__(self, *, repository: TaskRepository, storage: ArtifactStorage) -> None:
        self.repository = repository
        self.storage = storage

    def handle(self, task: TaskView) -> HandlerResult:
        completed = persist_and_complete(
            repository=self.repository,
            storage=self.storage,
            task=task,
            images=staged_images(task),
            expected_state=TaskState.UPLOADING,
        )
        if not completed:
            return HandlerResult(skipped=True, reason="state_changed")
        return HandlerResult(next_state=TaskState.COMPLETED)


def build_handler_registry(
    *,
    repository: TaskRepository,
    storage: ArtifactStorage,
    post_processor: ArtifactPostProcessor,
    dispatcher: InferenceDispatcher,
    grace_seconds: float,
) -> dict[TaskState, StateHandler]:
    """Wire one handler per driven state; fails fast if any state is uncovered."""

    handlers: list[StateHandler] = [
        PendingHandler(repository=repository),
        DownloadingHandler(repository=repository, storage=storage),
        DownloadedHandler(repository=repository, dispatcher=dispatcher),
        AwaitingInferenceHandler(
            state=TaskState.INFERENCE_CALLING,
            dispatcher=dispatcher,
            grace_seconds=grace_seconds,
        ),
        AwaitingInferenceHandler(
            state=TaskState.INFERENCE_PROCESSING,
            dispatcher=dispatcher,
            grace_seconds=grace_seconds,
        ),
        InferenceCompletedHandler(repository=repository, stale_after_seconds=grace_seconds),
        PostProcessingHandler(repository=repository, post_processor=post_processor),
        UploadingHandler(repository=repository, storage=storage),
    ]
    registry = {handler.state: handler for handler in handlers}
    missing = [state.value for state in DRIVEN_STATES if state not in registry]
    if missing:
        raise ValueError(f"No handler registered for states: {', '.join(missing)}")
    return registry


def _parse_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
