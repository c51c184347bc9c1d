"""Reconciles out-of-band inference results with task records."""

from __future__ import annotations

import logging

from photo_studio.orchestrator.backend.base import (
    ArtifactPostProcessor,
    ArtifactStorage,
    CallbackPayload,
)
from photo_studio.orchestrator.errors import CallbackDeliveryError, TransientTaskError
from photo_studio.orchestrator.failure_classifier import classify_inference_failure
from photo_studio.orchestrator.failures import FailurePipeline
from photo_studio.orchestrator.handlers import GENERATED_IMAGES_KEY, persist_and_complete
from photo_studio.orchestrator.models import (
    AWAITING_INFERENCE_STATES,
    InferenceOutcome,
    TaskState,
    TaskView,
)
from photo_studio.orchestrator.repository import TaskRepository
from photo_studio.storage.common import utc_now

logger = logging.getLogger(__name__)


class CallbackReceiver:
    """Applies one inference outcome to its task, at most once.

    A successful outcome is claimed by moving the task from an awaiting state
    to ``inference_completed``; only the claim winner persists artifacts, so
    duplicate or late callbacks are no-ops. With ``deferred_upload`` the
    images are staged in ``state_data`` and the driver finishes the task
    through post-processing and uploading.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        failures: FailurePipeline,
        storage: ArtifactStorage,
        post_processor: ArtifactPostProcessor,
        deferred_upload: bool = False,
    ) -> None:
        self.repository = repository
        self.failures = failures
        self.storage = storage
        self.post_processor = post_processor
        self.deferred_upload = deferred_upload

    def handle_payload(self, payload: CallbackPayload) -> None:
        self.on_inference_result(
            payload.task_id,
            payload.job_type,
            payload.outcome,
            payload.original_prompt,
        )

    def on_inference_result(
        self,
        task_id: str,
        job_type: str,
        outcome: InferenceOutcome,
        original_prompt: str,
    ) -> bool:
        """Apply ``outcome``; returns whether this call changed the task.

        Raises ``CallbackDeliveryError`` when reconciliation itself broke.
        """

        try:
            return self._reconcile(task_id, job_type, outcome, original_prompt)
        except Exception as error:
            logger.exception("Callback reconciliation failed: task_id=%s", task_id)
            raise CallbackDeliveryError(f"{type(error).__name__}: {error}") from error

    def _reconcile(
        self,
        task_id: str,
        job_type: str,
        outcome: InferenceOutcome,
        original_prompt: str,
    ) -> bool:
        task = self.repository.get(task_id)
        if task is None:
            logger.warning("Callback for unknown task ignored: task_id=%s", task_id)
            return False
        if task.is_terminal:
            logger.info(
                "Callback for finished task ignored: task_id=%s status=%s",
                task_id,
                task.status.value,
            )
            return False
        if task.state not in AWAITING_INFERENCE_STATES:
            logger.info(
                "Callback ignored, task not awaiting inference: task_id=%s state=%s",
                task_id,
                task.state.value,
            )
            return False
        if job_type != task.task_type.value:
            logger.warning(
                "Callback job type mismatch: task_id=%s expected=%s got=%s",
                task_id,
                task.task_type.value,
                job_type,
            )

        if not outcome.success:
            return self._apply_failure(task, outcome)
        if not outcome.images:
            self.failures.handle_failure(
                task,
                TransientTaskError(
                    "Inference returned no images",
                    task_id=task_id,
                    code="empty_output",
                ),
            )
            return True
        return self._apply_success(task, outcome, original_prompt)

    def _apply_failure(self, task: TaskView, outcome: InferenceOutcome) -> bool:
        message = outcome.error or "Inference failed"
        classification = classify_inference_failure(message, timed_out=outcome.timed_out)
        logger.info(
            "Inference failed: task_id=%s reason=%s retryable=%s",
            task.task_id,
            classification.reason_code,
            classification.retryable,
        )
        decision = self.failures.handle_failure(
            task,
            classification.to_error(message, task_id=task.task_id),
        )
        return decision is not None

    def _apply_success(
        self,
        task: TaskView,
        outcome: InferenceOutcome,
        original_prompt: str,
    ) -> bool:
        state_data = {
            **task.state_data,
            GENERATED_IMAGES_KEY: [image.to_payload() for image in outcome.images],
            "callback_received_at": utc_now().isoformat(),
            "inline_persist": not self.deferred_upload,
            "prompt": original_prompt or task.state_data.get("prompt"),
        }
        claimed = False
        for expected_state in (task.state, *(AWAITING_INFERENCE_STATES - {task.state})):
            claimed = self.repository.update_by_id(
                task.task_id,
                {"state": TaskState.INFERENCE_COMPLETED, "state_data": state_data},
                expected_state=expected_state,
                event_type="inference_completed",
                details={"images": len(outcome.images)},
            )
            if claimed:
                break
        if not claimed:
            logger.info("Duplicate callback ignored: task_id=%s", task.task_id)
            return False
        if self.deferred_upload:
            return True

        claimed_task = self.repository.get(task.task_id)
        if claimed_task is None:
            return False
        try:
            images = self.post_processor.process(claimed_task, outcome.images)
            persist_and_complete(
                repository=self.repository,
                storage=self.storage,
                task=claimed_task,
                images=images,
                expected_state=TaskState.INFERENCE_COMPLETED,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Artifact persistence failed: task_id=%s", task.task_id)
            self.failures.handle_failure(claimed_task, error)
        return True
