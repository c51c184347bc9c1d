"""Non-blocking inference dispatch with timeout race and callback delivery."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from photo_studio.orchestrator.backend.base import (
    CallbackPayload,
    CallbackTransport,
    InferenceRequest,
    InferenceService,
)
from photo_studio.orchestrator.failures import FailurePipeline
from photo_studio.orchestrator.models import InferenceOutcome, TaskState, TaskView
from photo_studio.orchestrator.repository import TaskRepository

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_MAX_PAYLOAD_BYTES = 1024 * 1024


class PendingInference:
    """Single-assignment slot shared by the inference call and its timeout timer.

    Whichever side resolves first wins; the other side's outcome is dropped.
    """

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        self._lock = threading.Lock()
        self._resolved = threading.Event()
        self._delivered = threading.Event()
        self._outcome: InferenceOutcome | None = None
        self.timer: threading.Timer | None = None

    def resolve(self, outcome: InferenceOutcome) -> bool:
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
        self._resolved.set()
        if self.timer is not None:
            self.timer.cancel()
        return True

    @property
    def outcome(self) -> InferenceOutcome | None:
        return self._outcome

    @property
    def done(self) -> bool:
        return self._resolved.is_set()

    def mark_delivered(self) -> None:
        self._delivered.set()

    def wait(self, timeout: float | None = None) -> InferenceOutcome | None:
        """Block until the outcome has been delivered (or ``timeout`` passes)."""

        self._delivered.wait(timeout)
        return self._outcome


class InferenceDispatcher:
    """Runs inference calls on a worker pool and reports outcomes back.

    The outcome travels through ``transport`` when its serialized size fits
    ``max_payload_bytes``; larger outcomes are handed to ``deliver_direct``
    in-process. When delivery fails the task row is patched to ``failed``
    directly so it never stays stuck in an inference state.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        inference: InferenceService,
        repository: TaskRepository,
        failures: FailurePipeline,
        deliver_direct: Callable[[CallbackPayload], None],
        transport: CallbackTransport | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        max_workers: int = 4,
    ) -> None:
        self.inference = inference
        self.repository = repository
        self.failures = failures
        self.deliver_direct = deliver_direct
        self.transport = transport
        self.timeout_seconds = timeout_seconds
        self.max_payload_bytes = max_payload_bytes
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="inference",
        )
        self._in_flight: dict[str, PendingInference] = {}
        self._idle = threading.Condition()

    def is_in_flight(self, task_id: str) -> bool:
        with self._idle:
            return task_id in self._in_flight

    def in_flight_count(self) -> int:
        with self._idle:
            return len(self._in_flight)

    def dispatch(self, task: TaskView, prompt: str) -> PendingInference:
        """Start the inference call for ``task`` and return immediately."""

        with self._idle:
            existing = self._in_flight.get(task.task_id)
            if existing is not None and not existing.done:
                return existing
            pending = PendingInference(task.task_id)
            self._in_flight[task.task_id] = pending

        request = InferenceRequest(
            task_id=task.task_id,
            task_type=task.task_type.value,
            prompt=prompt,
            input_refs=[str(ref) for ref in task.state_data.get("inputs") or []],
            image_count=int(task.params.get("count") or 1),
            parameters=dict(task.params),
        )
        timer = threading.Timer(
            self.timeout_seconds,
            self._on_timeout,
            args=(task, pending, prompt),
        )
        timer.daemon = True
        pending.timer = timer
        try:
            self._executor.submit(self._run, task, request, pending)
        except RuntimeError:
            self._forget(pending)
            raise
        timer.start()
        logger.info(
            "Inference dispatched: task_id=%s type=%s timeout=%.0fs",
            task.task_id,
            task.task_type.value,
            self.timeout_seconds,
        )
        return pending

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until every dispatched call has been delivered."""

        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        if wait:
            return
        # Abandoned calls are left to the inference-state deadline check.
        with self._idle:
            abandoned = list(self._in_flight.values())
        for item in abandoned:
            if item.timer is not None:
                item.timer.cancel()

    def _run(self, task: TaskView, request: InferenceRequest, pending: PendingInference) -> None:
        if pending.done:
            return
        try:
            self.repository.update_by_id(
                task.task_id,
                {"state": TaskState.INFERENCE_PROCESSING},
                expected_state=TaskState.INFERENCE_CALLING,
                event_type="inference_started",
            )
        except Exception:  # noqa: BLE001
            logger.exception("Failed to mark inference start: task_id=%s", task.task_id)

        try:
            outcome = self.inference.generate(request)
        except Exception as error:  # noqa: BLE001
            logger.exception("Inference call raised: task_id=%s", task.task_id)
            outcome = InferenceOutcome.failed(f"{type(error).__name__}: {error}")

        if not pending.resolve(outcome):
            logger.warning("Late inference result discarded: task_id=%s", task.task_id)
            return
        self._deliver(task, pending, request.prompt)

    def _on_timeout(self, task: TaskView, pending: PendingInference, prompt: str) -> None:
        outcome = InferenceOutcome.failed(
            f"Inference timeout: no result after {self.timeout_seconds:.0f}s",
            timed_out=True,
        )
        if not pending.resolve(outcome):
            return
        logger.warning("Inference timed out: task_id=%s", task.task_id)
        self._deliver(task, pending, prompt)

    def _deliver(self, task: TaskView, pending: PendingInference, prompt: str) -> None:
        outcome = pending.outcome
        if outcome is None:  # pragma: no cover - resolve() always sets it first
            return
        payload = CallbackPayload(
            task_id=task.task_id,
            job_type=task.task_type.value,
            outcome=outcome,
            original_prompt=prompt,
        )
        try:
            size = payload.size_bytes()
            if self.transport is None or size > self.max_payload_bytes:
                logger.info(
                    "Delivering outcome directly: task_id=%s size=%d limit=%d",
                    task.task_id,
                    size,
                    self.max_payload_bytes,
                )
                self.deliver_direct(payload)
            else:
                self.transport.deliver(payload)
        except Exception as error:  # noqa: BLE001
            logger.exception("Callback delivery failed: task_id=%s", task.task_id)
            self.failures.mark_callback_failed(task, error)
        finally:
            self._forget(pending)

    def _forget(self, pending: PendingInference) -> None:
        with self._idle:
            if self._in_flight.get(pending.task_id) is pending:
                del self._in_flight[pending.task_id]
            self._idle.notify_all()
        pending.mark_delivered()
