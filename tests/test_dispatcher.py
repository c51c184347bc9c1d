from __future__ import annotations

import threading
from collections.abc import Callable, Iterator

import allure
import pytest

from photo_studio.credits.ledger import CreditLedger
from photo_studio.orchestrator.backend import (
    CallbackPayload,
    EchoInferenceService,
    InferenceRequest,
    InProcessCallbackTransport,
)
from photo_studio.orchestrator.dispatch import InferenceDispatcher, PendingInference
from photo_studio.orchestrator.engine import OrchestrationEngine
from photo_studio.orchestrator.errors import PayloadTooLargeError
from photo_studio.orchestrator.failures import FailurePipeline
from photo_studio.orchestrator.models import (
    FailureReason,
    InferenceOutcome,
    TaskState,
    TaskStatus,
    TaskView,
)
from photo_studio.orchestrator.repository import TaskRepository
from photo_studio.orchestrator.services import SubmitTask

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Inference Dispatch"),
]


class _BlockingInference:
    """Holds every call until released, then returns an empty success."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.started = threading.Event()

    def generate(self, request: InferenceRequest) -> InferenceOutcome:
        self.started.set()
        self.release.wait(5.0)
        return InferenceOutcome(success=True)


class _RecordingTransport:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.delivered: list[CallbackPayload] = []

    def deliver(self, payload: CallbackPayload) -> None:
        if self.error is not None:
            raise self.error
        self.delivered.append(payload)


@pytest.fixture()
def calling_task(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> TaskView:
    task = accept_task(credits=1, params={"count": 2})
    assert repository.update_by_id(task.task_id, {"state": TaskState.INFERENCE_CALLING})
    stored = repository.get(task.task_id)
    assert stored is not None
    return stored


@pytest.fixture()
def make_dispatcher(
    repository: TaskRepository,
    failures: FailurePipeline,
) -> Iterator[Callable[..., InferenceDispatcher]]:
    created: list[InferenceDispatcher] = []

    def _make(**kwargs: object) -> InferenceDispatcher:
        options: dict[str, object] = {
            "inference": EchoInferenceService(),
            "repository": repository,
            "failures": failures,
            "deliver_direct": lambda payload: None,
            "timeout_seconds": 5.0,
        }
        options.update(kwargs)
        dispatcher = InferenceDispatcher(**options)  # type: ignore[arg-type]
        created.append(dispatcher)
        return dispatcher

    yield _make
    for dispatcher in created:
        dispatcher.shutdown(wait=True)


def test_inference_timeout_fails_task_and_refunds(
    make_engine: Callable[..., OrchestrationEngine],
) -> None:
    inference = _BlockingInference()
    engine = make_engine(inference=inference, inference_timeout_seconds=0.2)
    engine.ledger.grant("owner-1", 1)
    task = engine.submission.submit(SubmitTask(task_type="photography", owner_id="owner-1"))
    assert engine.ledger.balance("owner-1") == 0

    try:
        engine.driver.run_cycle()
        assert inference.started.wait(5.0)
        assert engine.dispatcher.wait_idle(5.0)
    finally:
        inference.release.set()

    stored = engine.repository.get(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert stored.failure_reason == FailureReason.TIMEOUT
    assert stored.error is not None
    assert "timeout" in stored.error
    assert engine.ledger.balance("owner-1") == 1


def test_oversized_outcome_bypasses_transport(
    repository: TaskRepository,
    make_dispatcher: Callable[..., InferenceDispatcher],
    calling_task: TaskView,
) -> None:
    direct: list[CallbackPayload] = []
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(
        deliver_direct=direct.append,
        transport=transport,
        max_payload_bytes=16,
    )

    pending = dispatcher.dispatch(calling_task, "studio shot")

    assert dispatcher.wait_idle(5.0)
    assert transport.delivered == []
    assert [payload.task_id for payload in direct] == [calling_task.task_id]
    assert len(direct[0].outcome.images) == 2
    assert direct[0].original_prompt == "studio shot"
    assert pending.outcome is not None
    assert pending.outcome.success is True
    stored = repository.get(calling_task.task_id)
    assert stored is not None
    assert stored.state == TaskState.INFERENCE_PROCESSING


def test_small_outcome_goes_through_transport(
    make_dispatcher: Callable[..., InferenceDispatcher],
    calling_task: TaskView,
) -> None:
    direct: list[CallbackPayload] = []
    transport = _RecordingTransport()
    dispatcher = make_dispatcher(deliver_direct=direct.append, transport=transport)

    dispatcher.dispatch(calling_task, "studio shot")

    assert dispatcher.wait_idle(5.0)
    assert direct == []
    assert [payload.job_type for payload in transport.delivered] == ["photography"]


def test_delivery_failure_patches_task_to_failed(
    repository: TaskRepository,
    ledger: CreditLedger,
    make_dispatcher: Callable[..., InferenceDispatcher],
    calling_task: TaskView,
) -> None:
    dispatcher = make_dispatcher(transport=_RecordingTransport(error=RuntimeError("receiver down")))

    dispatcher.dispatch(calling_task, "studio shot")

    assert dispatcher.wait_idle(5.0)
    stored = repository.get(calling_task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert stored.state == TaskState.INFERENCE_PROCESSING
    assert stored.failure_reason == FailureReason.CALLBACK_FAILED
    assert stored.error == "callback_failed: receiver down"
    assert ledger.balance("owner-1") == 1


def test_inference_exception_becomes_failed_outcome(
    make_dispatcher: Callable[..., InferenceDispatcher],
    calling_task: TaskView,
) -> None:
    class _Exploding:
        def generate(self, request: InferenceRequest) -> InferenceOutcome:
            raise ConnectionError("model endpoint unreachable")

    direct: list[CallbackPayload] = []
    dispatcher = make_dispatcher(inference=_Exploding(), deliver_direct=direct.append)

    dispatcher.dispatch(calling_task, "studio shot")

    assert dispatcher.wait_idle(5.0)
    outcome = direct[0].outcome
    assert outcome.success is False
    assert outcome.error == "ConnectionError: model endpoint unreachable"


def test_dispatching_same_task_twice_reuses_pending_call(
    make_dispatcher: Callable[..., InferenceDispatcher],
    calling_task: TaskView,
) -> None:
    inference = _BlockingInference()
    dispatcher = make_dispatcher(inference=inference)

    try:
        first = dispatcher.dispatch(calling_task, "studio shot")
        second = dispatcher.dispatch(calling_task, "studio shot")
        assert first is second
        assert dispatcher.is_in_flight(calling_task.task_id)
        assert dispatcher.in_flight_count() == 1
    finally:
        inference.release.set()

    assert dispatcher.wait_idle(5.0)
    assert dispatcher.is_in_flight(calling_task.task_id) is False


def test_redispatch_while_previous_outcome_is_delivered_starts_new_call(
    make_dispatcher: Callable[..., InferenceDispatcher],
    calling_task: TaskView,
) -> None:
    delivered: list[CallbackPayload] = []
    redispatched: list[PendingInference] = []
    dispatcher: InferenceDispatcher

    def _deliver(payload: CallbackPayload) -> None:
        delivered.append(payload)
        if len(delivered) == 1:
            redispatched.append(dispatcher.dispatch(calling_task, "studio shot, retry"))

    dispatcher = make_dispatcher(deliver_direct=_deliver)

    first = dispatcher.dispatch(calling_task, "studio shot")

    assert dispatcher.wait_idle(5.0)
    assert redispatched[0] is not first
    assert redispatched[0].done is True
    assert [payload.original_prompt for payload in delivered] == [
        "studio shot",
        "studio shot, retry",
    ]
    assert dispatcher.is_in_flight(calling_task.task_id) is False


def test_pending_inference_resolves_once() -> None:
    pending = PendingInference("t-1")

    assert pending.resolve(InferenceOutcome(success=True)) is True
    assert pending.resolve(InferenceOutcome.failed("late", timed_out=True)) is False

    assert pending.done is True
    assert pending.outcome is not None
    assert pending.outcome.success is True


def test_transport_rejects_oversized_payload() -> None:
    received: list[CallbackPayload] = []
    transport = InProcessCallbackTransport(received.append, max_payload_bytes=32)
    payload = CallbackPayload(
        task_id="t-1",
        job_type="avatar",
        outcome=InferenceOutcome(success=True),
        original_prompt="portrait",
    )

    with pytest.raises(PayloadTooLargeError) as exc_info:
        transport.deliver(payload)

    assert exc_info.value.size_bytes == payload.size_bytes()
    assert exc_info.value.limit_bytes == 32
    assert received == []
