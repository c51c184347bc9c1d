from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from photo_studio.orchestrator.backend import LocalArtifactStorage, WatermarkPostProcessor
from photo_studio.orchestrator.errors import InferenceTimeoutError, TerminalTaskError
from photo_studio.orchestrator.handlers import (
    GENERATED_IMAGES_KEY,
    AwaitingInferenceHandler,
    DownloadedHandler,
    DownloadingHandler,
    InferenceCompletedHandler,
    PendingHandler,
    PostProcessingHandler,
    UploadingHandler,
    build_handler_registry,
)
from photo_studio.orchestrator.models import (
    DRIVEN_STATES,
    GeneratedImage,
    TaskState,
    TaskStatus,
    TaskView,
)
from photo_studio.orchestrator.repository import TaskRepository

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("State Handlers"),
]

_PIXEL = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


class _FakeDispatcher:
    def __init__(self, *, timeout_seconds: float = 300.0, in_flight: bool = False) -> None:
        self.timeout_seconds = timeout_seconds
        self.in_flight = in_flight
        self.dispatched: list[tuple[TaskView, str]] = []

    def is_in_flight(self, task_id: str) -> bool:
        return self.in_flight

    def dispatch(self, task: TaskView, prompt: str) -> None:
        self.dispatched.append((task, prompt))


def _move(
    repository: TaskRepository,
    task: TaskView,
    state: TaskState,
    **fields: object,
) -> TaskView:
    assert repository.update_by_id(task.task_id, {"state": state, **fields})
    stored = repository.get(task.task_id)
    assert stored is not None
    return stored


def test_pending_task_in_backoff_is_skipped(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> None:
    task = accept_task()
    assert repository.update_by_id(
        task.task_id,
        {"retry_after": datetime.now(tz=UTC) + timedelta(minutes=5)},
    )
    waiting = repository.get(task.task_id)
    assert waiting is not None

    result = PendingHandler(repository=repository).handle(waiting)

    assert result.skipped is True
    assert result.reason == "retry_backoff"
    stored = repository.get(task.task_id)
    assert stored is not None
    assert stored.state == TaskState.PENDING


def test_pending_task_moves_to_downloading(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> None:
    task = accept_task()

    result = PendingHandler(repository=repository).handle(task)

    assert result.next_state == TaskState.DOWNLOADING
    stored = repository.get(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.PROCESSING


def test_stale_snapshot_yields_skip_not_error(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> None:
    task = accept_task()
    _move(repository, task, TaskState.DOWNLOADING)

    result = PendingHandler(repository=repository).handle(task)

    assert result.skipped is True
    assert result.reason == "state_changed"


def test_missing_local_inputs_fail_terminally(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
    tmp_path: Path,
) -> None:
    task = _move(
        repository,
        accept_task(params={"images": ["missing/front.png"]}),
        TaskState.DOWNLOADING,
    )
    handler = DownloadingHandler(repository=repository, storage=LocalArtifactStorage(tmp_path))

    with pytest.raises(TerminalTaskError) as exc_info:
        handler.handle(task)

    assert exc_info.value.code == "input_missing"


def test_downloading_stages_inputs(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
    tmp_path: Path,
) -> None:
    (tmp_path / "garment.png").write_bytes(b"png")
    task = _move(
        repository,
        accept_task(params={"images": ["garment.png", "https://cdn.example.com/model.jpg"]}),
        TaskState.DOWNLOADING,
    )
    handler = DownloadingHandler(repository=repository, storage=LocalArtifactStorage(tmp_path))

    result = handler.handle(task)

    assert result.next_state == TaskState.DOWNLOADED
    stored = repository.get(task.task_id)
    assert stored is not None
    assert stored.state_data["inputs"] == [
        str(tmp_path / "garment.png"),
        "https://cdn.example.com/model.jpg",
    ]


def test_downloaded_records_deadline_and_dispatches(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> None:
    task = _move(
        repository,
        accept_task(params={"prompt": "red dress on a beach"}),
        TaskState.DOWNLOADED,
    )
    dispatcher = _FakeDispatcher(timeout_seconds=60.0)
    handler = DownloadedHandler(
        repository=repository,
        dispatcher=dispatcher,  # type: ignore[arg-type]
    )

    result = handler.handle(task)

    assert result.next_state == TaskState.INFERENCE_CALLING
    stored = repository.get(task.task_id)
    assert stored is not None
    assert stored.state_data["prompt"] == "red dress on a beach"
    dispatched_at = datetime.fromisoformat(stored.state_data["dispatched_at"])
    deadline = datetime.fromisoformat(stored.state_data["dispatch_deadline"])
    assert deadline - dispatched_at == timedelta(seconds=60)
    assert [(item.task_id, prompt) for item, prompt in dispatcher.dispatched] == [
        (task.task_id, "red dress on a beach"),
    ]
    assert dispatcher.dispatched[0][0].state == TaskState.INFERENCE_CALLING


def test_awaiting_task_with_call_in_flight_is_skipped(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> None:
    task = _move(repository, accept_task(), TaskState.INFERENCE_PROCESSING)
    handler = AwaitingInferenceHandler(
        state=TaskState.INFERENCE_PROCESSING,
        dispatcher=_FakeDispatcher(timeout_seconds=0.0, in_flight=True),  # type: ignore[arg-type]
        grace_seconds=0.0,
    )

    result = handler.handle(task)

    assert result.skipped is True
    assert result.reason == "inference_in_flight"


def test_awaiting_task_before_deadline_is_skipped(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> None:
    deadline = datetime.now(tz=UTC) + timedelta(minutes=5)
    task = _move(
        repository,
        accept_task(),
        TaskState.INFERENCE_CALLING,
        state_data={"dispatch_deadline": deadline.isoformat()},
    )
    handler = AwaitingInferenceHandler(
        state=TaskState.INFERENCE_CALLING,
        dispatcher=_FakeDispatcher(),  # type: ignore[arg-type]
        grace_seconds=0.0,
    )

    assert handler.handle(task).reason == "awaiting_callback"


def test_orphaned_dispatch_past_deadline_times_out(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> None:
    deadline = datetime.now(tz=UTC) - timedelta(minutes=10)
    task = _move(
        repository,
        accept_task(),
        TaskState.INFERENCE_PROCESSING,
        state_data={"dispatch_deadline": deadline.isoformat()},
    )
    handler = AwaitingInferenceHandler(
        state=TaskState.INFERENCE_PROCESSING,
        dispatcher=_FakeDispatcher(),  # type: ignore[arg-type]
        grace_seconds=30.0,
    )

    with pytest.raises(InferenceTimeoutError, match="timeout"):
        handler.handle(task)


def test_inference_completed_without_images_is_terminal(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> None:
    task = _move(repository, accept_task(), TaskState.INFERENCE_COMPLETED)
    handler = InferenceCompletedHandler(repository=repository, stale_after_seconds=30.0)

    with pytest.raises(TerminalTaskError) as exc_info:
        handler.handle(task)

    assert exc_info.value.code == "missing_output"


def test_inference_completed_leaves_fresh_inline_persist_alone(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> None:
    task = _move(
        repository,
        accept_task(),
        TaskState.INFERENCE_COMPLETED,
        state_data={
            GENERATED_IMAGES_KEY: [GeneratedImage(data_uri=_PIXEL).to_payload()],
            "inline_persist": True,
            "callback_received_at": datetime.now(tz=UTC).isoformat(),
        },
    )
    handler = InferenceCompletedHandler(repository=repository, stale_after_seconds=30.0)

    assert handler.handle(task).reason == "inline_persist_in_progress"


def test_inference_completed_resumes_stalled_inline_persist(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
) -> None:
    task = _move(
        repository,
        accept_task(),
        TaskState.INFERENCE_COMPLETED,
        state_data={
            GENERATED_IMAGES_KEY: [GeneratedImage(data_uri=_PIXEL).to_payload()],
            "inline_persist": True,
            "callback_received_at": (datetime.now(tz=UTC) - timedelta(minutes=5)).isoformat(),
        },
    )
    handler = InferenceCompletedHandler(repository=repository, stale_after_seconds=30.0)

    assert handler.handle(task).next_state == TaskState.POST_PROCESSING


def test_post_processing_then_upload_completes_task(
    repository: TaskRepository,
    accept_task: Callable[..., TaskView],
    tmp_path: Path,
) -> None:
    task = _move(
        repository,
        accept_task(business_mode="personal"),
        TaskState.POST_PROCESSING,
        state_data={
            GENERATED_IMAGES_KEY: [
                GeneratedImage(data_uri=_PIXEL, width=1, height=1).to_payload(),
                GeneratedImage(url="https://cdn.example.com/out.png").to_payload(),
            ],
        },
    )
    storage = LocalArtifactStorage(tmp_path / "media")

    post = PostProcessingHandler(repository=repository, post_processor=WatermarkPostProcessor())
    assert post.handle(task).next_state == TaskState.UPLOADING
    uploading = repository.get(task.task_id)
    assert uploading is not None

    result = UploadingHandler(repository=repository, storage=storage).handle(uploading)

    assert result.next_state == TaskState.COMPLETED
    stored = repository.get(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert GENERATED_IMAGES_KEY not in stored.state_data
    assert stored.state_data["artifact_count"] == 2
    assert stored.result is not None
    local, remote = stored.result
    assert Path(local["uri"]) == tmp_path / "media" / "photography" / task.task_id / "0.png"
    assert local["metadata"]["watermark"] == "photo-studio"
    assert remote["uri"] == "https://cdn.example.com/out.png"
    assert remote["metadata"]["url_type"] == "remote"
    assert len(repository.list_artifacts(task.task_id)) == 2


def test_registry_covers_every_driven_state(
    repository: TaskRepository,
    tmp_path: Path,
) -> None:
    registry = build_handler_registry(
        repository=repository,
        storage=LocalArtifactStorage(tmp_path),
        post_processor=WatermarkPostProcessor(),
        dispatcher=_FakeDispatcher(),  # type: ignore[arg-type]
        grace_seconds=30.0,
    )

    assert set(registry) == set(DRIVEN_STATES)
    assert all(registry[state].state == state for state in DRIVEN_STATES)
