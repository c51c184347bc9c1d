"""Domain models for the photo task state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskType(str, Enum):
    """Enumerated job kinds accepted by the engine."""

    PHOTOGRAPHY = "photography"
    FITTING = "fitting"
    AVATAR = "avatar"


class TaskState(str, Enum):
    """Position of a task in the internal processing pipeline."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    INFERENCE_CALLING = "inference_calling"
    INFERENCE_PROCESSING = "inference_processing"
    INFERENCE_COMPLETED = "inference_completed"
    POST_PROCESSING = "post_processing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """Coarse lifecycle flag exposed to external consumers."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureReason(str, Enum):
    """Why a task reached a terminal non-success status."""

    MAX_RETRIES = "max_retries"
    NON_RETRYABLE = "non_retryable"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    CALLBACK_FAILED = "callback_failed"


# Driver visits states in pipeline order.
DRIVEN_STATES: tuple[TaskState, ...] = (
    TaskState.PENDING,
    TaskState.DOWNLOADING,
    TaskState.DOWNLOADED,
    TaskState.INFERENCE_CALLING,
    TaskState.INFERENCE_PROCESSING,
    TaskState.INFERENCE_COMPLETED,
    TaskState.POST_PROCESSING,
    TaskState.UPLOADING,
)
AWAITING_INFERENCE_STATES: frozenset[TaskState] = frozenset(
    {TaskState.INFERENCE_CALLING, TaskState.INFERENCE_PROCESSING},
)
ACTIVE_STATUSES: tuple[TaskStatus, ...] = (TaskStatus.PENDING, TaskStatus.PROCESSING)
TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


def status_for_state(state: TaskState) -> TaskStatus:
    """Derive the externally visible status from the pipeline state."""

    if state == TaskState.PENDING:
        return TaskStatus.PENDING
    if state == TaskState.COMPLETED:
        return TaskStatus.COMPLETED
    if state == TaskState.FAILED:
        return TaskStatus.FAILED
    if state == TaskState.CANCELLED:
        return TaskStatus.CANCELLED
    return TaskStatus.PROCESSING


@dataclass(slots=True)
class TaskCreate:
    """Input payload for inserting a task accepted by the submission layer."""

    task_type: TaskType
    owner_id: str
    params: dict[str, Any] = field(default_factory=dict)
    credits_consumed: int = 0
    business_mode: str = "personal"
    task_id: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task snapshot used by driver, handlers and CLI."""

    task_id: str
    task_type: TaskType
    owner_id: str
    business_mode: str
    state: TaskState
    status: TaskStatus
    retry_count: int
    retry_after: datetime | None
    params: dict[str, Any]
    state_data: dict[str, Any]
    result: list[dict[str, Any]] | None
    error: str | None
    last_error: str | None
    failure_reason: FailureReason | None
    credits_consumed: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    state_from: TaskState | None
    state_to: TaskState | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream and persisted artifacts."""

    task: TaskView
    events: list[TaskEventView]
    artifacts: list[ArtifactDescriptor]


@dataclass(slots=True)
class GeneratedImage:
    """One image returned by the inference service.

    ``data_uri`` carries inline ``data:image/...;base64,`` content, ``url``
    a remote location; exactly one of them is expected.
    """

    url: str | None = None
    data_uri: str | None = None
    width: int | None = None
    height: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "data_uri": self.data_uri,
            "width": self.width,
            "height": self.height,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> GeneratedImage:
        return cls(
            url=payload.get("url"),
            data_uri=payload.get("data_uri"),
            width=payload.get("width"),
            height=payload.get("height"),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(slots=True)
class InferenceOutcome:
    """Result or error of one external inference call."""

    success: bool
    images: list[GeneratedImage] = field(default_factory=list)
    error: str | None = None
    timed_out: bool = False

    @classmethod
    def failed(cls, error: str, *, timed_out: bool = False) -> InferenceOutcome:
        return cls(success=False, error=error, timed_out=timed_out)

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "images": [image.to_payload() for image in self.images],
            "error": self.error,
            "timed_out": self.timed_out,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> InferenceOutcome:
        return cls(
            success=bool(payload.get("success")),
            images=[GeneratedImage.from_payload(item) for item in payload.get("images") or []],
            error=payload.get("error"),
            timed_out=bool(payload.get("timed_out")),
        )


@dataclass(slots=True)
class ArtifactDescriptor:
    """Persisted output image reference stored in ``Task.result``."""

    position: int
    uri: str
    width: int | None = None
    height: int | None = None
    checksum_sha256: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "uri": self.uri,
            "width": self.width,
            "height": self.height,
            "checksum_sha256": self.checksum_sha256,
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class HandlerResult:
    """What one handler did with one task."""

    next_state: TaskState | None = None
    skipped: bool = False
    reason: str | None = None


@dataclass(slots=True)
class CycleResult:
    """Per-task entry of one driver cycle."""

    task_id: str
    state: TaskState
    success: bool
    error: str | None = None
    next_state: TaskState | None = None
    skipped: bool = False


@dataclass(slots=True)
class CycleSummary:
    """Structured driver cycle report for logging/metrics export."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[CycleResult] = field(default_factory=list)

    def add(self, result: CycleResult) -> None:
        self.results.append(result)
        self.processed += 1
        if not result.success:
            self.failed += 1
        elif result.skipped:
            self.skipped += 1
        else:
            self.succeeded += 1


@dataclass(slots=True)
class TaskStats:
    """Task counts grouped by pipeline state and by status."""

    by_state: dict[str, int]
    by_status: dict[str, int]

    @property
    def total(self) -> int:
        return sum(self.by_state.values())

    @property
    def summary(self) -> dict[str, int]:
        # A callback-failed task keeps its pipeline state, so buckets come from status only.
        return {status.value: self.by_status.get(status.value, 0) for status in TaskStatus}
