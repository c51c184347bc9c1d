"""Collaborator interfaces the orchestration core depends on."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from photo_studio.orchestrator.models import (
    ArtifactDescriptor,
    GeneratedImage,
    InferenceOutcome,
    TaskView,
)


@dataclass(slots=True)
class InferenceRequest:
    """Inputs for one external inference call."""

    task_id: str
    task_type: str
    prompt: str
    input_refs: list[str]
    image_count: int = 1
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CallbackPayload:
    """Out-of-band completion message keyed by task id."""

    task_id: str
    job_type: str
    outcome: InferenceOutcome
    original_prompt: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "task_id": self.task_id,
                "job_type": self.job_type,
                "outcome": self.outcome.to_payload(),
                "original_prompt": self.original_prompt,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> CallbackPayload:
        data = json.loads(raw)
        return cls(
            task_id=str(data["task_id"]),
            job_type=str(data["job_type"]),
            outcome=InferenceOutcome.from_payload(data["outcome"]),
            original_prompt=str(data.get("original_prompt") or ""),
        )

    def size_bytes(self) -> int:
        return len(self.to_json().encode("utf-8"))


class InferenceService(Protocol):
    """Opaque AI model call: prompt in, images or error out."""

    def generate(self, request: InferenceRequest) -> InferenceOutcome:
        """Run one generation; may block up to the caller's timeout."""


class ArtifactStorage(Protocol):
    """Object storage for task inputs and generated images."""

    def stage_inputs(self, task: TaskView) -> list[str]:
        """Resolve the task's input images to references inference can read."""

    def persist(
        self,
        *,
        task_id: str,
        task_type: str,
        images: list[GeneratedImage],
    ) -> list[ArtifactDescriptor]:
        """Store generated images and return their descriptors."""


class ArtifactPostProcessor(Protocol):
    """Post-inference image step (watermarking and similar)."""

    def process(self, task: TaskView, images: list[GeneratedImage]) -> list[GeneratedImage]:
        """Return the images to upload."""


class CallbackTransport(Protocol):
    """Carries a completion payload to the callback receiver."""

    def deliver(self, payload: CallbackPayload) -> None:
        """Deliver or raise ``CallbackDeliveryError``."""
