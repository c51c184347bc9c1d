"""Local deterministic inference service for development and tests."""

from __future__ import annotations

import time

from photo_studio.orchestrator.backend.base import InferenceRequest
from photo_studio.orchestrator.models import GeneratedImage, InferenceOutcome

# 1x1 transparent PNG.
_PIXEL_PNG_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


class EchoInferenceService:
    """Returns ``image_count`` placeholder images without calling a model.

    Task params can steer it: ``simulate_error`` makes the call fail with that
    message, ``simulate_delay_seconds`` makes it block first.
    """

    def __init__(self, *, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = delay_seconds

    def generate(self, request: InferenceRequest) -> InferenceOutcome:
        delay = float(request.parameters.get("simulate_delay_seconds") or self.delay_seconds)
        if delay > 0:
            time.sleep(delay)

        error = request.parameters.get("simulate_error")
        if error:
            return InferenceOutcome.failed(str(error))

        images = [
            GeneratedImage(
                data_uri=f"data:image/png;base64,{_PIXEL_PNG_BASE64}",
                width=1,
                height=1,
                metadata={
                    "backend": "echo",
                    "task_type": request.task_type,
                    "prompt": request.prompt,
                    "inputs": len(request.input_refs),
                },
            )
            for _ in range(max(1, request.image_count))
        ]
        return InferenceOutcome(success=True, images=images)
