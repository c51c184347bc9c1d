"""Post-inference artifact processors."""

from __future__ import annotations

from dataclasses import replace

from photo_studio.orchestrator.models import GeneratedImage, TaskView

WATERMARK_TEXT = "photo-studio"


class PassthroughPostProcessor:
    def process(self, task: TaskView, images: list[GeneratedImage]) -> list[GeneratedImage]:
        return list(images)


class WatermarkPostProcessor:
    """Marks images of ``personal`` tasks for watermarking at render time.

    Commercial tasks are returned unchanged.
    """

    def __init__(self, *, text: str = WATERMARK_TEXT) -> None:
        self.text = text

    def process(self, task: TaskView, images: list[GeneratedImage]) -> list[GeneratedImage]:
        if task.business_mode != "personal":
            return list(images)
        return [
            replace(image, metadata={**image.metadata, "watermark": self.text})
            for image in images
        ]
