"""Orchestrator collaborator interfaces and local implementations."""

from photo_studio.orchestrator.backend.base import (
    ArtifactPostProcessor,
    ArtifactStorage,
    CallbackPayload,
    CallbackTransport,
    InferenceRequest,
    InferenceService,
)
from photo_studio.orchestrator.backend.echo_inference import EchoInferenceService
from photo_studio.orchestrator.backend.local_storage import LocalArtifactStorage
from photo_studio.orchestrator.backend.post_processing import (
    PassthroughPostProcessor,
    WatermarkPostProcessor,
)
from photo_studio.orchestrator.backend.transport import InProcessCallbackTransport

__all__ = [
    "ArtifactPostProcessor",
    "ArtifactStorage",
    "CallbackPayload",
    "CallbackTransport",
    "EchoInferenceService",
    "InProcessCallbackTransport",
    "InferenceRequest",
    "InferenceService",
    "LocalArtifactStorage",
    "PassthroughPostProcessor",
    "WatermarkPostProcessor",
]
