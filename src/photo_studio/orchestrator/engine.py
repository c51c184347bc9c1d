"""Wiring of repository, ledger, collaborators, dispatcher and driver."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from photo_studio.config import Settings
from photo_studio.credits.ledger import CreditLedger
from photo_studio.orchestrator.backend import (
    ArtifactPostProcessor,
    ArtifactStorage,
    EchoInferenceService,
    InferenceService,
    InProcessCallbackTransport,
    LocalArtifactStorage,
    WatermarkPostProcessor,
)
from photo_studio.orchestrator.callback import CallbackReceiver
from photo_studio.orchestrator.dispatch import InferenceDispatcher
from photo_studio.orchestrator.driver import StateMachineDriver
from photo_studio.orchestrator.failures import FailurePipeline
from photo_studio.orchestrator.handlers import build_handler_registry
from photo_studio.orchestrator.repository import TaskRepository
from photo_studio.orchestrator.services import TaskSubmissionService


@dataclass(slots=True)
class OrchestrationEngine:
    """Fully wired engine; ``close()`` stops workers and disposes DB engines."""

    settings: Settings
    repository: TaskRepository
    ledger: CreditLedger
    failures: FailurePipeline
    receiver: CallbackReceiver
    dispatcher: InferenceDispatcher
    driver: StateMachineDriver
    submission: TaskSubmissionService

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.settings.orchestrator.retention_hours)

    def close(self, *, wait: bool = True) -> None:
        self.dispatcher.shutdown(wait=wait)
        self.repository.close()
        self.ledger.close()


def build_engine(
    settings: Settings,
    *,
    inference: InferenceService | None = None,
    storage: ArtifactStorage | None = None,
    post_processor: ArtifactPostProcessor | None = None,
) -> OrchestrationEngine:
    """Build an engine for ``settings``; local implementations fill unset collaborators."""

    options = settings.orchestrator
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    ledger = CreditLedger(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    storage = storage or LocalArtifactStorage(settings.storage.media_root)
    post_processor = post_processor or WatermarkPostProcessor()

    failures = FailurePipeline(
        repository=repository,
        ledger=ledger,
        max_retries=options.max_retries,
        retry_base_seconds=options.retry_base_seconds,
    )
    receiver = CallbackReceiver(
        repository=repository,
        failures=failures,
        storage=storage,
        post_processor=post_processor,
        deferred_upload=options.deferred_upload,
    )
    dispatcher = InferenceDispatcher(
        inference=inference or EchoInferenceService(),
        repository=repository,
        failures=failures,
        deliver_direct=receiver.handle_payload,
        transport=InProcessCallbackTransport(
            receiver.handle_payload,
            max_payload_bytes=options.max_callback_payload_bytes,
        ),
        timeout_seconds=options.inference_timeout_seconds,
        max_payload_bytes=options.max_callback_payload_bytes,
        max_workers=options.dispatcher_threads,
    )
    handlers = build_handler_registry(
        repository=repository,
        storage=storage,
        post_processor=post_processor,
        dispatcher=dispatcher,
        grace_seconds=options.dispatch_grace_seconds,
    )
    driver = StateMachineDriver(
        repository=repository,
        handlers=handlers,
        failures=failures,
        batch_size=options.batch_size,
    )
    return OrchestrationEngine(
        settings=settings,
        repository=repository,
        ledger=ledger,
        failures=failures,
        receiver=receiver,
        dispatcher=dispatcher,
        driver=driver,
        submission=TaskSubmissionService(
            repository=repository,
            ledger=ledger,
            settings=settings,
        ),
    )
