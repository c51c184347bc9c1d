"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from photo_studio.config import OrchestratorSettings, Settings, StorageSettings
from photo_studio.credits.ledger import CreditLedger
from photo_studio.orchestrator.backend import InferenceService
from photo_studio.orchestrator.engine import OrchestrationEngine, build_engine
from photo_studio.orchestrator.failures import FailurePipeline
from photo_studio.orchestrator.models import TaskCreate, TaskType, TaskView
from photo_studio.orchestrator.repository import TaskRepository


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "photo_studio.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def ledger(repository: TaskRepository, db_path: Path) -> Iterator[CreditLedger]:
    credit_ledger = CreditLedger(db_path)
    yield credit_ledger
    credit_ledger.close()


@pytest.fixture()
def failures(repository: TaskRepository, ledger: CreditLedger) -> FailurePipeline:
    return FailurePipeline(repository=repository, ledger=ledger)


@pytest.fixture()
def accept_task(
    repository: TaskRepository,
    ledger: CreditLedger,
) -> Callable[..., TaskView]:
    """Grant, debit and insert a task the way the submission service does."""

    def _accept(
        *,
        owner_id: str = "owner-1",
        credits: int = 2,
        task_type: TaskType = TaskType.PHOTOGRAPHY,
        params: dict[str, object] | None = None,
        business_mode: str = "personal",
    ) -> TaskView:
        if credits:
            ledger.grant(owner_id, credits)
            assert ledger.debit(owner_id, credits)
        return repository.insert(
            TaskCreate(
                task_type=task_type,
                owner_id=owner_id,
                params=params or {},
                credits_consumed=credits,
                business_mode=business_mode,
            ),
        )

    return _accept


@pytest.fixture()
def make_settings(tmp_path: Path, db_path: Path) -> Callable[..., Settings]:
    def _make(**orchestrator_overrides: object) -> Settings:
        return Settings(
            db_path=db_path,
            orchestrator=replace(OrchestratorSettings(), **orchestrator_overrides),
            storage=StorageSettings(media_root=tmp_path / "media"),
        )

    return _make


@pytest.fixture()
def make_engine(
    make_settings: Callable[..., Settings],
) -> Iterator[Callable[..., OrchestrationEngine]]:
    """Build wired engines against the test database; closes them on teardown."""

    engines: list[OrchestrationEngine] = []

    def _make(
        *,
        inference: InferenceService | None = None,
        **orchestrator_overrides: object,
    ) -> OrchestrationEngine:
        engine = build_engine(make_settings(**orchestrator_overrides), inference=inference)
        engine.repository.init_schema()
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close(wait=engine.dispatcher.in_flight_count() == 0)
