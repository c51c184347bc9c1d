from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy import inspect

from photo_studio.orchestrator.models import (
    ArtifactDescriptor,
    FailureReason,
    TaskCreate,
    TaskState,
    TaskStatus,
    TaskType,
)
from photo_studio.orchestrator.repository import TaskRepository

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Task Record Store"),
]


def _create(repository: TaskRepository, **overrides: object):
    payload = TaskCreate(task_type=TaskType.FITTING, owner_id="owner-1", credits_consumed=1)
    for name, value in overrides.items():
        setattr(payload, name, value)
    return repository.insert(payload)


def test_migrations_create_all_tables(repository: TaskRepository) -> None:
    tables = set(inspect(repository.engine).get_table_names())

    assert {
        "tasks",
        "task_events",
        "task_artifacts",
        "credit_accounts",
        "credit_records",
        "alembic_version",
    } <= tables


def test_insert_starts_pending_with_created_event(repository: TaskRepository) -> None:
    task = _create(repository, params={"images": ["a.png"]})

    assert task.state == TaskState.PENDING
    assert task.status == TaskStatus.PENDING
    assert task.retry_count == 0
    assert task.params == {"images": ["a.png"]}
    assert task.result is None

    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]
    assert details.events[0].state_to == TaskState.PENDING
    assert details.events[0].details["credits_consumed"] == 1


def test_find_orders_by_created_at_then_retry_count(repository: TaskRepository) -> None:
    base = datetime(2026, 1, 1, tzinfo=UTC)
    late = _create(repository, created_at=base + timedelta(minutes=5))
    early = _create(repository, created_at=base)
    middle = _create(repository, created_at=base + timedelta(minutes=1))

    found = repository.find(states=[TaskState.PENDING], statuses=[TaskStatus.PENDING])

    assert [task.task_id for task in found] == [early.task_id, middle.task_id, late.task_id]
    assert len(repository.find(states=[TaskState.PENDING], limit=2)) == 2


def test_find_rejects_unknown_order_column(repository: TaskRepository) -> None:
    with pytest.raises(ValueError, match="Unsupported order_by"):
        repository.find(order_by=("priority",))


def test_update_derives_status_and_records_event(repository: TaskRepository) -> None:
    task = _create(repository)

    applied = repository.update_by_id(
        task.task_id,
        {"state": TaskState.DOWNLOADING},
        expected_state=TaskState.PENDING,
    )

    assert applied is True
    stored = repository.get(task.task_id)
    assert stored is not None
    assert stored.state == TaskState.DOWNLOADING
    assert stored.status == TaskStatus.PROCESSING
    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    changed = details.events[-1]
    assert changed.event_type == "state_changed"
    assert changed.state_from == TaskState.PENDING
    assert changed.state_to == TaskState.DOWNLOADING


def test_update_with_stale_expected_state_is_a_noop(repository: TaskRepository) -> None:
    task = _create(repository)
    assert repository.update_by_id(
        task.task_id,
        {"state": TaskState.DOWNLOADING},
        expected_state=TaskState.PENDING,
    )

    lost = repository.update_by_id(
        task.task_id,
        {"state": TaskState.DOWNLOADING},
        expected_state=TaskState.PENDING,
    )

    assert lost is False
    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert len(details.events) == 2


def test_terminal_tasks_reject_further_updates(repository: TaskRepository) -> None:
    task = _create(repository)
    assert repository.update_by_id(
        task.task_id,
        {"state": TaskState.FAILED, "failure_reason": FailureReason.NON_RETRYABLE},
    )

    assert repository.update_by_id(task.task_id, {"state": TaskState.PENDING}) is False
    assert repository.update_by_id(task.task_id, {"state": TaskState.COMPLETED}) is False
    stored = repository.get(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert stored.failure_reason == FailureReason.NON_RETRYABLE


def test_update_rejects_unknown_fields(repository: TaskRepository) -> None:
    task = _create(repository)

    with pytest.raises(ValueError, match="Unsupported task field"):
        repository.update_by_id(task.task_id, {"owner_id": "someone-else"})


def test_save_artifacts_is_once_per_position(repository: TaskRepository) -> None:
    task = _create(repository)
    artifacts = [
        ArtifactDescriptor(position=0, uri="media/0.png", checksum_sha256="abc"),
        ArtifactDescriptor(position=1, uri="https://cdn.example.com/1.png"),
    ]

    assert repository.save_artifacts(task_id=task.task_id, artifacts=artifacts) is True
    assert repository.save_artifacts(task_id=task.task_id, artifacts=artifacts[:1]) is False

    stored = repository.list_artifacts(task.task_id)
    assert [artifact.uri for artifact in stored] == ["media/0.png", "https://cdn.example.com/1.png"]


def test_delete_terminal_before_keeps_active_tasks(repository: TaskRepository) -> None:
    active = _create(repository)
    finished = _create(repository)
    assert repository.update_by_id(finished.task_id, {"state": TaskState.COMPLETED})

    deleted = repository.delete_terminal_before(datetime.now(tz=UTC) + timedelta(seconds=1))

    assert deleted == 1
    assert repository.get(finished.task_id) is None
    assert repository.get(active.task_id) is not None


def test_count_by_groups_state_and_status(repository: TaskRepository) -> None:
    _create(repository)
    moving = _create(repository)
    assert repository.update_by_id(moving.task_id, {"state": TaskState.DOWNLOADED})

    assert repository.count_by("state") == {"pending": 1, "downloaded": 1}
    assert repository.count_by("status") == {"pending": 1, "processing": 1}
    with pytest.raises(ValueError, match="Unsupported grouping"):
        repository.count_by("owner_id")


def test_list_tasks_filters_by_owner_and_status(repository: TaskRepository) -> None:
    _create(repository, owner_id="alice")
    bob = _create(repository, owner_id="bob")
    assert repository.update_by_id(bob.task_id, {"state": TaskState.CANCELLED})

    assert [task.owner_id for task in repository.list_tasks(owner_id="alice")] == ["alice"]
    cancelled = repository.list_tasks(status=TaskStatus.CANCELLED)
    assert [task.task_id for task in cancelled] == [bob.task_id]
