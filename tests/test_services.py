from __future__ import annotations

from collections.abc import Callable

import allure
import pytest

from photo_studio.credits.ledger import DEBIT, REFUND, InsufficientCreditsError
from photo_studio.orchestrator.engine import OrchestrationEngine
from photo_studio.orchestrator.models import TaskState, TaskStatus
from photo_studio.orchestrator.services import SubmitTask

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Task Submission"),
]


def test_submit_debits_price_times_count(make_engine: Callable[..., OrchestrationEngine]) -> None:
    engine = make_engine()
    engine.ledger.grant("owner-1", 5)

    task = engine.submission.submit(
        SubmitTask(
            task_type="avatar",
            owner_id="owner-1",
            params={"images": ["face.png"]},
            count=3,
            business_mode="commercial",
        ),
    )

    assert task.state == TaskState.PENDING
    assert task.status == TaskStatus.PENDING
    assert task.credits_consumed == 3
    assert task.business_mode == "commercial"
    assert task.params == {"images": ["face.png"], "count": 3}
    assert engine.ledger.balance("owner-1") == 2
    debits = engine.ledger.list_records(task_id=task.task_id, kind=DEBIT)
    assert [record.amount for record in debits] == [3]


def test_explicit_credit_amount_overrides_price(
    make_engine: Callable[..., OrchestrationEngine],
) -> None:
    engine = make_engine()
    engine.ledger.grant("owner-1", 5)

    task = engine.submission.submit(
        SubmitTask(task_type="photography", owner_id="owner-1", credits=0),
    )

    assert task.credits_consumed == 0
    assert engine.ledger.balance("owner-1") == 5


def test_insufficient_credits_rejects_without_task(
    make_engine: Callable[..., OrchestrationEngine],
) -> None:
    engine = make_engine()
    engine.ledger.grant("owner-1", 1)

    with pytest.raises(InsufficientCreditsError, match="2 required"):
        engine.submission.submit(SubmitTask(task_type="fitting", owner_id="owner-1", count=2))

    assert engine.repository.list_tasks() == []
    assert engine.ledger.balance("owner-1") == 1


@pytest.mark.parametrize(
    ("command", "message"),
    [
        (SubmitTask(task_type="video", owner_id="owner-1"), "video"),
        (SubmitTask(task_type="avatar", owner_id="owner-1", count=0), "count"),
        (
            SubmitTask(task_type="avatar", owner_id="owner-1", business_mode="agency"),
            "business_mode",
        ),
    ],
)
def test_invalid_submissions_are_rejected(
    make_engine: Callable[..., OrchestrationEngine],
    command: SubmitTask,
    message: str,
) -> None:
    engine = make_engine()
    engine.ledger.grant("owner-1", 5)

    with pytest.raises(ValueError, match=message):
        engine.submission.submit(command)

    assert engine.ledger.balance("owner-1") == 5


def test_failed_insert_refunds_debit(
    make_engine: Callable[..., OrchestrationEngine],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    engine = make_engine()
    engine.ledger.grant("owner-1", 2)

    def _broken_insert(payload: object) -> None:
        raise RuntimeError("disk full")

    monkeypatch.setattr(engine.repository, "insert", _broken_insert)

    with pytest.raises(RuntimeError, match="disk full"):
        engine.submission.submit(SubmitTask(task_type="fitting", owner_id="owner-1"))

    assert engine.ledger.balance("owner-1") == 2
    refunds = engine.ledger.list_records(owner_id="owner-1", kind=REFUND)
    assert [record.reason for record in refunds] == ["task_insert_failed"]
