"""Task record store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from photo_studio.orchestrator.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ArtifactDescriptor,
    FailureReason,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskState,
    TaskStatus,
    TaskType,
    TaskView,
    status_for_state,
)
from photo_studio.storage.alembic_runner import upgrade_head
from photo_studio.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_list,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from photo_studio.storage.sqlmodel_models import TaskArtifactRow, TaskEventRow, TaskRow

_ORDERABLE_COLUMNS = {
    "created_at": TaskRow.created_at,
    "retry_count": TaskRow.retry_count,
    "updated_at": TaskRow.updated_at,
}
_DATETIME_FIELDS = {"retry_after", "completed_at"}
_JSON_FIELDS = {"result": "result_json", "state_data": "state_data_json"}
_PLAIN_FIELDS = {
    "state",
    "status",
    "retry_count",
    "error",
    "last_error",
    "failure_reason",
}


class TaskRepository:
    """Task persistence facade: filtered reads, guarded updates, inserts, deletes.

    Every mutation is a single-row ``UPDATE ... WHERE`` that only applies while
    the stored status is still active (and, when given, the stored state still
    matches). ``rowcount`` tells the caller whether its write won.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def insert(self, payload: TaskCreate) -> TaskView:
        """Create a task in ``state=pending``, ``status=pending``."""

        now = payload.created_at or utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = TaskRow(
                task_id=task_id,
                task_type=TaskType(payload.task_type).value,
                owner_id=payload.owner_id,
                business_mode=payload.business_mode,
                state=TaskState.PENDING.value,
                status=TaskStatus.PENDING.value,
                retry_count=0,
                params_json=dump_json(payload.params) or "{}",
                credits_consumed=payload.credits_consumed,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                state_from=None,
                state_to=TaskState.PENDING,
                status_to=TaskStatus.PENDING,
                details={
                    "task_type": row.task_type,
                    "owner_id": payload.owner_id,
                    "credits_consumed": payload.credits_consumed,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def find(
        self,
        *,
        states: Iterable[TaskState] | None = None,
        statuses: Iterable[TaskStatus] | None = None,
        limit: int = 10,
        order_by: tuple[str, ...] = ("created_at", "retry_count"),
    ) -> list[TaskView]:
        """Filtered read ordered ascending by the given columns."""

        statement = select(TaskRow)
        if states is not None:
            statement = statement.where(
                col(TaskRow.state).in_([TaskState(state).value for state in states]),
            )
        if statuses is not None:
            statement = statement.where(
                col(TaskRow.status).in_([TaskStatus(status).value for status in statuses]),
            )
        for name in order_by:
            if name not in _ORDERABLE_COLUMNS:
                raise ValueError(f"Unsupported order_by column: {name!r}")
            statement = statement.order_by(col(_ORDERABLE_COLUMNS[name]).asc())
        statement = statement.limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def update_by_id(  # noqa: PLR0913
        self,
        task_id: str,
        fields: Mapping[str, Any],
        *,
        expected_state: TaskState | None = None,
        expected_statuses: Iterable[TaskStatus] = ACTIVE_STATUSES,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Compare-and-set update; returns whether the write was applied.

        ``status`` is derived from ``state`` unless given explicitly.
        """

        values = _to_column_values(fields)
        if "state" in values and "status" not in values:
            values["status"] = status_for_state(TaskState(values["state"])).value
        now = utc_now()
        values["updated_at"] = to_db_datetime(now)
        expected = [TaskStatus(status).value for status in expected_statuses]

        statement = sa_update(TaskRow).where(
            col(TaskRow.task_id) == task_id,
            col(TaskRow.status).in_(expected),
        )
        if expected_state is not None:
            statement = statement.where(col(TaskRow.state) == TaskState(expected_state).value)

        with Session(self.engine) as session:
            result = session.exec(statement.values(**values))  # type: ignore[call-overload]
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type or ("state_changed" if "state" in values else "updated"),
                state_from=expected_state,
                state_to=TaskState(values["state"]) if "state" in values else None,
                status_to=TaskStatus(values["status"]) if "status" in values else None,
                details=details or {},
            )
            session.commit()
            return True

    def delete(self, task_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(TaskRow).where(  # type: ignore[call-overload]
                    col(TaskRow.task_id) == task_id,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete terminal tasks whose last update is older than ``cutoff``."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(TaskRow).where(  # type: ignore[call-overload]
                    col(TaskRow.status).in_([status.value for status in TERMINAL_STATUSES]),
                    col(TaskRow.updated_at) < to_db_datetime(cutoff),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def count_by(self, column: str) -> dict[str, int]:
        """Task counts grouped by ``state`` or ``status``."""

        if column not in {"state", "status"}:
            raise ValueError(f"Unsupported grouping column: {column!r}")
        grouped = getattr(TaskRow, column)
        with Session(self.engine) as session:
            rows = session.exec(
                select(grouped, func.count()).group_by(grouped),
            ).all()
        return {str(key): int(count) for key, count in rows}

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        owner_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status/owner."""

        statement = select(TaskRow).order_by(col(TaskRow.created_at).desc()).limit(limit)
        if status is not None:
            statement = statement.where(TaskRow.status == status.value)
        if owner_id is not None:
            statement = statement.where(TaskRow.owner_id == owner_id)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def add_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append an informational event without touching the task row."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                state_from=None,
                state_to=None,
                status_to=None,
                details=details or {},
            )
            session.commit()

    def save_artifacts(self, *, task_id: str, artifacts: list[ArtifactDescriptor]) -> bool:
        """Insert artifact rows; ``False`` when this task already has them."""

        now = utc_now()
        with Session(self.engine) as session:
            for artifact in artifacts:
                session.add(
                    TaskArtifactRow(
                        task_id=task_id,
                        position=artifact.position,
                        uri=artifact.uri,
                        width=artifact.width,
                        height=artifact.height,
                        checksum_sha256=artifact.checksum_sha256,
                        metadata_json=dump_json(artifact.metadata),
                        created_at=to_db_datetime(now),
                    ),
                )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def list_artifacts(self, task_id: str) -> list[ArtifactDescriptor]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskArtifactRow)
                .where(TaskArtifactRow.task_id == task_id)
                .order_by(col(TaskArtifactRow.position).asc()),
            ).all()
        return [
            ArtifactDescriptor(
                position=row.position,
                uri=row.uri,
                width=row.width,
                height=row.height,
                checksum_sha256=row.checksum_sha256,
                metadata=load_json_object(row.metadata_json),
            )
            for row in rows
        ]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream and artifacts."""

        with Session(self.engine) as session:
            task = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()
            view = _to_task_view(task)

        events = [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                event_type=row.event_type,
                state_from=TaskState(row.state_from) if row.state_from is not None else None,
                state_to=TaskState(row.state_to) if row.state_to is not None else None,
                status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in event_rows
        ]
        return TaskDetails(task=view, events=events, artifacts=self.list_artifacts(task_id))

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        state_from: TaskState | None,
        state_to: TaskState | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                state_from=state_from.value if state_from is not None else None,
                state_to=state_to.value if state_to is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_column_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, value in fields.items():
        if name in _PLAIN_FIELDS:
            values[name] = value.value if isinstance(value, Enum) else value
        elif name in _DATETIME_FIELDS:
            values[name] = to_db_datetime(value) if value is not None else None
        elif name in _JSON_FIELDS:
            values[_JSON_FIELDS[name]] = dump_json(value)
        else:
            raise ValueError(f"Unsupported task field: {name!r}")
    return values


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        task_type=TaskType(row.task_type),
        owner_id=row.owner_id,
        business_mode=row.business_mode,
        state=TaskState(row.state),
        status=TaskStatus(row.status),
        retry_count=row.retry_count,
        retry_after=(
            to_utc_aware_datetime(row.retry_after) if row.retry_after is not None else None
        ),
        params=load_json_object(row.params_json),
        state_data=load_json_object(row.state_data_json),
        result=load_json_list(row.result_json),
        error=row.error,
        last_error=row.last_error,
        failure_reason=(
            FailureReason(row.failure_reason) if row.failure_reason is not None else None
        ),
        credits_consumed=row.credits_consumed,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )
