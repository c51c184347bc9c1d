"""SQLModel ORM tables for task and credit storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_driver", "state", "status", "created_at", "retry_count"),
        Index("idx_tasks_status_updated", "status", "updated_at"),
    )

    task_id: str = Field(primary_key=True)
    task_type: str = Field(index=True)
    owner_id: str = Field(index=True)
    business_mode: str = Field(default="personal")
    state: str = Field(index=True)
    status: str = Field(index=True)
    retry_count: int = Field(default=0)
    retry_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    params_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    state_data_json: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    failure_reason: str | None = Field(default=None, index=True)
    credits_consumed: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    event_type: str
    state_from: str | None = None
    state_to: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskArtifactRow(SQLModel, table=True):
    __tablename__ = "task_artifacts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "position", name="uq_task_artifacts_task_position"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False),
    )
    position: int
    uri: str
    width: int | None = None
    height: int | None = None
    checksum_sha256: str | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CreditAccountRow(SQLModel, table=True):
    __tablename__ = "credit_accounts"  # type: ignore[bad-override]

    owner_id: str = Field(primary_key=True)
    balance: int = Field(default=0)
    total_consumed: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CreditRecordRow(SQLModel, table=True):
    __tablename__ = "credit_records"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_credit_records_refund_task",
            "task_id",
            unique=True,
            sqlite_where=text("kind = 'refund'"),
        ),
        Index("idx_credit_records_owner_time", "owner_id", "created_at"),
    )

    record_id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    kind: str
    amount: int
    reason: str | None = None
    task_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
