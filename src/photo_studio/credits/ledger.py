"""Credit balance and debit/refund ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from photo_studio.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from photo_studio.storage.sqlmodel_models import CreditAccountRow, CreditRecordRow

logger = logging.getLogger(__name__)

DEBIT = "debit"
REFUND = "refund"
GRANT = "grant"


class InsufficientCreditsError(RuntimeError):
    """Owner balance cannot cover the requested debit."""


@dataclass(slots=True)
class CreditRecordView:
    """One ledger row."""

    record_id: int
    owner_id: str
    kind: str
    amount: int
    reason: str | None
    task_id: str | None
    created_at: datetime


class CreditLedger:
    """Debits credits at task acceptance and refunds them on terminal failure.

    Refunds are idempotent per ``task_id``: an existing refund record is checked
    first, and the partial unique index on ``credit_records(task_id)`` rejects a
    concurrent second insert.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def balance(self, owner_id: str) -> int:
        with Session(self.engine) as session:
            account = session.exec(
                select(CreditAccountRow).where(CreditAccountRow.owner_id == owner_id),
            ).one_or_none()
            return account.balance if account is not None else 0

    def grant(self, owner_id: str, amount: int, *, reason: str = "grant") -> int:
        """Top up an owner's balance; returns the new balance."""

        if amount <= 0:
            raise ValueError(f"Grant amount must be positive, got {amount}")
        now = utc_now()
        with Session(self.engine) as session:
            self._ensure_account(session=session, owner_id=owner_id)
            session.exec(
                sa_update(CreditAccountRow)  # type: ignore[call-overload]
                .where(col(CreditAccountRow.owner_id) == owner_id)
                .values(
                    balance=CreditAccountRow.balance + amount,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.add(
                CreditRecordRow(
                    owner_id=owner_id,
                    kind=GRANT,
                    amount=amount,
                    reason=reason,
                    created_at=to_db_datetime(now),
                ),
            )
            session.commit()
        return self.balance(owner_id)

    def debit(self, owner_id: str, amount: int, *, task_id: str | None = None) -> bool:
        """Take ``amount`` credits from the owner; ``False`` on insufficient balance."""

        if amount < 0:
            raise ValueError(f"Debit amount must be >= 0, got {amount}")
        if amount == 0:
            return True
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CreditAccountRow)  # type: ignore[call-overload]
                .where(
                    col(CreditAccountRow.owner_id) == owner_id,
                    col(CreditAccountRow.balance) >= amount,
                )
                .values(
                    balance=CreditAccountRow.balance - amount,
                    total_consumed=CreditAccountRow.total_consumed + amount,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.info("Debit refused: owner=%s amount=%d", owner_id, amount)
                return False
            session.add(
                CreditRecordRow(
                    owner_id=owner_id,
                    kind=DEBIT,
                    amount=amount,
                    reason="task_accepted",
                    task_id=task_id,
                    created_at=to_db_datetime(now),
                ),
            )
            session.commit()
            return True

    def refund(self, owner_id: str, amount: int, reason: str, task_id: str) -> bool:
        """Credit ``amount`` back once per task; ``False`` when already refunded."""

        if amount <= 0:
            return False
        if self.has_refund(task_id):
            logger.info("Refund skipped, already issued: task_id=%s", task_id)
            return False

        now = utc_now()
        with Session(self.engine) as session:
            self._ensure_account(session=session, owner_id=owner_id)
            session.exec(
                sa_update(CreditAccountRow)  # type: ignore[call-overload]
                .where(col(CreditAccountRow.owner_id) == owner_id)
                .values(
                    balance=CreditAccountRow.balance + amount,
                    total_consumed=func.max(0, CreditAccountRow.total_consumed - amount),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.add(
                CreditRecordRow(
                    owner_id=owner_id,
                    kind=REFUND,
                    amount=amount,
                    reason=reason,
                    task_id=task_id,
                    created_at=to_db_datetime(now),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("Refund lost race, already issued: task_id=%s", task_id)
                return False

        logger.info(
            "Credits refunded: task_id=%s owner=%s amount=%d reason=%s",
            task_id,
            owner_id,
            amount,
            reason,
        )
        return True

    def has_refund(self, task_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(CreditRecordRow.record_id).where(
                    CreditRecordRow.task_id == task_id,
                    CreditRecordRow.kind == REFUND,
                ),
            ).first()
            return row is not None

    def list_records(
        self,
        *,
        owner_id: str | None = None,
        task_id: str | None = None,
        kind: str | None = None,
        limit: int = 100,
    ) -> list[CreditRecordView]:
        statement = (
            select(CreditRecordRow)
            .order_by(col(CreditRecordRow.created_at).asc(), col(CreditRecordRow.record_id).asc())
            .limit(limit)
        )
        if owner_id is not None:
            statement = statement.where(CreditRecordRow.owner_id == owner_id)
        if task_id is not None:
            statement = statement.where(CreditRecordRow.task_id == task_id)
        if kind is not None:
            statement = statement.where(CreditRecordRow.kind == kind)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [
            CreditRecordView(
                record_id=row.record_id or 0,
                owner_id=row.owner_id,
                kind=row.kind,
                amount=row.amount,
                reason=row.reason,
                task_id=row.task_id,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def _ensure_account(self, *, session: Session, owner_id: str) -> CreditAccountRow:
        account = session.exec(
            select(CreditAccountRow).where(CreditAccountRow.owner_id == owner_id),
        ).one_or_none()
        if account is not None:
            return account
        now = to_db_datetime(utc_now())
        account = CreditAccountRow(
            owner_id=owner_id,
            balance=0,
            total_consumed=0,
            created_at=now,
            updated_at=now,
        )
        session.add(account)
        session.flush()
        return account
