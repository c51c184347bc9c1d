"""Add credit accounts and debit/refund ledger."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "credit_accounts",
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_consumed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner_id"),
    )
    op.create_table(
        "credit_records",
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("record_id"),
    )
    op.create_index("ix_credit_records_owner_id", "credit_records", ["owner_id"], unique=False)
    op.create_index(
        "idx_credit_records_owner_time",
        "credit_records",
        ["owner_id", "created_at"],
        unique=False,
    )
    # One refund per task, the ledger's idempotency key.
    op.create_index(
        "uq_credit_records_refund_task",
        "credit_records",
        ["task_id"],
        unique=True,
        sqlite_where=sa.text("kind = 'refund'"),
    )


def downgrade() -> None:
    op.drop_index("uq_credit_records_refund_task", table_name="credit_records")
    op.drop_index("idx_credit_records_owner_time", table_name="credit_records")
    op.drop_index("ix_credit_records_owner_id", table_name="credit_records")
    op.drop_table("credit_records")
    op.drop_table("credit_accounts")
