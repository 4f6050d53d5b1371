"""create local replica tables

Revision ID: 0001_initial_replica
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial_replica"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _sync_columns() -> list[sa.Column]:
    return [
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("dirty", sa.Boolean(), nullable=False, server_default=sa.true()),
    ]


def upgrade() -> None:
    op.create_table(
        "months",
        sa.Column("id", sa.String(length=7), primary_key=True),
        sa.Column("expected_income", sa.Float(), nullable=False, server_default="0"),
        sa.Column("savings_goal", sa.Float(), nullable=False, server_default="0"),
        *_sync_columns(),
    )
    op.create_index("ix_months_dirty", "months", ["dirty"])

    # 부모 참조는 논리 키 (원격/실시간 적용 순서가 보장되지 않음)
    op.create_table(
        "budgets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("month_id", sa.String(length=7), nullable=False),
        sa.Column("category", sa.String(length=120), nullable=False),
        sa.Column("planned_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("tag", sa.String(length=32), nullable=False, server_default="Variable"),
        *_sync_columns(),
    )
    op.create_index("ix_budgets_month_id", "budgets", ["month_id"])
    op.create_index("ix_budgets_dirty", "budgets", ["dirty"])
    op.create_index("ix_budgets_month_category", "budgets", ["month_id", "category"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("budget_id", sa.String(length=36), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("date", sa.Date(), nullable=False),
        *_sync_columns(),
    )
    op.create_index("ix_transactions_budget_id", "transactions", ["budget_id"])
    op.create_index("ix_transactions_dirty", "transactions", ["dirty"])

    op.create_table(
        "bonds",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("principal", sa.Float(), nullable=False),
        sa.Column("rate", sa.Float(), nullable=False),
        sa.Column("purchase_date", sa.Date(), nullable=False),
        sa.Column("duration_years", sa.Float(), nullable=False),
        *_sync_columns(),
    )
    op.create_index("ix_bonds_dirty", "bonds", ["dirty"])

    op.create_table(
        "deleted_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.String(length=36), nullable=False),
        sa.Column("table", sa.String(length=32), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("dirty", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_deleted_records_item_id", "deleted_records", ["item_id"])
    op.create_index("ix_deleted_records_dirty", "deleted_records", ["dirty"])

    op.create_table(
        "sync_state",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.String(length=255), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("sync_state")
    op.drop_index("ix_deleted_records_dirty", table_name="deleted_records")
    op.drop_index("ix_deleted_records_item_id", table_name="deleted_records")
    op.drop_table("deleted_records")
    op.drop_index("ix_bonds_dirty", table_name="bonds")
    op.drop_table("bonds")
    op.drop_index("ix_transactions_dirty", table_name="transactions")
    op.drop_index("ix_transactions_budget_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_budgets_month_category", table_name="budgets")
    op.drop_index("ix_budgets_dirty", table_name="budgets")
    op.drop_index("ix_budgets_month_id", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_months_dirty", table_name="months")
    op.drop_table("months")
