from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
import datetime as dt
from enum import Enum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .core.database import Base


def utcnow() -> datetime:
    """Return naive datetime normalized to UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class BudgetTag(str, Enum):
    FIXED = "Fixed"
    VARIABLE = "Variable"
    SINKING_FUND = "Sinking Fund"
    LIFESTYLE = "Lifestyle"
    GROWTH = "Growth"
    SAVINGS = "Savings"


class SyncTable(str, Enum):
    """Logical tables that are replicated to the remote backend."""

    MONTHS = "months"
    BUDGETS = "budgets"
    TRANSACTIONS = "transactions"
    BONDS = "bonds"


class SyncMixin:
    """Change tracking columns shared by every replicated table.

    ``dirty`` is true while the row holds local changes the remote has not
    confirmed yet; only clean rows may be overwritten by remote data.
    """

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    dirty: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    def touch(self) -> None:
        """Stamp a local change: strictly newer ``updated_at`` and dirty."""
        now = utcnow()
        previous = self.updated_at
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        self.updated_at = now
        self.dirty = True

    def mark_synced(self, remote_updated_at: datetime) -> None:
        self.updated_at = remote_updated_at
        self.dirty = False


class Month(Base, SyncMixin):
    __tablename__ = "months"

    id: Mapped[str] = mapped_column(String(7), primary_key=True)  # YYYY-MM
    expected_income: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    savings_goal: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    budgets: Mapped[list["Budget"]] = relationship(
        "Budget",
        primaryjoin="Month.id == foreign(Budget.month_id)",
        back_populates="month",
        viewonly=True,
    )


class Budget(Base, SyncMixin):
    __tablename__ = "budgets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    month_id: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(120), nullable=False)
    planned_amount: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    tag: Mapped[str] = mapped_column(String(32), default=BudgetTag.VARIABLE.value, nullable=False)

    month: Mapped[Month | None] = relationship(
        "Month",
        primaryjoin="foreign(Budget.month_id) == Month.id",
        back_populates="budgets",
        viewonly=True,
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        primaryjoin="Budget.id == foreign(Transaction.budget_id)",
        back_populates="budget",
        viewonly=True,
    )

    __table_args__ = (Index("ix_budgets_month_category", "month_id", "category"),)


class Transaction(Base, SyncMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    budget_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    # 양수 = 지출(예산 소진), 음수 = 환급/이월(가용 자금 증가)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)

    budget: Mapped[Budget | None] = relationship(
        "Budget",
        primaryjoin="foreign(Transaction.budget_id) == Budget.id",
        back_populates="transactions",
        viewonly=True,
    )


class Bond(Base, SyncMixin):
    __tablename__ = "bonds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    principal: Mapped[float] = mapped_column(Float, nullable=False)
    rate: Mapped[float] = mapped_column(Float, nullable=False)  # annual percentage
    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)
    duration_years: Mapped[float] = mapped_column(Float, nullable=False)


class DeletedRecord(Base):
    """Tombstone log: one entry per local delete, pushed to the remote."""

    __tablename__ = "deleted_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    table: Mapped[str] = mapped_column(String(32), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    dirty: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)


class SyncState(Base):
    """Durable key/value storage for sync bookkeeping (watermark)."""

    __tablename__ = "sync_state"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)


SYNC_MODELS: dict[SyncTable, type[Month] | type[Budget] | type[Transaction] | type[Bond]] = {
    SyncTable.MONTHS: Month,
    SyncTable.BUDGETS: Budget,
    SyncTable.TRANSACTIONS: Transaction,
    SyncTable.BONDS: Bond,
}


def tombstone(table: SyncTable, item_id: str) -> DeletedRecord:
    return DeletedRecord(item_id=item_id, table=table.value, updated_at=utcnow(), dirty=True)
