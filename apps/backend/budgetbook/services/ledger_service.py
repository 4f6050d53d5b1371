from __future__ import annotations

import datetime as dt
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from budgetbook import models
from budgetbook.core.constants import BUDGET_TEMPLATE
from budgetbook.errors import NotFoundError, ValidationFailed
from budgetbook.models import BudgetTag, SyncTable, tombstone
from budgetbook.schemas import MonthSummary, validate_month_id

logger = logging.getLogger(__name__)


class LedgerService:
    """Local mutations of months, budgets, transactions and bonds.

    Every write stamps the row through ``touch()`` so it is picked up by
    the next sync cycle, and every delete records a tombstone in the same
    unit of work as the physical delete. Methods commit unless stated
    otherwise.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---- months -----------------------------------------------------------

    def get_month(self, month_id: str) -> models.Month:
        month = self.db.get(models.Month, month_id)
        if month is None:
            raise NotFoundError("month", month_id)
        return month

    def list_months(self) -> list[models.Month]:
        return self.db.query(models.Month).order_by(models.Month.id.desc()).all()

    def upsert_month(
        self,
        month_id: str,
        expected_income: float = 0,
        savings_goal: float = 0,
        *,
        commit: bool = True,
    ) -> models.Month:
        month_id = self._month_key(month_id)
        month = self.db.get(models.Month, month_id)
        if month is None:
            month = models.Month(id=month_id)
            self.db.add(month)
        month.expected_income = float(expected_income)
        month.savings_goal = float(savings_goal)
        month.touch()
        if commit:
            self.db.commit()
            self.db.refresh(month)
        return month

    def delete_month(self, month_id: str) -> int:
        """Delete a month with its budgets and their transactions.

        Returns the number of tombstones written.
        """
        month = self.get_month(month_id)
        written = 0
        budgets = self.db.query(models.Budget).filter(models.Budget.month_id == month.id).all()
        for budget in budgets:
            written += self._delete_budget_rows(budget)
        self.db.delete(month)
        self.db.add(tombstone(SyncTable.MONTHS, month.id))
        written += 1
        self.db.commit()
        logger.info("Deleted month %s (%d tombstone(s))", month_id, written)
        return written

    # ---- budgets ----------------------------------------------------------

    def get_budget(self, budget_id: str) -> models.Budget:
        budget = self.db.get(models.Budget, budget_id)
        if budget is None:
            raise NotFoundError("budget", budget_id)
        return budget

    def list_budgets(self, month_id: str | None = None) -> list[models.Budget]:
        q = self.db.query(models.Budget)
        if month_id:
            q = q.filter(models.Budget.month_id == month_id)
        return q.order_by(models.Budget.month_id, models.Budget.category).all()

    def create_budget(
        self,
        month_id: str,
        category: str,
        planned_amount: float = 0,
        tag: BudgetTag | str = BudgetTag.VARIABLE,
    ) -> models.Budget:
        month = self.get_month(self._month_key(month_id))
        budget = models.Budget(
            id=models.new_id(),
            month_id=month.id,
            category=self._category(category),
            planned_amount=float(planned_amount),
            tag=self._tag(tag),
        )
        budget.touch()
        self.db.add(budget)
        self.db.commit()
        self.db.refresh(budget)
        return budget

    def update_budget(self, budget_id: str, **changes: Any) -> models.Budget:
        budget = self.get_budget(budget_id)
        if changes.get("category") is not None:
            budget.category = self._category(changes["category"])
        if changes.get("planned_amount") is not None:
            budget.planned_amount = float(changes["planned_amount"])
        if changes.get("tag") is not None:
            budget.tag = self._tag(changes["tag"])
        budget.touch()
        self.db.commit()
        self.db.refresh(budget)
        return budget

    def delete_budget(self, budget_id: str) -> int:
        """Delete a budget and its transactions; returns the tombstone count."""
        budget = self.get_budget(budget_id)
        written = self._delete_budget_rows(budget)
        self.db.commit()
        return written

    def _delete_budget_rows(self, budget: models.Budget) -> int:
        txns = self.db.query(models.Transaction).filter(models.Transaction.budget_id == budget.id).all()
        for txn in txns:
            self.db.delete(txn)
            self.db.add(tombstone(SyncTable.TRANSACTIONS, txn.id))
        self.db.delete(budget)
        self.db.add(tombstone(SyncTable.BUDGETS, budget.id))
        return len(txns) + 1

    def ensure_month_budgets(self, month_id: str, *, commit: bool = True) -> list[models.Budget]:
        """Add the template categories the month does not have yet.

        Existing budgets are matched on category, so calling this twice
        creates nothing the second time.
        """
        month = self.get_month(self._month_key(month_id))
        existing = {
            category
            for (category,) in self.db.query(models.Budget.category).filter(models.Budget.month_id == month.id)
        }
        created: list[models.Budget] = []
        for item in BUDGET_TEMPLATE:
            if item["category"] in existing:
                continue
            budget = models.Budget(
                id=models.new_id(),
                month_id=month.id,
                category=item["category"],
                planned_amount=float(item["planned_amount"]),
                tag=item["tag"],
            )
            budget.touch()
            self.db.add(budget)
            created.append(budget)
        if commit:
            self.db.commit()
        else:
            self.db.flush()
        return created

    # ---- transactions -----------------------------------------------------

    def get_transaction(self, transaction_id: str) -> models.Transaction:
        txn = self.db.get(models.Transaction, transaction_id)
        if txn is None:
            raise NotFoundError("transaction", transaction_id)
        return txn

    def list_transactions(
        self,
        *,
        budget_id: str | None = None,
        month_id: str | None = None,
    ) -> list[models.Transaction]:
        q = self.db.query(models.Transaction)
        if budget_id:
            q = q.filter(models.Transaction.budget_id == budget_id)
        if month_id:
            budget_ids = select(models.Budget.id).where(models.Budget.month_id == month_id)
            q = q.filter(models.Transaction.budget_id.in_(budget_ids))
        return q.order_by(models.Transaction.date.desc(), models.Transaction.id).all()

    def create_transaction(
        self,
        budget_id: str,
        amount: float,
        date: dt.date,
        description: str = "",
        *,
        commit: bool = True,
    ) -> models.Transaction:
        self.get_budget(budget_id)
        txn = models.Transaction(
            id=models.new_id(),
            budget_id=budget_id,
            amount=float(amount),
            description=description or "",
            date=date,
        )
        txn.touch()
        self.db.add(txn)
        if commit:
            self.db.commit()
            self.db.refresh(txn)
        return txn

    def update_transaction(self, transaction_id: str, **changes: Any) -> models.Transaction:
        txn = self.get_transaction(transaction_id)
        if changes.get("budget_id") is not None:
            self.get_budget(changes["budget_id"])
            txn.budget_id = changes["budget_id"]
        if changes.get("amount") is not None:
            txn.amount = float(changes["amount"])
        if changes.get("description") is not None:
            txn.description = changes["description"]
        if changes.get("date") is not None:
            txn.date = changes["date"]
        txn.touch()
        self.db.commit()
        self.db.refresh(txn)
        return txn

    def delete_transaction(self, transaction_id: str) -> None:
        txn = self.get_transaction(transaction_id)
        self.db.delete(txn)
        self.db.add(tombstone(SyncTable.TRANSACTIONS, txn.id))
        self.db.commit()

    # ---- bonds ------------------------------------------------------------

    def get_bond(self, bond_id: str) -> models.Bond:
        bond = self.db.get(models.Bond, bond_id)
        if bond is None:
            raise NotFoundError("bond", bond_id)
        return bond

    def list_bonds(self) -> list[models.Bond]:
        return self.db.query(models.Bond).order_by(models.Bond.purchase_date, models.Bond.id).all()

    def create_bond(
        self,
        principal: float,
        rate: float,
        purchase_date: dt.date,
        duration_years: float,
    ) -> models.Bond:
        if duration_years <= 0:
            raise ValidationFailed("duration_years must be positive")
        bond = models.Bond(
            id=models.new_id(),
            principal=float(principal),
            rate=float(rate),
            purchase_date=purchase_date,
            duration_years=float(duration_years),
        )
        bond.touch()
        self.db.add(bond)
        self.db.commit()
        self.db.refresh(bond)
        return bond

    def update_bond(self, bond_id: str, **changes: Any) -> models.Bond:
        bond = self.get_bond(bond_id)
        for key in ("principal", "rate", "duration_years"):
            if changes.get(key) is not None:
                setattr(bond, key, float(changes[key]))
        if changes.get("purchase_date") is not None:
            bond.purchase_date = changes["purchase_date"]
        if bond.duration_years <= 0:
            self.db.rollback()
            raise ValidationFailed("duration_years must be positive")
        bond.touch()
        self.db.commit()
        self.db.refresh(bond)
        return bond

    def delete_bond(self, bond_id: str) -> None:
        bond = self.get_bond(bond_id)
        self.db.delete(bond)
        self.db.add(tombstone(SyncTable.BONDS, bond.id))
        self.db.commit()

    # ---- reporting --------------------------------------------------------

    def month_totals(self, month_id: str) -> tuple[float, float]:
        """(planned, actual) sums over the month's budgets."""
        planned = (
            self.db.query(func.coalesce(func.sum(models.Budget.planned_amount), 0.0))
            .filter(models.Budget.month_id == month_id)
            .scalar()
        )
        actual = (
            self.db.query(func.coalesce(func.sum(models.Transaction.amount), 0.0))
            .join(models.Budget, models.Budget.id == models.Transaction.budget_id)
            .filter(models.Budget.month_id == month_id)
            .scalar()
        )
        return float(planned or 0), float(actual or 0)

    def month_summary(self, month_id: str) -> MonthSummary:
        month = self.get_month(month_id)
        planned, actual = self.month_totals(month.id)
        return MonthSummary(
            month_id=month.id,
            expected_income=month.expected_income,
            planned=planned,
            actual=actual,
            surplus=month.expected_income - actual,
        )

    # ---- helpers ----------------------------------------------------------

    @staticmethod
    def _month_key(month_id: str) -> str:
        try:
            return validate_month_id(month_id)
        except ValueError as exc:
            raise ValidationFailed(str(exc)) from exc

    @staticmethod
    def _category(value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValidationFailed("category is required")
        return value

    @staticmethod
    def _tag(value: BudgetTag | str) -> str:
        try:
            return BudgetTag(value).value
        except ValueError as exc:
            raise ValidationFailed(f"unknown budget tag {value!r}") from exc
