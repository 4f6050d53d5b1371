"""Month close: settle a month's surplus or deficit into the ledger.

Closing never edits existing rows. It only creates the next month (if
missing), its template budgets, and at most one settlement transaction,
all inside one unit of work.
"""

from __future__ import annotations

import calendar
import datetime as dt
import logging

from sqlalchemy.orm import Session

from budgetbook import models
from budgetbook.core.constants import ROLLOVER_CATEGORY, ROLLOVER_TAG
from budgetbook.errors import MonthCloseError
from budgetbook.models import BudgetTag
from budgetbook.schemas import MonthClosePreview, MonthCloseResult, SurplusDisposition
from budgetbook.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)


def next_month_id(month_id: str) -> str:
    year, month = (int(part) for part in month_id.split("-"))
    if month == 12:
        return f"{year + 1:04d}-01"
    return f"{year:04d}-{month + 1:02d}"


def first_day(month_id: str) -> dt.date:
    year, month = (int(part) for part in month_id.split("-"))
    return dt.date(year, month, 1)


def last_day(month_id: str) -> dt.date:
    year, month = (int(part) for part in month_id.split("-"))
    return dt.date(year, month, calendar.monthrange(year, month)[1])


def rollover_note(month_id: str) -> str:
    return f"Rollover from {month_id}"


def savings_note(month_id: str) -> str:
    return f"Surplus savings from {month_id}"


class MonthCloseService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.ledger = LedgerService(db)

    def preview(self, month_id: str) -> MonthClosePreview:
        summary = self.ledger.month_summary(month_id)
        savings = [
            b.id
            for b in self.ledger.list_budgets(summary.month_id)
            if b.tag == BudgetTag.SAVINGS.value
        ]
        return MonthClosePreview(
            **summary.model_dump(),
            next_month_id=next_month_id(summary.month_id),
            requires_disposition=summary.surplus > 0,
            already_closed=self._already_closed(summary.month_id),
            savings_budget_ids=savings,
        )

    def close_month(
        self,
        month_id: str,
        disposition: SurplusDisposition | None = None,
        savings_budget_id: str | None = None,
    ) -> MonthCloseResult:
        """Close ``month_id`` and carry its balance forward.

        ``surplus = expected_income - actual``. A positive surplus needs a
        disposition: SAVINGS posts it on a Savings budget of the same
        month, ROLLOVER credits it to next month's rollover budget. A
        deficit is always carried forward as a debit on the rollover
        budget. Raises :class:`MonthCloseError` before writing anything
        when the request cannot be honoured.
        """
        month = self.ledger.get_month(month_id)
        _, actual = self.ledger.month_totals(month.id)
        surplus = month.expected_income - actual
        target_id = next_month_id(month.id)

        if self._already_closed(month.id):
            raise MonthCloseError(f"month {month.id} has already been closed")
        if surplus > 0:
            if disposition is None:
                raise MonthCloseError("a surplus requires a disposition (savings or rollover)")
            if disposition is SurplusDisposition.SAVINGS:
                self._check_savings_budget(month.id, savings_budget_id)

        result = MonthCloseResult(
            month_id=month.id,
            next_month_id=target_id,
            actual=actual,
            surplus=surplus,
            disposition=disposition if surplus > 0 else None,
        )
        try:
            if self.db.get(models.Month, target_id) is None:
                self.ledger.upsert_month(
                    target_id,
                    expected_income=month.expected_income,
                    savings_goal=month.savings_goal,
                    commit=False,
                )
                result.next_month_created = True
            self.db.flush()
            created = self.ledger.ensure_month_budgets(target_id, commit=False)
            result.created_budget_ids = [b.id for b in created]

            if surplus > 0 and disposition is SurplusDisposition.SAVINGS:
                txn = self.ledger.create_transaction(
                    savings_budget_id,
                    surplus,
                    last_day(month.id),
                    savings_note(month.id),
                    commit=False,
                )
                result.posted_transaction_id = txn.id
            elif surplus != 0:
                # 흑자 이월은 음수(가용 자금 증가), 적자 이월은 양수
                rollover, fresh = self._rollover_budget(target_id)
                self.db.flush()
                txn = self.ledger.create_transaction(
                    rollover.id,
                    -surplus,
                    first_day(target_id),
                    rollover_note(month.id),
                    commit=False,
                )
                result.rollover_budget_id = rollover.id
                result.posted_transaction_id = txn.id
                if fresh:
                    result.created_budget_ids.append(rollover.id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Month close of %s rolled back", month_id)
            raise

        logger.info("Closed month %s: surplus=%s disposition=%s", month.id, surplus, result.disposition)
        return result

    def _already_closed(self, month_id: str) -> bool:
        notes = (rollover_note(month_id), savings_note(month_id))
        hit = (
            self.db.query(models.Transaction.id)
            .filter(models.Transaction.description.in_(notes))
            .first()
        )
        return hit is not None

    def _check_savings_budget(self, month_id: str, budget_id: str | None) -> None:
        if not budget_id:
            raise MonthCloseError("savings disposition requires savings_budget_id")
        budget = self.db.get(models.Budget, budget_id)
        if budget is None or budget.month_id != month_id:
            raise MonthCloseError(f"budget {budget_id} is not a budget of {month_id}")
        if budget.tag != BudgetTag.SAVINGS.value:
            raise MonthCloseError(f"budget {budget_id} is not tagged {BudgetTag.SAVINGS.value}")

    def _rollover_budget(self, month_id: str) -> tuple[models.Budget, bool]:
        existing = (
            self.db.query(models.Budget)
            .filter(models.Budget.month_id == month_id, models.Budget.category == ROLLOVER_CATEGORY)
            .first()
        )
        if existing is not None:
            return existing, False
        budget = models.Budget(
            id=models.new_id(),
            month_id=month_id,
            category=ROLLOVER_CATEGORY,
            planned_amount=0.0,
            tag=ROLLOVER_TAG,
        )
        budget.touch()
        self.db.add(budget)
        return budget, True
