from __future__ import annotations

from datetime import date

import pytest

from budgetbook import models
from budgetbook.core.constants import BUDGET_TEMPLATE, ROLLOVER_CATEGORY
from budgetbook.errors import MonthCloseError
from budgetbook.schemas import SurplusDisposition
from budgetbook.services import LedgerService, MonthCloseService
from budgetbook.services.month_close_service import next_month_id


def _month_with_spending(db, month_id: str, income: float, spent: float):
    ledger = LedgerService(db)
    ledger.upsert_month(month_id, income, 0)
    savings = ledger.create_budget(month_id, "Travel Fund", 500_000, "Savings")
    food = ledger.create_budget(month_id, "Food", 700_000)
    ledger.create_transaction(food.id, spent, date(int(month_id[:4]), int(month_id[5:]), 10))
    return savings, food


def _count(db, model) -> int:
    return db.query(model).count()


def test_next_month_id_wraps_year():
    assert next_month_id("2025-01") == "2025-02"
    assert next_month_id("2025-12") == "2026-01"


def test_surplus_to_savings_posts_one_transaction(db_session):
    savings, _ = _month_with_spending(db_session, "2025-01", 1_000_000, 700_000)
    txns_before = _count(db_session, models.Transaction)

    result = MonthCloseService(db_session).close_month(
        "2025-01", SurplusDisposition.SAVINGS, savings.id
    )

    assert result.surplus == 300_000
    assert _count(db_session, models.Transaction) == txns_before + 1
    posted = db_session.get(models.Transaction, result.posted_transaction_id)
    assert posted.budget_id == savings.id
    assert posted.amount == 300_000
    assert posted.dirty is True
    assert result.rollover_budget_id is None
    assert (
        db_session.query(models.Budget).filter(models.Budget.category == ROLLOVER_CATEGORY).count() == 0
    )


def test_deficit_rolls_into_next_month(db_session):
    _month_with_spending(db_session, "2025-01", 1_000_000, 1_200_000)

    result = MonthCloseService(db_session).close_month("2025-01")

    assert result.surplus == -200_000
    assert result.disposition is None
    rollover = db_session.get(models.Budget, result.rollover_budget_id)
    assert rollover.month_id == "2025-02"
    assert rollover.category == ROLLOVER_CATEGORY
    assert rollover.planned_amount == 0
    txns = db_session.query(models.Transaction).filter(models.Transaction.budget_id == rollover.id).all()
    assert [t.amount for t in txns] == [200_000]
    assert txns[0].date == date(2025, 2, 1)


def test_surplus_rollover_credits_next_month(db_session):
    _month_with_spending(db_session, "2025-12", 1_000_000, 400_000)

    result = MonthCloseService(db_session).close_month("2025-12", SurplusDisposition.ROLLOVER)

    assert result.next_month_id == "2026-01"
    posted = db_session.get(models.Transaction, result.posted_transaction_id)
    assert posted.amount == -600_000
    assert db_session.get(models.Budget, posted.budget_id).month_id == "2026-01"


def test_close_creates_next_month_from_template(db_session):
    _month_with_spending(db_session, "2025-03", 2_000_000, 2_000_000)

    result = MonthCloseService(db_session).close_month("2025-03")

    assert result.next_month_created is True
    nxt = db_session.get(models.Month, "2025-04")
    assert nxt.expected_income == 2_000_000
    assert nxt.dirty is True
    categories = {b.category for b in LedgerService(db_session).list_budgets("2025-04")}
    assert {item["category"] for item in BUDGET_TEMPLATE} <= categories
    # 잉여 0 이면 거래 없음
    assert result.posted_transaction_id is None


def test_existing_next_month_is_not_duplicated(db_session):
    _month_with_spending(db_session, "2025-05", 1_000_000, 1_100_000)
    ledger = LedgerService(db_session)
    ledger.upsert_month("2025-06", 3_000_000, 0)
    ledger.create_budget("2025-06", "Weekly Groceries", 1)

    result = MonthCloseService(db_session).close_month("2025-05")

    assert result.next_month_created is False
    assert db_session.get(models.Month, "2025-06").expected_income == 3_000_000
    groceries = [b for b in ledger.list_budgets("2025-06") if b.category == "Weekly Groceries"]
    assert len(groceries) == 1


def test_surplus_requires_a_valid_disposition(db_session):
    savings, food = _month_with_spending(db_session, "2025-07", 1_000_000, 100_000)
    service = MonthCloseService(db_session)

    with pytest.raises(MonthCloseError):
        service.close_month("2025-07")
    with pytest.raises(MonthCloseError):
        service.close_month("2025-07", SurplusDisposition.SAVINGS, food.id)
    with pytest.raises(MonthCloseError):
        service.close_month("2025-07", SurplusDisposition.SAVINGS, None)

    assert db_session.get(models.Month, "2025-08") is None


def test_closing_twice_is_rejected(db_session):
    _month_with_spending(db_session, "2025-09", 1_000_000, 1_500_000)
    service = MonthCloseService(db_session)
    service.close_month("2025-09")

    assert service.preview("2025-09").already_closed is True
    with pytest.raises(MonthCloseError):
        service.close_month("2025-09")


def test_failed_close_rolls_back_everything(db_session, monkeypatch):
    _month_with_spending(db_session, "2025-10", 1_000_000, 1_300_000)
    months_before = _count(db_session, models.Month)
    budgets_before = _count(db_session, models.Budget)
    service = MonthCloseService(db_session)

    def _boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(service.ledger, "create_transaction", _boom)
    with pytest.raises(RuntimeError):
        service.close_month("2025-10")

    assert _count(db_session, models.Month) == months_before
    assert _count(db_session, models.Budget) == budgets_before


def test_preview_reports_savings_budgets(db_session):
    savings, _ = _month_with_spending(db_session, "2025-11", 1_000_000, 250_000)

    preview = MonthCloseService(db_session).preview("2025-11")

    assert preview.surplus == 750_000
    assert preview.requires_disposition is True
    assert preview.savings_budget_ids == [savings.id]
    assert preview.next_month_id == "2025-12"
