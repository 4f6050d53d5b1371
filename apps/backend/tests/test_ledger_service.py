from __future__ import annotations

from datetime import date

import pytest

from budgetbook import models
from budgetbook.core.constants import BUDGET_TEMPLATE
from budgetbook.errors import NotFoundError, ValidationFailed
from budgetbook.services import LedgerService


def _tombstones(db) -> list[tuple[str, str]]:
    return sorted((t.table, t.item_id) for t in db.query(models.DeletedRecord).all())


def test_local_writes_mark_rows_dirty(db_session):
    ledger = LedgerService(db_session)
    month = ledger.upsert_month("2025-01", 1_000_000, 100_000)
    assert month.dirty is True
    first = month.updated_at

    # 원격 반영 후 clean 상태를 흉내
    month.dirty = False
    db_session.commit()

    month = ledger.upsert_month("2025-01", 1_200_000, 100_000)
    assert month.dirty is True
    assert month.updated_at > first
    assert month.expected_income == 1_200_000


def test_updated_at_strictly_increases(db_session):
    ledger = LedgerService(db_session)
    ledger.upsert_month("2025-01")
    budget = ledger.create_budget("2025-01", "Food", 300_000)
    stamps = [budget.updated_at]
    for amount in (1, 2, 3):
        budget = ledger.update_budget(budget.id, planned_amount=amount)
        stamps.append(budget.updated_at)
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


def test_cascade_delete_budget_writes_tombstone_per_row(db_session):
    ledger = LedgerService(db_session)
    ledger.upsert_month("2025-01")
    budget = ledger.create_budget("2025-01", "Groceries", 500_000)
    t1 = ledger.create_transaction(budget.id, 10_000, date(2025, 1, 3), "market")
    t2 = ledger.create_transaction(budget.id, 20_000, date(2025, 1, 9))

    written = ledger.delete_budget(budget.id)

    assert written == 3
    assert db_session.get(models.Budget, budget.id) is None
    assert db_session.query(models.Transaction).count() == 0
    assert _tombstones(db_session) == sorted(
        [("budgets", budget.id), ("transactions", t1.id), ("transactions", t2.id)]
    )
    assert all(t.dirty for t in db_session.query(models.DeletedRecord))


def test_delete_month_cascades_to_budgets_and_transactions(db_session):
    ledger = LedgerService(db_session)
    ledger.upsert_month("2025-02")
    b1 = ledger.create_budget("2025-02", "Rent", 900_000, "Fixed")
    b2 = ledger.create_budget("2025-02", "Fuel", 100_000)
    ledger.create_transaction(b1.id, 900_000, date(2025, 2, 1))

    written = ledger.delete_month("2025-02")

    assert written == 4
    tables = [t for t, _ in _tombstones(db_session)]
    assert tables.count("months") == 1
    assert tables.count("budgets") == 2
    assert tables.count("transactions") == 1
    assert db_session.get(models.Budget, b2.id) is None


def test_delete_transaction_and_bond_record_tombstones(db_session):
    ledger = LedgerService(db_session)
    ledger.upsert_month("2025-03")
    budget = ledger.create_budget("2025-03", "Cafe")
    txn = ledger.create_transaction(budget.id, 4_500, date(2025, 3, 2))
    bond = ledger.create_bond(10_000_000, 3.5, date(2024, 6, 1), 3)

    ledger.delete_transaction(txn.id)
    ledger.delete_bond(bond.id)

    assert _tombstones(db_session) == sorted([("transactions", txn.id), ("bonds", bond.id)])


def test_ensure_month_budgets_is_idempotent(db_session):
    ledger = LedgerService(db_session)
    ledger.upsert_month("2025-04")
    ledger.create_budget("2025-04", "Internet", 99_000, "Fixed")

    created = ledger.ensure_month_budgets("2025-04")
    assert len(created) == len(BUDGET_TEMPLATE) - 1
    assert all(b.dirty for b in created)

    assert ledger.ensure_month_budgets("2025-04") == []
    internet = [b for b in ledger.list_budgets("2025-04") if b.category == "Internet"]
    assert len(internet) == 1
    assert internet[0].planned_amount == 99_000


def test_month_summary_totals(db_session):
    ledger = LedgerService(db_session)
    ledger.upsert_month("2025-05", 1_000_000)
    food = ledger.create_budget("2025-05", "Food", 400_000)
    fuel = ledger.create_budget("2025-05", "Fuel", 200_000)
    ledger.create_transaction(food.id, 150_000, date(2025, 5, 2))
    ledger.create_transaction(fuel.id, 50_000, date(2025, 5, 3))
    ledger.create_transaction(fuel.id, -10_000, date(2025, 5, 4), "refund")

    summary = ledger.month_summary("2025-05")

    assert summary.planned == 600_000
    assert summary.actual == 190_000
    assert summary.surplus == 810_000


def test_list_transactions_by_month(db_session):
    ledger = LedgerService(db_session)
    ledger.upsert_month("2025-06")
    ledger.upsert_month("2025-07")
    june = ledger.create_budget("2025-06", "Food")
    july = ledger.create_budget("2025-07", "Food")
    ledger.create_transaction(june.id, 1, date(2025, 6, 1))
    ledger.create_transaction(july.id, 2, date(2025, 7, 1))

    rows = ledger.list_transactions(month_id="2025-06")
    assert [t.budget_id for t in rows] == [june.id]


def test_missing_rows_and_bad_input(db_session):
    ledger = LedgerService(db_session)
    with pytest.raises(NotFoundError):
        ledger.get_month("2030-01")
    with pytest.raises(NotFoundError):
        ledger.create_transaction("nope", 1, date(2025, 1, 1))
    with pytest.raises(ValidationFailed):
        ledger.upsert_month("2025-13")
    ledger.upsert_month("2025-08")
    with pytest.raises(ValidationFailed):
        ledger.create_budget("2025-08", "Food", tag="Whatever")
