from __future__ import annotations

import json
from datetime import date

import pytest

from budgetbook import models
from budgetbook.errors import BackupFormatError
from budgetbook.services import BackupService, LedgerService


def _ledger(db):
    ledger = LedgerService(db)
    ledger.upsert_month("2025-01", 1_000_000, 100_000)
    budget = ledger.create_budget("2025-01", "Food", 300_000)
    ledger.create_transaction(budget.id, 9_900, date(2025, 1, 5), "lunch")
    ledger.create_bond(2_000_000, 3.0, date(2024, 12, 1), 2)
    return budget


def test_export_uses_camel_case_rows(db_session):
    budget = _ledger(db_session)

    doc = BackupService(db_session).export_data()

    assert doc["version"] == "1.0.0"
    assert doc["exportDate"].endswith("Z")
    month = doc["months"][0]
    assert month["id"] == "2025-01"
    assert month["expectedIncome"] == 1_000_000
    assert month["synced"] == 0
    assert isinstance(month["updatedAt"], int)
    assert doc["budgets"][0]["monthId"] == "2025-01"
    assert doc["budgets"][0]["plannedAmount"] == 300_000
    assert doc["transactions"][0]["budgetId"] == budget.id
    assert doc["transactions"][0]["date"] == "2025-01-05"
    assert doc["bonds"][0]["durationYears"] == 2
    json.dumps(doc)


def test_import_replaces_tables_and_marks_rows_dirty(db_session):
    _ledger(db_session)
    service = BackupService(db_session)
    doc = service.export_data()
    LedgerService(db_session).upsert_month("2030-01")
    for model in (models.Month, models.Budget, models.Transaction, models.Bond):
        for row in db_session.query(model):
            row.dirty = False
    db_session.commit()

    counts = service.import_data(doc)

    assert counts == {"months": 1, "budgets": 1, "transactions": 1, "bonds": 1}
    db_session.expire_all()
    assert db_session.get(models.Month, "2030-01") is None
    for model in (models.Month, models.Budget, models.Transaction, models.Bond):
        rows = db_session.query(model).all()
        assert rows and all(r.dirty for r in rows)


def test_import_accepts_web_client_export(db_session):
    raw = json.dumps(
        {
            "version": "1.0.0",
            "exportDate": "2025-02-01T10:00:00.000Z",
            "months": [{"id": "2025-01", "expectedIncome": 5, "savingsGoal": 1, "updatedAt": 1735689600000.0, "synced": 1}],
            "budgets": [{"id": "b1", "monthId": "2025-01", "category": "Cats & Pets", "plannedAmount": 250000, "tag": "Variable"}],
            "transactions": [{"id": "t1", "budgetId": "b1", "amount": 1, "description": "food", "date": "2025-01-02"}],
            "bonds": [],
        }
    )

    counts = BackupService(db_session).import_data(raw)

    assert counts["budgets"] == 1
    assert db_session.get(models.Transaction, "t1").date == date(2025, 1, 2)


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        [],
        {"months": [], "budgets": []},
        {"months": [{"id": "January"}], "budgets": [], "transactions": [], "bonds": []},
    ],
)
def test_invalid_backups_are_rejected_without_changes(db_session, payload):
    _ledger(db_session)

    with pytest.raises(BackupFormatError):
        BackupService(db_session).import_data(payload)

    assert db_session.query(models.Month).count() == 1


def test_duplicate_ids_roll_back(db_session):
    _ledger(db_session)
    doc = BackupService(db_session).export_data()
    doc["bonds"] = doc["bonds"] * 2

    with pytest.raises(BackupFormatError):
        BackupService(db_session).import_data(doc)

    db_session.expire_all()
    assert db_session.query(models.Bond).count() == 1
