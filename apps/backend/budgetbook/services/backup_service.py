from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from budgetbook import models
from budgetbook.core.constants import BACKUP_VERSION
from budgetbook.errors import BackupFormatError
from budgetbook.models import utcnow
from budgetbook.schemas import (
    BackupBond,
    BackupBudget,
    BackupData,
    BackupMonth,
    BackupTransaction,
)

logger = logging.getLogger(__name__)


def to_epoch_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def from_epoch_ms(value: int | None) -> datetime:
    if value is None:
        return utcnow()
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)


class BackupService:
    """JSON export/import of the whole ledger.

    The document layout (camelCase rows, ``updatedAt`` in epoch
    milliseconds, ``synced`` as 0/1) matches the web client's export so
    files can move between the two.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def export_data(self) -> dict[str, Any]:
        def _meta(row: Any) -> dict[str, Any]:
            return {"updated_at": to_epoch_ms(row.updated_at), "synced": 0 if row.dirty else 1}

        data = BackupData(
            version=BACKUP_VERSION,
            export_date=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            months=[
                BackupMonth(id=m.id, expected_income=m.expected_income, savings_goal=m.savings_goal, **_meta(m))
                for m in self.db.query(models.Month).order_by(models.Month.id)
            ],
            budgets=[
                BackupBudget(
                    id=b.id,
                    month_id=b.month_id,
                    category=b.category,
                    planned_amount=b.planned_amount,
                    tag=b.tag,
                    **_meta(b),
                )
                for b in self.db.query(models.Budget).order_by(models.Budget.month_id, models.Budget.id)
            ],
            transactions=[
                BackupTransaction(
                    id=t.id,
                    budget_id=t.budget_id,
                    amount=t.amount,
                    description=t.description,
                    date=t.date,
                    **_meta(t),
                )
                for t in self.db.query(models.Transaction).order_by(models.Transaction.date, models.Transaction.id)
            ],
            bonds=[
                BackupBond(
                    id=b.id,
                    principal=b.principal,
                    rate=b.rate,
                    purchase_date=b.purchase_date,
                    duration_years=b.duration_years,
                    **_meta(b),
                )
                for b in self.db.query(models.Bond).order_by(models.Bond.id)
            ],
        )
        return data.model_dump(mode="json", by_alias=True)

    def import_data(self, payload: dict[str, Any] | str | bytes) -> dict[str, int]:
        """Replace the ledger with the backup contents.

        Imported rows are marked dirty so the restore reaches the remote
        on the next sync. Nothing is written unless the whole document
        validates. Returns the number of rows restored per table.
        """
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise BackupFormatError(f"backup is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise BackupFormatError("backup must be a JSON object")
        missing = [key for key in ("months", "budgets", "transactions", "bonds") if not isinstance(payload.get(key), list)]
        if missing:
            raise BackupFormatError(f"invalid backup file format: missing {', '.join(missing)}")
        try:
            data = BackupData.model_validate(
                {"version": BACKUP_VERSION, "exportDate": "", **payload}
            )
        except ValidationError as exc:
            raise BackupFormatError(f"invalid backup rows: {exc.error_count()} error(s)") from exc
        for name in ("months", "budgets", "transactions", "bonds"):
            ids = [row.id for row in getattr(data, name)]
            if len(ids) != len(set(ids)):
                raise BackupFormatError(f"backup contains duplicate {name} ids")

        try:
            for model in (models.Transaction, models.Budget, models.Month, models.Bond):
                self.db.query(model).delete()
            for row in data.months:
                self._restore(models.Month, row, id=row.id, expected_income=row.expected_income, savings_goal=row.savings_goal)
            for row in data.budgets:
                self._restore(
                    models.Budget,
                    row,
                    id=row.id,
                    month_id=row.month_id,
                    category=row.category,
                    planned_amount=row.planned_amount,
                    tag=row.tag,
                )
            for row in data.transactions:
                self._restore(
                    models.Transaction,
                    row,
                    id=row.id,
                    budget_id=row.budget_id,
                    amount=row.amount,
                    description=row.description,
                    date=row.date,
                )
            for row in data.bonds:
                self._restore(
                    models.Bond,
                    row,
                    id=row.id,
                    principal=row.principal,
                    rate=row.rate,
                    purchase_date=row.purchase_date,
                    duration_years=row.duration_years,
                )
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise BackupFormatError("backup contains duplicate ids") from exc
        except Exception:
            self.db.rollback()
            logger.exception("Backup import rolled back")
            raise

        counts = {
            "months": len(data.months),
            "budgets": len(data.budgets),
            "transactions": len(data.transactions),
            "bonds": len(data.bonds),
        }
        logger.info("Backup imported: %s", counts)
        return counts

    def _restore(self, model: type, row: Any, **values: Any) -> None:
        obj = model(**values)
        obj.updated_at = from_epoch_ms(row.updated_at)
        obj.touch()
        self.db.add(obj)
