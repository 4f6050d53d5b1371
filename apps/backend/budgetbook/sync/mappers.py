"""Translation boundary between local rows and remote (snake_case) rows.

Remote timestamps are ISO-8601 strings with an offset; locally every
``updated_at`` is a naive UTC datetime.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from budgetbook import models
from budgetbook.errors import MappingError
from budgetbook.models import SyncTable
from budgetbook.schemas import RemoteBond, RemoteBudget, RemoteMonth, RemoteTransaction


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_iso(value: datetime | None) -> str:
    """Serialize a naive-UTC (or aware) datetime as an ISO string with offset."""
    if value is None:
        value = models.utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_utc_naive(datetime.fromisoformat(text))


# ---- local -> remote ------------------------------------------------------


def month_to_remote(row: models.Month) -> dict[str, Any]:
    return {
        "id": row.id,
        "expected_income": row.expected_income,
        "savings_goal": row.savings_goal,
        "updated_at": to_iso(row.updated_at),
    }


def budget_to_remote(row: models.Budget) -> dict[str, Any]:
    return {
        "id": row.id,
        "month_id": row.month_id,
        "category": row.category,
        "planned_amount": row.planned_amount,
        "tag": row.tag,
        "updated_at": to_iso(row.updated_at),
    }


def transaction_to_remote(row: models.Transaction) -> dict[str, Any]:
    return {
        "id": row.id,
        "budget_id": row.budget_id,
        "description": row.description,
        "amount": row.amount,
        "date": row.date.isoformat(),
        "updated_at": to_iso(row.updated_at),
    }


def bond_to_remote(row: models.Bond) -> dict[str, Any]:
    # 원격 스키마는 name/amount/term_months 를 사용
    return {
        "id": row.id,
        "name": f"Bond {row.id[:4]}",
        "amount": row.principal,
        "rate": row.rate,
        "purchase_date": row.purchase_date.isoformat(),
        "term_months": row.duration_years * 12,
        "updated_at": to_iso(row.updated_at),
    }


# ---- remote -> local ------------------------------------------------------


def _month_from_remote(r: RemoteMonth) -> dict[str, Any]:
    return {"id": r.id, "expected_income": r.expected_income, "savings_goal": r.savings_goal}


def _budget_from_remote(r: RemoteBudget) -> dict[str, Any]:
    return {
        "id": r.id,
        "month_id": r.month_id,
        "category": r.category,
        "planned_amount": r.planned_amount,
        "tag": r.tag.value,
    }


def _transaction_from_remote(r: RemoteTransaction) -> dict[str, Any]:
    return {
        "id": r.id,
        "budget_id": r.budget_id,
        "description": r.description,
        "amount": r.amount,
        "date": r.date,
    }


def _bond_from_remote(r: RemoteBond) -> dict[str, Any]:
    return {
        "id": r.id,
        "principal": r.amount,
        "rate": r.rate,
        "purchase_date": r.purchase_date,
        "duration_years": r.term_months / 12,
    }


_TO_REMOTE: dict[SyncTable, Callable[[Any], dict[str, Any]]] = {
    SyncTable.MONTHS: month_to_remote,
    SyncTable.BUDGETS: budget_to_remote,
    SyncTable.TRANSACTIONS: transaction_to_remote,
    SyncTable.BONDS: bond_to_remote,
}

_FROM_REMOTE: dict[SyncTable, tuple[type[BaseModel], Callable[[Any], dict[str, Any]]]] = {
    SyncTable.MONTHS: (RemoteMonth, _month_from_remote),
    SyncTable.BUDGETS: (RemoteBudget, _budget_from_remote),
    SyncTable.TRANSACTIONS: (RemoteTransaction, _transaction_from_remote),
    SyncTable.BONDS: (RemoteBond, _bond_from_remote),
}


def to_remote(table: SyncTable, row: Any) -> dict[str, Any]:
    return _TO_REMOTE[table](row)


def from_remote(table: SyncTable, raw: dict[str, Any]) -> dict[str, Any]:
    """Decode a remote row into local column values (``dirty`` excluded).

    Raises :class:`MappingError` when the row does not match the schema;
    callers skip such rows instead of storing partial data.
    """
    schema, convert = _FROM_REMOTE[table]
    if not isinstance(raw, dict):
        raise MappingError(f"{table.value}: expected an object, got {type(raw).__name__}")
    try:
        parsed = schema.model_validate(raw)
    except ValidationError as exc:
        raise MappingError(f"{table.value} row {raw.get('id')!r} is malformed: {exc.error_count()} error(s)") from exc
    values = convert(parsed)
    values["updated_at"] = to_utc_naive(parsed.updated_at)  # type: ignore[attr-defined]
    return values
