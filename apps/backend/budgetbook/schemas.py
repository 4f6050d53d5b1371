from __future__ import annotations

import re
from datetime import date, datetime
import datetime as dt
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel

from .models import BudgetTag


MONTH_ID_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def validate_month_id(value: str) -> str:
    value = (value or "").strip()
    if not MONTH_ID_PATTERN.match(value):
        raise ValueError("month id must look like YYYY-MM")
    return value


def _date_prefix(value: Any) -> Any:
    # 원격에서 '2025-01-15T00:00:00+00:00' 형태로 내려올 수 있음
    if isinstance(value, str) and len(value) > 10 and value[10] in ("T", " "):
        return value[:10]
    return value


# ---- Local API ------------------------------------------------------------


class MonthIn(BaseModel):
    expected_income: float = Field(0, ge=0)
    savings_goal: float = Field(0, ge=0)


class MonthOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    expected_income: float
    savings_goal: float
    updated_at: datetime
    dirty: bool


class MonthSummary(BaseModel):
    month_id: str
    expected_income: float
    planned: float
    actual: float
    surplus: float


class BudgetCreate(BaseModel):
    month_id: str
    category: str = Field(..., min_length=1, max_length=120)
    planned_amount: float = Field(0, ge=0)
    tag: BudgetTag = BudgetTag.VARIABLE

    @field_validator("month_id")
    @classmethod
    def _check_month(cls, v: str) -> str:
        return validate_month_id(v)


class BudgetUpdate(BaseModel):
    category: str | None = Field(default=None, min_length=1, max_length=120)
    planned_amount: float | None = Field(default=None, ge=0)
    tag: BudgetTag | None = None


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    month_id: str
    category: str
    planned_amount: float
    tag: str
    updated_at: datetime
    dirty: bool


class TransactionCreate(BaseModel):
    budget_id: str
    amount: float
    description: str = ""
    date: dt.date


class TransactionUpdate(BaseModel):
    budget_id: str | None = None
    amount: float | None = None
    description: str | None = None
    date: dt.date | None = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    budget_id: str
    amount: float
    description: str
    date: dt.date
    updated_at: datetime
    dirty: bool


class BondCreate(BaseModel):
    principal: float = Field(..., gt=0)
    rate: float = Field(..., ge=0)
    purchase_date: date
    duration_years: float = Field(..., gt=0)


class BondUpdate(BaseModel):
    principal: float | None = Field(default=None, gt=0)
    rate: float | None = Field(default=None, ge=0)
    purchase_date: date | None = None
    duration_years: float | None = Field(default=None, gt=0)


class BondOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    principal: float
    rate: float
    purchase_date: date
    duration_years: float
    updated_at: datetime
    dirty: bool


class SurplusDisposition(str, Enum):
    SAVINGS = "savings"
    ROLLOVER = "rollover"


class MonthCloseRequest(BaseModel):
    disposition: SurplusDisposition | None = None
    savings_budget_id: str | None = None


class MonthClosePreview(MonthSummary):
    next_month_id: str
    requires_disposition: bool
    already_closed: bool
    savings_budget_ids: list[str] = Field(default_factory=list)


class MonthCloseResult(BaseModel):
    month_id: str
    next_month_id: str
    actual: float
    surplus: float
    disposition: SurplusDisposition | None = None
    created_budget_ids: list[str] = Field(default_factory=list)
    posted_transaction_id: str | None = None
    rollover_budget_id: str | None = None
    next_month_created: bool = False


class SyncStatusOut(BaseModel):
    enabled: bool
    state: str
    initial_sync: str
    in_flight: bool
    online: bool
    watermark: str | None = None
    pending: dict[str, int] = Field(default_factory=dict)
    last_report: dict[str, Any] | None = None


class SyncActionResult(BaseModel):
    ok: bool
    detail: str | None = None
    report: dict[str, Any] | None = None


class AuthSessionIn(BaseModel):
    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)


class AuthSessionOut(BaseModel):
    user_id: str
    state: str
    initial_sync: str


# ---- Remote rows (snake_case, as stored by the backend) --------------------


class RemoteRow(BaseModel):
    # user_id 등 원격 전용 컬럼은 무시
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    updated_at: datetime


class RemoteMonth(RemoteRow):
    expected_income: float
    savings_goal: float

    @field_validator("id")
    @classmethod
    def _check_month(cls, v: str) -> str:
        return validate_month_id(v)


class RemoteBudget(RemoteRow):
    month_id: str
    category: str
    planned_amount: float
    tag: BudgetTag


class RemoteTransaction(RemoteRow):
    budget_id: str
    description: str = ""
    amount: float
    date: dt.date

    @field_validator("date", mode="before")
    @classmethod
    def _trim_date(cls, v: Any) -> Any:
        return _date_prefix(v)

    @field_validator("description", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class RemoteBond(RemoteRow):
    name: str | None = None
    amount: float
    rate: float
    purchase_date: date
    term_months: float = Field(..., gt=0)

    @field_validator("purchase_date", mode="before")
    @classmethod
    def _trim_date(cls, v: Any) -> Any:
        return _date_prefix(v)


# ---- Backup file (camelCase rows, compatible with the web client export) ---


class BackupRow(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    updated_at: int | None = None  # epoch milliseconds
    synced: int | None = None

    @field_validator("updated_at", mode="before")
    @classmethod
    def _round_ms(cls, v: Any) -> Any:
        if isinstance(v, float):
            return int(round(v))
        return v


class BackupMonth(BackupRow):
    id: str
    expected_income: float = 0
    savings_goal: float = 0

    @field_validator("id")
    @classmethod
    def _check_month(cls, v: str) -> str:
        return validate_month_id(v)


class BackupBudget(BackupRow):
    id: str
    month_id: str
    category: str
    planned_amount: float = 0
    tag: str = BudgetTag.VARIABLE.value


class BackupTransaction(BackupRow):
    id: str
    budget_id: str
    amount: float
    description: str = ""
    date: dt.date

    @field_validator("date", mode="before")
    @classmethod
    def _trim_date(cls, v: Any) -> Any:
        return _date_prefix(v)


class BackupBond(BackupRow):
    id: str
    principal: float
    rate: float
    purchase_date: date
    duration_years: float

    @field_validator("purchase_date", mode="before")
    @classmethod
    def _trim_date(cls, v: Any) -> Any:
        return _date_prefix(v)


class BackupData(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: str
    export_date: str
    months: list[BackupMonth]
    budgets: list[BackupBudget]
    transactions: list[BackupTransaction]
    bonds: list[BackupBond]
