from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from .core.database import get_db
from .core.deps import (
    get_backup,
    get_coordinator,
    get_ledger,
    get_month_close,
    require_coordinator,
)
from .errors import (
    BackupFormatError,
    MonthCloseError,
    NotFoundError,
    RemoteError,
    SyncDisabledError,
    SyncInProgressError,
    ValidationFailed,
)
from .schemas import (
    AuthSessionIn,
    AuthSessionOut,
    BondCreate,
    BondOut,
    BondUpdate,
    BudgetCreate,
    BudgetOut,
    BudgetUpdate,
    MonthCloseRequest,
    MonthClosePreview,
    MonthCloseResult,
    MonthIn,
    MonthOut,
    MonthSummary,
    SyncActionResult,
    SyncStatusOut,
    TransactionCreate,
    TransactionOut,
    TransactionUpdate,
)
from .services import BackupService, LedgerService, MonthCloseService
from .sync import replica
from .sync.coordinator import SyncCoordinator

logger = logging.getLogger(__name__)

router = APIRouter()


@contextmanager
def domain_errors() -> Iterator[None]:
    """Translate domain errors raised inside the block into HTTP errors."""
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (ValidationFailed, MonthCloseError, BackupFormatError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except RemoteError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except SyncDisabledError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _changed(coordinator: SyncCoordinator | None) -> None:
    # 로컬 쓰기 후 디바운스 동기화 예약
    if coordinator is not None:
        coordinator.schedule_sync()


# ---- Months -----------------------------------------------------------------


@router.get("/months", response_model=list[MonthOut])
async def list_months(ledger: LedgerService = Depends(get_ledger)):
    return ledger.list_months()


@router.get("/months/{month_id}", response_model=MonthOut)
async def get_month(month_id: str, ledger: LedgerService = Depends(get_ledger)):
    with domain_errors():
        return ledger.get_month(month_id)


@router.put("/months/{month_id}", response_model=MonthOut)
async def put_month(
    month_id: str,
    payload: MonthIn,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        month = ledger.upsert_month(month_id, payload.expected_income, payload.savings_goal)
    _changed(coordinator)
    return month


@router.delete("/months/{month_id}", status_code=204)
async def delete_month(
    month_id: str,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        ledger.delete_month(month_id)
    _changed(coordinator)
    return Response(status_code=204)


@router.get("/months/{month_id}/summary", response_model=MonthSummary)
async def month_summary(month_id: str, ledger: LedgerService = Depends(get_ledger)):
    with domain_errors():
        return ledger.month_summary(month_id)


@router.post("/months/{month_id}/template", response_model=list[BudgetOut])
async def apply_template(
    month_id: str,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        created = ledger.ensure_month_budgets(month_id)
    if created:
        _changed(coordinator)
    return created


@router.get("/months/{month_id}/close", response_model=MonthClosePreview)
async def preview_close(month_id: str, service: MonthCloseService = Depends(get_month_close)):
    with domain_errors():
        return service.preview(month_id)


@router.post("/months/{month_id}/close", response_model=MonthCloseResult)
async def close_month(
    month_id: str,
    payload: MonthCloseRequest,
    service: MonthCloseService = Depends(get_month_close),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        result = service.close_month(month_id, payload.disposition, payload.savings_budget_id)
    _changed(coordinator)
    return result


# ---- Budgets ----------------------------------------------------------------


@router.get("/budgets", response_model=list[BudgetOut])
async def list_budgets(
    month_id: str | None = Query(None),
    ledger: LedgerService = Depends(get_ledger),
):
    return ledger.list_budgets(month_id)


@router.post("/budgets", response_model=BudgetOut, status_code=201)
async def create_budget(
    payload: BudgetCreate,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        budget = ledger.create_budget(payload.month_id, payload.category, payload.planned_amount, payload.tag)
    _changed(coordinator)
    return budget


@router.patch("/budgets/{budget_id}", response_model=BudgetOut)
async def update_budget(
    budget_id: str,
    payload: BudgetUpdate,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        budget = ledger.update_budget(budget_id, **payload.model_dump(exclude_unset=True))
    _changed(coordinator)
    return budget


@router.delete("/budgets/{budget_id}", status_code=204)
async def delete_budget(
    budget_id: str,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        ledger.delete_budget(budget_id)
    _changed(coordinator)
    return Response(status_code=204)


# ---- Transactions -------------------------------------------------------------


@router.get("/transactions", response_model=list[TransactionOut])
async def list_transactions(
    budget_id: str | None = Query(None),
    month_id: str | None = Query(None),
    ledger: LedgerService = Depends(get_ledger),
):
    return ledger.list_transactions(budget_id=budget_id, month_id=month_id)


@router.post("/transactions", response_model=TransactionOut, status_code=201)
async def create_transaction(
    payload: TransactionCreate,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        txn = ledger.create_transaction(payload.budget_id, payload.amount, payload.date, payload.description)
    _changed(coordinator)
    return txn


@router.patch("/transactions/{transaction_id}", response_model=TransactionOut)
async def update_transaction(
    transaction_id: str,
    payload: TransactionUpdate,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        txn = ledger.update_transaction(transaction_id, **payload.model_dump(exclude_unset=True))
    _changed(coordinator)
    return txn


@router.delete("/transactions/{transaction_id}", status_code=204)
async def delete_transaction(
    transaction_id: str,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        ledger.delete_transaction(transaction_id)
    _changed(coordinator)
    return Response(status_code=204)


# ---- Bonds ------------------------------------------------------------------


@router.get("/bonds", response_model=list[BondOut])
async def list_bonds(ledger: LedgerService = Depends(get_ledger)):
    return ledger.list_bonds()


@router.post("/bonds", response_model=BondOut, status_code=201)
async def create_bond(
    payload: BondCreate,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        bond = ledger.create_bond(payload.principal, payload.rate, payload.purchase_date, payload.duration_years)
    _changed(coordinator)
    return bond


@router.patch("/bonds/{bond_id}", response_model=BondOut)
async def update_bond(
    bond_id: str,
    payload: BondUpdate,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        bond = ledger.update_bond(bond_id, **payload.model_dump(exclude_unset=True))
    _changed(coordinator)
    return bond


@router.delete("/bonds/{bond_id}", status_code=204)
async def delete_bond(
    bond_id: str,
    ledger: LedgerService = Depends(get_ledger),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
):
    with domain_errors():
        ledger.delete_bond(bond_id)
    _changed(coordinator)
    return Response(status_code=204)


# ---- Sync -------------------------------------------------------------------


@router.get("/sync/status", response_model=SyncStatusOut)
async def sync_status(
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
    db: Session = Depends(get_db),
):
    if coordinator is None:
        return SyncStatusOut(
            enabled=False,
            state="SIGNED_OUT",
            initial_sync="no_session",
            in_flight=False,
            online=False,
            pending=replica.pending_counts(db),
        )
    return SyncStatusOut(enabled=True, **coordinator.status())


@router.post("/sync", response_model=SyncActionResult)
async def sync_now(coordinator: SyncCoordinator = Depends(require_coordinator)):
    with domain_errors():
        report = await coordinator.sync_now()
    if report.skipped:
        return SyncActionResult(ok=False, detail="Not signed in", report=report.to_dict())
    if report.errors:
        # 수동 동기화는 실패를 그대로 노출
        raise HTTPException(status_code=502, detail={"errors": report.errors, "report": report.to_dict()})
    return SyncActionResult(ok=True, report=report.to_dict())


@router.post("/sync/pull-all", response_model=SyncActionResult)
async def force_pull_all(coordinator: SyncCoordinator = Depends(require_coordinator)):
    with domain_errors():
        report = await coordinator.force_pull_all()
    if report.skipped:
        return SyncActionResult(ok=False, detail="Not signed in", report=report.to_dict())
    return SyncActionResult(ok=True, detail="Local data replaced with remote data", report=report.to_dict())


@router.post("/sync/mark-unsynced", response_model=SyncActionResult)
async def mark_all_unsynced(coordinator: SyncCoordinator = Depends(require_coordinator)):
    with domain_errors():
        coordinator.mark_all_unsynced()
    coordinator.schedule_sync()
    return SyncActionResult(ok=True, detail="All records marked for upload")


@router.post("/sync/reset", response_model=SyncActionResult)
async def reset_sync_state(coordinator: SyncCoordinator = Depends(require_coordinator)):
    with domain_errors():
        coordinator.reset_sync_state()
    coordinator.schedule_sync()
    return SyncActionResult(ok=True, detail="Sync state reset")


# ---- Auth -------------------------------------------------------------------


@router.post("/auth/session", response_model=AuthSessionOut)
async def sign_in(payload: AuthSessionIn, coordinator: SyncCoordinator = Depends(require_coordinator)):
    """Hand the tokens from the login screen to the sync layer."""
    with domain_errors():
        session = await coordinator.sign_in(payload.access_token, payload.refresh_token)
    return AuthSessionOut(
        user_id=session.user_id,
        state=coordinator.state.value,
        initial_sync=coordinator.initial_sync_status.value,
    )


@router.post("/auth/sign-out", response_model=SyncActionResult)
async def sign_out(coordinator: SyncCoordinator = Depends(require_coordinator)):
    with domain_errors():
        await coordinator.sign_out()
    return SyncActionResult(ok=True, detail="Signed out; local data cleared")


# ---- Backup -----------------------------------------------------------------


@router.get("/backup/export")
async def export_backup(service: BackupService = Depends(get_backup)) -> dict[str, Any]:
    return service.export_data()


@router.post("/backup/import")
async def import_backup(
    payload: dict[str, Any] = Body(...),
    service: BackupService = Depends(get_backup),
    coordinator: SyncCoordinator | None = Depends(get_coordinator),
) -> dict[str, Any]:
    with domain_errors():
        counts = service.import_data(payload)
    _changed(coordinator)
    return {"imported": counts}
