from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from budgetbook.core.database import get_db
from budgetbook.services import BackupService, LedgerService, MonthCloseService
from budgetbook.sync.coordinator import SyncCoordinator


def get_coordinator(request: Request) -> SyncCoordinator | None:
    """Coordinator built by the lifespan, or None when running offline.

    Tests override this dependency to inject a coordinator wired to fakes.
    """
    return getattr(request.app.state, "coordinator", None)


def require_coordinator(coordinator: SyncCoordinator | None = Depends(get_coordinator)) -> SyncCoordinator:
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Remote sync is not configured")
    return coordinator


def get_ledger(db: Session = Depends(get_db)) -> LedgerService:
    return LedgerService(db)


def get_month_close(db: Session = Depends(get_db)) -> MonthCloseService:
    return MonthCloseService(db)


def get_backup(db: Session = Depends(get_db)) -> BackupService:
    return BackupService(db)
