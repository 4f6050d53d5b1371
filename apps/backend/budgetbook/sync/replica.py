"""Local replica helpers used by the sync engine and realtime listener.

None of these functions commit; callers own the unit of work.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from budgetbook import models
from budgetbook.core.constants import SYNC_WATERMARK_KEY
from budgetbook.models import SYNC_MODELS, SyncTable
from budgetbook.sync.mappers import parse_iso, to_iso


def dirty_rows(db: Session, table: SyncTable) -> list[Any]:
    model = SYNC_MODELS[table]
    return list(db.scalars(select(model).where(model.dirty.is_(True))))


def dirty_ids(db: Session, table: SyncTable) -> set[str]:
    model = SYNC_MODELS[table]
    return set(db.scalars(select(model.id).where(model.dirty.is_(True))))


def pending_tombstone_ids(db: Session, table: SyncTable) -> set[str]:
    stmt = select(models.DeletedRecord.item_id).where(
        models.DeletedRecord.table == table.value,
        models.DeletedRecord.dirty.is_(True),
    )
    return set(db.scalars(stmt))


def dirty_tombstones(db: Session) -> list[models.DeletedRecord]:
    stmt = (
        select(models.DeletedRecord)
        .where(models.DeletedRecord.dirty.is_(True))
        .order_by(models.DeletedRecord.id)
    )
    return list(db.scalars(stmt))


def clear_tombstone(db: Session, log_id: int) -> None:
    record = db.get(models.DeletedRecord, log_id)
    if record is not None:
        record.dirty = False
        db.commit()


def is_protected(db: Session, table: SyncTable, item_id: str) -> bool:
    """True when a remote write must not touch this row (push-wins)."""
    model = SYNC_MODELS[table]
    local = db.get(model, item_id)
    if local is not None and local.dirty:
        return True
    return item_id in pending_tombstone_ids(db, table)


def apply_remote(
    db: Session,
    table: SyncTable,
    rows: Iterable[dict[str, Any]],
    *,
    skip_ids: set[str] | None = None,
) -> int:
    """Upsert decoded remote rows as clean local rows.

    Rows whose id is in ``skip_ids`` are left untouched. Returns the
    number of rows written.
    """
    model = SYNC_MODELS[table]
    skip = skip_ids or set()
    applied = 0
    for values in rows:
        item_id = values["id"]
        if item_id in skip:
            continue
        local = db.get(model, item_id)
        if local is None:
            local = model(**values)
            db.add(local)
        else:
            for key, value in values.items():
                if key != "id":
                    setattr(local, key, value)
        local.mark_synced(values["updated_at"])
        applied += 1
    return applied


def delete_local(db: Session, table: SyncTable, item_id: str) -> bool:
    model = SYNC_MODELS[table]
    local = db.get(model, item_id)
    if local is None:
        return False
    db.delete(local)
    return True


def mark_all_unsynced(db: Session) -> None:
    for model in SYNC_MODELS.values():
        db.execute(update(model).values(dirty=True))


def read_watermark(db: Session) -> datetime | None:
    state = db.get(models.SyncState, SYNC_WATERMARK_KEY)
    if state is None or not state.value:
        return None
    return parse_iso(state.value)


def write_watermark(db: Session, value: datetime) -> None:
    state = db.get(models.SyncState, SYNC_WATERMARK_KEY)
    if state is None:
        db.add(models.SyncState(key=SYNC_WATERMARK_KEY, value=to_iso(value)))
    else:
        state.value = to_iso(value)


def clear_watermark(db: Session) -> None:
    state = db.get(models.SyncState, SYNC_WATERMARK_KEY)
    if state is not None:
        db.delete(state)


def pending_counts(db: Session) -> dict[str, int]:
    """Dirty rows per table plus unpushed tombstones."""
    counts: dict[str, int] = {}
    for table, model in SYNC_MODELS.items():
        counts[table.value] = db.scalar(
            select(func.count()).select_from(model).where(model.dirty.is_(True))
        ) or 0
    counts["deleted_records"] = db.scalar(
        select(func.count())
        .select_from(models.DeletedRecord)
        .where(models.DeletedRecord.dirty.is_(True))
    ) or 0
    return counts
