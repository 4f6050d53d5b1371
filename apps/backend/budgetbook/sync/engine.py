"""
Sync Engine: push-then-pull reconciliation of the local replica.

One ``sync()`` cycle:

  1. push deletions   dirty tombstones → remote delete by (table, item_id)
  2. push upserts     dirty rows → one upsert batch per table, then re-fetch
                      to adopt the authoritative ``updated_at``
  3. pull             remote rows newer than the watermark, minus rows that
                      are dirty or have a pending tombstone locally

The engine never holds a database session across an ``await``; every
storage step opens, commits and closes its own session so the realtime
listener can write in between.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from budgetbook.errors import MappingError, RemoteError
from budgetbook.models import SYNC_MODELS, SyncTable, utcnow
from budgetbook.sync import replica
from budgetbook.sync.mappers import from_remote, to_iso, to_remote
from budgetbook.sync.remote import IdentityProvider, RemoteBackend

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)

# 적용 순서: 부모 테이블 먼저
SYNC_ORDER: tuple[SyncTable, ...] = (
    SyncTable.MONTHS,
    SyncTable.BUDGETS,
    SyncTable.TRANSACTIONS,
    SyncTable.BONDS,
)


@dataclass
class SyncReport:
    """Outcome of one sync cycle."""

    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    skipped: bool = False
    deleted: int = 0
    pushed: dict[str, int] = field(default_factory=dict)
    pulled: dict[str, int] = field(default_factory=dict)
    stale: dict[str, int] = field(default_factory=dict)
    rejected: int = 0
    watermark_advanced: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at) if self.finished_at else None,
            "skipped": self.skipped,
            "deleted": self.deleted,
            "pushed": dict(self.pushed),
            "pulled": dict(self.pulled),
            "stale": dict(self.stale),
            "rejected": self.rejected,
            "watermark_advanced": self.watermark_advanced,
            "errors": list(self.errors),
        }


class SyncEngine:
    """Reconcile the local replica with the remote store.

    Parameters
    ----------
    session_factory : callable
        Returns a new SQLAlchemy ``Session`` (``SessionLocal`` in production).
    remote : RemoteBackend
        Per-table data API of the remote store.
    identity : IdentityProvider
        Used to check for a signed-in session before every cycle.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        remote: RemoteBackend,
        identity: IdentityProvider,
    ) -> None:
        self._session_factory = session_factory
        self._remote = remote
        self._identity = identity

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def sync(self) -> SyncReport:
        """Run one push-then-pull cycle.

        Without a session this is a silent no-op. Remote failures are
        logged and recorded on the report, never raised.
        """
        report = SyncReport()
        try:
            session = await self._identity.get_session()
        except Exception as exc:
            logger.warning("Sync skipped: session lookup failed: %s", exc)
            report.errors.append(f"session: {exc}")
            report.finished_at = utcnow()
            return report
        if session is None:
            report.skipped = True
            report.finished_at = utcnow()
            return report

        try:
            await self.push_deletions(report)
            if await self.push_upserts(report, user_id=session.user_id):
                await self.pull_changes(report)
            else:
                logger.warning("Sync cycle aborted after push failure; pull deferred to next trigger")
        except Exception as exc:
            # storage errors land here; the next trigger retries the whole cycle
            logger.exception("Sync failed")
            report.errors.append(f"sync: {exc}")
        report.finished_at = utcnow()
        if report.errors:
            logger.info("Sync finished with %d error(s)", len(report.errors))
        else:
            logger.info(
                "Sync finished: deleted=%d pushed=%s pulled=%s",
                report.deleted, report.pushed, report.pulled,
            )
        return report

    # ------------------------------------------------------------------
    # Step 1: deletions
    # ------------------------------------------------------------------

    async def push_deletions(self, report: SyncReport) -> None:
        with self._session_factory() as db:
            pending = [(t.id, t.table, t.item_id) for t in replica.dirty_tombstones(db)]
        if not pending:
            return

        async def _push_one(log_id: int, table: str, item_id: str) -> bool:
            try:
                SyncTable(table)
            except ValueError:
                logger.warning("Tombstone %s references unknown table %r; left dirty", log_id, table)
                return False
            try:
                await self._remote.delete(table, item_id)
            except RemoteError as exc:
                logger.error("Failed to delete %s %s on remote: %s", table, item_id, exc)
                report.errors.append(f"delete {table}/{item_id}: {exc}")
                return False
            with self._session_factory() as db:
                replica.clear_tombstone(db, log_id)
            return True

        results = await asyncio.gather(
            *(_push_one(*item) for item in pending),
            return_exceptions=True,
        )
        deleted = 0
        for (log_id, table, item_id), result in zip(pending, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                # 원격 삭제는 됐을 수 있음; 툼스톤은 dirty 로 남아 다음 주기에 재시도
                logger.error("Tombstone %s (%s/%s) failed: %s", log_id, table, item_id, result)
                report.errors.append(f"delete {table}/{item_id}: {result}")
            elif result:
                deleted += 1
        report.deleted = deleted

    # ------------------------------------------------------------------
    # Step 2: upserts
    # ------------------------------------------------------------------

    async def push_upserts(self, report: SyncReport, *, user_id: str) -> bool:
        """Push every table's dirty rows; returns False if any batch failed."""
        results = await asyncio.gather(
            *(self._push_table(table, user_id, report) for table in SYNC_ORDER),
            return_exceptions=True,
        )
        ok = True
        for table, result in zip(SYNC_ORDER, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                ok = False
                logger.error("Push of %s failed: %s", table.value, result)
                report.errors.append(f"push {table.value}: {result}")
        return ok

    async def _push_table(self, table: SyncTable, user_id: str, report: SyncReport) -> None:
        with self._session_factory() as db:
            rows = replica.dirty_rows(db, table)
            payload = [{**to_remote(table, row), "user_id": user_id} for row in rows]
            snapshot = {row.id: row.updated_at for row in rows}
        if not payload:
            return

        await self._remote.upsert(table.value, payload)
        fresh = await self._remote.select(table.value, ids=list(snapshot))

        adopted = 0
        with self._session_factory() as db:
            model = SYNC_MODELS[table]
            for raw in fresh:
                try:
                    values = from_remote(table, raw)
                except MappingError as exc:
                    logger.warning("Skipping malformed %s row after push: %s", table.value, exc)
                    report.rejected += 1
                    continue
                local = db.get(model, values["id"])
                pushed_at = snapshot.get(values["id"])
                # 전송 중 로컬에서 다시 수정된 행은 dirty 유지
                if local is None or pushed_at is None or not local.dirty or local.updated_at != pushed_at:
                    continue
                for key, value in values.items():
                    if key != "id":
                        setattr(local, key, value)
                local.mark_synced(values["updated_at"])
                adopted += 1
            db.commit()

        report.pushed[table.value] = adopted
        if adopted < len(snapshot):
            report.stale[table.value] = len(snapshot) - adopted
            logger.info("%d %s row(s) stay dirty after push", len(snapshot) - adopted, table.value)

    # ------------------------------------------------------------------
    # Step 3: pull
    # ------------------------------------------------------------------

    async def pull_changes(self, report: SyncReport, *, full: bool = False) -> bool:
        """Fetch remote rows newer than the watermark and apply them.

        With ``full=True`` the watermark is ignored and dirty rows are
        overwritten too (recovery). Returns True when the watermark moved.
        """
        with self._session_factory() as db:
            since = None if full else replica.read_watermark(db)
        pull_started = utcnow()

        results = await asyncio.gather(
            *(self._remote.select(t.value, updated_after=since or EPOCH) for t in SYNC_ORDER),
            return_exceptions=True,
        )

        all_ok = True
        for table, result in zip(SYNC_ORDER, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                all_ok = False
                logger.error("Pull of %s failed: %s", table.value, result)
                report.errors.append(f"pull {table.value}: {result}")
                continue
            decoded = self._decode_rows(table, result, report)
            with self._session_factory() as db:
                skip: set[str] = set()
                if not full:
                    skip = replica.dirty_ids(db, table) | replica.pending_tombstone_ids(db, table)
                applied = replica.apply_remote(db, table, decoded, skip_ids=skip)
                db.commit()
            report.pulled[table.value] = applied

        if all_ok:
            with self._session_factory() as db:
                replica.write_watermark(db, pull_started)
                db.commit()
            report.watermark_advanced = True
        return all_ok

    def _decode_rows(self, table: SyncTable, rows: list[dict[str, Any]], report: SyncReport) -> list[dict[str, Any]]:
        decoded = []
        for raw in rows:
            try:
                decoded.append(from_remote(table, raw))
            except MappingError as exc:
                logger.warning("Skipping malformed remote row: %s", exc)
                report.rejected += 1
        return decoded

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def force_pull_all(self) -> SyncReport:
        """Overwrite the local replica with every remote row.

        Raises :class:`RemoteError` if any table could not be fetched.
        """
        report = SyncReport()
        session = await self._identity.get_session()
        if session is None:
            report.skipped = True
            report.finished_at = utcnow()
            return report
        ok = await self.pull_changes(report, full=True)
        report.finished_at = utcnow()
        if not ok:
            raise RemoteError("; ".join(report.errors))
        return report

    def mark_all_unsynced(self) -> None:
        with self._session_factory() as db:
            replica.mark_all_unsynced(db)
            db.commit()
        logger.info("All local rows marked unsynced")

    def clear_watermark(self) -> None:
        with self._session_factory() as db:
            replica.clear_watermark(db)
            db.commit()

    def reset_sync_state(self) -> None:
        """Forget the watermark and re-push everything on the next cycle."""
        with self._session_factory() as db:
            replica.clear_watermark(db)
            replica.mark_all_unsynced(db)
            db.commit()
        logger.info("Sync state reset")

    def get_watermark(self) -> datetime | None:
        with self._session_factory() as db:
            return replica.read_watermark(db)

    def pending_counts(self) -> dict[str, int]:
        with self._session_factory() as db:
            return replica.pending_counts(db)
