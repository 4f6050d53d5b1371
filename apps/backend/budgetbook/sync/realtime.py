"""Realtime listener: apply remote row changes the moment they arrive."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from budgetbook.errors import MappingError, RemoteError
from budgetbook.models import SyncTable
from budgetbook.sync import replica
from budgetbook.sync.engine import SYNC_ORDER
from budgetbook.sync.mappers import from_remote
from budgetbook.sync.remote import ChangeEvent, ChangeType, RemoteBackend

logger = logging.getLogger(__name__)


class RealtimeListener:
    """Owns one push subscription per replicated table.

    Incoming inserts/updates only overwrite rows that are absent or clean
    locally; deletes are applied unconditionally.
    """

    def __init__(self, session_factory: Callable[[], Session], remote: RemoteBackend) -> None:
        self._session_factory = session_factory
        self._remote = remote
        self._handles: list[Any] = []
        self._tasks: set[asyncio.Task] = set()
        self._user_id: str | None = None
        self._active = False

    @property
    def is_open(self) -> bool:
        return self._active

    @property
    def user_id(self) -> str | None:
        return self._user_id

    async def open(self, user_id: str) -> None:
        await self.close()
        self._user_id = user_id
        self._active = True
        for table in SYNC_ORDER:
            try:
                handle = await self._remote.subscribe(table.value, user_id, self._dispatch)
            except RemoteError as exc:
                # 누락된 채널은 주기 동기화가 보완
                logger.error("Realtime subscribe to %s failed: %s", table.value, exc)
                continue
            self._handles.append(handle)
        logger.info("Realtime listener open (%d channel(s))", len(self._handles))

    async def close(self) -> None:
        """Unsubscribe every channel and drop in-flight events. Idempotent."""
        handles, self._handles = self._handles, []
        self._user_id = None
        self._active = False
        for handle in handles:
            try:
                await self._remote.unsubscribe(handle)
            except RemoteError as exc:
                logger.warning("Realtime unsubscribe failed: %s", exc)
        tasks, self._tasks = self._tasks, set()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if handles:
            logger.info("Realtime listener closed")

    def _dispatch(self, event: ChangeEvent) -> None:
        # remote client callbacks are synchronous; hop onto the event loop
        if not self._active:
            return
        task = asyncio.ensure_future(self.handle(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle(self, event: ChangeEvent) -> bool:
        """Apply one change event; returns True when the local store changed."""
        try:
            table = SyncTable(event.table)
        except ValueError:
            logger.debug("Ignoring realtime event for table %r", event.table)
            return False
        item_id = event.row_id
        if not item_id:
            logger.warning("Realtime %s event on %s without id dropped", event.event_type.value, table.value)
            return False

        try:
            if event.event_type is ChangeType.DELETE:
                with self._session_factory() as db:
                    removed = replica.delete_local(db, table, item_id)
                    db.commit()
                return removed

            raw = event.new
            if set(raw) <= {"id", "user_id"}:
                # payload without columns: fetch the row itself
                fetched = await self._remote.select(table.value, ids=[item_id])
                if not fetched:
                    return False
                raw = fetched[0]
            values = from_remote(table, raw)
            with self._session_factory() as db:
                if replica.is_protected(db, table, item_id):
                    logger.debug("Realtime %s %s dropped: local changes pending", table.value, item_id)
                    return False
                replica.apply_remote(db, table, [values])
                db.commit()
            return True
        except (MappingError, RemoteError) as exc:
            logger.warning("Realtime row dropped: %s", exc)
        except Exception:
            logger.exception("Realtime apply failed for %s %s", table.value, item_id)
        return False
