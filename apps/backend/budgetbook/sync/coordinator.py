"""
Sync trigger coordinator: decides *when* the sync engine runs.

Triggers:
  * auth session established  (wipe first on a fresh sign-in, then a full
    sync bounded by a timeout, then realtime + periodic timer)
  * auth session cleared      (realtime off, timers off, local wipe)
  * periodic timer            (safety net for missed realtime events)
  * connectivity regained
  * debounced immediate sync  (after local writes)

Only one cycle runs at a time; a trigger that fires during a cycle is
dropped, not queued.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine

from sqlalchemy.orm import Session

from budgetbook.core.database import clear_database
from budgetbook.errors import SyncInProgressError
from budgetbook.sync.connectivity import ConnectivityMonitor
from budgetbook.sync.engine import SyncEngine, SyncReport
from budgetbook.sync.mappers import to_iso
from budgetbook.sync.realtime import RealtimeListener
from budgetbook.sync.remote import AuthEvent, AuthSession, IdentityProvider

logger = logging.getLogger(__name__)


class CoordinatorState(str, Enum):
    SIGNED_OUT = "SIGNED_OUT"
    SESSION_CHECKING = "SESSION_CHECKING"
    SYNCING_INITIAL = "SYNCING_INITIAL"
    READY = "READY"


class InitialSyncStatus(str, Enum):
    NO_SESSION = "no_session"  # render immediately
    PENDING = "pending"  # hold rendering
    COMPLETE = "complete"  # finished, with or without error


class DebounceTimer:
    """Single-slot cancellable timer; rescheduling restarts the window."""

    def __init__(self, delay: float, callback: Callable[[], Awaitable[Any]]) -> None:
        self._delay = delay
        self._callback = callback
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        self.cancel()
        self._task = asyncio.ensure_future(self._fire())

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _fire(self) -> None:
        await asyncio.sleep(self._delay)
        self._task = None
        try:
            await self._callback()
        except Exception:
            logger.exception("Debounced callback failed")


class SyncCoordinator:
    def __init__(
        self,
        engine: SyncEngine,
        listener: RealtimeListener,
        identity: IdentityProvider,
        session_factory: Callable[[], Session],
        *,
        connectivity: ConnectivityMonitor | None = None,
        interval: float = 300.0,
        debounce_seconds: float = 0.5,
        initial_timeout: float = 10.0,
        session_retry_seconds: float = 30.0,
    ) -> None:
        self._engine = engine
        self._listener = listener
        self._identity = identity
        self._session_factory = session_factory
        self._connectivity = connectivity
        self._interval = interval
        self._initial_timeout = initial_timeout
        self._session_retry_seconds = session_retry_seconds

        self._state = CoordinatorState.SIGNED_OUT
        self._initial_status = InitialSyncStatus.PENDING
        self._ready = asyncio.Event()
        self._generation = 0
        self._user_id: str | None = None
        # 시작 시 세션 확인 실패 (오프라인 등): 세션 없음과 구분
        self._session_unknown = False

        self._inflight: asyncio.Task | None = None
        self._periodic: asyncio.Task | None = None
        self._session_retry: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._debounce = DebounceTimer(debounce_seconds, lambda: self.request_sync("debounced"))
        self._unsubscribe_auth: Callable[[], None] | None = None
        self.last_report: SyncReport | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def initial_sync_status(self) -> InitialSyncStatus:
        return self._initial_status

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    @property
    def session_unknown(self) -> bool:
        return self._session_unknown

    async def wait_until_ready(self, timeout: float | None = None) -> InitialSyncStatus:
        """Wait until rendering may proceed (no session, or first sync done)."""
        await asyncio.wait_for(self._ready.wait(), timeout)
        return self._initial_status

    def status(self) -> dict[str, Any]:
        watermark = self._engine.get_watermark()
        return {
            "state": self._state.value,
            "initial_sync": self._initial_status.value,
            "in_flight": self.in_flight,
            "online": self._connectivity.online if self._connectivity else True,
            "watermark": to_iso(watermark) if watermark else None,
            "pending": self._engine.pending_counts(),
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Hook into auth and connectivity, then check for a session.

        Returns immediately; use :meth:`wait_until_ready` to wait for the
        first sync.
        """
        self._unsubscribe_auth = self._identity.on_auth_state_change(self._on_auth_event)
        if self._connectivity is not None:
            self._connectivity.on_change(self._on_connectivity_change)
            self._connectivity.start()
        self._spawn(self.bootstrap())

    async def bootstrap(self) -> None:
        self._state = CoordinatorState.SESSION_CHECKING
        generation = self._bump()
        try:
            session = await self._identity.get_session()
        except Exception as exc:
            if generation != self._generation:
                return
            # 로컬 데이터는 유지; 재연결 또는 재시도 타이머가 다시 확인
            logger.warning("Session check failed, continuing offline: %s", exc)
            self._session_unknown = True
            self._enter_signed_out()
            self._start_session_retry()
            return
        if generation != self._generation:
            return  # 확인 중 로그아웃/로그인 이벤트가 먼저 처리됨
        self._session_unknown = False
        if session is None:
            self._enter_signed_out()
            return
        await self._establish(session, fresh=False)

    async def stop(self) -> None:
        self._bump()
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        self._debounce.cancel()
        await self._stop_session_retry()
        await self._stop_periodic()
        await self._cancel_inflight()
        await self._listener.close()
        if self._connectivity is not None:
            await self._connectivity.stop()
        tasks, self._background = self._background, set()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Auth transitions
    # ------------------------------------------------------------------

    async def sign_in(self, access_token: str, refresh_token: str) -> AuthSession:
        """Install tokens from the client's login flow and start syncing.

        Applied here as SIGNED_IN; the provider may announce an expired
        access token as TOKEN_REFRESHED instead.
        """
        session = await self._identity.set_session(access_token, refresh_token)
        await self.handle_auth_event(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        await self._identity.sign_out()
        await self.handle_auth_event(AuthEvent.SIGNED_OUT, None)

    def _on_auth_event(self, event: AuthEvent, session: AuthSession | None) -> None:
        self._spawn(self.handle_auth_event(event, session))

    async def handle_auth_event(self, event: AuthEvent, session: AuthSession | None) -> None:
        if event is AuthEvent.SIGNED_OUT or (session is None and event is not AuthEvent.INITIAL_SESSION):
            self._session_unknown = False
            if self._state is CoordinatorState.SIGNED_OUT and self._user_id is None:
                return  # already signed out; offline data stays
            await self._sign_out_cleanup()
            return
        if session is None:
            if self._state is CoordinatorState.SESSION_CHECKING:
                self._bump()
                self._enter_signed_out()
            return
        if event is AuthEvent.SIGNED_IN:
            switched = self._user_id is not None and self._user_id != session.user_id
            fresh = self._state is CoordinatorState.SIGNED_OUT or switched
            if not fresh and self._state in (CoordinatorState.READY, CoordinatorState.SYNCING_INITIAL):
                return
            await self._establish(session, fresh=fresh)
        elif event is AuthEvent.INITIAL_SESSION:
            if self._state in (CoordinatorState.SIGNED_OUT, CoordinatorState.SESSION_CHECKING):
                await self._establish(session, fresh=False)
        # TOKEN_REFRESHED / USER_UPDATED: same account, nothing to do

    async def _establish(self, session: AuthSession, *, fresh: bool) -> None:
        generation = self._bump()
        self._state = CoordinatorState.SYNCING_INITIAL
        self._initial_status = InitialSyncStatus.PENDING
        self._ready.clear()
        self._session_unknown = False

        # 사용자 먼저 기록: 정리 중 도착한 같은 사용자의 SIGNED_IN 은 무시됨
        previous, self._user_id = self._user_id, session.user_id
        if fresh or (previous is not None and previous != session.user_id):
            logger.info("New sign-in: clearing local replica before first sync")
            await self._teardown()
            self._wipe_local()

        task = asyncio.ensure_future(self._initial_sync(generation))
        self._track(task)
        try:
            await asyncio.wait_for(asyncio.shield(task), self._initial_timeout)
        except asyncio.TimeoutError:
            # UI 대기만 해제; 동기화 자체는 계속 진행
            logger.warning("Initial sync still running after %.0fs; releasing wait", self._initial_timeout)
            if generation == self._generation:
                self._complete_initial()

    async def _initial_sync(self, generation: int) -> None:
        if self._inflight is not None:
            await asyncio.wait({self._inflight})
        if generation != self._generation:
            return
        await self._run_cycle("initial")
        if generation != self._generation or self._user_id is None:
            return
        await self._listener.open(self._user_id)
        if generation != self._generation:
            await self._listener.close()
            return
        self._start_periodic()
        self._state = CoordinatorState.READY
        self._complete_initial()

    async def _sign_out_cleanup(self) -> None:
        self._bump()
        self._user_id = None
        await self._teardown()
        self._wipe_local()
        self._enter_signed_out()
        logger.info("Signed out: local replica cleared")

    async def _teardown(self) -> None:
        # 실시간 구독 해제가 로컬 삭제보다 먼저 (늦게 도착한 이벤트로 인한 데이터 부활 방지)
        self._debounce.cancel()
        await self._stop_periodic()
        await self._listener.close()
        await self._cancel_inflight()

    def _wipe_local(self) -> None:
        with self._session_factory() as db:
            clear_database(db)

    def _enter_signed_out(self) -> None:
        self._state = CoordinatorState.SIGNED_OUT
        self._initial_status = InitialSyncStatus.NO_SESSION
        self._ready.set()

    def _complete_initial(self) -> None:
        self._initial_status = InitialSyncStatus.COMPLETE
        self._ready.set()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def request_sync(self, reason: str = "manual") -> SyncReport | None:
        """Run a cycle unless one is already in flight (then drop it)."""
        if self._user_id is None:
            return None
        if self._inflight is not None:
            logger.debug("Sync trigger %r dropped: cycle in flight", reason)
            return None
        return await self._run_cycle(reason)

    async def sync_now(self) -> SyncReport:
        """Manual sync; raises :class:`SyncInProgressError` when busy."""
        if self._inflight is not None:
            raise SyncInProgressError("A sync cycle is already running")
        report = await self._run_cycle("manual")
        if report is None:
            raise SyncInProgressError("Sync was cancelled")
        return report

    def schedule_sync(self) -> bool:
        """Debounced immediate sync after a local write."""
        if self._user_id is None:
            return False
        self._debounce.schedule()
        return True

    async def _run_cycle(self, reason: str) -> SyncReport | None:
        task = asyncio.ensure_future(self._engine.sync())
        self._inflight = task
        logger.debug("Sync cycle started (%s)", reason)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._inflight is task:
                self._inflight = None
        if task.cancelled():
            return None
        report = task.result()
        self.last_report = report
        return report

    async def _cancel_inflight(self) -> None:
        task = self._inflight
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self._inflight is task:
            self._inflight = None

    def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            return
        if self._session_unknown:
            self._spawn(self.bootstrap())
        elif self._user_id is not None:
            self._spawn(self.request_sync("connectivity"))

    def _start_session_retry(self) -> None:
        if self._session_retry_seconds <= 0:
            return
        if self._session_retry is None or self._session_retry.done():
            self._session_retry = asyncio.ensure_future(self._session_retry_loop())

    async def _stop_session_retry(self) -> None:
        task, self._session_retry = self._session_retry, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _session_retry_loop(self) -> None:
        while self._session_unknown:
            await asyncio.sleep(self._session_retry_seconds)
            if not self._session_unknown:
                break
            try:
                await self.bootstrap()
            except Exception:
                logger.exception("Session re-check failed")

    def _start_periodic(self) -> None:
        if self._periodic is None and self._interval > 0:
            self._periodic = asyncio.ensure_future(self._periodic_loop())

    async def _stop_periodic(self) -> None:
        task, self._periodic = self._periodic, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.request_sync("periodic")
            except Exception:
                logger.exception("Periodic sync failed")

    # ------------------------------------------------------------------
    # Maintenance (share the in-flight slot with sync cycles)
    # ------------------------------------------------------------------

    async def force_pull_all(self) -> SyncReport:
        if self._inflight is not None:
            raise SyncInProgressError("A sync cycle is already running")
        task = asyncio.ensure_future(self._engine.force_pull_all())
        self._inflight = task
        try:
            return await task
        finally:
            if self._inflight is task:
                self._inflight = None

    def mark_all_unsynced(self) -> None:
        if self._inflight is not None:
            raise SyncInProgressError("A sync cycle is already running")
        self._engine.mark_all_unsynced()

    def reset_sync_state(self) -> None:
        if self._inflight is not None:
            raise SyncInProgressError("A sync cycle is already running")
        self._engine.reset_sync_state()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _bump(self) -> int:
        self._generation += 1
        return self._generation

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
