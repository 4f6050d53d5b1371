"""Supabase implementations of the remote contracts.

Tables are reached through PostgREST (``client.table(...)``), pushes
through Realtime ``postgres_changes`` channels and sessions through
Supabase Auth. Every API/network failure is re-raised as ``RemoteError``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, AuthError, acreate_client

from budgetbook.core.config import Settings
from budgetbook.errors import RemoteError, SyncDisabledError
from budgetbook.sync.mappers import to_iso
from budgetbook.sync.remote import (
    AuthCallback,
    AuthEvent,
    AuthSession,
    ChangeCallback,
    ChangeEvent,
    ChangeType,
    IdentityProvider,
    RemoteBackend,
)

logger = logging.getLogger(__name__)

_REMOTE_FAILURES = (APIError, httpx.HTTPError)
_AUTH_FAILURES = (AuthError, httpx.HTTPError)


async def create_supabase(settings: Settings) -> AsyncClient:
    if not settings.sync_enabled:
        raise SyncDisabledError("BUDGETBOOK_SUPABASE_URL and BUDGETBOOK_SUPABASE_ANON_KEY must be set")
    return await acreate_client(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)


def _to_session(raw: Any) -> AuthSession | None:
    if raw is None:
        return None
    user = getattr(raw, "user", None)
    user_id = getattr(user, "id", None)
    if not user_id:
        return None
    return AuthSession(user_id=str(user_id), access_token=getattr(raw, "access_token", "") or "")


def normalize_change(table: str, payload: Any) -> ChangeEvent | None:
    """Build a ChangeEvent from either realtime payload shape.

    Accepts ``{"eventType", "new", "old"}`` as well as the nested
    ``{"data": {"type", "record", "old_record"}}`` form.
    """
    if not isinstance(payload, dict):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    kind = data.get("eventType") or data.get("type")
    try:
        event_type = ChangeType(str(kind).upper())
    except ValueError:
        return None
    new = data.get("new") if "new" in data else data.get("record")
    old = data.get("old") if "old" in data else data.get("old_record")
    return ChangeEvent(
        event_type=event_type,
        table=data.get("table") or table,
        new=dict(new or {}),
        old=dict(old or {}),
    )


class SupabaseIdentity(IdentityProvider):
    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    async def get_session(self) -> AuthSession | None:
        try:
            raw = await self._client.auth.get_session()
        except _AUTH_FAILURES as exc:
            raise RemoteError(f"get_session failed: {exc}") from exc
        return _to_session(raw)

    def on_auth_state_change(self, callback: AuthCallback) -> Callable[[], None]:
        def _relay(event: Any, session: Any) -> None:
            parsed = AuthEvent.parse(event)
            if parsed is None:
                logger.debug("Ignoring auth event %r", event)
                return
            callback(parsed, _to_session(session))

        subscription = self._client.auth.on_auth_state_change(_relay)
        return subscription.unsubscribe

    async def set_session(self, access_token: str, refresh_token: str) -> AuthSession:
        try:
            response = await self._client.auth.set_session(access_token, refresh_token)
        except _AUTH_FAILURES as exc:
            raise RemoteError(f"set_session failed: {exc}") from exc
        session = _to_session(getattr(response, "session", None))
        if session is None:
            raise RemoteError("set_session returned no session")
        return session

    async def sign_out(self) -> None:
        try:
            await self._client.auth.sign_out()
        except _AUTH_FAILURES as exc:
            raise RemoteError(f"sign_out failed: {exc}") from exc


class SupabaseBackend(RemoteBackend):
    def __init__(self, client: AsyncClient, *, schema: str = "public") -> None:
        self._client = client
        self._schema = schema

    async def select(
        self,
        table: str,
        *,
        updated_after: datetime | None = None,
        ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        query = self._client.table(table).select("*")
        if updated_after is not None:
            query = query.gt("updated_at", to_iso(updated_after))
        if ids is not None:
            if not ids:
                return []
            query = query.in_("id", ids)
        try:
            resp = await query.execute()
        except _REMOTE_FAILURES as exc:
            raise RemoteError(f"select {table} failed: {exc}", table=table) from exc
        return list(resp.data or [])

    async def upsert(self, table: str, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        try:
            await self._client.table(table).upsert(rows).execute()
        except _REMOTE_FAILURES as exc:
            raise RemoteError(f"upsert {table} failed: {exc}", table=table) from exc

    async def delete(self, table: str, item_id: str) -> None:
        try:
            await self._client.table(table).delete().eq("id", item_id).execute()
        except _REMOTE_FAILURES as exc:
            raise RemoteError(f"delete {table}/{item_id} failed: {exc}", table=table) from exc

    async def subscribe(self, table: str, user_id: str, callback: ChangeCallback) -> Any:
        def _on_change(payload: Any) -> None:
            event = normalize_change(table, payload)
            if event is None:
                logger.warning("Unrecognised realtime payload on %s dropped", table)
                return
            callback(event)

        channel = self._client.channel(f"{table}-changes")
        channel.on_postgres_changes(
            "*",
            schema=self._schema,
            table=table,
            filter=f"user_id=eq.{user_id}",
            callback=_on_change,
        )
        try:
            await channel.subscribe()
        except Exception as exc:
            raise RemoteError(f"subscribe {table} failed: {exc}", table=table) from exc
        return channel

    async def unsubscribe(self, handle: Any) -> None:
        try:
            await self._client.remove_channel(handle)
        except Exception as exc:
            raise RemoteError(f"unsubscribe failed: {exc}") from exc
