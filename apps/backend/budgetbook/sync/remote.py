"""Contracts for the collaborators the sync subsystem talks to.

The engine, realtime listener and coordinator only depend on these
abstractions; ``supabase_backend`` provides the production implementation
and the test-suite provides in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"

    @classmethod
    def parse(cls, value: Any) -> "AuthEvent | None":
        raw = getattr(value, "value", value)
        try:
            return cls(str(raw).upper())
        except ValueError:
            return None


@dataclass(frozen=True)
class AuthSession:
    user_id: str
    access_token: str = ""


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    """A single row change pushed by the remote realtime channel."""

    event_type: ChangeType
    table: str
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)

    @property
    def row_id(self) -> str | None:
        source = self.old if self.event_type is ChangeType.DELETE else self.new
        value = source.get("id") if source else None
        return str(value) if value is not None else None


AuthCallback = Callable[[AuthEvent, "AuthSession | None"], None]
ChangeCallback = Callable[[ChangeEvent], None]


class IdentityProvider(ABC):
    """Session contract of the external identity provider."""

    @abstractmethod
    async def get_session(self) -> AuthSession | None:
        ...

    @abstractmethod
    def on_auth_state_change(self, callback: AuthCallback) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""

    @abstractmethod
    async def set_session(self, access_token: str, refresh_token: str) -> AuthSession:
        """Adopt tokens issued by the login screen; raises ``RemoteError``."""

    @abstractmethod
    async def sign_out(self) -> None:
        ...


class RemoteBackend(ABC):
    """Per-table data API of the remote authoritative store.

    Implementations raise :class:`budgetbook.errors.RemoteError` for any
    network or API failure.
    """

    @abstractmethod
    async def select(
        self,
        table: str,
        *,
        updated_after: datetime | None = None,
        ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def upsert(self, table: str, rows: list[dict[str, Any]]) -> None:
        ...

    @abstractmethod
    async def delete(self, table: str, item_id: str) -> None:
        ...

    @abstractmethod
    async def subscribe(self, table: str, user_id: str, callback: ChangeCallback) -> Any:
        """Open a push channel for ``table`` filtered to ``user_id`` rows."""

    @abstractmethod
    async def unsubscribe(self, handle: Any) -> None:
        ...
