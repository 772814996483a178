"""Authenticated session context.

Owns everything tied to one signed-in user: the RLS-scoped Supabase client,
the resolved principal and the subscription watcher. Sessions are built
explicitly and passed to whatever needs them; there is no global auth state.

Usage:
    async with AuthenticatedSession(client, principal, tables=tables) as session:
        ...
"""

import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from supabase import AsyncClient

from nestlink_api.auth.principal import Principal
from nestlink_api.config.tables import Tables
from nestlink_api.realtime.change_feed import ChangeFeed, SupabaseChangeFeed
from nestlink_api.realtime.subscription_watcher import (
    DEFAULT_ALLOWED_STATUSES,
    ClientSubscriptionWatcher,
    watch_scope_for,
)
from nestlink_api.supabase_client import create_user_client

logger = logging.getLogger(__name__)


class AuthenticatedSession:
    def __init__(
        self,
        client: AsyncClient,
        principal: Principal,
        *,
        tables: Tables,
        feed: Optional[ChangeFeed] = None,
        allowed_statuses: Iterable[str] = DEFAULT_ALLOWED_STATUSES,
        on_signed_out: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.client = client
        self.principal = principal
        self.tables = tables
        self.feed = feed or SupabaseChangeFeed(client)
        self.allowed_statuses = frozenset(allowed_statuses)
        self.watcher: Optional[ClientSubscriptionWatcher] = None
        self._on_signed_out = on_signed_out
        self._signed_out = False
        self._closed = False

    @classmethod
    async def connect(
        cls,
        access_token: str,
        principal: Principal,
        *,
        tables: Tables,
        refresh_token: str = "",
        **kwargs: Any,
    ) -> "AuthenticatedSession":
        client = await create_user_client(access_token, refresh_token)
        return cls(client, principal, tables=tables, **kwargs)

    @property
    def signed_out(self) -> bool:
        return self._signed_out

    async def __aenter__(self) -> "AuthenticatedSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _current_subscription(self, client_id: str) -> Optional[dict[str, Any]]:
        response = await (
            self.client.table(self.tables.client_subscription)
            .select("id, client_id, status, updated_at")
            .eq("client_id", client_id)
            .order("updated_at", desc=True)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def open(self) -> None:
        """Start watching the principal's client subscription, if any."""
        client_id = watch_scope_for(self.principal)
        if client_id is None:
            return

        async def fetch_current() -> Optional[dict[str, Any]]:
            return await self._current_subscription(client_id)

        self.watcher = ClientSubscriptionWatcher(
            self.feed,
            client_id,
            self.logout,
            table=self.tables.client_subscription,
            allowed_statuses=self.allowed_statuses,
            fetch_current=fetch_current,
        )
        await self.watcher.start()

    async def logout(self) -> None:
        """Sign out and tear down. Idempotent."""
        if self._signed_out:
            return
        self._signed_out = True
        try:
            await self.client.auth.sign_out()
        except Exception as e:
            logger.warning("Sign-out failed", extra={"event": "session.sign_out_failed", "error": str(e)})

        logger.info(
            "Session signed out",
            extra={"event": "session.signed_out", "kind": self.principal.kind},
        )
        if self._on_signed_out is not None:
            await self._on_signed_out()
        await self.close()

    async def close(self) -> None:
        """Release the watcher. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self.watcher is not None:
            await self.watcher.stop()
