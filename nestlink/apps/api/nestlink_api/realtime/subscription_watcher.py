"""Client subscription watcher.

Holds one realtime subscription on the viewer's client subscription row and
forces a logout as soon as that row is deleted or leaves the allowed
statuses, without waiting for the next request.

STATES:
    IDLE -> SUBSCRIBING -> SUBSCRIBED -> (ERROR -> SUBSCRIBING -> SUBSCRIBED)
    any -> UNSUBSCRIBED (stop / logout)

ORDERING:
- Each event carries a version (row ``updated_at``, else commit timestamp)
- Events at or below the last applied version are dropped, so a late
  "active" cannot overwrite an earlier-delivered "canceled"

TRANSPORT ERRORS (CHANNEL_ERROR / TIMED_OUT / CLOSED):
- One reconnect attempt per error; a failed reconnect leaves the watcher in
  ERROR and never logs the user out
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from nestlink_api.auth.principal import Principal
from nestlink_api.realtime.change_feed import (
    SUBSCRIBED,
    TRANSPORT_ERROR_STATUSES,
    ChangeEvent,
    ChangeFeed,
)

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_STATUSES = frozenset({"active", "trialing"})
DEFAULT_TABLE = "tblClient_Subscription"

LogoutCallback = Callable[[], Awaitable[None]]
FetchCurrent = Callable[[], Awaitable[Optional[dict[str, Any]]]]


class WatcherState(str, Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    ERROR = "error"
    UNSUBSCRIBED = "unsubscribed"


@dataclass
class ViewerSubscriptionState:
    record_id: Optional[str] = None
    status: Optional[str] = None
    version: Optional[datetime] = None


def watch_scope_for(principal: Optional[Principal]) -> Optional[str]:
    """Client id whose subscription governs this principal's session.

    Admins are never logged out by subscription changes.
    """
    if principal is None or principal.kind == "admin":
        return None
    return principal.client_id


class ClientSubscriptionWatcher:
    def __init__(
        self,
        feed: ChangeFeed,
        client_id: str,
        on_logout: LogoutCallback,
        *,
        table: str = DEFAULT_TABLE,
        allowed_statuses: Iterable[str] = DEFAULT_ALLOWED_STATUSES,
        initial: Optional[dict[str, Any]] = None,
        fetch_current: Optional[FetchCurrent] = None,
    ):
        self.feed = feed
        self.client_id = str(client_id)
        self.table = table
        self.allowed_statuses = frozenset(allowed_statuses)
        self.state = WatcherState.IDLE
        self.current = ViewerSubscriptionState()

        self._on_logout = on_logout
        self._initial = initial
        self._fetch_current = fetch_current
        self._handle: Any = None
        self._generation = 0
        self._stopping = False
        self._logout_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def filter(self) -> str:
        return f"client_id=eq.{self.client_id}"

    @property
    def logged_out(self) -> bool:
        return self._logout_task is not None

    async def __aenter__(self) -> "ClientSubscriptionWatcher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        """Check the current status, then subscribe to changes.

        A missing or disallowed row logs the user out without subscribing.
        """
        if self.state is not WatcherState.IDLE:
            return
        self.state = WatcherState.SUBSCRIBING

        row = self._initial
        if row is None and self._fetch_current is not None:
            try:
                row = await self._fetch_current()
            except Exception as e:
                # Unknown status is treated as not allowed
                logger.warning(
                    "Failed to read current subscription",
                    extra={"event": "realtime.watcher.initial_read_failed", "client_id": self.client_id, "error": str(e)},
                )
                await self._logout_now("initial_read_failed")
                return
            if row is None:
                await self._logout_now("missing")
                return

        if row is not None:
            self.handle_event(ChangeEvent.snapshot(row))
            if self._logout_task is not None:
                await self._logout_task
                return

        if self._stopping:
            return
        await self._subscribe()

    async def _subscribe(self) -> bool:
        self._generation += 1
        generation = self._generation

        def on_status(status: str, error: Optional[Exception] = None) -> None:
            self._on_status(generation, status, error)

        try:
            handle = await self.feed.subscribe(
                table=self.table,
                filter=self.filter,
                on_event=self.handle_event,
                on_status=on_status,
            )
        except Exception as e:
            logger.warning(
                "Realtime subscribe failed",
                extra={"event": "realtime.watcher.subscribe_failed", "client_id": self.client_id, "error": str(e)},
            )
            if not self._stopping:
                self.state = WatcherState.ERROR
            return False

        if self._stopping:
            # stop() ran while the channel was being established
            await self._release(handle)
            return False

        self._handle = handle
        self.state = WatcherState.SUBSCRIBED
        logger.info(
            "Subscription watcher active",
            extra={"event": "realtime.watcher.subscribed", "client_id": self.client_id},
        )
        return True

    def handle_event(self, event: ChangeEvent) -> None:
        """Apply one change. Never blocks; logout runs as a task."""
        if self._stopping or self._logout_task is not None:
            return

        row = event.row
        row_client_id = row.get("client_id")
        if row_client_id is not None and str(row_client_id) != self.client_id:
            return

        version = event.version
        if version is not None and self.current.version is not None and version <= self.current.version:
            logger.debug(
                "Stale subscription event dropped",
                extra={"event": "realtime.watcher.stale_event", "type": event.type},
            )
            return

        if event.type == "DELETE":
            self.current = ViewerSubscriptionState(version=version or self.current.version)
            self._schedule_logout("deleted")
            return

        status = event.record.get("status")
        self.current = ViewerSubscriptionState(
            record_id=str(event.record["id"]) if event.record.get("id") is not None else self.current.record_id,
            status=status,
            version=version or self.current.version,
        )
        if status not in self.allowed_statuses:
            self._schedule_logout(f"status:{status}")

    def _on_status(self, generation: int, status: str, error: Optional[Exception]) -> None:
        if generation != self._generation or self._stopping or self._logout_task is not None:
            return
        if status == SUBSCRIBED:
            self.state = WatcherState.SUBSCRIBED
            return
        if status not in TRANSPORT_ERROR_STATUSES:
            return

        logger.warning(
            "Realtime transport error",
            extra={
                "event": "realtime.watcher.transport_error",
                "client_id": self.client_id,
                "status": status,
                "error": str(error) if error else None,
            },
        )
        self.state = WatcherState.ERROR
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        old, self._handle = self._handle, None
        # Statuses from the old channel (its CLOSED included) are ignored from here on
        self._generation += 1
        if old is not None:
            await self._release(old)
        if self._stopping:
            return

        self.state = WatcherState.SUBSCRIBING
        if await self._subscribe():
            logger.info("Realtime reconnected", extra={"event": "realtime.watcher.reconnected", "client_id": self.client_id})
        elif not self._stopping:
            self.state = WatcherState.ERROR
            logger.error(
                "Realtime reconnect failed",
                extra={"event": "realtime.watcher.reconnect_failed", "client_id": self.client_id},
            )

    def _schedule_logout(self, reason: str) -> None:
        if self._logout_task is not None:
            return
        self._logout_task = asyncio.get_running_loop().create_task(self._logout(reason))

    async def _logout_now(self, reason: str) -> None:
        self._schedule_logout(reason)
        await self._logout_task

    async def _logout(self, reason: str) -> None:
        logger.info(
            "Subscription no longer allowed; logging out",
            extra={"event": "realtime.watcher.logout", "client_id": self.client_id, "reason": reason},
        )
        try:
            await self._on_logout()
        except Exception as e:
            logger.error(
                "Logout callback failed",
                extra={"event": "realtime.watcher.logout_failed", "client_id": self.client_id, "error": str(e)},
            )
        finally:
            await self.stop()

    async def _release(self, handle: Any) -> None:
        try:
            await self.feed.unsubscribe(handle)
        except Exception as e:
            logger.warning(
                "Realtime unsubscribe failed",
                extra={"event": "realtime.watcher.unsubscribe_failed", "client_id": self.client_id, "error": str(e)},
            )

    async def stop(self) -> None:
        """Release the subscription. Safe to call repeatedly and mid-subscribe."""
        self._stopping = True
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        handle, self._handle = self._handle, None
        if handle is not None:
            await self._release(handle)

        if self.state is not WatcherState.UNSUBSCRIBED:
            self.state = WatcherState.UNSUBSCRIBED
            self.current = ViewerSubscriptionState()
            logger.info("Subscription watcher stopped", extra={"event": "realtime.watcher.stopped", "client_id": self.client_id})

    async def wait_idle(self) -> None:
        """Wait for any scheduled logout or reconnect to finish."""
        for task in (self._logout_task, self._reconnect_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                await task
