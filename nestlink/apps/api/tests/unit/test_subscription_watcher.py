"""Tests for the client subscription watcher.

Test Coverage:
1. Out-of-order events keep the greatest updated_at
2. DELETE / disallowed status -> exactly one logout
3. Transport errors reconnect once; failed reconnect never logs out
4. stop() releases the handle, including mid-subscribe
5. Payload normalisation for both realtime payload shapes
6. watch_scope_for per principal kind
7. Naive row timestamps order against UTC commit timestamps
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from nestlink_api.auth.principal import (
    AdminPrincipal,
    ClientMemberPrincipal,
    ClientPrincipal,
    TenantPrincipal,
)
from nestlink_api.realtime.change_feed import ChangeEvent, parse_timestamp
from nestlink_api.realtime.subscription_watcher import (
    ClientSubscriptionWatcher,
    WatcherState,
    watch_scope_for,
)

CLIENT_ID = "client-1"


class FakeChangeFeed:
    """In-memory change feed with controllable subscribe behaviour."""

    def __init__(self):
        self.subscriptions: list[dict[str, Any]] = []
        self.released: list[int] = []
        self.fail_subscribe = 0
        self.gate: Optional[asyncio.Event] = None

    async def subscribe(self, *, table, filter, on_event, on_status):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_subscribe > 0:
            self.fail_subscribe -= 1
            raise ConnectionError("socket closed")
        handle = len(self.subscriptions)
        self.subscriptions.append({"table": table, "filter": filter, "on_event": on_event, "on_status": on_status})
        return handle

    async def unsubscribe(self, handle) -> None:
        self.released.append(handle)

    def emit(self, payload: dict[str, Any], handle: int = -1) -> None:
        self.subscriptions[handle]["on_event"](ChangeEvent.from_payload(payload))

    def status(self, status: str, handle: int = -1) -> None:
        self.subscriptions[handle]["on_status"](status, None)


def update(status: str, updated_at: str, client_id: str = CLIENT_ID) -> dict[str, Any]:
    return {
        "data": {
            "type": "UPDATE",
            "record": {"id": "sub-1", "client_id": client_id, "status": status, "updated_at": updated_at},
            "old_record": {"id": "sub-1"},
            "commit_timestamp": updated_at,
        },
        "ids": [1],
    }


class LogoutRecorder:
    def __init__(self):
        self.calls = 0

    async def __call__(self) -> None:
        self.calls += 1


@pytest.fixture
def feed() -> FakeChangeFeed:
    return FakeChangeFeed()


@pytest.fixture
def logout() -> LogoutRecorder:
    return LogoutRecorder()


@pytest.fixture
def watcher(feed, logout) -> ClientSubscriptionWatcher:
    return ClientSubscriptionWatcher(feed, CLIENT_ID, logout, table="tblClient_Subscription")


@pytest.mark.asyncio
async def test_subscribes_with_client_filter(watcher, feed) -> None:
    await watcher.start()
    assert watcher.state is WatcherState.SUBSCRIBED
    assert feed.subscriptions[0]["table"] == "tblClient_Subscription"
    assert feed.subscriptions[0]["filter"] == "client_id=eq.client-1"


@pytest.mark.asyncio
async def test_out_of_order_events_keep_latest(watcher, feed, logout) -> None:
    await watcher.start()

    feed.emit(update("active", "2026-03-01T10:00:02+00:00"))
    feed.emit(update("past_due", "2026-03-01T10:00:01+00:00"))
    await watcher.wait_idle()

    assert watcher.current.status == "active"
    assert logout.calls == 0


@pytest.mark.asyncio
async def test_late_active_does_not_undo_cancellation(watcher, feed, logout) -> None:
    await watcher.start()

    feed.emit(update("canceled", "2026-03-01T10:00:05Z"))
    feed.emit(update("active", "2026-03-01T10:00:01Z"))
    await watcher.wait_idle()

    assert logout.calls == 1
    assert watcher.state is WatcherState.UNSUBSCRIBED


@pytest.mark.asyncio
async def test_equal_version_is_dropped(watcher, feed, logout) -> None:
    await watcher.start()
    feed.emit(update("active", "2026-03-01T10:00:00Z"))
    feed.emit(update("canceled", "2026-03-01T10:00:00Z"))
    await watcher.wait_idle()
    assert logout.calls == 0


@pytest.mark.asyncio
async def test_disallowed_status_logs_out_once(watcher, feed, logout) -> None:
    await watcher.start()

    feed.emit(update("past_due", "2026-03-01T10:00:01Z"))
    feed.emit(update("canceled", "2026-03-01T10:00:02Z"))
    await watcher.wait_idle()

    assert logout.calls == 1
    assert feed.released == [0]
    assert watcher.current.status is None


@pytest.mark.asyncio
async def test_trialing_is_allowed(watcher, feed, logout) -> None:
    await watcher.start()
    feed.emit(update("trialing", "2026-03-01T10:00:01Z"))
    await watcher.wait_idle()
    assert logout.calls == 0
    assert watcher.current.status == "trialing"


@pytest.mark.asyncio
async def test_delete_logs_out(watcher, feed, logout) -> None:
    await watcher.start()
    feed.emit({"eventType": "DELETE", "new": {}, "old": {"id": "sub-1", "client_id": CLIENT_ID}})
    await watcher.wait_idle()
    assert logout.calls == 1


@pytest.mark.asyncio
async def test_delete_after_naive_row_timestamp_logs_out(watcher, feed, logout) -> None:
    await watcher.start()

    # timestamp-without-time-zone column, realtime commit timestamps in UTC
    feed.emit(
        {
            "data": {
                "type": "UPDATE",
                "record": {"id": "sub-1", "client_id": CLIENT_ID, "status": "active", "updated_at": "2026-03-01T10:00:00"},
                "old_record": {"id": "sub-1"},
                "commit_timestamp": "2026-03-01T10:00:00.010Z",
            },
            "ids": [1],
        }
    )
    feed.emit(
        {
            "data": {
                "type": "DELETE",
                "record": {},
                "old_record": {"id": "sub-1"},
                "commit_timestamp": "2026-03-01T10:05:00Z",
            },
            "ids": [1],
        }
    )
    await watcher.wait_idle()

    assert logout.calls == 1
    assert watcher.state is WatcherState.UNSUBSCRIBED


@pytest.mark.asyncio
async def test_naive_initial_row_orders_against_commit_timestamps(feed, logout) -> None:
    watcher = ClientSubscriptionWatcher(
        feed,
        CLIENT_ID,
        logout,
        initial={"id": "sub-1", "client_id": CLIENT_ID, "status": "active", "updated_at": "2026-03-01T10:00:00"},
    )
    await watcher.start()

    feed.emit({"eventType": "DELETE", "new": {}, "old": {"id": "sub-1"}, "commit_timestamp": "2026-03-01T09:59:00Z"})
    await watcher.wait_idle()
    assert logout.calls == 0

    feed.emit({"eventType": "DELETE", "new": {}, "old": {"id": "sub-1"}, "commit_timestamp": "2026-03-01T10:01:00Z"})
    await watcher.wait_idle()
    assert logout.calls == 1


@pytest.mark.asyncio
async def test_other_clients_rows_are_ignored(watcher, feed, logout) -> None:
    await watcher.start()
    feed.emit(update("canceled", "2026-03-01T10:00:01Z", client_id="client-2"))
    await watcher.wait_idle()
    assert logout.calls == 0


@pytest.mark.asyncio
async def test_initial_disallowed_status_skips_subscription(feed, logout) -> None:
    watcher = ClientSubscriptionWatcher(
        feed, CLIENT_ID, logout, initial={"id": "sub-1", "client_id": CLIENT_ID, "status": "expired"}
    )
    await watcher.start()
    assert logout.calls == 1
    assert feed.subscriptions == []
    assert watcher.state is WatcherState.UNSUBSCRIBED


@pytest.mark.asyncio
async def test_missing_current_row_logs_out(feed, logout) -> None:
    async def fetch_current():
        return None

    watcher = ClientSubscriptionWatcher(feed, CLIENT_ID, logout, fetch_current=fetch_current)
    await watcher.start()
    assert logout.calls == 1
    assert feed.subscriptions == []


@pytest.mark.asyncio
async def test_initial_version_orders_later_events(feed, logout) -> None:
    watcher = ClientSubscriptionWatcher(
        feed,
        CLIENT_ID,
        logout,
        initial={"id": "sub-1", "client_id": CLIENT_ID, "status": "active", "updated_at": "2026-03-01T12:00:00Z"},
    )
    await watcher.start()
    feed.emit(update("canceled", "2026-03-01T11:00:00Z"))
    await watcher.wait_idle()
    assert logout.calls == 0
    assert watcher.current.status == "active"


@pytest.mark.asyncio
async def test_logout_callback_failure_still_stops(feed) -> None:
    async def failing_logout():
        raise RuntimeError("sign-out endpoint down")

    watcher = ClientSubscriptionWatcher(feed, CLIENT_ID, failing_logout)
    await watcher.start()
    feed.emit(update("canceled", "2026-03-01T10:00:01Z"))
    await watcher.wait_idle()
    assert watcher.state is WatcherState.UNSUBSCRIBED
    assert feed.released == [0]


@pytest.mark.asyncio
async def test_transport_error_reconnects_once(watcher, feed, logout) -> None:
    await watcher.start()

    feed.status("CHANNEL_ERROR", handle=0)
    assert watcher.state is WatcherState.ERROR
    await watcher.wait_idle()

    assert watcher.state is WatcherState.SUBSCRIBED
    assert len(feed.subscriptions) == 2
    assert feed.released == [0]

    # Late statuses from the released channel are ignored
    feed.status("CLOSED", handle=0)
    await watcher.wait_idle()
    assert len(feed.subscriptions) == 2
    assert logout.calls == 0


@pytest.mark.asyncio
async def test_failed_reconnect_stays_in_error_without_logout(watcher, feed, logout) -> None:
    await watcher.start()
    feed.fail_subscribe = 1

    feed.status("TIMED_OUT", handle=0)
    await watcher.wait_idle()

    assert watcher.state is WatcherState.ERROR
    assert logout.calls == 0
    assert len(feed.subscriptions) == 1


@pytest.mark.asyncio
async def test_stop_is_idempotent(watcher, feed) -> None:
    await watcher.start()
    await watcher.stop()
    await watcher.stop()
    assert feed.released == [0]
    assert watcher.state is WatcherState.UNSUBSCRIBED


@pytest.mark.asyncio
async def test_stop_during_subscribe_releases_handle(watcher, feed) -> None:
    feed.gate = asyncio.Event()
    start = asyncio.create_task(watcher.start())
    await asyncio.sleep(0)
    assert watcher.state is WatcherState.SUBSCRIBING

    await watcher.stop()
    feed.gate.set()
    await start

    assert feed.released == [0]
    assert watcher.state is WatcherState.UNSUBSCRIBED


@pytest.mark.asyncio
async def test_events_after_stop_are_ignored(watcher, feed, logout) -> None:
    await watcher.start()
    on_event = feed.subscriptions[0]["on_event"]
    await watcher.stop()

    on_event(ChangeEvent.from_payload(update("canceled", "2026-03-01T10:00:01Z")))
    await watcher.wait_idle()
    assert logout.calls == 0


@pytest.mark.asyncio
async def test_context_manager_stops_on_exit(feed, logout) -> None:
    async with ClientSubscriptionWatcher(feed, CLIENT_ID, logout) as watcher:
        assert watcher.state is WatcherState.SUBSCRIBED
    assert watcher.state is WatcherState.UNSUBSCRIBED
    assert feed.released == [0]


def test_change_event_from_js_payload() -> None:
    event = ChangeEvent.from_payload(
        {
            "eventType": "UPDATE",
            "new": {"id": 1, "client_id": CLIENT_ID, "status": "active"},
            "old": {"id": 1},
            "commit_timestamp": "2026-03-01T10:00:00.123Z",
        }
    )
    assert event.type == "UPDATE"
    assert event.record["status"] == "active"
    # No updated_at column: the commit timestamp orders events
    assert event.version.isoformat() == "2026-03-01T10:00:00.123000+00:00"


def test_change_event_prefers_updated_at() -> None:
    payload = update("active", "2026-03-01T09:00:00+00:00")
    payload["data"]["commit_timestamp"] = "2026-03-01T10:00:00+00:00"
    event = ChangeEvent.from_payload(payload)
    assert event.version.hour == 9


def test_watch_scope_for_each_principal() -> None:
    assert watch_scope_for(AdminPrincipal(user_id="u", record={"id": "a"})) is None
    assert watch_scope_for(ClientPrincipal(user_id="u", record={"id": "c-1"})) == "c-1"
    assert watch_scope_for(ClientMemberPrincipal(user_id="u", record={"id": "m", "client_id": "c-2"})) == "c-2"
    assert watch_scope_for(TenantPrincipal(user_id="u", record={"id": "t", "client_id": "c-3"})) == "c-3"
    assert watch_scope_for(TenantPrincipal(user_id="u", record={"id": "t"})) is None
    assert watch_scope_for(None) is None


@pytest.mark.parametrize(
    "value",
    ["2026-03-01T10:00:00", "2026-03-01T10:00:00Z", "2026-03-01T10:00:00+00:00", datetime(2026, 3, 1, 10)],
)
def test_parse_timestamp_is_always_aware(value) -> None:
    assert parse_timestamp(value) == datetime(2026, 3, 1, 10, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", [None, "", "not a date", 1700000000])
def test_parse_timestamp_rejects_garbage(value) -> None:
    assert parse_timestamp(value) is None
