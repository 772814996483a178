"""Row change feed over Supabase Realtime.

The watcher only depends on the ``ChangeFeed`` protocol; tests drive it with
an in-memory feed.

Payload shapes accepted by ``ChangeEvent.from_payload``:
- realtime-py: ``{"data": {"type", "record", "old_record", "commit_timestamp", ...}, "ids": [...]}``
- supabase-js style: ``{"eventType", "new", "old", "commit_timestamp"}``
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from supabase import AsyncClient

logger = logging.getLogger(__name__)

EventCallback = Callable[["ChangeEvent"], None]
StatusCallback = Callable[[str, Optional[Exception]], None]

SUBSCRIBED = "SUBSCRIBED"
TRANSPORT_ERROR_STATUSES = frozenset({"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"})


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; the result is always timezone-aware.

    ``timestamp without time zone`` columns arrive naive and are taken as
    UTC, so row versions stay comparable with realtime commit timestamps.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        # Postgres emits "+00:00" or a bare "Z"
        text = value.replace("Z", "+00:00") if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ChangeEvent:
    type: str
    record: dict[str, Any] = field(default_factory=dict)
    old_record: dict[str, Any] = field(default_factory=dict)
    commit_timestamp: Optional[datetime] = None

    @property
    def row(self) -> dict[str, Any]:
        return self.record or self.old_record

    @property
    def version(self) -> Optional[datetime]:
        """Ordering key: row ``updated_at``, else the commit timestamp."""
        return parse_timestamp(self.row.get("updated_at")) or self.commit_timestamp

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent":
        data = payload.get("data")
        if isinstance(data, dict):
            return cls(
                type=str(data.get("type") or data.get("eventType") or "").upper(),
                record=data.get("record") or {},
                old_record=data.get("old_record") or {},
                commit_timestamp=parse_timestamp(data.get("commit_timestamp")),
            )
        return cls(
            type=str(payload.get("eventType") or payload.get("type") or "").upper(),
            record=payload.get("new") or payload.get("record") or {},
            old_record=payload.get("old") or payload.get("old_record") or {},
            commit_timestamp=parse_timestamp(payload.get("commit_timestamp")),
        )

    @classmethod
    def snapshot(cls, row: dict[str, Any]) -> "ChangeEvent":
        """Current row read directly from the table, treated as an UPDATE."""
        return cls(type="UPDATE", record=row)


class ChangeFeed(Protocol):
    async def subscribe(
        self,
        *,
        table: str,
        filter: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> Any:
        """Start delivering changes for ``table`` rows matching ``filter``; return a handle."""

    async def unsubscribe(self, handle: Any) -> None:
        """Release ``handle``. Must tolerate handles that never became active."""


class SupabaseChangeFeed:
    def __init__(self, client: AsyncClient, *, schema: str = "public"):
        self._client = client
        self.schema = schema

    async def subscribe(
        self,
        *,
        table: str,
        filter: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> Any:
        channel = self._client.channel(f"{table}:{filter}:{uuid.uuid4().hex[:8]}")

        def _on_change(payload: dict[str, Any]) -> None:
            on_event(ChangeEvent.from_payload(payload))

        def _on_subscribe(state: Any, error: Optional[Exception] = None) -> None:
            on_status(str(getattr(state, "value", state)), error)

        channel.on_postgres_changes("*", callback=_on_change, table=table, schema=self.schema, filter=filter)
        await channel.subscribe(_on_subscribe)
        logger.debug("Realtime channel subscribing", extra={"event": "realtime.channel.subscribe", "table": table})
        return channel

    async def unsubscribe(self, handle: Any) -> None:
        await self._client.remove_channel(handle)
