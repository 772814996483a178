"""Server action log.

Operator-facing record of batch jobs and workflow steps, stored in the
server logs table. Recording is best effort: a failed insert is logged as a
warning and never interrupts the action being recorded.
"""

import logging
from typing import Any, Literal, Optional, Protocol

from supabase import AsyncClient

from nestlink_api.config.tables import Tables
from nestlink_api.utils.sanitize import sanitize_obj

logger = logging.getLogger(__name__)

LogType = Literal["api", "db", "auth", "cron", "webhook", "action", "email", "external", "internal", "system"]
LogStatus = Literal["success", "fail"]


class ActionLog(Protocol):
    async def record(
        self,
        action: str,
        *,
        status: LogStatus,
        type: LogType,
        payload: Optional[dict[str, Any]] = None,
        error: str = "",
        duration_ms: int = 0,
        user_id: Optional[str] = None,
    ) -> None: ...


class ServerActionLog:
    def __init__(self, client: AsyncClient, tables: Tables):
        self._client = client
        self._tables = tables

    async def record(
        self,
        action: str,
        *,
        status: LogStatus,
        type: LogType,
        payload: Optional[dict[str, Any]] = None,
        error: str = "",
        duration_ms: int = 0,
        user_id: Optional[str] = None,
    ) -> None:
        row = {
            "action": action,
            "status": status,
            "type": type,
            "payload": sanitize_obj(payload or {}),
            "error": error,
            "duration_ms": duration_ms,
            "user_id": user_id,
        }
        try:
            await self._client.table(self._tables.server_logs).insert(row).execute()
        except Exception as e:
            logger.warning(
                "Server action log insert failed",
                extra={"event": "server_log.insert_failed", "action": action, "error": str(e)},
            )
