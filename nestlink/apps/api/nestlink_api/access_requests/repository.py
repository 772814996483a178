"""Supabase-backed persistence for the access request workflow.

Status transitions are compare-and-swap updates
(``UPDATE ... WHERE id = :id AND status = :from``): PostgREST returns the
updated rows, and an empty result means another caller won the race.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from supabase import AsyncClient

from nestlink_api.access_requests.models import AccessRequest
from nestlink_api.config.tables import Tables
from nestlink_api.errors import UpstreamError
from nestlink_api.supabase_client import STORE_ERRORS, store_error_message

logger = logging.getLogger(__name__)

USER_SCAN_PAGE_SIZE = 200
USER_SCAN_MAX_PAGES = 50


def _store_error(operation: str, exc: Exception) -> UpstreamError:
    logger.error(
        "Supabase operation failed",
        extra={"event": "store.error", "operation": operation, "error": str(exc)},
    )
    return UpstreamError(f"Failed to {operation}", provider="supabase")


class AccessRequestRepository:
    def __init__(self, client: AsyncClient, tables: Tables):
        self._client = client
        self._tables = tables

    async def create(self, fields: dict[str, Any]) -> AccessRequest:
        row = {**fields, "status": "pending"}
        try:
            response = await self._client.table(self._tables.access_requests).insert(row).execute()
        except STORE_ERRORS as e:
            raise _store_error("store access request", e)
        if not response.data:
            raise UpstreamError("Failed to store access request", provider="supabase")
        return AccessRequest.from_row(response.data[0])

    async def get(self, access_request_id: str) -> Optional[AccessRequest]:
        try:
            response = await (
                self._client.table(self._tables.access_requests)
                .select("*")
                .eq("id", access_request_id)
                .limit(1)
                .execute()
            )
        except STORE_ERRORS as e:
            raise _store_error("load access request", e)
        if not response.data:
            return None
        return AccessRequest.from_row(response.data[0])

    async def transition(
        self,
        access_request_id: str,
        from_status: str,
        to_status: str,
        **fields: Any,
    ) -> Optional[AccessRequest]:
        """Conditionally move a request between statuses.

        Returns the updated record, or None if the current status was not
        ``from_status`` (including when the row does not exist).
        """
        update = {**fields, "status": to_status}
        if to_status == "pending":
            update["resolved_at"] = None
        else:
            update.setdefault("resolved_at", datetime.now(timezone.utc).isoformat())
        try:
            response = await (
                self._client.table(self._tables.access_requests)
                .update(update)
                .eq("id", access_request_id)
                .eq("status", from_status)
                .execute()
            )
        except STORE_ERRORS as e:
            raise _store_error("update access request status", e)
        if not response.data:
            return None
        return AccessRequest.from_row(response.data[0])

    async def set_user_id(self, access_request_id: str, user_id: str) -> None:
        try:
            await (
                self._client.table(self._tables.access_requests)
                .update({"user_id": user_id})
                .eq("id", access_request_id)
                .execute()
            )
        except STORE_ERRORS as e:
            raise _store_error("link provisioned user", e)

    async def building_owner_email(self, building_id: str) -> Optional[str]:
        """Email of the client that owns ``building_id``, if any."""
        building = await (
            self._client.table(self._tables.buildings)
            .select("client_id")
            .eq("id", building_id)
            .limit(1)
            .execute()
        )
        client_id = building.data[0].get("client_id") if building.data else None
        if not client_id:
            return None
        client = await (
            self._client.table(self._tables.clients)
            .select("email")
            .eq("id", client_id)
            .limit(1)
            .execute()
        )
        return (client.data[0].get("email") or None) if client.data else None


class TenantProvisioner:
    """Creates the auth user and tenant row for an approved request."""

    def __init__(self, client: AsyncClient, tables: Tables):
        self._client = client
        self._tables = tables

    async def create_user(self, *, email: str, password: str, name: str, access_request_id: str) -> str:
        try:
            response = await self._client.auth.admin.create_user(
                {
                    "email": email,
                    "password": password,
                    "email_confirm": True,
                    "user_metadata": {
                        "name": name,
                        "requested_via": "access-request",
                        "access_request_id": access_request_id,
                    },
                }
            )
        except Exception as e:
            raise UpstreamError(f"Failed to create user: {e}", provider="supabase_auth")
        if not response or not response.user:
            raise UpstreamError("Failed to create user", provider="supabase_auth")
        return response.user.id

    async def delete_user(self, user_id: str) -> None:
        try:
            await self._client.auth.admin.delete_user(user_id)
        except Exception as e:
            raise UpstreamError(f"Failed to delete user: {e}", provider="supabase_auth")

    async def find_user_id(self, *, email: str, access_request_id: str) -> Optional[str]:
        """Id of the auth user created for ``access_request_id``, if any.

        Finds users whose creation call failed client side (timeout, dropped
        connection) after the server had already committed them. A user with
        the same email but created any other way is never returned.
        """
        email = email.lower()
        for page in range(1, USER_SCAN_MAX_PAGES + 1):
            try:
                users = await self._client.auth.admin.list_users(page=page, per_page=USER_SCAN_PAGE_SIZE)
            except Exception as e:
                raise UpstreamError(f"Failed to list users: {e}", provider="supabase_auth")
            users = users or []
            for user in users:
                if (user.email or "").lower() != email:
                    continue
                metadata = user.user_metadata or {}
                return user.id if metadata.get("access_request_id") == access_request_id else None
            if len(users) < USER_SCAN_PAGE_SIZE:
                break
        return None

    async def create_tenant(self, *, user_id: str, request: AccessRequest) -> dict[str, Any]:
        row = {
            "first_name": request.name,
            "last_name": "",
            "email": request.email,
            "user_id": user_id,
            "is_primary": False,
            "tenant_type": "other",
            "building_id": request.building_id,
            "apartment_id": request.apartment_id,
        }
        try:
            response = await self._client.table(self._tables.tenants).insert(row).execute()
        except STORE_ERRORS as e:
            raise UpstreamError(f"Failed to create tenant: {store_error_message(e)}", provider="supabase")
        if not response.data:
            raise UpstreamError("Failed to create tenant", provider="supabase")
        return response.data[0]
