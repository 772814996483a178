"""Viewer resolution for GET /api/viewer.

FLOW:
1. Access token from ``Authorization: Bearer <jwt>`` or the
   ``sb-access-token`` cookie
2. Supabase ``auth.get_user`` validates the JWT (signature and expiry)
3. Super admins, clients, client members and tenants are queried
   concurrently by ``user_id``
4. The highest-priority match becomes the principal

SECURITY:
- Lookups use the service-role client, filtered by the verified user id
- Token validation failures are reported as 401, never as 500
"""

import asyncio
import logging
from typing import Any, Optional

from fastapi import Request
from supabase import AsyncClient, AuthError

from nestlink_api.auth.principal import Principal, resolve_principal
from nestlink_api.config.tables import Tables
from nestlink_api.context import user_id_var
from nestlink_api.errors import AuthorizationError, NestLinkError, UpstreamError
from nestlink_api.supabase_client import store_error_message
from nestlink_api.utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

ACCESS_TOKEN_COOKIE = "sb-access-token"

_USER_FIELDS = ("id", "email", "phone", "role", "user_metadata", "app_metadata", "created_at", "last_sign_in_at")


def extract_access_token(request: Request) -> Optional[str]:
    """Bearer token first, then the Supabase session cookie."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    cookie = request.cookies.get(ACCESS_TOKEN_COOKIE, "").strip()
    return cookie or None


def _user_data(user: Any) -> dict[str, Any]:
    data = {}
    for field in _USER_FIELDS:
        value = getattr(user, field, None)
        data[field] = value.isoformat() if hasattr(value, "isoformat") else value
    return data


class ViewerResolver:
    def __init__(self, client: AsyncClient, tables: Tables, *, timeout: float = 10.0):
        self._client = client
        self._tables = tables
        self.timeout = timeout

    async def authenticate(self, access_token: str) -> dict[str, Any]:
        """Validate ``access_token``; return the auth user's public fields.

        Raises:
            AuthorizationError: token invalid or expired
            UpstreamError: the auth service failed or timed out
        """
        try:
            response = await with_timeout(
                self._client.auth.get_user(access_token),
                self.timeout,
                provider="supabase_auth",
                operation="get user",
            )
        except AuthError as e:
            logger.info("Viewer token rejected", extra={"event": "viewer.token_rejected", "error": str(e)})
            raise AuthorizationError("Invalid or expired session")
        except NestLinkError:
            raise
        except Exception as e:
            raise UpstreamError(f"Failed to validate session: {e!r}", provider="supabase_auth") from e
        if not response or not response.user:
            raise AuthorizationError("Invalid or expired session")
        return _user_data(response.user)

    async def _find(self, table: str, user_id: str) -> Optional[dict[str, Any]]:
        try:
            response = await (
                self._client.table(table).select("*").eq("user_id", user_id).limit(1).execute()
            )
        except Exception as e:
            raise UpstreamError(f"Failed to read {table}: {store_error_message(e)}", provider="supabase") from e
        return response.data[0] if response.data else None

    async def lookup(self, user_id: str) -> Optional[Principal]:
        """Query every role table concurrently and pick one principal."""
        kinds = ("admin", "client", "clientMember", "tenant")
        tables = (
            self._tables.super_admins,
            self._tables.clients,
            self._tables.client_members,
            self._tables.tenants,
        )
        rows = await with_timeout(
            asyncio.gather(*(self._find(table, user_id) for table in tables)),
            self.timeout,
            provider="supabase",
            operation="viewer lookup",
        )
        return resolve_principal(user_id, dict(zip(kinds, rows)))

    async def resolve(self, access_token: str) -> tuple[Optional[Principal], dict[str, Any]]:
        """Authenticate and resolve the principal.

        Returns:
            (principal or None, user data)

        Raises:
            AuthorizationError: token invalid or expired
            UpstreamError: a role lookup failed or timed out
        """
        user_data = await self.authenticate(access_token)
        user_id = str(user_data["id"])
        user_id_var.set(user_id)

        principal = await self.lookup(user_id)
        logger.info(
            "Viewer resolved",
            extra={"event": "viewer.resolved", "kind": principal.kind if principal else None},
        )
        return principal, user_data
