"""Supabase reads and writes for billing jobs."""

from datetime import datetime
from typing import Any, Optional

from postgrest.types import CountMethod
from supabase import AsyncClient

from nestlink_api.config.tables import Tables
from nestlink_api.errors import UpstreamError
from nestlink_api.supabase_client import STORE_ERRORS, store_error_message

ACTIVE_SUBSCRIPTION_STATUSES = ("trialing", "active")


class BillingRepository:
    def __init__(self, client: AsyncClient, tables: Tables):
        self._client = client
        self._tables = tables

    async def list_customer_ids(self) -> list[str]:
        """Distinct Polar customer ids, in first-seen order."""
        try:
            response = await self._client.table(self._tables.polar_subscriptions).select("customerId").execute()
        except STORE_ERRORS as e:
            raise UpstreamError(f"Failed to list billing customers: {store_error_message(e)}", provider="supabase")
        seen: dict[str, None] = {}
        for row in response.data or []:
            customer_id = row.get("customerId")
            if customer_id:
                seen.setdefault(str(customer_id), None)
        return list(seen)

    async def active_subscription(self, customer_id: str) -> Optional[dict[str, Any]]:
        try:
            response = await (
                self._client.table(self._tables.polar_subscriptions)
                .select("id,status,customerId,productId")
                .eq("customerId", customer_id)
                .in_("status", list(ACTIVE_SUBSCRIPTION_STATUSES))
                .limit(1)
                .execute()
            )
        except STORE_ERRORS as e:
            raise UpstreamError(f"Failed to load subscription: {store_error_message(e)}", provider="supabase")
        return response.data[0] if response.data else None

    async def count_apartments(self, customer_id: str) -> int:
        """Apartments in buildings billed to ``customer_id``."""
        try:
            response = await (
                self._client.table(self._tables.apartments)
                .select(f"id, {self._tables.buildings}!inner(customerId)", count=CountMethod.exact, head=True)
                .eq(f"{self._tables.buildings}.customerId", customer_id)
                .execute()
            )
        except STORE_ERRORS as e:
            raise UpstreamError(f"Failed to count apartments: {store_error_message(e)}", provider="supabase")
        return max(0, response.count or 0)

    async def list_client_subscriptions(self) -> list[dict[str, Any]]:
        try:
            response = await (
                self._client.table(self._tables.client_subscription)
                .select("id, client_id, status, next_payment_date")
                .execute()
            )
        except STORE_ERRORS as e:
            raise UpstreamError(f"Failed to list client subscriptions: {store_error_message(e)}", provider="supabase")
        return response.data or []

    async def mark_expired(self, subscription_id: str, now: datetime) -> None:
        try:
            await (
                self._client.table(self._tables.client_subscription)
                .update({"status": "expired", "updated_at": now.isoformat()})
                .eq("id", subscription_id)
                .execute()
            )
        except STORE_ERRORS as e:
            raise UpstreamError(f"Failed to expire subscription: {store_error_message(e)}", provider="supabase")

    async def client_email(self, client_id: str) -> Optional[str]:
        try:
            response = await (
                self._client.table(self._tables.clients).select("email").eq("id", client_id).limit(1).execute()
            )
        except STORE_ERRORS as e:
            raise UpstreamError(f"Failed to load client email: {store_error_message(e)}", provider="supabase")
        return (response.data[0].get("email") or None) if response.data else None
