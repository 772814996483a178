"""Polar seat synchronisation.

Seats billed for a customer = max(1, apartments in the customer's buildings).

BATCH CONTRACT:
- One ``SeatSyncResult`` per input id, in input order
- A failing customer never aborts the rest; nothing escapes ``sync_all``
- Workers write into their own index slot (no shared append)
- Concurrency bounded by SEAT_SYNC_CONCURRENCY (default 1 = sequential)
"""

import asyncio
import logging
import re
import time
from typing import Any, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from nestlink_api.audit.server_log import ActionLog
from nestlink_api.billing.polar import PolarClient
from nestlink_api.billing.repository import BillingRepository
from nestlink_api.errors import NestLinkError
from nestlink_api.utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

SeatSyncErrorCode = Literal["InvalidCustomerId", "NoActiveSubscription", "ProviderError"]

_CUSTOMER_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]{0,127}$")


class SeatSyncResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_id: str = Field(serialization_alias="customerId")
    success: bool
    seats: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[SeatSyncErrorCode] = Field(default=None, serialization_alias="errorCode")

    @classmethod
    def failed(cls, customer_id: Any, code: SeatSyncErrorCode, error: str) -> "SeatSyncResult":
        return cls(customer_id="" if customer_id is None else str(customer_id), success=False, error=error, error_code=code)

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def is_valid_customer_id(customer_id: Any) -> bool:
    return isinstance(customer_id, str) and bool(_CUSTOMER_ID.match(customer_id))


class SeatSynchronizer:
    def __init__(
        self,
        repository: BillingRepository,
        polar: PolarClient,
        action_log: ActionLog,
        *,
        concurrency: int = 1,
        timeout: float = 10.0,
    ):
        self.repository = repository
        self.polar = polar
        self.action_log = action_log
        self.concurrency = max(1, concurrency)
        self.timeout = timeout

    async def sync_customer(self, customer_id: Any) -> SeatSyncResult:
        """Reconcile one customer's seat count. Never raises."""
        if not is_valid_customer_id(customer_id):
            return SeatSyncResult.failed(customer_id, "InvalidCustomerId", "Missing or malformed customer id")

        started = time.perf_counter()
        try:
            subscription = await with_timeout(
                self.repository.active_subscription(customer_id),
                self.timeout,
                provider="supabase",
                operation="load subscription",
            )
            if not subscription or not subscription.get("id"):
                return SeatSyncResult.failed(customer_id, "NoActiveSubscription", "No active Polar subscription found.")

            apartments = await with_timeout(
                self.repository.count_apartments(customer_id),
                self.timeout,
                provider="supabase",
                operation="count apartments",
            )
            seats = max(1, apartments)
            await with_timeout(
                self.polar.update_subscription_seats(
                    str(subscription["id"]),
                    seats,
                    product_id=subscription.get("productId"),
                ),
                self.timeout,
                provider="polar",
                operation="update seats",
            )
        except Exception as e:
            message = e.message if isinstance(e, NestLinkError) else str(e) or e.__class__.__name__
            logger.warning(
                "Seat sync failed for customer",
                extra={"event": "seat_sync.item.failed", "customer_id": customer_id, "error": message},
            )
            await self.action_log.record(
                "syncPolarSeatsForClient",
                status="fail",
                type="api",
                payload={"customerId": customer_id},
                error=message,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            return SeatSyncResult.failed(customer_id, "ProviderError", message)

        logger.info(
            "Seats synchronised",
            extra={"event": "seat_sync.item.succeeded", "customer_id": customer_id, "seats": seats},
        )
        await self.action_log.record(
            "syncPolarSeatsForClient",
            status="success",
            type="api",
            payload={"customerId": customer_id, "apartmentsCount": apartments, "seats": seats},
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return SeatSyncResult(customer_id=customer_id, success=True, seats=seats)

    async def sync_all(self, customer_ids: Sequence[Any]) -> list[SeatSyncResult]:
        results: list[Optional[SeatSyncResult]] = [None] * len(customer_ids)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(index: int, customer_id: Any) -> None:
            async with semaphore:
                results[index] = await self.sync_customer(customer_id)

        await asyncio.gather(*(run(i, cid) for i, cid in enumerate(customer_ids)))

        succeeded = sum(1 for r in results if r is not None and r.success)
        logger.info(
            "Seat sync batch completed",
            extra={"event": "seat_sync.completed", "total": len(results), "succeeded": succeeded},
        )
        return [r for r in results if r is not None]
