"""Client subscription expiry sweep.

For every client subscription:
- ``canceled`` or ``next_payment_date`` in the past -> status ``expired``
  (``updated_at`` refreshed so session watchers see a newer version)
- expiry exactly 7, 3 or 1 days away -> reminder email to the client

Per-subscription failures are logged and recorded; the sweep continues.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from nestlink_api.audit.server_log import ActionLog
from nestlink_api.billing.repository import BillingRepository
from nestlink_api.email.i18n import MessageCatalog
from nestlink_api.email.messages import build_subscription_ending_email
from nestlink_api.email.sender import EmailSender
from nestlink_api.errors import NestLinkError
from nestlink_api.realtime.change_feed import parse_timestamp
from nestlink_api.utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

REMINDER_DAYS = (7, 3, 1)
SECONDS_PER_DAY = 86400


class SubscriptionCheck(BaseModel):
    client_id: Optional[str] = Field(serialization_alias="clientId")
    subscription_status: Optional[str] = Field(serialization_alias="subscriptionStatus")
    expired: bool


class ExpirySweepSummary(BaseModel):
    checked: int
    updated: int
    results: list[SubscriptionCheck]

    def to_response(self) -> dict[str, Any]:
        return {"success": True, **self.model_dump(by_alias=True)}


def days_until(moment: datetime, now: datetime) -> int:
    return math.ceil((moment - now).total_seconds() / SECONDS_PER_DAY)


class SubscriptionExpirySweep:
    def __init__(
        self,
        repository: BillingRepository,
        email_sender: EmailSender,
        catalog: MessageCatalog,
        action_log: ActionLog,
        *,
        locale: str = "rs",
        timeout: float = 10.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.email_sender = email_sender
        self.catalog = catalog
        self.action_log = action_log
        self.locale = locale
        self.timeout = timeout
        self._clock = clock

    async def run(self) -> ExpirySweepSummary:
        """Sweep all client subscriptions.

        Raises:
            UpstreamError: the subscription list could not be read
        """
        subscriptions = await with_timeout(
            self.repository.list_client_subscriptions(),
            self.timeout,
            provider="supabase",
            operation="list client subscriptions",
        )
        now = self._clock()
        results: list[SubscriptionCheck] = []
        updated = 0

        for sub in subscriptions:
            next_payment = parse_timestamp(sub.get("next_payment_date"))
            expired = sub.get("status") == "canceled" or (next_payment is not None and next_payment < now)

            if expired and sub.get("status") != "expired":
                if await self._expire(sub, now):
                    updated += 1

            if next_payment is not None and not expired and sub.get("status") != "expired":
                remaining = days_until(next_payment, now)
                if remaining in REMINDER_DAYS:
                    await self._remind(sub, remaining)

            results.append(
                SubscriptionCheck(
                    client_id=str(sub["client_id"]) if sub.get("client_id") is not None else None,
                    subscription_status="expired" if expired else sub.get("status"),
                    expired=expired,
                )
            )

        logger.info(
            "Subscription expiry sweep completed",
            extra={"event": "subscription_expiry.completed", "checked": len(results), "updated": updated},
        )
        await self.action_log.record(
            "Check all clients subscriptions - Completed",
            status="success",
            type="cron",
            payload={"checked": len(results), "updatedCount": updated},
        )
        return ExpirySweepSummary(checked=len(results), updated=updated, results=results)

    async def _expire(self, sub: dict[str, Any], now: datetime) -> bool:
        payload = {"subscriptionId": sub.get("id"), "clientId": sub.get("client_id")}
        try:
            await with_timeout(
                self.repository.mark_expired(str(sub["id"]), now),
                self.timeout,
                provider="supabase",
                operation="expire subscription",
            )
        except NestLinkError as e:
            logger.warning(
                "Failed to expire subscription",
                extra={"event": "subscription_expiry.update_failed", **payload, "error": e.message},
            )
            await self.action_log.record(
                "Auto-expire subscription for client", status="fail", type="db", payload=payload, error=e.message
            )
            return False
        await self.action_log.record("Auto-expire subscription for client", status="success", type="db", payload=payload)
        return True

    async def _remind(self, sub: dict[str, Any], days_remaining: int) -> None:
        payload = {"subscriptionId": sub.get("id"), "clientId": sub.get("client_id"), "daysUntilExpiration": days_remaining}
        try:
            email = await with_timeout(
                self.repository.client_email(str(sub["client_id"])),
                self.timeout,
                provider="supabase",
                operation="load client email",
            )
            if not email:
                logger.warning(
                    "Client has no email; reminder skipped",
                    extra={"event": "subscription_expiry.no_email", **payload},
                )
                return
            message = build_subscription_ending_email(self.catalog, locale=self.locale, days_remaining=days_remaining)
            await with_timeout(
                self.email_sender.send(
                    [email],
                    message,
                    idempotency_key=f"subscription-ending-{sub.get('id')}-{days_remaining}",
                ),
                self.timeout,
                provider="resend",
                operation="send reminder",
            )
        except NestLinkError as e:
            logger.warning(
                "Expiry reminder failed",
                extra={"event": "subscription_expiry.reminder_failed", **payload, "error": e.message},
            )
            await self.action_log.record(
                f"Sent upcoming expiration email to client {days_remaining} day(s) in advance",
                status="fail",
                type="email",
                payload=payload,
                error=e.message,
            )
            return
        await self.action_log.record(
            f"Sent upcoming expiration email to client {days_remaining} day(s) in advance",
            status="success",
            type="email",
            payload=payload,
        )
