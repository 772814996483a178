"""Polar subscriptions API client.

Polar API Reference:
- Update subscription: https://docs.polar.sh/api-reference/subscriptions/update
"""

import logging
from typing import Any, Optional

import httpx

from nestlink_api.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)


class PolarClient:
    """Polar seat updates.

    Environment Variables (see ``config.env.get_polar_settings``):
    - POLAR_ENV: sandbox or production
    - POLAR_ACCESS_TOKEN: organization access token
    """

    def __init__(
        self,
        *,
        access_token: str,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def update_subscription_seats(
        self,
        subscription_id: str,
        seats: int,
        *,
        product_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Set the seat count of a subscription, invoicing the proration.

        Args:
            subscription_id: Polar subscription id
            seats: New seat count (>= 1)
            product_id: Keep or switch the subscription product (optional)

        Returns:
            Updated Polar subscription

        Raises:
            ConfigurationError: POLAR_ACCESS_TOKEN not set
            UpstreamError: timeout, transport error or non-2xx response
        """
        if not self.access_token:
            raise ConfigurationError("POLAR_ACCESS_TOKEN not configured")

        url = f"{self.base_url}/v1/subscriptions/{subscription_id}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        body: dict[str, Any] = {"seats": seats, "proration_behavior": "invoice"}
        if product_id:
            body["product_id"] = product_id

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.patch(url, headers=headers, json=body)
        except httpx.TimeoutException:
            raise UpstreamError("Polar request timed out", code="upstream_timeout", provider="polar")
        except httpx.HTTPError as e:
            raise UpstreamError(f"Polar connection error: {e.__class__.__name__}", provider="polar")

        if not 200 <= response.status_code < 300:
            logger.warning(
                "Polar rejected seat update",
                extra={
                    "event": "polar.seats.rejected",
                    "subscription_id": subscription_id,
                    "status_code": response.status_code,
                    "body": response.text[:200],
                },
            )
            raise UpstreamError(f"Polar returned status {response.status_code}", provider="polar")

        return response.json()
