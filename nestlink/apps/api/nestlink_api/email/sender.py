"""Resend email delivery.

API Reference: https://resend.com/docs/api-reference/emails/send-email
"""

import logging
from typing import Optional, Protocol, Sequence

import httpx

from nestlink_api.email.messages import EmailMessage
from nestlink_api.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"


class EmailSender(Protocol):
    async def send(
        self,
        to: Sequence[str],
        message: EmailMessage,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Optional[str]:
        """Send ``message``; return the provider message id."""


class ResendEmailSender:
    """Send transactional email through Resend.

    Environment Variables (see ``config.env.get_email_settings``):
    - RESEND_API_KEY
    - EMAIL_FROM
    """

    def __init__(
        self,
        *,
        api_key: str,
        from_email: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout
        self._transport = transport

    async def send(
        self,
        to: Sequence[str],
        message: EmailMessage,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Optional[str]:
        """Send one email to every address in ``to``.

        Raises:
            ConfigurationError: RESEND_API_KEY not set
            UpstreamError: timeout, transport error or non-2xx response
        """
        if not self.api_key:
            raise ConfigurationError("RESEND_API_KEY not configured")
        recipients = [addr for addr in to if addr]
        if not recipients:
            raise UpstreamError("No email recipients", provider="resend")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        payload = {
            "from": self.from_email,
            "to": recipients,
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(RESEND_SEND_URL, headers=headers, json=payload)
        except httpx.TimeoutException:
            raise UpstreamError("Email send timed out", code="upstream_timeout", provider="resend")
        except httpx.HTTPError as e:
            logger.error("Resend connection error", extra={"event": "email.send.failed", "error": str(e)})
            raise UpstreamError(f"Email connection error: {e.__class__.__name__}", provider="resend")

        if response.status_code == 409 and idempotency_key:
            # Idempotency conflict: the same message was already accepted
            logger.info("Resend idempotent replay", extra={"event": "email.send.duplicate"})
            return None

        if not 200 <= response.status_code < 300:
            logger.error(
                "Resend rejected email",
                extra={
                    "event": "email.send.failed",
                    "status_code": response.status_code,
                    "body": response.text[:200],
                },
            )
            raise UpstreamError(f"Email send failed with status {response.status_code}", provider="resend")

        message_id = response.json().get("id")
        logger.info(
            "Email sent",
            extra={"event": "email.sent", "message_id": message_id, "recipients": len(recipients)},
        )
        return message_id
