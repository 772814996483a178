"""Single-use nonce registry for approval links.

A link's nonce is consumed once the link has been acted on; later clicks on
the same link short-circuit to the idempotent response. The key expires with
the link, so the registry never grows past the live-link window.

Redis being unavailable is not fatal: the status-based idempotency of the
access request itself still prevents a second provisioning, the system just
degrades to at-least-once verification within the expiry window.
"""

import logging

import redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "nestlink:access_link:nonce:"


class RedisNonceStore:
    def __init__(self, client: redis.Redis):
        self._client = client

    def _key(self, nonce: str) -> str:
        return f"{KEY_PREFIX}{nonce}"

    def is_consumed(self, nonce: str) -> bool:
        try:
            return bool(self._client.exists(self._key(nonce)))
        except redis.RedisError as e:
            logger.warning(
                "Nonce lookup failed; falling back to status idempotency",
                extra={"event": "access_link.nonce.unavailable", "error": str(e)},
            )
            return False

    def consume(self, nonce: str, ttl_seconds: int) -> bool:
        """Mark ``nonce`` used. Returns True if this call consumed it."""
        try:
            return bool(self._client.set(self._key(nonce), "1", nx=True, ex=max(1, ttl_seconds)))
        except redis.RedisError as e:
            logger.warning(
                "Nonce consume failed; link stays replayable until expiry",
                extra={"event": "access_link.nonce.unavailable", "error": str(e)},
            )
            return True
