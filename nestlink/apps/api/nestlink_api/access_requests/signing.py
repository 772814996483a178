"""Signed approval links for access requests.

An administrator approves or rejects an access request by clicking a link in
an email, without logging in. The link carries:

- ``payload``: base64url (no padding) of the canonical JSON
  ``{"act": <approve|reject>, "exp": <unix seconds>, "nonce": <hex>, "rid": <id>}``
- ``sig``: base64url (no padding) HMAC-SHA256 of the ``payload`` string
- ``action``: advisory copy of the signed action, for readability only

SECURITY:
- The signed action is authoritative; a URL ``action`` that disagrees with
  it is rejected, so a link signed for one action cannot be flipped
- Signatures are compared in constant time (hmac.compare_digest)
- The signature is checked before the payload is parsed
- Expiry is enforced after the signature check, so an expired link signed
  with the right secret reports ``expired`` rather than ``invalid_signature``
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Literal, Optional
from urllib.parse import urlencode

from nestlink_api.errors import (
    ActionMismatchError,
    ExpiredLinkError,
    InvalidSignatureError,
    MalformedLinkError,
)

logger = logging.getLogger(__name__)

Action = Literal["approve", "reject"]
ACTIONS: frozenset[str] = frozenset({"approve", "reject"})

APPROVE_PATH = "/api/access-request/approve"

# Payloads larger than this are refused before any decoding work
MAX_PAYLOAD_CHARS = 2048


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("ascii"))


@dataclass(frozen=True)
class VerifiedLink:
    """Outcome of a successful verification."""

    access_request_id: str
    action: Action
    nonce: str
    expires_at: int

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)

    def seconds_remaining(self, now: float) -> int:
        return max(1, int(self.expires_at - now))


class AccessLinkSigner:
    """Issue and verify tamper-evident, expiring approval links."""

    def __init__(
        self,
        secret: str,
        *,
        ttl_seconds: int,
        base_url: str = "",
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("AccessLinkSigner requires a non-empty secret")
        self._key = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self.base_url = base_url.rstrip("/")
        self._clock = clock

    def _mac(self, payload: str) -> str:
        digest = hmac.new(self._key, payload.encode("ascii"), hashlib.sha256).digest()
        return _b64url_encode(digest)

    def sign(self, access_request_id: str, action: Action) -> tuple[str, str]:
        """Return ``(payload, sig)`` for one request and action.

        Each call embeds a fresh nonce, so approve and reject links for the
        same request are distinct single-use tokens.
        """
        if action not in ACTIONS:
            raise ValueError(f"Unknown action: {action!r}")
        if not access_request_id:
            raise ValueError("access_request_id is required")

        body = {
            "act": action,
            "exp": int(self._clock()) + self.ttl_seconds,
            "nonce": secrets.token_hex(16),
            "rid": str(access_request_id),
        }
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        payload = _b64url_encode(canonical.encode("utf-8"))
        return payload, self._mac(payload)

    def issue(self, access_request_id: str, action: Action) -> str:
        """Build the absolute link an administrator clicks."""
        payload, sig = self.sign(access_request_id, action)
        query = urlencode({"payload": payload, "sig": sig, "action": action})
        return f"{self.base_url}{APPROVE_PATH}?{query}"

    def verify(self, payload: str, sig: str, action: Optional[str] = None) -> VerifiedLink:
        """Verify a link and return the signed request id and action.

        Raises:
            MalformedLinkError: payload/sig missing, undecodable, or bad shape
            InvalidSignatureError: MAC mismatch
            ExpiredLinkError: ``now > exp``
            ActionMismatchError: URL ``action`` differs from the signed one
        """
        if not payload or not sig:
            raise MalformedLinkError("Missing payload")
        if len(payload) > MAX_PAYLOAD_CHARS or len(sig) > 128:
            raise MalformedLinkError("Invalid payload")

        try:
            provided = _b64url_decode(sig)
        except (binascii.Error, ValueError):
            raise MalformedLinkError("Invalid signature encoding")

        try:
            expected = _b64url_decode(self._mac(payload))
        except (UnicodeEncodeError, ValueError):
            raise MalformedLinkError("Invalid payload")

        if not hmac.compare_digest(provided, expected):
            logger.warning(
                "Access link signature mismatch",
                extra={"event": "access_link.invalid_signature"},
            )
            raise InvalidSignatureError("Invalid signature")

        try:
            body = json.loads(_b64url_decode(payload).decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise MalformedLinkError("Invalid payload")

        if not isinstance(body, dict):
            raise MalformedLinkError("Invalid payload")

        rid = body.get("rid")
        signed_action = body.get("act")
        exp = body.get("exp")
        nonce = body.get("nonce")

        if (
            not isinstance(rid, str)
            or not rid
            or signed_action not in ACTIONS
            or not isinstance(exp, int)
            or isinstance(exp, bool)
            or not isinstance(nonce, str)
            or not nonce
        ):
            raise MalformedLinkError("Invalid payload")

        if self._clock() > exp:
            logger.info(
                "Access link expired",
                extra={"event": "access_link.expired", "access_request_id": rid, "exp": exp},
            )
            raise ExpiredLinkError("Request expired")

        if action is not None and action != "" and action != signed_action:
            logger.warning(
                "Access link action does not match signed action",
                extra={
                    "event": "access_link.action_mismatch",
                    "access_request_id": rid,
                    "signed_action": signed_action,
                    "url_action": action,
                },
            )
            raise ActionMismatchError("Action does not match signed link")

        return VerifiedLink(
            access_request_id=rid,
            action=signed_action,
            nonce=nonce,
            expires_at=exp,
        )
