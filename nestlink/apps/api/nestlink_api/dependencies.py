"""FastAPI dependencies.

Services are built once by the application lifespan and stored on
``app.state``; tests replace them there with doubles.
"""

import hmac
from typing import Any, Optional

from fastapi import Request

from nestlink_api.access_requests.service import AccessRequestService
from nestlink_api.auth.viewer import ViewerResolver
from nestlink_api.billing.repository import BillingRepository
from nestlink_api.billing.seat_sync import SeatSynchronizer
from nestlink_api.billing.subscription_expiry import SubscriptionExpirySweep
from nestlink_api.errors import AuthorizationError, ConfigurationError


def _require(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise ConfigurationError(f"{name.replace('_', ' ')} not configured")
    return value


def get_access_request_service(request: Request) -> AccessRequestService:
    return _require(request, "access_request_service")


def get_viewer_resolver(request: Request) -> ViewerResolver:
    return _require(request, "viewer_resolver")


def get_billing_repository(request: Request) -> BillingRepository:
    return _require(request, "billing_repository")


def get_seat_synchronizer(request: Request) -> SeatSynchronizer:
    return _require(request, "seat_synchronizer")


def get_expiry_sweep(request: Request) -> SubscriptionExpirySweep:
    return _require(request, "expiry_sweep")


def get_captcha_secret(request: Request) -> Optional[str]:
    return getattr(request.app.state, "captcha_secret", None) or None


def require_cron_secret(request: Request) -> None:
    """Guard batch triggers with ``Authorization: Bearer <CRON_SECRET>`` when configured."""
    secret: Optional[str] = getattr(request.app.state, "cron_secret", None)
    if not secret:
        return
    header = request.headers.get("authorization", "")
    token = header[7:].strip() if header.lower().startswith("bearer ") else ""
    if not token or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise AuthorizationError("Unauthorized")
