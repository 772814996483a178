"""Batch billing triggers, called by the external scheduler.

When CRON_SECRET is set both endpoints require ``Authorization: Bearer <CRON_SECRET>``.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from nestlink_api.dependencies import (
    get_billing_repository,
    get_expiry_sweep,
    get_seat_synchronizer,
    require_cron_secret,
)
from nestlink_api.errors import NestLinkError
from nestlink_api.utils.timeouts import with_timeout

router = APIRouter(prefix="/api", tags=["billing"], dependencies=[Depends(require_cron_secret)])
logger = logging.getLogger(__name__)


@router.post("/polar/sync-seats")
async def sync_seats(request: Request) -> JSONResponse:
    """Reconcile Polar seats for every known billing customer.

    Returns:
        200 {"success": true, "results": [...]}, one result per customer in order;
        500 {"success": false, "error"} if the customer list cannot be read
    """
    synchronizer = get_seat_synchronizer(request)
    try:
        repository = get_billing_repository(request)
        customer_ids = await with_timeout(
            repository.list_customer_ids(),
            synchronizer.timeout,
            provider="supabase",
            operation="list billing customers",
        )
    except NestLinkError as e:
        logger.error("Seat sync aborted", extra={"event": "seat_sync.list_failed", "error": e.message})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": e.message},
        )

    results = await synchronizer.sync_all(customer_ids)
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"success": True, "results": [r.to_response() for r in results]},
    )


@router.post("/check-subscription")
async def check_subscriptions(request: Request) -> JSONResponse:
    """Expire lapsed client subscriptions and send upcoming-expiry reminders."""
    sweep = get_expiry_sweep(request)
    try:
        summary = await sweep.run()
    except NestLinkError as e:
        logger.error("Subscription sweep aborted", extra={"event": "subscription_expiry.list_failed", "error": e.message})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": e.message},
        )
    return JSONResponse(status_code=status.HTTP_200_OK, content=summary.to_response())
