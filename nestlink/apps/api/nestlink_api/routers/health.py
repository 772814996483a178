"""Health check endpoints."""

import asyncio
import logging

from fastapi import APIRouter, Request, Response, status

from nestlink_api.schemas import HealthResponse

router = APIRouter()
logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"
CHECK_TIMEOUT_SECONDS = 3.0


async def check_supabase(request: Request) -> str:
    """Check PostgREST connectivity with a one-row read.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    client = getattr(request.app.state, "supabase", None)
    tables = getattr(request.app.state, "tables", None)
    if client is None or tables is None:
        return "down: not configured"
    try:
        await asyncio.wait_for(
            client.table(tables.access_requests).select("id").limit(1).execute(),
            timeout=CHECK_TIMEOUT_SECONDS,
        )
        return "up"
    except Exception as e:
        logger.error(f"Supabase health check failed: {e}")
        return f"down: {str(e)[:50]}"


def check_redis(request: Request) -> str:
    """Check Redis connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is None:
        return "down: not configured"
    try:
        redis_client.ping()
        return "up"
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return f"down: {str(e)[:50]}"


async def _services(request: Request) -> dict[str, str]:
    return {
        "api": "up",
        "supabase": await check_supabase(request),
        "redis": check_redis(request),
    }


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint.

    Returns service status and dependency health.
    Always returns 200 OK (use /readyz for dependency checks).
    """
    return HealthResponse(status="healthy", version=API_VERSION, services=await _services(request))


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(request: Request, response: Response) -> HealthResponse:
    """
    Readiness check endpoint.

    Returns 503 if any dependency is down.
    """
    services = await _services(request)
    if any("down" in svc_status for svc_status in services.values()):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=API_VERSION, services=services)
    return HealthResponse(status="ready", version=API_VERSION, services=services)
