"""Timeout bounding for upstream calls."""

import asyncio
import logging
from typing import Awaitable, TypeVar

from nestlink_api.errors import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_timeout(awaitable: Awaitable[T], timeout: float, *, provider: str, operation: str) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    Raises:
        UpstreamError: code ``upstream_timeout`` when the deadline passes
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "Upstream call timed out",
            extra={
                "event": "upstream.timeout",
                "provider": provider,
                "operation": operation,
                "timeout_s": timeout,
            },
        )
        raise UpstreamError(
            f"{provider} {operation} timed out after {timeout:g}s",
            code="upstream_timeout",
            provider=provider,
        )
