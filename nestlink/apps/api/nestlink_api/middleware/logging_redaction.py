"""Logging redaction middleware.

Authorization headers, Supabase session cookies and signed-link query
parameters must never reach log output in plain text. The middleware leaves
the real request untouched and publishes a redacted view on
``request.state`` for anything that logs request metadata.
"""

import logging
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = frozenset({
    "authorization",
    "proxy-authorization",
    "cookie",
    "x-api-key",
})

SENSITIVE_QUERY_PARAMS = frozenset({"payload", "sig"})

REDACTED_PLACEHOLDER = "[REDACTED]"


def redact_headers(request: Request) -> dict[str, str]:
    return {
        name: REDACTED_PLACEHOLDER if name.lower() in SENSITIVE_HEADERS else value
        for name, value in request.headers.items()
    }


def redact_query(request: Request) -> dict[str, str]:
    return {
        name: REDACTED_PLACEHOLDER if name in SENSITIVE_QUERY_PARAMS else value
        for name, value in request.query_params.items()
    }


class LoggingRedactionMiddleware(BaseHTTPMiddleware):
    """Store redacted headers and query params on ``request.state``."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.redacted_headers = redact_headers(request)
        request.state.redacted_query = redact_query(request)
        return await call_next(request)


def get_safe_headers(request: Request) -> dict[str, str]:
    """Headers safe for logging, whether or not the middleware ran."""
    if hasattr(request.state, "redacted_headers"):
        return request.state.redacted_headers
    return redact_headers(request)


def get_safe_query(request: Request) -> dict[str, str]:
    if hasattr(request.state, "redacted_query"):
        return request.state.redacted_query
    return redact_query(request)
