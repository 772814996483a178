"""Middleware modules."""

from .logging_redaction import LoggingRedactionMiddleware, get_safe_headers, get_safe_query

__all__ = [
    "LoggingRedactionMiddleware",
    "get_safe_headers",
    "get_safe_query",
]
