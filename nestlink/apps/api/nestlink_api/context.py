"""Request context management for observability.

Context variables carry request-scoped identifiers across async boundaries
so that every log line emitted while serving a request can be correlated.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Authenticated Supabase user (viewer endpoint, sessions)
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

# Access request being resolved by the signed-link handler
access_request_id_var: ContextVar[str] = ContextVar("access_request_id", default="")
