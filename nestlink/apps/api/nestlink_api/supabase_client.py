"""Supabase client construction.

SECURITY NOTICE:
- SB_SECRET_KEY is server-only (bypasses RLS); used for table access, user
  provisioning and the viewer lookups
- SB_PUBLISHABLE_KEY respects RLS; used for per-user sessions (realtime
  watcher, sign-out)

KEY NAMING TRANSITION:
- New Supabase UI (2024+): SB_PUBLISHABLE_KEY / SB_SECRET_KEY
- Legacy: SUPABASE_ANON_KEY / SUPABASE_SERVICE_ROLE_KEY

Clients are built explicitly (application lifespan, session objects) and
passed down; nothing here caches a process-wide instance.
"""

import logging
import os

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client
from supabase.lib.client_options import AsyncClientOptions

from nestlink_api.config.env import get_upstream_timeout_seconds
from nestlink_api.errors import ConfigurationError

logger = logging.getLogger(__name__)

# PostgREST raises APIError for error responses; the transport raises httpx errors
STORE_ERRORS = (APIError, httpx.HTTPError)


def store_error_message(exc: Exception) -> str:
    return getattr(exc, "message", None) or str(exc) or type(exc).__name__


def get_supabase_url() -> str:
    """Supabase project URL (https://[project_ref].supabase.co).

    Raises:
        ConfigurationError: If SUPABASE_URL not set
    """
    url = os.getenv("SUPABASE_URL")
    if not url:
        raise ConfigurationError("SUPABASE_URL environment variable not set.")
    return url


def get_supabase_api_key() -> str:
    """Publishable (anon) key.

    Priority:
    1. SB_PUBLISHABLE_KEY
    2. SUPABASE_ANON_KEY (legacy)
    """
    key = os.getenv("SB_PUBLISHABLE_KEY")
    if key:
        return key

    key = os.getenv("SUPABASE_ANON_KEY")
    if key:
        logger.info("Using legacy SUPABASE_ANON_KEY (consider migrating to SB_PUBLISHABLE_KEY)")
        return key

    raise ConfigurationError(
        "Neither SB_PUBLISHABLE_KEY nor SUPABASE_ANON_KEY environment variable is set."
    )


def get_supabase_secret_key() -> str:
    """Secret (service role) key. NEVER expose this to clients.

    Priority:
    1. SB_SECRET_KEY
    2. SUPABASE_SERVICE_ROLE_KEY (legacy)
    """
    key = os.getenv("SB_SECRET_KEY")
    if key:
        return key

    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if key:
        logger.info(
            "Using legacy SUPABASE_SERVICE_ROLE_KEY (consider migrating to SB_SECRET_KEY)"
        )
        return key

    raise ConfigurationError(
        "Neither SB_SECRET_KEY nor SUPABASE_SERVICE_ROLE_KEY environment variable is set."
    )


def _server_options() -> AsyncClientOptions:
    timeout = get_upstream_timeout_seconds()
    return AsyncClientOptions(
        auto_refresh_token=False,
        persist_session=False,
        postgrest_client_timeout=timeout,
        storage_client_timeout=int(timeout),
    )


async def create_admin_client() -> AsyncClient:
    """Service-role client for server-side table access and user provisioning."""
    url = get_supabase_url()
    logger.info(
        "Initializing Supabase admin client",
        extra={"supabase_url": url, "key_type": "secret"},
    )
    return await acreate_client(url, get_supabase_secret_key(), options=_server_options())


async def create_user_client(access_token: str, refresh_token: str = "") -> AsyncClient:
    """RLS-respecting client bound to one user's session.

    Used by ``AuthenticatedSession``; realtime authorisation follows the
    user's JWT so the change feed only delivers rows the user may read.
    """
    url = get_supabase_url()
    client = await acreate_client(
        url,
        get_supabase_api_key(),
        options=AsyncClientOptions(auto_refresh_token=False, persist_session=False),
    )
    # set_session emits SIGNED_IN, which the client forwards to realtime auth
    await client.auth.set_session(access_token, refresh_token)
    return client
