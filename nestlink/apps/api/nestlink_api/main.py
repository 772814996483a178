"""Nest Link API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from nestlink_api.access_requests.nonce_store import RedisNonceStore
from nestlink_api.access_requests.recaptcha import RecaptchaVerifier
from nestlink_api.access_requests.repository import AccessRequestRepository, TenantProvisioner
from nestlink_api.access_requests.service import AccessRequestService, AccessRequestSettings
from nestlink_api.access_requests.signing import AccessLinkSigner
from nestlink_api.audit.server_log import ServerActionLog
from nestlink_api.auth.viewer import ViewerResolver
from nestlink_api.billing.polar import PolarClient
from nestlink_api.billing.repository import BillingRepository
from nestlink_api.billing.seat_sync import SeatSynchronizer
from nestlink_api.billing.subscription_expiry import SubscriptionExpirySweep
from nestlink_api.config import env
from nestlink_api.config.tables import Tables
from nestlink_api.context import access_request_id_var, request_id_var, user_id_var
from nestlink_api.db.redis_client import build_redis_client
from nestlink_api.email.i18n import MessageCatalog
from nestlink_api.email.sender import ResendEmailSender
from nestlink_api.errors import ConfigurationError, NestLinkError
from nestlink_api.middleware import LoggingRedactionMiddleware
from nestlink_api.routers import access_request, billing, health, viewer
from nestlink_api.routers.health import API_VERSION
from nestlink_api.schemas import ProblemDetail
from nestlink_api.supabase_client import create_admin_client
from nestlink_api.utils import configure_json_logging

logger = logging.getLogger(__name__)

PROBLEM_BASE = "https://api.nestlink.app/problems"


# ============================================================================
# Application state
# ============================================================================


async def init_state(app: FastAPI) -> None:
    """Build clients and services once and publish them on ``app.state``.

    Missing configuration for one feature disables that feature (its routes
    answer with a configuration error) instead of failing the whole process.
    """
    tables = Tables.from_env()
    timeout = env.get_upstream_timeout_seconds()
    catalog = MessageCatalog()

    supabase = await create_admin_client()
    redis_client = build_redis_client()
    action_log = ServerActionLog(supabase, tables)
    email_settings = env.get_email_settings()
    email_sender = ResendEmailSender(
        api_key=email_settings["api_key"],
        from_email=email_settings["from_email"],
        timeout=timeout,
    )

    app.state.tables = tables
    app.state.supabase = supabase
    app.state.redis = redis_client
    app.state.cron_secret = env.get_cron_secret()
    app.state.captcha_secret = env.get_captcha_secret()
    app.state.viewer_resolver = ViewerResolver(supabase, tables, timeout=timeout)

    base_url = env.get_app_base_url()
    try:
        recaptcha = env.get_recaptcha_settings()
        app.state.access_request_service = AccessRequestService(
            repository=AccessRequestRepository(supabase, tables),
            provisioner=TenantProvisioner(supabase, tables),
            signer=AccessLinkSigner(
                env.get_signing_secret(),
                ttl_seconds=env.get_link_ttl_seconds(),
                base_url=base_url,
            ),
            nonce_store=RedisNonceStore(redis_client),
            recaptcha=RecaptchaVerifier(timeout=timeout, **recaptcha),
            email_sender=email_sender,
            catalog=catalog,
            action_log=action_log,
            settings=AccessRequestSettings(
                form_secret=env.get_form_secret(),
                admin_email=env.get_admin_email(),
                base_url=base_url,
                timeout=timeout,
                default_password=env.get_default_tenant_password(),
                captcha_secret=env.get_captcha_secret(),
            ),
        )
    except ConfigurationError as e:
        app.state.access_request_service = None
        logger.error("Access requests disabled", extra={"event": "startup.access_requests_disabled", "error": e.message})

    billing_repository = BillingRepository(supabase, tables)
    polar = env.get_polar_settings()
    app.state.billing_repository = billing_repository
    app.state.seat_synchronizer = SeatSynchronizer(
        billing_repository,
        PolarClient(access_token=polar["access_token"], base_url=polar["base_url"], timeout=timeout),
        action_log,
        concurrency=env.get_seat_sync_concurrency(),
        timeout=timeout,
    )
    app.state.expiry_sweep = SubscriptionExpirySweep(
        billing_repository,
        email_sender,
        catalog,
        action_log,
        timeout=timeout,
    )
    logger.info("Application state initialised", extra={"event": "startup.ready", "env": env.get_nestlink_env()})


async def close_state(app: FastAPI) -> None:
    redis_client = getattr(app.state, "redis", None)
    if redis_client is not None:
        redis_client.close()


# ============================================================================
# RFC 9457 helpers
# ============================================================================


def _instance() -> str:
    request_id = request_id_var.get()
    return f"urn:nestlink:trace:{request_id}" if request_id else f"urn:nestlink:trace:{uuid.uuid4()}"


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        422: "Unprocessable Entity",
        429: "Too Many Requests",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


def _allowed_origins() -> list[str]:
    cors_origins_env = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_origins_env:
        # Production: explicit allowlist (comma-separated)
        return [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    # Dev fallback: localhost variants
    return [
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8000",
    ]


# ============================================================================
# Application Factory
# ============================================================================


def create_app(*, build_state: bool = True, title: Optional[str] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        build_state: Build Supabase/Redis clients and services on startup.
            Tests pass False and populate ``app.state`` themselves.
        title: Override the OpenAPI title

    Returns:
        Configured FastAPI application instance
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if build_state:
            await init_state(app)
        try:
            yield
        finally:
            if build_state:
                await close_state(app)

    app = FastAPI(
        title=title or "Nest Link API",
        description="Access requests, viewer resolution and billing jobs for Nest Link.",
        version=API_VERSION,
        docs_url="/api-docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),  # Never "*" with credentials
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.add_middleware(LoggingRedactionMiddleware)

    # ------------------------------------------------------------------------
    # HTTP Request Completion Logging Middleware
    # ------------------------------------------------------------------------

    @app.middleware("http")
    async def http_completion_logging_middleware(request: Request, call_next):
        """Log every HTTP request completion.

        - Every HTTP request emits "http.request.completed" log
        - Fields: method, path, status_code, duration_ms
        - Logs even on exceptions (status_code=500)
        - Clears per-request contextvars at start and end
        """
        user_id_var.set("")
        access_request_id_var.set("")

        start_time = time.perf_counter()
        status_code = 500  # Default to 500 in case of unhandled exception

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "http.request.completed",
                extra={
                    "event": "http.request.completed",
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            user_id_var.set("")
            access_request_id_var.set("")

    # ------------------------------------------------------------------------
    # Request ID Middleware (MUST BE OUTERMOST)
    # ------------------------------------------------------------------------

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Generate and propagate request_id for observability.

        - Accepts X-Request-ID header from client (optional)
        - Generates new UUID if not provided
        - Returns X-Request-ID in response headers

        Registered last so it runs outermost and the context variable is set
        before inner middlewares execute.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ------------------------------------------------------------------------
    # Exception Handlers
    # ------------------------------------------------------------------------

    @app.exception_handler(NestLinkError)
    async def nestlink_error_handler(request: Request, exc: NestLinkError) -> JSONResponse:
        """Render domain errors as ``{"success": false, "error", "code"}``."""
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            exc.message,
            extra={"event": "http.domain_error", "code": exc.code, "status_code": exc.status_code},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message, "code": exc.code},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions with RFC 9457 Problem Details format.

        Returns application/problem+json with top-level RFC 9457 fields.
        Preserves dict detail fields for structured error responses.
        """
        detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)

        problem = ProblemDetail(
            type=f"{PROBLEM_BASE}/http-{exc.status_code}",
            title=_get_title_for_status(exc.status_code),
            status=exc.status_code,
            detail=detail_value,
            instance=_instance(),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=problem.model_dump(exclude_none=True),
            media_type="application/problem+json",
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle request validation errors with RFC 9457 Problem Details format."""
        first_error = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")

        problem = ProblemDetail(
            type=f"{PROBLEM_BASE}/validation-error",
            title="Request Validation Failed",
            status=422,
            detail=f"Invalid field '{field}': {msg}",
            instance=_instance(),
        )
        return JSONResponse(
            status_code=422,
            content=problem.model_dump(exclude_none=True),
            media_type="application/problem+json",
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions with RFC 9457 Problem Details format."""
        problem = ProblemDetail(
            type=f"{PROBLEM_BASE}/internal-error",
            title="Internal Server Error",
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred. Please try again later.",
            instance=_instance(),
        )
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=problem.model_dump(exclude_none=True),
            media_type="application/problem+json",
        )

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(access_request.router)
    app.include_router(viewer.router)
    app.include_router(billing.router)

    return app


# Set NESTLINK_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("NESTLINK_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

app = create_app()
