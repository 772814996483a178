"""Environment variable resolution utilities.

Canonical env names first, legacy fallbacks second, fail fast with a message
naming the missing variable.
"""

import os
from typing import Optional

from nestlink_api.errors import ConfigurationError

DEFAULT_LINK_TTL_SECONDS = 60 * 60 * 48
DEFAULT_UPSTREAM_TIMEOUT_SECONDS = 10.0


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def get_nestlink_env() -> str:
    """Get environment name.

    Priority:
    1. NESTLINK_ENV (canonical)
    2. APP_ENV (legacy)
    3. Default: "local"
    """
    return (os.getenv("NESTLINK_ENV") or os.getenv("APP_ENV") or "local").lower()


def is_production_env() -> bool:
    return get_nestlink_env() in {"prod", "production"}


def get_app_base_url() -> str:
    """Public base URL used for emailed links and the login page.

    Canonical: APP_BASE_URL
    Fallback: APP_URL
    """
    url = _clean(os.getenv("APP_BASE_URL") or os.getenv("APP_URL"))
    if not url:
        if is_production_env():
            raise ConfigurationError("APP_BASE_URL is required in production.")
        return "http://localhost:3000"
    return url.rstrip("/")


def get_signing_secret() -> str:
    """HMAC secret for access-request approval links.

    Raises:
        ConfigurationError: If ACCESS_REQUEST_SIGNING_SECRET is not set
    """
    secret = _clean(os.getenv("ACCESS_REQUEST_SIGNING_SECRET"))
    if not secret:
        raise ConfigurationError(
            "ACCESS_REQUEST_SIGNING_SECRET not configured. "
            "Generate with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
        )
    return secret


def get_form_secret() -> str:
    secret = _clean(os.getenv("ACCESS_REQUEST_FORM_SECRET"))
    if not secret:
        raise ConfigurationError("ACCESS_REQUEST_FORM_SECRET not configured.")
    return secret


def get_captcha_secret() -> str:
    """Captcha HMAC secret.

    Canonical: ACCESS_REQUEST_CAPTCHA_SECRET
    Fallback: ACCESS_REQUEST_FORM_SECRET
    Empty string when neither is set (captcha endpoint reports 500).
    """
    return _clean(
        os.getenv("ACCESS_REQUEST_CAPTCHA_SECRET") or os.getenv("ACCESS_REQUEST_FORM_SECRET")
    )


def get_link_ttl_seconds() -> int:
    raw = _clean(os.getenv("ACCESS_REQUEST_LINK_TTL_SECONDS"))
    if not raw:
        return DEFAULT_LINK_TTL_SECONDS
    try:
        ttl = int(raw)
    except ValueError:
        raise ConfigurationError(
            f"ACCESS_REQUEST_LINK_TTL_SECONDS must be an integer, got {raw!r}"
        )
    if ttl <= 0:
        raise ConfigurationError("ACCESS_REQUEST_LINK_TTL_SECONDS must be positive")
    return ttl


def get_admin_email() -> str:
    """Administrator mailbox for access-request approvals (may be empty)."""
    return _clean(os.getenv("ACCESS_REQUEST_ADMIN_EMAIL") or os.getenv("EMAIL_FROM"))


def get_default_tenant_password() -> Optional[str]:
    """Fixed temporary password for provisioned tenants, if configured."""
    return _clean(os.getenv("ACCESS_REQUEST_DEFAULT_PASSWORD")) or None


def get_upstream_timeout_seconds() -> float:
    raw = _clean(os.getenv("UPSTREAM_TIMEOUT_SECONDS"))
    if not raw:
        return DEFAULT_UPSTREAM_TIMEOUT_SECONDS
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"UPSTREAM_TIMEOUT_SECONDS must be a number, got {raw!r}")


def get_seat_sync_concurrency() -> int:
    raw = _clean(os.getenv("SEAT_SYNC_CONCURRENCY"))
    try:
        value = int(raw) if raw else 1
    except ValueError:
        raise ConfigurationError(f"SEAT_SYNC_CONCURRENCY must be an integer, got {raw!r}")
    return max(1, value)


def get_cron_secret() -> Optional[str]:
    return _clean(os.getenv("CRON_SECRET")) or None


def get_recaptcha_settings() -> dict[str, object]:
    """reCAPTCHA Enterprise settings.

    RECAPTCHA_PROJECT_ID falls back to GCLOUD_PROJECT.
    """
    try:
        min_score = float(os.getenv("RECAPTCHA_MIN_SCORE", "0.3"))
    except ValueError:
        raise ConfigurationError("RECAPTCHA_MIN_SCORE must be a number")
    return {
        "project_id": _clean(os.getenv("RECAPTCHA_PROJECT_ID") or os.getenv("GCLOUD_PROJECT")),
        "site_key": _clean(os.getenv("RECAPTCHA_SITE_KEY")),
        "api_key": _clean(os.getenv("RECAPTCHA_API_KEY")),
        "action": _clean(os.getenv("RECAPTCHA_ACTION")) or "access_request",
        "min_score": min_score,
    }


def get_polar_settings() -> dict[str, str]:
    env = _clean(os.getenv("POLAR_ENV")) or "sandbox"
    return {
        "env": env,
        "access_token": _clean(os.getenv("POLAR_ACCESS_TOKEN")),
        "base_url": (
            "https://sandbox-api.polar.sh" if env == "sandbox" else "https://api.polar.sh"
        ),
    }


def get_email_settings() -> dict[str, str]:
    return {
        "api_key": _clean(os.getenv("RESEND_API_KEY")),
        "from_email": _clean(os.getenv("EMAIL_FROM")) or "Nest Link <no-reply@nestlink.app>",
    }
