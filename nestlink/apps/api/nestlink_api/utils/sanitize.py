"""Secret / PII scrubbing for log output.

Strings are processed in three tiers by size:
 1. > MAX_STR_LOG         -> replaced by a length + sha256 marker, no regex
 2. > MAX_STR_FOR_REGEX   -> only the Bearer/Basic prefix check
 3. otherwise             -> full pattern replacement

Patterns are anchored to non-whitespace runs and compiled once at import.
"""

import hashlib
import re
import traceback
from typing import Any

MAX_STR_LOG: int = 2048
MAX_STR_FOR_REGEX: int = 512
MAX_DEPTH: int = 6

REDACTED = "[REDACTED]"

# Lower-cased dict keys whose values are never logged
_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "authorization", "cookie", "token", "access_token", "refresh_token",
    "api_key", "secret", "password", "temporary_password",
    "sig", "signature", "payload", "nonce",
    "formsecret", "form_secret", "recaptchatoken", "recaptcha_token",
    "email", "phone",
})

_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"Bearer \S+"),
    re.compile(r"Basic \S+"),
    re.compile(r"sig=[^&\s]+"),
    re.compile(r"payload=[^&\s]+"),
    re.compile(r"api_key=\S+"),
    re.compile(r"key=[A-Za-z0-9_\-]{20,}"),
]

_PREFIXES = ("Bearer ", "Basic ")


def sanitize_str(s: str) -> str:
    """Return a redacted / truncated form of ``s``; never the sensitive value."""
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    n = len(s)
    if n > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={n} sha256={digest}]"

    if n > MAX_STR_FOR_REGEX:
        if s.startswith(_PREFIXES):
            return REDACTED
        return s

    result = s
    for pattern in _PATTERNS:
        result = pattern.sub(REDACTED, result)
    return result


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log ``extra`` value.

    dicts have sensitive keys redacted, lists and strings are walked, anything
    else is returned unchanged. Depth is capped at MAX_DEPTH.
    """
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        result: dict[str, Any] = {}
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() in _SENSITIVE_KEYS:
                result[key] = REDACTED
            else:
                result[key] = sanitize_obj(value, depth + 1)
        return result

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def mask_email(email: str) -> str:
    """``jane.doe@example.com`` -> ``j***@example.com``."""
    if not email or "@" not in email:
        return "***"
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


def sanitize_exc(exc_info: tuple) -> str:
    """Format exc_info into a scrubbed traceback string (no captured locals)."""
    _type, value, _tb = exc_info
    if value is None:
        return ""
    try:
        te = traceback.TracebackException.from_exception(value, capture_locals=False)
        return sanitize_str("".join(te.format()))
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"
