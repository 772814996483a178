"""Domain error taxonomy.

Every error raised across a component boundary is a ``NestLinkError``.
Routers render these as ``{"success": false, "error": ..., "code": ...}``
with the status carried by the exception; anything else falls through to
the RFC 9457 handlers in ``nestlink_api.main``.
"""

from typing import Optional


class NestLinkError(Exception):
    """Base class for structured, user-presentable errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ConfigurationError(NestLinkError):
    """Required configuration is missing or invalid."""

    status_code = 500
    code = "configuration_error"


class ValidationError(NestLinkError):
    """Missing or malformed input. Never mutates state."""

    status_code = 400
    code = "validation_error"


class MalformedLinkError(ValidationError):
    """Signed link payload or signature cannot be decoded."""

    code = "malformed"


class AuthorizationError(NestLinkError):
    """Principal missing or credentials rejected."""

    status_code = 401
    code = "unauthorized"


class InvalidSignatureError(AuthorizationError):
    """Signed link MAC does not match."""

    status_code = 400
    code = "invalid_signature"


class ActionMismatchError(InvalidSignatureError):
    """URL action disagrees with the action bound into the signed payload."""

    code = "action_mismatch"


class ExpiredLinkError(NestLinkError):
    """Signed link is past its expiry."""

    status_code = 400
    code = "expired"


class NotFoundError(NestLinkError):
    status_code = 404
    code = "not_found"


class ConflictError(NestLinkError):
    """Record is no longer in the expected state (already resolved)."""

    status_code = 409
    code = "conflict"


class UpstreamError(NestLinkError):
    """Billing, email, auth or store provider failed or timed out."""

    status_code = 502
    code = "upstream_error"

    def __init__(self, message: str, *, code: Optional[str] = None, provider: Optional[str] = None):
        super().__init__(message, code=code)
        self.provider = provider


class TransientTransportError(NestLinkError):
    """Realtime transport dropped; recovered locally by reconnecting."""

    code = "transport_error"
