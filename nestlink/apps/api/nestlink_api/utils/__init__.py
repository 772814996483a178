"""Utility functions and helpers."""

from nestlink_api.utils.logging import JSONFormatter, configure_json_logging
from nestlink_api.utils.sanitize import mask_email, sanitize_obj, sanitize_str
from nestlink_api.utils.timeouts import with_timeout

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
    "mask_email",
    "sanitize_obj",
    "sanitize_str",
    "with_timeout",
]
