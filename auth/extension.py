"""
auth/extension.py -- Shared-secret gate for the browser extension endpoints.

The extension is a semi-trusted, non-browser-page client. On top of the
normal bearer token it must present X-Extension-API-Key, which is compared
against Settings.extension_api_key. This stops a different extension that
has stolen a user's token from calling the extension endpoints.

Unconfigured (empty) key: the gate logs a warning and lets the request
through. That fallback exists for environments that have not rolled the key
out yet; treat it as a deployment error, not as a security boundary.

The gate is mounted as a router-level dependency (api/routes/v1/extension.py)
so it runs -- and rejects with 403 -- before any session or role dependency.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from fastapi import Request

from auth.errors import ExternalClientKeyInvalid, ExternalClientKeyMissing
from core.config import get_settings

logger = logging.getLogger("pmoaccess.auth.extension")

EXTENSION_KEY_HEADER = "X-Extension-API-Key"


def constant_time_equals(provided: str, expected: str) -> bool:
    """Compare two strings without an early exit on the first differing character.

    A length mismatch returns False immediately; the secret's length is not
    the part worth protecting. For equal lengths every position is visited
    and the differences are OR-accumulated, so running time does not depend
    on where the first mismatch is.
    """
    if len(provided) != len(expected):
        return False
    result = 0
    for a, b in zip(provided, expected):
        result |= ord(a) ^ ord(b)
    return result == 0


def check_extension_key(provided: str | None, configured: str, origin: str | None = None) -> None:
    """Raise unless `provided` matches `configured`. No-op when unconfigured."""
    if not configured:
        logger.warning("EXTENSION_API_KEY not configured - extension endpoints are not secured!")
        return
    if not provided:
        logger.warning("Extension API call without API key from origin: %s", origin)
        raise ExternalClientKeyMissing()
    if not constant_time_equals(provided, configured):
        logger.error("Invalid extension API key attempt from origin: %s", origin)
        raise ExternalClientKeyInvalid()


def require_extension_key(request: Request) -> None:
    """FastAPI dependency wrapper around check_extension_key()."""
    check_extension_key(
        request.headers.get(EXTENSION_KEY_HEADER),
        get_settings().extension_api_key,
        origin=request.headers.get("Origin"),
    )
