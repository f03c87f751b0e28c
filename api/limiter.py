"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limits are keyed by client address. The per-IP login limit sits in front of
the per-email lockout (auth/lockout.py): the limiter slows a single source
spraying many emails, the lockout stops many sources hammering one email.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Limit string for POST /auth/login, read from Settings.login_rate_limit."""
    return get_settings().login_rate_limit
