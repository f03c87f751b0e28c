"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and roles.

get_current_identity() runs the Request Gate (auth/gate.py) against the
Authorization header and attaches the resulting AuthContext to
request.state.auth. Any rejection propagates as an AuthError subclass and is
rendered by the AuthError handler in api/main.py.

require_role(*roles) builds a dependency that depends on
get_current_identity(), so an unauthenticated request is always rejected
with 401 before any role is looked at. The role check itself is a pure
membership test against a frozenset of Role values.

    @router.get("/admin/sessions")
    def route(ctx: AuthContext = Depends(require_admin)): ...

Layer rule: auth/dependencies.py may import from fastapi (for Depends/Request)
because this module is part of the FastAPI dependency injection system. It
does not import from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import InsufficientPermissions
from auth.gate import RequestGate, role_allowed
from auth.models import ADMIN_ROLES, AuthContext, OriginMeta, Role


def get_origin(request: Request) -> OriginMeta:
    """Client address and user agent for attempt/audit records."""
    ip = request.client.host if request.client else None
    if not ip:
        forwarded = request.headers.get("X-Forwarded-For", "")
        ip = forwarded.split(",")[0].strip() or None
    return OriginMeta(ip_address=ip, user_agent=request.headers.get("User-Agent"))


def get_current_identity(request: Request) -> AuthContext:
    """Require an authenticated session. Raises 401-class AuthErrors otherwise."""
    gate: RequestGate = request.app.state.gate
    ctx = gate.authenticate(request.headers.get("Authorization"), get_origin(request))
    request.state.auth = ctx
    return ctx


def require_role(*roles: Role) -> Callable[..., AuthContext]:
    """Build a dependency that admits only callers whose role is in `roles`."""
    allowed = frozenset(roles)

    def dependency(ctx: AuthContext = Depends(get_current_identity)) -> AuthContext:
        if not role_allowed(ctx.role, allowed):
            raise InsufficientPermissions()
        return ctx

    return dependency


require_admin = require_role(*ADMIN_ROLES)
