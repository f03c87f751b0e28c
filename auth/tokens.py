"""
auth/tokens.py -- Bearer token codec and password hashing.

Security design decisions:
  Tokens: python-jose with HS256. A token carries the identity (user id,
       email, role) plus the id of the Session it was issued for, and an exp
       claim equal to that session's hard expiry. decode() verifies the
       signature and exp before anything in the payload is trusted, and
       raises InvalidToken on any failure.

       The signature only proves the token was issued by this service. It
       does not prove the session is still alive -- the Session Store is
       the revocation backstop, checked by the request gate on every call.

  Passwords: bcrypt directly (no passlib wrapper). passlib's wrap-bug
       detection feeds bcrypt 4.x a password longer than 72 bytes, which it
       rejects. The request models cap passwords at 255 characters.

       _DUMMY_HASH is computed once at import so verification of an unknown
       email costs one bcrypt round like a real check [C1].

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidToken
from auth.models import AuthContext, Role

logger = logging.getLogger("pmoaccess.auth")

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


# Timing equalization dummy hash [C1].
_DUMMY_HASH: str = hash_password("pmoaccess_timing_dummy")


def burn_dummy_check(plain: str) -> None:
    """Spend one bcrypt verification so a missing account costs the same as a wrong password."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Encode and decode bearer tokens.

    Usage:
        codec = TokenCodec(settings.secret_key)
        token = codec.encode(AuthContext(...), expires_at=session.expires_at)
        ctx = codec.decode(token)            # raises InvalidToken
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm

    def encode(self, ctx: AuthContext, expires_at: datetime) -> str:
        payload = {
            "sub": str(ctx.user_id),
            "email": ctx.email,
            "role": ctx.role.value,
            "sid": ctx.session_id,
            "exp": expires_at,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def decode(self, token: str) -> AuthContext:
        """Verify and decode a token.

        Raises InvalidToken on a bad signature, a passed exp, a malformed
        payload, or an unknown role. A token without a session id decodes
        fine (session_id == ""); the request gate rejects it separately so
        the caller can tell the two cases apart.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            raise InvalidToken() from exc
        try:
            return AuthContext(
                user_id=int(payload["sub"]),
                email=str(payload.get("email", "")),
                role=Role(payload["role"]),
                session_id=str(payload.get("sid") or ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidToken() from exc
