"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for pmo-access happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, extension_api_key -> EXTENSION_API_KEY).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates a SECRET_KEY with a warning; production
      mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
       relies on key entropy -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  The security policy values below are *seed* values only. The live policy is
  the security_settings row (auth/policy.py), which admins can change at
  runtime without a restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("pmoaccess.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'pmoaccess.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    token_algorithm: str = "HS256"
    # Pool size for fire-and-forget session touches.
    touch_workers: int = 4
    session_cleanup_interval_seconds: int = 900

    # ------------------------------------------------------------------
    # Security policy seed values (copied into security_settings on first start)
    # ------------------------------------------------------------------

    max_login_attempts: int = 5
    lockout_duration_minutes: int = 30
    session_lifetime_minutes: int = 480
    session_inactivity_minutes: int = 5
    password_min_length: int = 8

    # ------------------------------------------------------------------
    # External client (browser extension)
    # ------------------------------------------------------------------

    # Empty string means the gate is unconfigured and lets requests through.
    extension_api_key: str = ""

    # ------------------------------------------------------------------
    # Realtime channel
    # ------------------------------------------------------------------

    # False keeps the token-only handshake. True also checks the session table.
    realtime_require_session: bool = False

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # JSON lists in the environment, e.g. ALLOWED_HOSTS='["pmo.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Issued tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
