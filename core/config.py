"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the dashboard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      policy: dev mode generates a key with a warning, production mode refuses
      to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. Both token signing
  scopes are derived from it, so a short key weakens access and refresh
  tokens alike.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("dashboard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'dashboard.db'}"


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
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_expire_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    # Age after which a persisted refresh-token entry is pruned from the user
    # record, independent of the JWT exp claim.
    refresh_token_retention_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    token_purge_interval_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    # bcrypt accepts cost factors 4..31. Tests run at 4 to stay fast.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    lockout_threshold: int = Field(default=5, ge=1)
    lockout_window_seconds: int = Field(default=15 * 60, gt=0)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    # Optional JSON file overriding the built-in role -> permission matrix.
    # Read once at startup; empty string means "use the built-in matrix".
    permissions_file: str = ""

    # ------------------------------------------------------------------
    # HTTP perimeter
    # ------------------------------------------------------------------

    auth_rate_limit: str = "10/15minutes"
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive a restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
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
