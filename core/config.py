"""
core/config.py -- Centralized configuration for Gatehouse via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() or accept a Settings
instance from the caller.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. bcrypt_rounds -> BCRYPT_ROUNDS). Type coercion is built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Rejects hashing and token policies that bcrypt or the token
      generator cannot honour, so a bad value fails at startup rather than on
      the first login.

Hashing policy:
  bcrypt_rounds is the *current* policy. Stored hashes produced with any other
  cost factor are rehashed transparently on the next successful login.

Layer rule: core/ is the kernel. This module may not import from identity/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

# bcrypt accepts cost factors 4..31 inclusive.
_MIN_ROUNDS = 4
_MAX_ROUNDS = 31
_MIN_TOKEN_BYTES = 16
# Hex tokens are stored in String(128) columns.
_MAX_TOKEN_BYTES = 64


class Settings(BaseSettings):
    """Engine settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Tests usually build their own
    instance (Settings(bcrypt_rounds=4)) and pass it to the service.
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
    # Empty string means "use the SQLite file beside the identity package".
    database_url: str = ""
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Credentials and sessions
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    session_token_bytes: int = 32
    # Reverse DNS on the caller address at login when the request context
    # carries no hostname. Disable on hosts without a resolver.
    resolve_hostnames: bool = True

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    role_gated: bool = True
    admin_role: str = "Administrator"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_policies(self) -> "Settings":
        """Reject hashing/token policies outside what the engine can honour."""
        if not _MIN_ROUNDS <= self.bcrypt_rounds <= _MAX_ROUNDS:
            raise ValueError(f"BCRYPT_ROUNDS must be between {_MIN_ROUNDS} and {_MAX_ROUNDS}.")
        if not _MIN_TOKEN_BYTES <= self.session_token_bytes <= _MAX_TOKEN_BYTES:
            raise ValueError(f"SESSION_TOKEN_BYTES must be between {_MIN_TOKEN_BYTES} and {_MAX_TOKEN_BYTES}.")
        if not self.admin_role.strip():
            raise ValueError("ADMIN_ROLE must not be empty.")
        if self.debug and self.bcrypt_rounds > 10:
            logger.warning("DEBUG is on with BCRYPT_ROUNDS=%d -- logins will be slow", self.bcrypt_rounds)
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
