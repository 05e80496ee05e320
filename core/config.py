"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Handshake happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. timeout_delta -> TIMEOUT_DELTA). Type coercion and validation are
      built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment.

Security notes:
  Token, secret and verifier lengths have hard floors (Field ge=...). The
  floors are the protocol minimums; anything shorter would make a guessed
  request token or verification code practical.

  TIMEOUT_DELTA bounds both the timestamp freshness window and the token
  lifetime. Zero or negative values would either reject every request or
  expire every token on first use, so they are refused at startup.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("handshake.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'handshake.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    log_level: str = "INFO"
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    # Seconds. Timestamp freshness window and token lifetime.
    timeout_delta: int = 86400
    token_bytes: int = Field(default=8, ge=4)
    secret_bytes: int = Field(default=16, ge=12)
    verifier_bytes: int = Field(default=8, ge=8)
    realm: str = "handshake"

    # ------------------------------------------------------------------
    # HTTP host
    # ------------------------------------------------------------------

    # The password step is the only brute-forceable endpoint.
    authorize_rate_limit: str = "10/minute"
    purge_interval_seconds: int = 3600
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_protocol_window(self) -> "Settings":
        """Refuse windows that would make the protocol unusable.

        Also warns when the purge sweep runs less often than tokens expire,
        since stale rows then linger for longer than one token lifetime.
        """
        if self.timeout_delta <= 0:
            raise ValueError("TIMEOUT_DELTA must be a positive number of seconds.")
        if self.purge_interval_seconds <= 0:
            raise ValueError("PURGE_INTERVAL_SECONDS must be a positive number of seconds.")
        if self.purge_interval_seconds > self.timeout_delta:
            logger.warning(
                "PURGE_INTERVAL_SECONDS (%d) exceeds TIMEOUT_DELTA (%d); expired tokens may linger.",
                self.purge_interval_seconds,
                self.timeout_delta,
            )
        self.log_level = self.log_level.upper()
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
