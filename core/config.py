"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for tokengate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. private_key_path -> PRIVATE_KEY_PATH).

  @model_validator(mode="after"): cross-field checks that must hold before the
      service accepts a single request (positive lifetimes, refresh token size).

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
auth/ classes never call get_settings() themselves; api/main.py and main.py
read the settings and hand plain values to the constructors.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokengate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'tokengate.db'}"

# 256 bits. Refresh tokens below this are rejected outright.
MIN_REFRESH_TOKEN_BYTES = 32


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
    db_url: str = _DEFAULT_DB_URL
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Key material (PEM, RSA). Loaded once at startup.
    # ------------------------------------------------------------------

    private_key_path: str = "keys/private.pem"
    public_key_path: str = "keys/public.pem"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # One hour is the canonical access token lifetime.
    access_token_expire_seconds: int = 3600
    # 0 disables refresh token expiry (rotation still applies).
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    refresh_token_bytes: int = MIN_REFRESH_TOKEN_BYTES
    # Compare-and-swap rotation: two concurrent refreshes with the same token
    # cannot both succeed.
    strict_refresh_rotation: bool = False

    # ------------------------------------------------------------------
    # Storage / hashing
    # ------------------------------------------------------------------

    storage_timeout_seconds: float = 5.0
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_token_policy(self) -> "Settings":
        """Reject configurations that would weaken the token lifecycle.

        - access tokens must expire (positive lifetime);
        - refresh token expiry may be disabled (0) but never negative;
        - refresh tokens carry at least 256 bits of entropy;
        - every storage call has a positive timeout;
        - bcrypt cost stays inside the range the library accepts.
        """
        if self.access_token_expire_seconds <= 0:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be positive.")
        if self.refresh_token_expire_seconds < 0:
            raise ValueError("REFRESH_TOKEN_EXPIRE_SECONDS must be zero (no expiry) or positive.")
        if self.refresh_token_bytes < MIN_REFRESH_TOKEN_BYTES:
            raise ValueError(f"REFRESH_TOKEN_BYTES must be at least {MIN_REFRESH_TOKEN_BYTES}.")
        if self.storage_timeout_seconds <= 0:
            raise ValueError("STORAGE_TIMEOUT_SECONDS must be positive.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.debug:
            logger.warning("WARNING: DEBUG is enabled. Missing RSA key files will be replaced by an ephemeral pair.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
