"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Homeboard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. encryption_key -> ENCRYPTION_KEY).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) generates missing keys with a warning;
      production mode refuses to start without them.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It keys the CSRF
       token HMAC.

  [K1] ENCRYPTION_KEY must decode to exactly 32 bytes (64 hex characters). It
       is the AES-256-GCM key for every credential stored at rest. A generated
       key in DEBUG mode means stored credentials become unreadable after a
       restart, which degrades to "re-authenticate", never to a crash.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("homeboard.config")


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
    secret_key: str = ""
    encryption_key: str = ""
    database_url: str = "sqlite:///homeboard.db"

    # Public base URL of this dashboard. Doubles as the OAuth client_id for
    # Home Assistant (IndieAuth-style client identification).
    app_base_url: str = ""
    # Comma-separated host allow-list used when deriving the base URL from
    # request headers and for TrustedHostMiddleware.
    allowed_hosts: str = ""

    # ------------------------------------------------------------------
    # Sessions / cookies
    # ------------------------------------------------------------------

    # None -> Secure everywhere except DEBUG (plain-http local development).
    secure_cookies: bool | None = None
    session_expire_seconds: int = 30 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # OAuth (Home Assistant)
    # ------------------------------------------------------------------

    oauth_pending_ttl_seconds: int = 600
    oauth_timeout_seconds: float = 10.0
    oauth_refresh_skew_seconds: int = 60
    oauth_pkce_enabled: bool = True
    # Home Assistant ignores scopes; left configurable for other providers.
    oauth_scopes: str = ""
    # "memory" keeps pending authorizations in-process; "database" shares them
    # through the SQL key-value table for multi-instance deployments.
    pending_auth_backend: str = "memory"

    # ------------------------------------------------------------------
    # Login throttle
    # ------------------------------------------------------------------

    login_max_attempts: int = 5
    login_window_seconds: int = 15 * 60
    login_block_seconds: int = 15 * 60
    login_rate_limit: str = "20/minute"

    # ------------------------------------------------------------------
    # Caches
    # ------------------------------------------------------------------

    permission_cache_ttl_seconds: int = 120
    config_cache_ttl_seconds: int = 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_keys(self) -> "Settings":
        """Enforce SECRET_KEY [M6] and ENCRYPTION_KEY [K1] policy."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not survive restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        if not self.encryption_key:
            if self.debug:
                self.encryption_key = secrets.token_hex(32)
                logger.warning("Using auto-generated ENCRYPTION_KEY. Stored credentials will not survive restarts.")
            else:
                raise ValueError(
                    "ENCRYPTION_KEY is required in production mode. "
                    "Generate one with: python main.py generate-key"
                )
        try:
            raw = bytes.fromhex(self.encryption_key)
        except ValueError as exc:
            raise ValueError("ENCRYPTION_KEY must be hex encoded.") from exc
        if len(raw) != 32:
            raise ValueError("ENCRYPTION_KEY must be 32 bytes (64 hex characters).")

        if self.secure_cookies is None:
            self.secure_cookies = not self.debug
        return self

    @property
    def allowed_host_list(self) -> list[str]:
        return [h.strip().lower() for h in self.allowed_hosts.split(",") if h.strip()]

    @property
    def oauth_scope_list(self) -> list[str]:
        return [s for s in self.oauth_scopes.replace(",", " ").split() if s]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
