"""
core/config.py -- Gatehouse settings, read from the environment by pydantic-settings.

Every environment variable the service understands is a field on Settings
(secret_key <- SECRET_KEY, and so on; list fields such as ALLOWED_HOSTS take
a JSON array). Other modules call get_settings() and never touch os.environ.

get_settings() is cached, so the environment is read once per process. The
test suite sets its variables before the first import for that reason.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session ids and
       confirmation tokens are stored as HMAC-SHA256 digests keyed by it.

  [M7] Without DEBUG, a missing SECRET_KEY stops startup. A random key would
       orphan every stored session and pending token digest on restart.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or accounts/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

_DAY = 24 * 60 * 60
_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatehouse.db'}"


class Settings(BaseSettings):
    """Service configuration. Every field has a default except that SECRET_KEY
    must be supplied outside DEBUG mode (see validate_secret_key).
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
    # "" means unset; validate_secret_key replaces or rejects it.
    secret_key: str = ""
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # PostgreSQL only: role assumed (SET LOCAL ROLE) inside every scoped
    # access unit so row-level security policies apply. Empty = disabled.
    database_visitor_role: str = ""

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    root_url: str = "http://localhost:3000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "gatehouse_session"
    session_ttl_seconds: int = 7 * _DAY
    session_purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Confirmation tokens
    # ------------------------------------------------------------------

    email_verification_ttl_seconds: int = 7 * _DAY
    password_reset_ttl_seconds: int = 3 * _DAY
    account_deletion_ttl_seconds: int = 3 * _DAY

    # ------------------------------------------------------------------
    # Login hardening
    # ------------------------------------------------------------------

    # Every failed login waits a random delay in this range before answering.
    login_delay_min_ms: int = 100
    login_delay_max_ms: int = 400
    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    send_verification_on_register: bool = True

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Fill in or reject SECRET_KEY [M6] [M7].

        With DEBUG a throwaway key is generated, which signs everyone out on
        the next restart. Without DEBUG there is no fallback.
        """
        if not self.secret_key:
            if not self.debug:
                raise ValueError("SECRET_KEY must be set unless DEBUG=true.")
            self.secret_key = secrets.token_hex(32)
            logger.warning("SECRET_KEY not set; generated a temporary one. Sessions end on restart.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_login_delay(self) -> "Settings":
        if self.login_delay_min_ms < 0 or self.login_delay_max_ms < self.login_delay_min_ms:
            raise ValueError("LOGIN_DELAY_MAX_MS must be >= LOGIN_DELAY_MIN_MS >= 0.")
        return self


@lru_cache
def get_settings() -> Settings:
    """The process-wide Settings. Call get_settings.cache_clear() to re-read the environment."""
    return Settings()
