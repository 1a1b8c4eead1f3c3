"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for va-auth happen here. No module should call
os.getenv() or os.environ.get() directly -- the lifespan in api/main.py calls
get_settings() once and hands the instance to every collaborator through
app.state. Route handlers read request.app.state.settings, never the
environment.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. idp_client_id -> IDP_CLIENT_ID).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Missing identity-provider settings are a fatal startup error,
      never a per-request one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It keys the
       session JWT, the signed state codec and the personal-number HMAC.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [S1] redacted() is the only way configuration reaches the logs. Secrets are
       reported as "present"/"absent", never by value.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("vaauth.config")

# Fields whose values must never be logged.
_SECRET_FIELDS = frozenset({"secret_key", "idp_client_secret", "profile_db_url"})


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Defaults exist for everything that has a sensible one. The identity
    provider coordinates (IDP_DOMAIN, IDP_CLIENT_ID, IDP_CLIENT_SECRET,
    IDP_REDIRECT_URI) have none and the validator refuses to start without
    them.
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

    # ------------------------------------------------------------------
    # Identity provider
    # ------------------------------------------------------------------

    idp_domain: str = ""  # e.g. "example.criipto.id"
    idp_client_id: str = ""
    idp_client_secret: str = ""
    # Exact registered URL of GET /auth/finalize, as the provider knows it.
    idp_redirect_uri: str = ""
    idp_scope: str = "openid"
    idp_authorize_path: str = "/oauth2/authorize"
    idp_token_path: str = "/oauth2/token"
    idp_jwks_path: str = "/.well-known/jwks"
    # Defaults to https://{idp_domain} when empty.
    idp_issuer: str = ""
    idp_timeout_seconds: float = Field(default=5.0, gt=0, le=30)

    verify_id_token: bool = True
    id_token_algorithms: list[str] = ["RS256"]

    # ------------------------------------------------------------------
    # Application domain, cookies, sessions
    # ------------------------------------------------------------------

    app_domain: str = "vasaauktioner.se"
    # Defaults to https://{app_domain}/post-login when empty.
    default_return_url: str = ""
    # Defaults to .{app_domain} when empty. Must cover both the callback
    # subdomain and the application host.
    cookie_domain: str = ""
    session_cookie_name: str = "va_session"
    session_ttl_seconds: int = Field(default=30 * 24 * 3600, gt=0)
    secure_cookies: bool = True

    state_strategy: Literal["cookie", "signed"] = "cookie"
    state_ttl_seconds: int = Field(default=300, gt=0, le=300)

    # ------------------------------------------------------------------
    # Profile store
    # ------------------------------------------------------------------

    profile_db_url: str = "sqlite:///va_profiles.db"
    profile_store_timeout_seconds: float = Field(default=5.0, gt=0, le=30)

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "20/minute"
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def app_origin(self) -> str:
        return f"https://{self.app_domain}"

    @property
    def idp_base_url(self) -> str:
        return f"https://{self.idp_domain}"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and signed state will not survive restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_identity_provider(self) -> "Settings":
        """Refuse to start without the identity provider coordinates.

        Start and Finalize cannot do anything useful without them, so this is
        a startup failure rather than a per-request 500.
        """
        missing = [
            name
            for name in ("idp_domain", "idp_client_id", "idp_client_secret", "idp_redirect_uri")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError("Missing identity provider settings: " + ", ".join(n.upper() for n in missing))
        if not self.idp_redirect_uri.startswith("https://") and not self.debug:
            raise ValueError("IDP_REDIRECT_URI must be an https URL outside of DEBUG mode.")
        return self

    @model_validator(mode="after")
    def fill_derived_defaults(self) -> "Settings":
        self.app_domain = self.app_domain.strip().lower().rstrip(".")
        self.idp_domain = self.idp_domain.strip().rstrip("/")
        if not self.default_return_url:
            self.default_return_url = f"https://{self.app_domain}/post-login"
        if not self.cookie_domain:
            self.cookie_domain = f".{self.app_domain}"
        if not self.idp_issuer:
            self.idp_issuer = self.idp_base_url
        return self

    def redacted(self) -> dict[str, object]:
        """Return a log-safe view of the configuration [S1].

        Secret fields are replaced with "present"/"absent". Everything else is
        passed through as-is.
        """
        view: dict[str, object] = {}
        for name, value in self.model_dump().items():
            if name in _SECRET_FIELDS:
                view[name] = "present" if value else "absent"
            else:
                view[name] = value
        return view


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly with keyword overrides.
    """
    return Settings()
