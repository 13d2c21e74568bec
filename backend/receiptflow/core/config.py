"""Configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    PROJECT_NAME: str = "Receiptflow Entitlements & Claims"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Dev DB fallback (fail fast by default)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Redis (empty string disables caching and webhook de-duplication)
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    STATS_CACHE_TTL_SECONDS: int = Field(default=30)

    # Claims listing
    CLAIMS_PAGE_SIZE_DEFAULT: int = Field(default=50)
    CLAIMS_PAGE_SIZE_MAX: int = Field(default=200)

    # Auth
    # Disable auth bypass by default.  Override in .env only when running locally.
    DEV_AUTH_BYPASS: bool = Field(default=False)
    SECRET_KEY: str = Field(default="changeme")
    # When set, bearer tokens are verified as RS256 against this JWKS endpoint
    # instead of HS256 with SECRET_KEY.
    AUTH_JWKS_URL: Optional[str] = Field(default=None)
    AUTH_JWT_AUDIENCE: Optional[str] = Field(default=None)
    AUTH_JWT_ISSUER: Optional[str] = Field(default=None)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )
    # Frontend base URL used for Stripe redirects
    FRONTEND_BASE_URL: str = Field(default="http://localhost:3000")

    # Background work
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    # Stripe
    STRIPE_API_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRETS: Optional[str] = Field(default=None)
    # One price identifier per paid (tier, interval).  The free tier has none.
    STRIPE_PRICE_PRO_MONTHLY: str = Field(default="price_pro_monthly")
    STRIPE_PRICE_PRO_ANNUAL: str = Field(default="price_pro_annual")
    STRIPE_PRICE_MAX_MONTHLY: str = Field(default="price_max_monthly")
    STRIPE_PRICE_MAX_ANNUAL: str = Field(default="price_max_annual")
    STRIPE_AUTOMATIC_TAX_ENABLED: bool = Field(default=False)

    @property
    def is_test(self) -> bool:
        return (self.ENVIRONMENT or "").lower() == "test"


# Instantiate global settings
settings = Settings()


def get_webhook_secret_list() -> list[str]:
    """Return list of webhook secrets for signature verification.

    Precedence:
    1. STRIPE_WEBHOOK_SECRETS (comma separated, ordered)
    2. Fallback to singular STRIPE_WEBHOOK_SECRET if set
    """
    secrets: list[str] = []
    if settings.STRIPE_WEBHOOK_SECRETS:
        secrets.extend([s.strip() for s in settings.STRIPE_WEBHOOK_SECRETS.split(",") if s.strip()])
    elif settings.STRIPE_WEBHOOK_SECRET:
        secrets.append(settings.STRIPE_WEBHOOK_SECRET.strip())
    return secrets


def database_url_from_env() -> Optional[str]:
    """Return the configured database URL, preferring the process environment."""
    return os.getenv("DATABASE_URL") or settings.DATABASE_URL
