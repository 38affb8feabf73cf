"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, status
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    APP_URL: str = "http://localhost:8000"  # Public base URL, used for /c/{link_id} tracking links
    ENVIRONMENT: str = "development"

    # Webhook secrets
    SHOPIFY_API_SECRET: Optional[str] = None
    META_APP_SECRET: Optional[str] = None
    META_WEBHOOK_VERIFY_TOKEN: Optional[str] = None

    # Internal endpoints
    CRON_SECRET: Optional[str] = None
    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"

    # Instagram Graph API
    META_GRAPH_API_BASE: str = "https://graph.instagram.com"
    META_GRAPH_API_VERSION: str = "v21.0"
    DM_RATE_LIMIT_PER_MINUTE: int = 120

    # Redis (ARQ worker)
    REDIS_URL: str = "redis://localhost:6379/0"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard internal/admin endpoints with the shared admin key.

    Operator authentication (Shopify session) lives outside this service;
    admin routes are only reachable by internal tooling that holds the key.
    """
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_SECRET_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")


def require_cron_secret(
    secret: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard cron trigger endpoints (`?secret=CRON_SECRET`)."""
    if not settings.CRON_SECRET or not secret or not hmac.compare_digest(secret, settings.CRON_SECRET):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
