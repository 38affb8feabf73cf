"""FastAPI application entrypoint.

Initializes observability, includes routers, and exposes a healthcheck endpoint.
"""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings  # noqa: E402
from .routers import admin as admin_router  # noqa: E402
from .routers import cron as cron_router  # noqa: E402
from .routers import links as links_router  # noqa: E402
from .routers import meta_webhooks as meta_webhooks_router  # noqa: E402
from .routers import shopify_webhooks as shopify_webhooks_router  # noqa: E402
from .telemetry import init_observability  # noqa: E402
from . import schemas  # noqa: E402

# Import models so Alembic can discover metadata
from . import models  # noqa: F401,E402


def create_app() -> FastAPI:
    """Build the application."""
    settings = get_settings()
    observability = init_observability()
    logger.info(f"[STARTUP] Environment={settings.ENVIRONMENT} observability={observability}")

    app = FastAPI(
        title="DM-to-Buy API",
        version="1.0.0",
        description=(
            "Automated Instagram DM and comment replies with tracked checkout links, "
            "follow-ups, purchase attribution and analytics for Shopify stores."
        ),
    )

    # Trust X-Forwarded-* from the platform load balancer (click IPs, https redirects)
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    cors_origins_str = os.getenv("BACKEND_CORS_ORIGINS", "")
    allowed_origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    if allowed_origins:
        logger.info(f"[CORS] Allowed origins: {allowed_origins}")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(meta_webhooks_router.router)  # Instagram DMs and comments
    app.include_router(shopify_webhooks_router.router)  # Orders + uninstall
    app.include_router(links_router.router)  # /c/{link_id} click tracking
    app.include_router(admin_router.router)  # Settings, queue, analytics
    app.include_router(cron_router.router)  # HTTP cron triggers

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
