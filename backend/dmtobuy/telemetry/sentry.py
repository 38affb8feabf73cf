"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the ARQ worker.

Errors that are caught and deliberately not propagated (attribution
recording, per-message follow-up failures, provider send failures that go
back to the queue) are reported here so they are never silent.

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release tag set by CI/CD
"""

from __future__ import annotations

import os
import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_sentry_enabled = False


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Should be called once during application (or worker) startup.

    Returns:
        True if Sentry was initialized successfully, False otherwise.
    """
    global _sentry_enabled

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Instagram user ids and order data stay out of events unless set explicitly
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        _sentry_enabled = True
        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def set_shop_context(shop_id: str, shop_domain: Optional[str] = None) -> None:
    """Attach the tenant to subsequent events in the current scope."""
    if not _sentry_enabled:
        return

    try:
        sentry_sdk.set_tag("shop_id", shop_id)
        if shop_domain:
            sentry_sdk.set_tag("shop_domain", shop_domain)
    except Exception as e:
        logger.debug(f"[SENTRY] Failed to set shop context: {e}")


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled but should still
    be tracked for monitoring purposes.

    Example:
        try:
            record_attribution(...)
        except SQLAlchemyError as e:
            capture_exception(e, extra={"shop_id": shop_id, "order_id": order_id})
    """
    if not _sentry_enabled:
        logger.error(f"Exception (Sentry disabled): {exception}", extra={"context": extra or {}})
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Capture a non-exception event (e.g. a batch that failed for every shop)."""
    if not _sentry_enabled:
        logger.log(
            logging.getLevelName(level.upper()),
            f"Message (Sentry disabled): {message}"
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
