"""
Telemetry Module
================

Observability for the DM-to-Buy backend.

Components:
- sentry.py: Error tracking for the API and the ARQ worker

Usage:
    from dmtobuy.telemetry import init_observability, capture_exception

    init_observability()
"""

from dmtobuy.telemetry.sentry import (
    init_sentry,
    set_shop_context,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization, e.g. {"sentry": False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "set_shop_context",
    "capture_exception",
    "capture_message",
]
