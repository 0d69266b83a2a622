"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the ARQ worker.

Related files:
- leadgraph/main.py: Initializes Sentry on app startup
- leadgraph/workers/arq_worker.py: Initializes Sentry on worker startup
- leadgraph/services/*.py: Best-effort failures reported via capture_exception

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
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

_initialized = False


def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable."""
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Should be called once during application or worker startup.

    Returns:
        True if Sentry was initialized, False if no DSN is configured
        or initialization failed.
    """
    global _initialized

    dsn = get_sentry_dsn()
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
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Contacts carry emails/phones - never ship them implicitly
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        _initialized = True
        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled (best-effort
    side effects, scheduled jobs) but should still be tracked.

    Example:
        try:
            linker.unify_sessions_on_conversion(contact_id, session)
        except SessionLinkError as e:
            capture_exception(e, extra={"contact_id": contact_id})
    """
    if not _initialized:
        logger.error(f"Exception (Sentry disabled): {exception}")
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
    """
    Capture a message to Sentry.

    Example:
        capture_message(
            "Identity link conflict",
            level="warning",
            extra={"identifier": "visitor_id:v1"}
        )
    """
    if not _initialized:
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
