"""
Sentry configuration for error tracking.

Captures unhandled exceptions and terminal background-job failures.
"""
import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from commerce_core.config import Settings

logger = structlog.get_logger()


def configure_sentry(settings: Settings):
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Does nothing unless SENTRY_DSN is set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        logger.info("sentry_disabled")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    logger.info("sentry_initialized", environment=settings.ENVIRONMENT)


def capture_exception(exc_info=None):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except Exception:
            capture_exception()
    """
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc_info)
