"""
Sentry configuration for error tracking.

Captures unhandled exceptions and tenant-isolated job failures.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from syncengine.config import settings
from syncengine.logging_config import get_logger

log = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Does nothing unless SENTRY_DSN is set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        log.info("sentry_disabled")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=strip_credentials,
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    log.info("sentry_enabled", environment=settings.ENVIRONMENT)


SENSITIVE_HEADERS = {"authorization", "x-shopify-access-token", "cookie"}


def strip_credentials(event, hint):
    """Remove credential-bearing request headers before the event leaves the process."""
    headers = event.get("request", {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in SENSITIVE_HEADERS:
                headers[name] = "[redacted]"
    return event


def capture_exception(exc_info=None, **tags):
    """
    Capture an exception to Sentry, tagged with tenant/job context.

    Usage:
        try:
            ...
        except Exception:
            capture_exception(tenant_id=tenant.id, job_kind=kind)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            scope.set_tag(key, value)
        sentry_sdk.capture_exception(exc_info)


def capture_message(message, level="info"):
    """Capture a message to Sentry."""
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_message(message, level=level)
