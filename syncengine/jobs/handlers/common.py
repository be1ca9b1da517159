"""Helpers shared by job handlers."""
from datetime import datetime

from syncengine.errors import ErrorKind, Result
from syncengine.models.notification import AlertKind
from syncengine.models.tenant import TenantIntegration
from syncengine.services.alert_service import raise_alert, resolve_alerts
from syncengine.timeutils import parse_timestamp, utcnow

# Failures after which the rest of an integration's batch is skipped
STOP_BATCH_KINDS = {ErrorKind.CIRCUIT_OPEN, ErrorKind.INVALID_CREDENTIALS, ErrorKind.CANCELLED}


def arg_time(args: dict, name: str, default: datetime | None = None) -> datetime:
    """Read an ISO timestamp job argument; args cross the arq boundary as strings."""
    value = args.get(name)
    if isinstance(value, datetime):
        return value
    return parse_timestamp(value) or default or utcnow()


def failure_note(integration: TenantIntegration, result: Result) -> str:
    return f"{integration.platform_type}:{result.error.kind.value}:{result.error.code}"


async def note_auth_failure(ctx, integration: TenantIntegration, result: Result, now: datetime):
    """Raise an integration_auth_failed alert when the platform rejected the credentials."""
    if result.error.kind != ErrorKind.INVALID_CREDENTIALS:
        return
    await raise_alert(
        ctx.session,
        ctx.tenant_id,
        AlertKind.INTEGRATION_AUTH_FAILED,
        integration.id,
        f"{integration.platform_type} rejected the stored credentials ({result.error.code})",
        now,
    )
    await ctx.session.commit()


async def clear_auth_failure(ctx, integration: TenantIntegration, now: datetime):
    await resolve_alerts(ctx.session, ctx.tenant_id, AlertKind.INTEGRATION_AUTH_FAILED, integration.id, now)
