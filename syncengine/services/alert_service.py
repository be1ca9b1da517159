"""
Operator alert service.

Persists stuck-work signals (exhausted webhooks, NDR queues without agent
capacity, integrations whose credentials were rejected).
"""
from datetime import datetime
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.logging_config import get_logger
from syncengine.models.notification import AlertKind, OperatorAlert
from syncengine.timeutils import utcnow


async def raise_alert(
    db: AsyncSession,
    tenant_id: str,
    kind: AlertKind,
    reference: str,
    message: str,
    now: datetime | None = None,
) -> OperatorAlert:
    """
    Raise an alert unless an unresolved one already exists for the same reference.

    The caller owns the transaction; the alert is added but not committed.
    """
    stmt = select(OperatorAlert).where(
        OperatorAlert.tenant_id == tenant_id,
        OperatorAlert.kind == kind,
        OperatorAlert.reference == reference,
        OperatorAlert.resolved_at.is_(None),
    )
    result = await db.execute(stmt)
    existing = result.scalars().first()
    if existing:
        return existing

    alert = OperatorAlert(
        tenant_id=tenant_id,
        kind=kind,
        reference=reference,
        message=message,
        raised_at=now or utcnow(),
    )
    db.add(alert)
    get_logger(tenant_id=tenant_id).warning(
        "operator_alert_raised",
        kind=kind.value,
        reference=reference,
        message=message,
    )
    return alert


async def resolve_alerts(
    db: AsyncSession,
    tenant_id: str,
    kind: AlertKind,
    reference: str | None = None,
    now: datetime | None = None,
) -> int:
    """Resolve open alerts of a kind (optionally for one reference). Returns how many."""
    stmt = select(OperatorAlert).where(
        OperatorAlert.tenant_id == tenant_id,
        OperatorAlert.kind == kind,
        OperatorAlert.resolved_at.is_(None),
    )
    if reference is not None:
        stmt = stmt.where(OperatorAlert.reference == reference)
    result = await db.execute(stmt)
    alerts = list(result.scalars().all())
    for alert in alerts:
        alert.resolved_at = now or utcnow()
    return len(alerts)


async def list_open_alerts(db: AsyncSession, tenant_id: str) -> list[OperatorAlert]:
    stmt = (
        select(OperatorAlert)
        .where(OperatorAlert.tenant_id == tenant_id, OperatorAlert.resolved_at.is_(None))
        .order_by(OperatorAlert.raised_at.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
