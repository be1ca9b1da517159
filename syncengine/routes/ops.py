"""
Operator routes: stuck-work alerts and the webhook retry store.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.database import get_db
from syncengine.dependencies.auth import TokenPayload, get_current_user, require_admin
from syncengine.dependencies.services import get_dispatcher
from syncengine.models.webhook import DeliveryStatus, WebhookDelivery
from syncengine.routes.errors import raise_for_result
from syncengine.services.alert_service import list_open_alerts
from syncengine.services.webhook_service import WebhookDispatcher


router = APIRouter(prefix="/api/ops", tags=["ops"])


def delivery_to_dict(delivery: WebhookDelivery) -> dict:
    return {
        "id": delivery.id,
        "subscription_id": delivery.subscription_id,
        "event_type": delivery.event_type,
        "url": delivery.url,
        "status": delivery.status.value,
        "attempt_count": delivery.attempt_count,
        "next_attempt_at": delivery.next_attempt_at.isoformat() if delivery.next_attempt_at else None,
        "response_code": delivery.response_code,
        "last_error": delivery.last_error,
    }


@router.get("/alerts")
async def get_alerts(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Unresolved operator alerts for the tenant."""
    alerts = await list_open_alerts(db, token.tenant_id)
    return {
        "alerts": [
            {
                "id": alert.id,
                "kind": alert.kind.value,
                "reference": alert.reference,
                "message": alert.message,
                "raised_at": alert.raised_at.isoformat(),
            }
            for alert in alerts
        ]
    }


@router.get("/webhook-deliveries")
async def list_deliveries(
    status_filter: Optional[DeliveryStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(WebhookDelivery).where(WebhookDelivery.tenant_id == token.tenant_id)
    if status_filter is not None:
        stmt = stmt.where(WebhookDelivery.status == status_filter)
    stmt = stmt.order_by(WebhookDelivery.created_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return {"deliveries": [delivery_to_dict(d) for d in result.scalars().all()]}


@router.post("/webhook-deliveries/{delivery_id}/requeue")
async def requeue_delivery(
    delivery_id: str,
    token: TokenPayload = Depends(require_admin),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Give an exhausted delivery one more attempt on the next retry pass."""
    result = await dispatcher.requeue_exhausted(delivery_id)
    raise_for_result(result)
    return delivery_to_dict(result.value)
