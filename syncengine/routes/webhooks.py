"""
Webhook routes.

Inbound platform webhooks (signed by the platform, no JWT) and the tenant's
outbound webhook subscriptions.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
import httpx
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.database import get_db
from syncengine.dependencies.auth import TokenPayload, get_current_user, require_admin
from syncengine.dependencies.services import get_inbound_service
from syncengine.models.webhook import WebhookSubscription
from syncengine.services.inbound_webhooks import InboundWebhookService


router = APIRouter(tags=["webhooks"])


class CreateSubscriptionRequest(BaseModel):
    """Request model for registering a webhook endpoint."""
    url: str
    secret: str = Field(min_length=16)
    events: list[str] = ["*"]

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        try:
            parsed = httpx.URL(value)
        except httpx.InvalidURL as exc:
            raise ValueError(f"invalid url: {exc}") from exc
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise ValueError("url must be an absolute http(s) url")
        return value


def subscription_to_dict(subscription: WebhookSubscription) -> dict:
    return {
        "id": subscription.id,
        "url": subscription.url,
        "events": subscription.events,
        "is_active": subscription.is_active,
        "created_at": subscription.created_at.isoformat() if subscription.created_at else None,
    }


@router.post("/webhooks/channels/{platform_type}/{tenant_channel_id}")
async def receive_channel_webhook(
    platform_type: str,
    tenant_channel_id: str,
    request: Request,
    service: InboundWebhookService = Depends(get_inbound_service),
):
    """Order webhooks from a sales channel, routed by the channel-side shop id."""
    payload = await request.body()
    outcome = await service.handle_channel(platform_type, tenant_channel_id, payload, request.headers)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.post("/webhooks/couriers/{platform_type}")
async def receive_courier_webhook(
    platform_type: str,
    request: Request,
    service: InboundWebhookService = Depends(get_inbound_service),
):
    """Tracking and NDR webhooks from a courier, routed by AWB."""
    payload = await request.body()
    outcome = await service.handle_courier(platform_type, payload, request.headers)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.post("/api/webhooks/subscriptions", status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: CreateSubscriptionRequest,
    token: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Register an endpoint for the tenant's events."""
    subscription = WebhookSubscription(
        tenant_id=token.tenant_id,
        url=body.url,
        secret=body.secret,
        events=body.events,
        is_active=True,
    )
    db.add(subscription)
    await db.commit()
    return subscription_to_dict(subscription)


@router.get("/api/webhooks/subscriptions")
async def list_subscriptions(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = (
        select(WebhookSubscription)
        .where(WebhookSubscription.tenant_id == token.tenant_id)
        .order_by(WebhookSubscription.created_at)
    )
    result = await db.execute(stmt)
    return {"subscriptions": [subscription_to_dict(s) for s in result.scalars().all()]}


@router.delete("/api/webhooks/subscriptions/{subscription_id}")
async def deactivate_subscription(
    subscription_id: str,
    token: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Stop delivering to an endpoint. Pending deliveries are exhausted on their next retry."""
    stmt = select(WebhookSubscription).where(
        WebhookSubscription.id == subscription_id,
        WebhookSubscription.tenant_id == token.tenant_id,
    )
    result = await db.execute(stmt)
    subscription = result.scalar_one_or_none()

    if not subscription:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found"
        )

    subscription.is_active = False
    await db.commit()
    return {"message": "Subscription deactivated"}
