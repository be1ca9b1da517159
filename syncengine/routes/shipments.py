"""
Shipment routes.

Booking calls the courier synchronously through the tenant's courier adapter.
"""
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.adapters.base import ShipmentRequest
from syncengine.adapters.factory import AdapterFactory
from syncengine.database import get_db
from syncengine.dependencies.auth import TokenPayload, require_admin
from syncengine.dependencies.services import get_dispatcher, get_http_transport
from syncengine.errors import CredentialError, UnsupportedPlatformError
from syncengine.models.commerce import Order
from syncengine.models.tenant import IntegrationKind, TenantIntegration
from syncengine.routes.errors import raise_for_result
from syncengine.services.credential_store import CredentialStore
from syncengine.services.shipment_service import ShipmentService
from syncengine.services.webhook_service import WebhookDispatcher


router = APIRouter(prefix="/api/orders", tags=["shipments"])


class BookShipmentRequest(BaseModel):
    courier: str
    address: str
    city: str
    state: str
    pincode: str
    weight_grams: int = 500
    product_description: str = ""
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None


@router.post("/{order_id}/shipments", status_code=status.HTTP_201_CREATED)
async def book_shipment(
    order_id: str,
    body: BookShipmentRequest,
    token: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_http_transport),
):
    order = (await db.execute(
        select(Order).where(Order.id == order_id, Order.tenant_id == token.tenant_id)
    )).scalar_one_or_none()
    if order is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )

    integration = (await db.execute(
        select(TenantIntegration).where(
            TenantIntegration.tenant_id == token.tenant_id,
            TenantIntegration.platform_type == body.courier,
            TenantIntegration.kind == IntegrationKind.COURIER,
            TenantIntegration.is_active.is_(True),
        )
    )).scalars().first()
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active {body.courier} integration"
        )

    is_cod = (order.payment_method or "").lower() == "cod"
    request = ShipmentRequest(
        order_ref=order.order_number,
        customer_name=body.customer_name or order.customer_name or "",
        customer_phone=body.customer_phone or order.customer_phone or "",
        address=body.address,
        city=body.city,
        state=body.state,
        pincode=body.pincode,
        payment_method="cod" if is_cod else "prepaid",
        total=order.total,
        cod_amount=order.total if is_cod else 0.0,
        weight_grams=body.weight_grams,
        product_description=body.product_description,
    )

    try:
        credential = CredentialStore(db, token.tenant_id).for_integration(integration)
        adapter = AdapterFactory(transport=transport).create(credential, token.tenant_id)
    except (CredentialError, UnsupportedPlatformError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc)
        )

    async with adapter:
        result = await ShipmentService(db, token.tenant_id, dispatcher).book(adapter, order, request)
    raise_for_result(result)
    shipment = result.value
    return {
        "id": shipment.id,
        "awb": shipment.awb,
        "courier": shipment.courier,
        "status": shipment.status.value,
    }
