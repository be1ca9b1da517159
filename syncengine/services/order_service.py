"""
Order upserts shared by the order sync job and inbound channel webhooks.

SECURITY: All queries MUST include tenant_id filter.
"""
import json

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.adapters.base import ChannelOrder
from syncengine.models.commerce import Order


def order_event(order: Order) -> dict:
    return {
        "orderId": order.id,
        "externalId": order.external_id,
        "orderNumber": order.order_number,
        "status": order.status,
        "total": order.total,
        "currency": order.currency,
        "paymentMethod": order.payment_method,
    }


async def upsert_order(
    db: AsyncSession,
    tenant_id: str,
    integration_id: str,
    incoming: ChannelOrder,
) -> tuple[Order, bool, bool]:
    """
    Insert or update an order from its channel representation.

    A remote copy older than what is stored is ignored, so a late webhook
    never overwrites a newer sync. The caller commits.

    Returns:
        (order, created, changed)
    """
    stmt = select(Order).where(
        Order.tenant_id == tenant_id,
        Order.integration_id == integration_id,
        Order.external_id == incoming.external_id,
    )
    result = await db.execute(stmt)
    order = result.scalar_one_or_none()

    created = order is None
    if created:
        order = Order(
            tenant_id=tenant_id,
            integration_id=integration_id,
            external_id=incoming.external_id,
        )
        db.add(order)
    elif (
        order.remote_updated_at is not None
        and incoming.updated_at is not None
        and incoming.updated_at <= order.remote_updated_at
    ):
        return order, False, False

    order.order_number = incoming.order_number
    order.status = incoming.status
    order.financial_status = incoming.financial_status
    order.payment_method = incoming.payment_method
    order.total = incoming.total
    order.currency = incoming.currency
    order.customer_name = incoming.customer_name
    order.customer_phone = incoming.customer_phone
    order.shipping_address = json.dumps(incoming.shipping_address) if incoming.shipping_address else None
    order.ordered_at = incoming.ordered_at
    order.remote_updated_at = incoming.updated_at
    await db.flush()
    return order, created, True
