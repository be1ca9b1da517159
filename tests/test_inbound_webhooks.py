"""
Inbound webhook tests: signature checks, routing to the owning tenant,
and NDR creation from courier events.
"""
import base64
import hashlib
import hmac
import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from syncengine.models.commerce import Order, Shipment, ShipmentStatus
from syncengine.models.ndr import NdrPriority, NdrReasonCode, NdrRecord, NdrStatus
from syncengine.models.tenant import IntegrationKind, TenantStatus
from syncengine.models.webhook import WebhookDelivery
from syncengine.services.inbound_webhooks import InboundWebhookService

COURIER_SECRET = "courier-test-secret"
SHOP_SECRET = "shopify-secret"

SHOPIFY_ORDER = {
    "id": 820982911946154508,
    "name": "#1042",
    "total_price": "6400.00",
    "currency": "INR",
    "financial_status": "paid",
    "payment_gateway_names": ["razorpay"],
    "created_at": "2026-03-02T09:00:00Z",
    "updated_at": "2026-03-02T09:05:00Z",
    "shipping_address": {"name": "Vikram Shah", "phone": "+919811111111", "city": "Mumbai"},
}


def courier_body(**fields) -> bytes:
    data = {"waybill": "DL5001", "status_code": "ND", "status": "Undelivered", "remarks": "Customer refused"}
    data.update(fields)
    return json.dumps(data).encode()


def courier_headers(payload: bytes, secret: str = COURIER_SECRET) -> dict:
    return {"X-Delhivery-Signature": hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()}


def shop_headers(payload: bytes, topic: str = "orders/create", secret: str = SHOP_SECRET) -> dict:
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return {"X-Shopify-Hmac-Sha256": base64.b64encode(digest).decode(), "X-Shopify-Topic": topic}


@pytest.fixture
def inbound(session_factory, config, now, recorder):
    handler, transport = recorder()
    return InboundWebhookService(session_factory, config, transport=transport, clock=lambda: now)


async def ndr_cases(session_factory, tenant_id: str) -> list[NdrRecord]:
    async with session_factory() as db:
        result = await db.execute(select(NdrRecord).where(NdrRecord.tenant_id == tenant_id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_refused_delivery_opens_urgent_case(inbound, session_factory, now, make_tenant, make_shipment):
    tenant = await make_tenant()
    await make_shipment(tenant, "DL5001")
    payload = courier_body()

    outcome = await inbound.handle_courier("delhivery", payload, courier_headers(payload))

    assert outcome.status_code == 200
    assert outcome.body["matched"] is True
    assert outcome.body["status"] == ShipmentStatus.DELIVERY_FAILED.value

    [case] = await ndr_cases(session_factory, tenant.id)
    assert outcome.body["ndrId"] == case.id
    assert case.reason == NdrReasonCode.REFUSED
    assert case.priority == NdrPriority.URGENT
    assert case.status == NdrStatus.OPEN
    assert case.due_at == now + timedelta(hours=24)


@pytest.mark.asyncio
async def test_repeat_courier_attempt_updates_the_same_case(inbound, session_factory, make_tenant, make_shipment):
    tenant = await make_tenant()
    await make_shipment(tenant, "DL5001")
    first = courier_body(attempt=1)
    second = courier_body(attempt=2)

    await inbound.handle_courier("delhivery", first, courier_headers(first))
    await inbound.handle_courier("delhivery", second, courier_headers(second))

    [case] = await ndr_cases(session_factory, tenant.id)
    assert case.attempt_count == 2


@pytest.mark.asyncio
async def test_bad_courier_signature_is_rejected_before_routing(inbound, session_factory, make_tenant, make_shipment):
    tenant = await make_tenant()
    await make_shipment(tenant, "DL5001")
    payload = courier_body()

    outcome = await inbound.handle_courier("delhivery", payload, courier_headers(payload, secret="wrong"))
    unsigned = await inbound.handle_courier("delhivery", payload, {})

    assert outcome.status_code == 401
    assert unsigned.status_code == 401
    assert await ndr_cases(session_factory, tenant.id) == []


@pytest.mark.asyncio
async def test_unparseable_and_unknown_courier_payloads(inbound):
    broken = b"{not json"
    no_awb = json.dumps({"status_code": "ND"}).encode()

    assert (await inbound.handle_courier("delhivery", broken, courier_headers(broken))).status_code == 400
    assert (await inbound.handle_courier("delhivery", no_awb, courier_headers(no_awb))).status_code == 400
    assert (await inbound.handle_courier("bluedart", b"{}", {})).status_code == 404


@pytest.mark.asyncio
async def test_signed_courier_event_with_loose_field_types(inbound, session_factory, make_tenant, make_shipment):
    tenant = await make_tenant()
    await make_shipment(tenant, "DL5001")
    payload = courier_body(timestamp=1772445600, remarks=42)
    array_body = b"[\"DL5001\"]"

    outcome = await inbound.handle_courier("delhivery", payload, courier_headers(payload))
    rejected = await inbound.handle_courier("delhivery", array_body, courier_headers(array_body))

    assert outcome.status_code == 200
    assert outcome.body["matched"] is True
    [case] = await ndr_cases(session_factory, tenant.id)
    assert case.reason == NdrReasonCode.OTHER
    assert rejected.status_code == 400


@pytest.mark.asyncio
async def test_unmatched_awb_is_acknowledged(inbound):
    payload = courier_body(waybill="DL-UNKNOWN")

    outcome = await inbound.handle_courier("delhivery", payload, courier_headers(payload))

    assert outcome.status_code == 200
    assert outcome.body == {"accepted": True, "matched": False}


@pytest.mark.asyncio
async def test_courier_event_for_suspended_tenant_is_not_applied(inbound, session_factory, make_tenant, make_shipment):
    tenant = await make_tenant(status=TenantStatus.SUSPENDED)
    await make_shipment(tenant, "DL5001")
    payload = courier_body()

    outcome = await inbound.handle_courier("delhivery", payload, courier_headers(payload))

    assert outcome.body["matched"] is False
    assert await ndr_cases(session_factory, tenant.id) == []


@pytest.mark.asyncio
async def test_delivered_event_updates_shipment(inbound, session_factory, make_tenant, make_shipment):
    tenant = await make_tenant()
    shipment = await make_shipment(tenant, "DL5002")
    payload = courier_body(waybill="DL5002", status_code="DL", status="Delivered", remarks=None)

    outcome = await inbound.handle_courier("delhivery", payload, courier_headers(payload))

    assert outcome.body["status"] == ShipmentStatus.DELIVERED.value
    assert "ndrId" not in outcome.body
    assert await ndr_cases(session_factory, tenant.id) == []
    async with session_factory() as db:
        stored = (await db.execute(select(Shipment).where(Shipment.id == shipment.id))).scalar_one()
        assert stored.status == ShipmentStatus.DELIVERED
        assert stored.delivered_at is not None


@pytest.mark.asyncio
async def test_channel_order_webhook_upserts_order(
    inbound, session_factory, make_tenant, make_integration, make_subscription
):
    tenant = await make_tenant()
    await make_subscription(tenant)
    integration = await make_integration(tenant, external_ref="acme.myshopify.com", webhook_secret=SHOP_SECRET)
    payload = json.dumps(SHOPIFY_ORDER).encode()

    created = await inbound.handle_channel("shopify", "acme.myshopify.com", payload, shop_headers(payload))
    replayed = await inbound.handle_channel("shopify", "acme.myshopify.com", payload, shop_headers(payload))

    assert created.status_code == 200
    assert replayed.body["orderId"] == created.body["orderId"]
    async with session_factory() as db:
        [order] = (await db.execute(select(Order).where(Order.tenant_id == tenant.id))).scalars().all()
        events = (await db.execute(
            select(WebhookDelivery.event_type).where(WebhookDelivery.tenant_id == tenant.id)
        )).scalars().all()
    assert order.integration_id == integration.id
    assert order.order_number == "#1042"
    assert order.total == 6400.0
    assert order.payment_method == "prepaid"
    assert list(events) == ["order.created"]


@pytest.mark.asyncio
async def test_channel_webhook_routing_and_signature(inbound, make_tenant, make_integration):
    tenant = await make_tenant()
    await make_integration(tenant, external_ref="acme.myshopify.com", webhook_secret=SHOP_SECRET)
    await make_integration(
        tenant, platform_type="delhivery", kind=IntegrationKind.COURIER, external_ref="acme-delhivery"
    )
    payload = json.dumps(SHOPIFY_ORDER).encode()

    wrong_shop = await inbound.handle_channel("shopify", "other.myshopify.com", payload, shop_headers(payload))
    unknown_platform = await inbound.handle_channel("woocommerce", "acme.myshopify.com", payload, shop_headers(payload))
    courier_as_channel = await inbound.handle_channel("delhivery", "acme-delhivery", payload, {})
    forged = await inbound.handle_channel(
        "shopify", "acme.myshopify.com", payload, shop_headers(payload, secret="guess")
    )
    ignored = await inbound.handle_channel(
        "shopify", "acme.myshopify.com", payload, shop_headers(payload, topic="products/update")
    )

    assert wrong_shop.status_code == 404
    assert unknown_platform.status_code == 404
    assert courier_as_channel.status_code == 404
    assert forged.status_code == 401
    assert ignored.status_code == 200 and ignored.body["ignored"] is True
