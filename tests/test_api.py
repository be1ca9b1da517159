"""
HTTP surface tests through the FastAPI app with signed bearer tokens.
"""
import hashlib
import hmac
import json
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio
from jose import jwt

from syncengine.database import get_db, get_session_factory
from syncengine.dependencies.services import get_http_transport, get_job_enqueuer
from syncengine.main import app
from syncengine.models.ndr import NdrStatus
from syncengine.models.notification import AlertKind
from syncengine.models.tenant import IntegrationKind
from syncengine.models.webhook import DeliveryStatus, WebhookDelivery
from syncengine.services.alert_service import raise_alert
from syncengine.timeutils import utcnow


def bearer(tenant_id: str, user_id: str = "user-1", role: str = "admin") -> dict:
    token = jwt.encode(
        {"sub": user_id, "tenant_id": tenant_id, "role": role, "exp": utcnow() + timedelta(hours=1)},
        "test-jwt-secret",
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def courier_api(recorder):
    return recorder(httpx.Response(200, json={"success": True, "packages": [{"waybill": "DL77001"}]}))


@pytest.fixture
def queued():
    return []


@pytest_asyncio.fixture
async def client(session_factory, courier_api, queued):
    handler, transport = courier_api

    async def override_db():
        async with session_factory() as session:
            yield session

    async def fake_enqueue(job_kind: str, tenant_id: str):
        queued.append((job_kind, tenant_id))
        return f"job-{len(queued)}"

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_http_transport] = lambda: transport
    app.dependency_overrides[get_job_enqueuer] = lambda: fake_enqueue

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_requests_without_a_valid_token_are_refused(client):
    missing = await client.get("/api/ndr/")
    forged = await client.get("/api/ndr/", headers={"Authorization": "Bearer not-a-token"})

    assert missing.status_code in (401, 403)
    assert forged.status_code == 401


@pytest.mark.asyncio
async def test_ndr_lifecycle_over_http(client, make_tenant, make_user, make_ndr):
    tenant = await make_tenant()
    agent = await make_user(tenant, "ravi@acme.test")
    record = await make_ndr(tenant, "DL6001")
    headers = bearer(tenant.id, user_id=agent.id, role="agent")

    too_early = await client.post(f"/api/ndr/{record.id}/resolve", json={"resolution": "delivered"}, headers=headers)
    assigned = await client.post(f"/api/ndr/{record.id}/assign", json={"user_id": agent.id}, headers=headers)
    past = await client.post(
        f"/api/ndr/{record.id}/reattempt",
        json={"reattempt_at": "2020-01-01T00:00:00Z"},
        headers=headers,
    )
    resolved = await client.post(f"/api/ndr/{record.id}/resolve", json={"resolution": "delivered"}, headers=headers)
    detail = await client.get(f"/api/ndr/{record.id}", headers=headers)

    assert too_early.status_code == 409
    assert too_early.json()["detail"]["code"] == "invalid_transition"
    assert assigned.status_code == 200
    assert assigned.json()["status"] == NdrStatus.IN_PROGRESS.value
    assert past.status_code == 422
    assert resolved.status_code == 200
    assert resolved.json()["resolution"] == "delivered"
    assert detail.json()["status"] == NdrStatus.RESOLVED.value


@pytest.mark.asyncio
async def test_ndr_list_is_tenant_scoped(client, make_tenant, make_ndr):
    acme = await make_tenant("Acme")
    beta = await make_tenant("Beta")
    mine = await make_ndr(acme, "DL6101")
    await make_ndr(beta, "DL6102")

    listed = await client.get("/api/ndr/", headers=bearer(acme.id))
    foreign = await client.get(f"/api/ndr/{mine.id}", headers=bearer(beta.id))

    assert [n["id"] for n in listed.json()["ndrs"]] == [mine.id]
    assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_trigger_job_enqueues_for_callers_tenant(client, queued, make_tenant):
    tenant = await make_tenant()

    accepted = await client.post("/api/jobs/order_sync/trigger", headers=bearer(tenant.id))
    not_triggerable = await client.post("/api/jobs/data_cleanup/trigger", headers=bearer(tenant.id))
    not_admin = await client.post("/api/jobs/order_sync/trigger", headers=bearer(tenant.id, role="agent"))

    assert accepted.status_code == 202
    assert accepted.json()["job_id"] == "job-1"
    assert queued == [("order_sync", tenant.id)]
    assert not_triggerable.status_code == 400
    assert not_admin.status_code == 403


@pytest.mark.asyncio
async def test_trigger_job_reports_unavailable_queue(client, make_tenant):
    tenant = await make_tenant()

    async def broken_enqueue(job_kind: str, tenant_id: str):
        return None

    app.dependency_overrides[get_job_enqueuer] = lambda: broken_enqueue
    response = await client.post("/api/jobs/shipment_tracking/trigger", headers=bearer(tenant.id))

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_operator_requeues_exhausted_delivery(client, db, now, make_tenant, make_subscription):
    tenant = await make_tenant()
    subscription = await make_subscription(tenant)
    delivery = WebhookDelivery(
        tenant_id=tenant.id,
        subscription_id=subscription.id,
        event_type="ndr.created",
        idempotency_key="ndr.created:n-1",
        payload=json.dumps({"eventType": "ndr.created"}),
        url=subscription.url,
        status=DeliveryStatus.EXHAUSTED,
        attempt_count=10,
    )
    db.add(delivery)
    await db.flush()
    await raise_alert(db, tenant.id, AlertKind.WEBHOOK_EXHAUSTED, delivery.id, "gave up", now)
    await db.commit()

    alerts_before = await client.get("/api/ops/alerts", headers=bearer(tenant.id))
    requeued = await client.post(f"/api/ops/webhook-deliveries/{delivery.id}/requeue", headers=bearer(tenant.id))
    twice = await client.post(f"/api/ops/webhook-deliveries/{delivery.id}/requeue", headers=bearer(tenant.id))
    alerts_after = await client.get("/api/ops/alerts", headers=bearer(tenant.id))
    pending = await client.get("/api/ops/webhook-deliveries?status=pending", headers=bearer(tenant.id))

    assert [a["reference"] for a in alerts_before.json()["alerts"]] == [delivery.id]
    assert requeued.status_code == 200
    assert requeued.json()["status"] == "pending"
    assert requeued.json()["attempt_count"] == 10
    assert twice.status_code == 409
    assert alerts_after.json()["alerts"] == []
    assert [d["id"] for d in pending.json()["deliveries"]] == [delivery.id]


@pytest.mark.asyncio
async def test_subscription_management(client, make_tenant):
    tenant = await make_tenant()

    short_secret = await client.post(
        "/api/webhooks/subscriptions",
        json={"url": "https://hooks.acme.test/in", "secret": "short"},
        headers=bearer(tenant.id),
    )
    malformed = await client.post(
        "/api/webhooks/subscriptions",
        json={"url": "http://[::1/hook", "secret": "whsec_0123456789abcdef"},
        headers=bearer(tenant.id),
    )
    relative = await client.post(
        "/api/webhooks/subscriptions",
        json={"url": "hooks/in", "secret": "whsec_0123456789abcdef"},
        headers=bearer(tenant.id),
    )
    created = await client.post(
        "/api/webhooks/subscriptions",
        json={"url": "https://hooks.acme.test/in", "secret": "whsec_0123456789abcdef", "events": ["ndr.*"]},
        headers=bearer(tenant.id),
    )
    listed = await client.get("/api/webhooks/subscriptions", headers=bearer(tenant.id, role="viewer"))
    removed = await client.delete(
        f"/api/webhooks/subscriptions/{created.json()['id']}", headers=bearer(tenant.id)
    )

    assert short_secret.status_code == 422
    assert malformed.status_code == 422
    assert relative.status_code == 422
    assert created.status_code == 201
    assert created.json()["events"] == ["ndr.*"]
    assert [s["url"] for s in listed.json()["subscriptions"]] == ["https://hooks.acme.test/in"]
    assert "secret" not in listed.json()["subscriptions"][0]
    assert removed.status_code == 200


@pytest.mark.asyncio
async def test_book_shipment_with_courier(client, courier_api, make_tenant, make_integration, make_order):
    handler, _ = courier_api
    tenant = await make_tenant()
    channel = await make_integration(tenant)
    await make_integration(tenant, platform_type="delhivery", kind=IntegrationKind.COURIER, external_ref="acme-dlv")
    order = await make_order(tenant, channel, payment_method="cod", total=2100.0)

    response = await client.post(
        f"/api/orders/{order.id}/shipments",
        json={"courier": "delhivery", "address": "12 MG Road", "city": "Pune", "state": "MH", "pincode": "411001"},
        headers=bearer(tenant.id),
    )
    missing_courier = await client.post(
        f"/api/orders/{order.id}/shipments",
        json={"courier": "bluedart", "address": "x", "city": "Pune", "state": "MH", "pincode": "411001"},
        headers=bearer(tenant.id),
    )

    assert response.status_code == 201
    assert response.json()["awb"] == "DL77001"
    assert response.json()["status"] == "manifested"
    assert handler.requests[0].url.host == "delhivery.test"
    assert missing_courier.status_code == 404


@pytest.mark.asyncio
async def test_courier_webhook_route(client, make_tenant, make_shipment):
    tenant = await make_tenant()
    await make_shipment(tenant, "DL6201")
    payload = json.dumps({"waybill": "DL6201", "status_code": "ND", "remarks": "Customer refused"}).encode()
    signature = hmac.new(b"courier-test-secret", payload, hashlib.sha256).hexdigest()

    accepted = await client.post(
        "/webhooks/couriers/delhivery", content=payload, headers={"X-Delhivery-Signature": signature}
    )
    rejected = await client.post(
        "/webhooks/couriers/delhivery", content=payload, headers={"X-Delhivery-Signature": "0" * 64}
    )

    assert accepted.status_code == 200
    assert accepted.json()["ndrId"]
    assert rejected.status_code == 401


@pytest.mark.asyncio
async def test_root_and_metrics_are_public(client):
    root = await client.get("/")
    metrics = await client.get("/metrics")

    assert root.json()["status"] == "running"
    assert metrics.status_code == 200
    assert "job_runs_total" in metrics.text
