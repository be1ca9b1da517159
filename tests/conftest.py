"""
Shared fixtures.

Every test gets its own SQLite database file so tenants, deliveries and
NDR cases never leak between tests.
"""
import os

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CREDENTIALS_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["COURIER_WEBHOOK_SECRETS"] = '{"delhivery": "courier-test-secret"}'
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["ADAPTER_RATE_LIMIT_PER_MINUTE"] = "0"

from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from syncengine.config import Settings
from syncengine.models import commerce, job_run, ndr, notification, tenant, user, webhook  # noqa: F401
from syncengine.models.base import Base
from syncengine.models.commerce import Order, Shipment, ShipmentStatus
from syncengine.models.ndr import NdrPriority, NdrReasonCode, NdrRecord, NdrStatus
from syncengine.models.tenant import IntegrationKind, Tenant, TenantIntegration, TenantStatus
from syncengine.models.user import User, UserRole
from syncengine.models.webhook import WebhookSubscription
from syncengine.services.credential_store import encrypt_credentials

NOW = datetime(2026, 3, 2, 10, 0, 0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def config() -> Settings:
    """Fast retries and no initial delays."""
    return Settings(
        ADAPTER_MAX_ATTEMPTS=3,
        ADAPTER_BACKOFF_BASE_SECONDS=2.0,
        CIRCUIT_BREAKER_FAILURE_THRESHOLD=5,
        CIRCUIT_BREAKER_COOLDOWN_SECONDS=60.0,
        WEBHOOK_MAX_ATTEMPTS=10,
        NOTIFICATION_GATEWAY_URL="https://gateway.test/send",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'syncengine.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_tenant(db):
    async def factory(name: str = "Acme", status: TenantStatus = TenantStatus.ACTIVE) -> Tenant:
        tenant_row = Tenant(name=name, partition_key=name.lower().replace(" ", "-"), status=status)
        db.add(tenant_row)
        await db.commit()
        return tenant_row
    return factory


@pytest.fixture
def make_integration(db):
    async def factory(
        tenant_row: Tenant,
        platform_type: str = "shopify",
        kind: IntegrationKind = IntegrationKind.CHANNEL,
        external_ref: str | None = None,
        credentials: dict | None = None,
        webhook_secret: str | None = None,
    ) -> TenantIntegration:
        if credentials is None:
            credentials = (
                {"access_token": "shpat_test", "location_id": "7001"}
                if platform_type == "shopify"
                else {"api_token": "dlv_test", "base_url": "https://delhivery.test"}
            )
        integration = TenantIntegration(
            tenant_id=tenant_row.id,
            platform_type=platform_type,
            kind=kind,
            external_ref=external_ref or f"{tenant_row.partition_key}.myshopify.com",
            credentials_encrypted=encrypt_credentials(credentials),
            webhook_secret=webhook_secret,
            is_active=True,
        )
        db.add(integration)
        await db.commit()
        return integration
    return factory


@pytest.fixture
def make_user(db):
    async def factory(
        tenant_row: Tenant,
        email: str,
        role: UserRole = UserRole.AGENT,
        ndr_capacity: int | None = None,
        last_assigned_at: datetime | None = None,
    ) -> User:
        row = User(
            tenant_id=tenant_row.id,
            email=email,
            name=email.split("@")[0],
            role=role,
            ndr_capacity=ndr_capacity,
            last_assigned_at=last_assigned_at,
        )
        db.add(row)
        await db.commit()
        return row
    return factory


@pytest.fixture
def make_order(db):
    async def factory(
        tenant_row: Tenant,
        integration: TenantIntegration,
        external_id: str = "1001",
        total: float = 1200.0,
        payment_method: str = "prepaid",
    ) -> Order:
        order = Order(
            tenant_id=tenant_row.id,
            integration_id=integration.id,
            external_id=external_id,
            order_number=f"#{external_id}",
            total=total,
            currency="INR",
            payment_method=payment_method,
            customer_name="Asha Rao",
            customer_phone="+919800000001",
        )
        db.add(order)
        await db.commit()
        return order
    return factory


@pytest.fixture
def make_shipment(db):
    async def factory(
        tenant_row: Tenant,
        awb: str,
        courier: str = "delhivery",
        status: ShipmentStatus = ShipmentStatus.IN_TRANSIT,
        order_value: float = 1200.0,
        payment_method: str = "prepaid",
        customer_phone: str | None = "+919800000001",
        last_tracked_at: datetime | None = None,
        last_status_at: datetime | None = None,
    ) -> Shipment:
        shipment = Shipment(
            tenant_id=tenant_row.id,
            order_ref=f"#{awb[-4:]}",
            courier=courier,
            awb=awb,
            status=status,
            order_value=order_value,
            payment_method=payment_method,
            customer_phone=customer_phone,
            last_tracked_at=last_tracked_at,
            last_status_at=last_status_at,
            created_at=NOW - timedelta(days=1),
        )
        db.add(shipment)
        await db.commit()
        return shipment
    return factory


@pytest.fixture
def make_ndr(db):
    async def factory(
        tenant_row: Tenant,
        awb: str,
        status: NdrStatus = NdrStatus.OPEN,
        priority: NdrPriority = NdrPriority.MEDIUM,
        reason: NdrReasonCode = NdrReasonCode.CUSTOMER_NOT_AVAILABLE,
        opened_at: datetime = NOW,
        due_at: datetime | None = None,
        assigned_user_id: str | None = None,
        reattempt_at: datetime | None = None,
    ) -> NdrRecord:
        record = NdrRecord(
            tenant_id=tenant_row.id,
            awb=awb,
            order_ref=f"#{awb[-4:]}",
            reason=reason,
            status=status,
            priority=priority,
            opened_at=opened_at,
            due_at=due_at or opened_at + timedelta(hours=36),
            assigned_user_id=assigned_user_id,
            reattempt_at=reattempt_at,
        )
        db.add(record)
        await db.commit()
        return record
    return factory


@pytest.fixture
def make_subscription(db):
    async def factory(
        tenant_row: Tenant,
        url: str = "https://hooks.merchant.test/syncengine",
        events: list | None = None,
        secret: str = "whsec_0123456789abcdef",
    ) -> WebhookSubscription:
        subscription = WebhookSubscription(
            tenant_id=tenant_row.id,
            url=url,
            secret=secret,
            events=events or ["*"],
            is_active=True,
        )
        db.add(subscription)
        await db.commit()
        return subscription
    return factory


class RecordingHandler:
    """httpx.MockTransport handler that records requests and replays queued responses."""

    def __init__(self, *responses: httpx.Response, default: httpx.Response | None = None):
        self.responses = list(responses)
        self.default = default or httpx.Response(200, json={})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return self.default


@pytest.fixture
def recorder():
    """Build a (handler, transport) pair."""
    def factory(*responses, default=None):
        handler = RecordingHandler(*responses, default=default)
        return handler, httpx.MockTransport(handler)
    return factory


class FakeSleep:
    """Records backoff waits instead of sleeping."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep():
    return FakeSleep()
