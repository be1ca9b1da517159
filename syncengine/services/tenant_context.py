"""
Tenant context.

Everything a unit of work may touch for one tenant: a session of its own,
its credential store and its adapters. A context is built fresh for every
(job run, tenant) pair and never shared between tenants or reused across
runs.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncengine.adapters.base import BaseAdapter
from syncengine.adapters.factory import AdapterFactory
from syncengine.config import Settings, settings
from syncengine.logging_config import get_logger
from syncengine.models.tenant import IntegrationKind, TenantIntegration
from syncengine.services.assignment_service import AssignmentService
from syncengine.services.credential_store import CredentialStore
from syncengine.services.ndr_service import NdrService
from syncengine.services.notification_service import NotificationGateway
from syncengine.services.shipment_service import ShipmentService
from syncengine.services.tenant_directory import TenantSnapshot
from syncengine.services.webhook_service import WebhookDispatcher


@dataclass
class TenantContext:
    """
    Scoped resources for one tenant.

    SECURITY: every service built here is bound to `tenant.id`.
    """
    tenant: TenantSnapshot
    session: AsyncSession
    config: Settings
    adapter_factory: AdapterFactory
    stop_event: asyncio.Event
    transport: Optional[httpx.AsyncBaseTransport] = None
    notification_gateway: Optional[NotificationGateway] = None
    log: Any = None
    credentials: CredentialStore = field(init=False)

    def __post_init__(self):
        self.credentials = CredentialStore(self.session, self.tenant.id)
        if self.log is None:
            self.log = get_logger(tenant_id=self.tenant.id)

    @property
    def tenant_id(self) -> str:
        return self.tenant.id

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    async def integrations(self, kind: IntegrationKind | None = None) -> list[TenantIntegration]:
        """The tenant's active integrations, optionally of one kind."""
        stmt = select(TenantIntegration).where(
            TenantIntegration.tenant_id == self.tenant.id,
            TenantIntegration.is_active.is_(True),
        )
        if kind is not None:
            stmt = stmt.where(TenantIntegration.kind == kind)
        result = await self.session.execute(stmt.order_by(TenantIntegration.created_at))
        return list(result.scalars().all())

    @asynccontextmanager
    async def adapter_for(self, integration: TenantIntegration) -> AsyncIterator[BaseAdapter]:
        """
        Adapter holding this integration's credentials for the block only.

        Raises:
            CredentialError: credentials missing or undecryptable
            UnsupportedPlatformError: no adapter for the platform
        """
        credential = self.credentials.for_integration(integration)
        adapter = self.adapter_factory.create(credential, self.tenant.id, self.stop_event)
        async with adapter:
            yield adapter

    def dispatcher(self) -> WebhookDispatcher:
        return WebhookDispatcher(self.session, self.tenant.id, self.config, self.transport)

    def ndr(self) -> NdrService:
        return NdrService(self.session, self.tenant.id, self.dispatcher(), self.config)

    def assignment(self) -> AssignmentService:
        return AssignmentService(self.session, self.tenant.id, self.config)

    def shipments(self) -> ShipmentService:
        dispatcher = self.dispatcher()
        return ShipmentService(
            self.session,
            self.tenant.id,
            dispatcher,
            NdrService(self.session, self.tenant.id, dispatcher, self.config),
        )


class TenantContextFactory:
    """Opens TenantContexts on a session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: Settings = settings,
        adapter_factory: Optional[AdapterFactory] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        notification_gateway: Optional[NotificationGateway] = None,
    ):
        self.session_factory = session_factory
        self.config = config
        self.adapter_factory = adapter_factory or AdapterFactory(config, transport=transport)
        self.transport = transport
        self.notification_gateway = notification_gateway or NotificationGateway(config, transport)

    @asynccontextmanager
    async def open(
        self,
        tenant: TenantSnapshot,
        stop_event: Optional[asyncio.Event] = None,
        **log_context,
    ) -> AsyncIterator[TenantContext]:
        async with self.session_factory() as session:
            yield TenantContext(
                tenant=tenant,
                session=session,
                config=self.config,
                adapter_factory=self.adapter_factory,
                stop_event=stop_event or asyncio.Event(),
                transport=self.transport,
                notification_gateway=self.notification_gateway,
                log=get_logger(tenant_id=tenant.id, **log_context),
            )
