"""
Tenant directory.

The set of active tenants is re-read on every tick; nothing is cached
between ticks so suspended tenants drop out immediately.
"""
from dataclasses import dataclass
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from syncengine.models.tenant import Tenant, TenantStatus


@dataclass(frozen=True)
class TenantSnapshot:
    """Detached, read-only view of a tenant for one tick."""
    id: str
    name: str
    partition_key: str


def snapshot(tenant: Tenant) -> TenantSnapshot:
    return TenantSnapshot(id=tenant.id, name=tenant.name, partition_key=tenant.partition_key)


async def list_active_tenants(session_factory: async_sessionmaker) -> list[TenantSnapshot]:
    """Load the active-tenant snapshot in a short-lived session of its own."""
    async with session_factory() as db:
        stmt = (
            select(Tenant)
            .where(Tenant.status == TenantStatus.ACTIVE)
            .order_by(Tenant.created_at, Tenant.id)
        )
        result = await db.execute(stmt)
        return [snapshot(tenant) for tenant in result.scalars().all()]


async def get_active_tenant(session_factory: async_sessionmaker, tenant_id: str) -> TenantSnapshot | None:
    async with session_factory() as db:
        stmt = select(Tenant).where(Tenant.id == tenant_id, Tenant.status == TenantStatus.ACTIVE)
        result = await db.execute(stmt)
        tenant = result.scalar_one_or_none()
        return snapshot(tenant) if tenant else None
