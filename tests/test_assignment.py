"""
NDR assignment engine tests.
"""
from datetime import timedelta

import pytest

from syncengine.models.ndr import NdrPriority, NdrStatus
from syncengine.models.notification import AlertKind
from syncengine.models.user import UserRole
from syncengine.services.alert_service import list_open_alerts
from syncengine.services.assignment_service import (
    AgentLoad,
    AssignmentService,
    load_agents,
    pick_agent,
)


def test_pick_agent_prefers_lightest_load(now):
    loads = [
        AgentLoad("u-1", open_count=12, capacity=50),
        AgentLoad("u-2", open_count=8, capacity=50),
        AgentLoad("u-3", open_count=15, capacity=50),
    ]

    assert pick_agent(loads).user_id == "u-2"


def test_pick_agent_breaks_ties_by_least_recent_assignment(now):
    loads = [
        AgentLoad("u-1", open_count=3, capacity=10, last_assigned_at=now - timedelta(minutes=5)),
        AgentLoad("u-2", open_count=3, capacity=10, last_assigned_at=now - timedelta(hours=2)),
        AgentLoad("u-3", open_count=3, capacity=10, last_assigned_at=now - timedelta(minutes=30)),
    ]

    assert pick_agent(loads).user_id == "u-2"
    # Never assigned sorts first
    loads.append(AgentLoad("u-4", open_count=3, capacity=10))
    assert pick_agent(loads).user_id == "u-4"


def test_pick_agent_skips_full_agents():
    loads = [
        AgentLoad("u-1", open_count=2, capacity=2),
        AgentLoad("u-2", open_count=9, capacity=10),
    ]

    assert pick_agent(loads).user_id == "u-2"
    assert pick_agent([AgentLoad("u-1", open_count=2, capacity=2)]) is None
    assert pick_agent([]) is None


@pytest.mark.asyncio
async def test_load_agents_counts_working_cases_only(db, config, make_tenant, make_user, make_ndr):
    tenant = await make_tenant()
    agent = await make_user(tenant, "ravi@acme.test", ndr_capacity=4)
    await make_ndr(tenant, "DL1", status=NdrStatus.IN_PROGRESS, assigned_user_id=agent.id)
    await make_ndr(tenant, "DL2", status=NdrStatus.REATTEMPT_SCHEDULED, assigned_user_id=agent.id)
    await make_ndr(tenant, "DL3", status=NdrStatus.RESOLVED, assigned_user_id=agent.id)

    [load] = await load_agents(db, tenant.id, config.NDR_DEFAULT_AGENT_CAPACITY)

    assert load.user_id == agent.id
    assert load.open_count == 2
    assert load.capacity == 4


@pytest.mark.asyncio
async def test_auto_assign_spreads_cases_by_load(db, config, now, make_tenant, make_user, make_ndr):
    tenant = await make_tenant()
    busy = await make_user(tenant, "busy@acme.test")
    idle = await make_user(tenant, "idle@acme.test")
    for n in range(2):
        await make_ndr(tenant, f"DL9{n}", status=NdrStatus.IN_PROGRESS, assigned_user_id=busy.id)
    first = await make_ndr(tenant, "DL100")
    second = await make_ndr(tenant, "DL101", opened_at=now + timedelta(minutes=1))
    third = await make_ndr(tenant, "DL102", opened_at=now + timedelta(minutes=2))

    result = await AssignmentService(db, tenant.id, config).auto_assign(now)
    await db.commit()

    # idle catches up first, then the tie goes to busy, who was never auto-assigned
    assert result.assigned == [(first.id, idle.id), (second.id, idle.id), (third.id, busy.id)]
    assert result.remaining == 0 and not result.no_capacity
    assert first.status == NdrStatus.IN_PROGRESS
    assert first.assigned_at == now
    assert idle.last_assigned_at == now


@pytest.mark.asyncio
async def test_auto_assign_serves_urgent_and_soonest_due_first(db, config, now, make_tenant, make_user, make_ndr):
    tenant = await make_tenant()
    await make_user(tenant, "ravi@acme.test", ndr_capacity=2)
    medium = await make_ndr(tenant, "DL1", priority=NdrPriority.MEDIUM, due_at=now + timedelta(hours=1))
    urgent = await make_ndr(tenant, "DL2", priority=NdrPriority.URGENT, due_at=now + timedelta(hours=20))
    high_late = await make_ndr(tenant, "DL3", priority=NdrPriority.HIGH, due_at=now + timedelta(hours=30))
    high_soon = await make_ndr(tenant, "DL4", priority=NdrPriority.HIGH, due_at=now + timedelta(hours=10))

    result = await AssignmentService(db, tenant.id, config).auto_assign(now)
    await db.commit()

    assert [ndr_id for ndr_id, _ in result.assigned] == [urgent.id, high_soon.id]
    assert result.remaining == 2
    assert high_late.status == NdrStatus.OPEN
    assert medium.assigned_user_id is None


@pytest.mark.asyncio
async def test_no_capacity_raises_alert_until_capacity_returns(db, config, now, make_tenant, make_user, make_ndr):
    tenant = await make_tenant()
    agent = await make_user(tenant, "ravi@acme.test", ndr_capacity=1)
    held = await make_ndr(tenant, "DL1", status=NdrStatus.IN_PROGRESS, assigned_user_id=agent.id)
    waiting = await make_ndr(tenant, "DL2")
    service = AssignmentService(db, tenant.id, config)

    blocked = await service.auto_assign(now)
    await db.commit()
    again = await service.auto_assign(now + timedelta(minutes=15))
    await db.commit()

    assert blocked.no_capacity and blocked.remaining == 1
    assert again.no_capacity
    alerts = await list_open_alerts(db, tenant.id)
    assert [(a.kind, a.reference) for a in alerts] == [(AlertKind.NDR_NO_CAPACITY, "ndr_queue")]

    held.status = NdrStatus.RESOLVED
    await db.commit()
    freed = await service.auto_assign(now + timedelta(hours=1))
    await db.commit()

    assert freed.assigned == [(waiting.id, agent.id)]
    assert await list_open_alerts(db, tenant.id) == []


@pytest.mark.asyncio
async def test_auto_assign_ignores_other_tenants_and_non_agents(db, config, now, make_tenant, make_user, make_ndr):
    tenant = await make_tenant("Acme")
    other = await make_tenant("Beta")
    await make_user(tenant, "owner@acme.test", role=UserRole.ADMIN)
    await make_user(other, "agent@beta.test")
    record = await make_ndr(tenant, "DL1")

    result = await AssignmentService(db, tenant.id, config).auto_assign(now)
    await db.commit()

    assert result.assigned == []
    assert result.no_capacity
    assert record.assigned_user_id is None
