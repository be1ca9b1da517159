"""
NDR case tests: state machine, priority and SLA rules, follow-up actions,
escalation sweep and the events each step announces.
"""
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from syncengine.adapters.base import TrackingSnapshot
from syncengine.errors import ErrorKind
from syncengine.models.commerce import ShipmentStatus
from syncengine.models.ndr import (
    NdrActionOutcome,
    NdrActionType,
    NdrPriority,
    NdrReasonCode,
    NdrStatus,
)
from syncengine.models.notification import Notification, NotificationChannel
from syncengine.models.webhook import WebhookDelivery
from syncengine.services.ndr_service import (
    ALLOWED_TRANSITIONS,
    NdrService,
    can_transition,
    compute_due_at,
    compute_priority,
    sla_hours,
)
from syncengine.services.webhook_service import WebhookDispatcher


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def service_for(session, config, recorder):
    handler, transport = recorder()

    def build(tenant_id: str) -> NdrService:
        return NdrService(session, tenant_id, WebhookDispatcher(session, tenant_id, config, transport), config)
    return build


async def event_types(db, tenant_id: str) -> list[str]:
    result = await db.execute(
        select(WebhookDelivery.event_type)
        .where(WebhookDelivery.tenant_id == tenant_id)
        .order_by(WebhookDelivery.event_type)
    )
    return list(result.scalars().all())


def test_transition_table():
    assert can_transition(NdrStatus.OPEN, NdrStatus.IN_PROGRESS)
    assert can_transition(NdrStatus.IN_PROGRESS, NdrStatus.REATTEMPT_SCHEDULED)
    assert can_transition(NdrStatus.REATTEMPT_SCHEDULED, NdrStatus.IN_PROGRESS)
    assert can_transition(NdrStatus.RTO_INITIATED, NdrStatus.RESOLVED)

    assert not can_transition(NdrStatus.OPEN, NdrStatus.RESOLVED)
    assert not can_transition(NdrStatus.OPEN, NdrStatus.REATTEMPT_SCHEDULED)
    assert not can_transition(NdrStatus.RTO_INITIATED, NdrStatus.IN_PROGRESS)
    for target in NdrStatus:
        assert not can_transition(NdrStatus.RESOLVED, target)
    assert set(ALLOWED_TRANSITIONS) == set(NdrStatus)


def test_priority_rules():
    threshold = 5000.0
    assert compute_priority(NdrReasonCode.REFUSED, 100.0, "prepaid", threshold) == NdrPriority.URGENT
    assert compute_priority(NdrReasonCode.PREMISES_CLOSED, 5000.01, "prepaid", threshold) == NdrPriority.HIGH
    assert compute_priority(NdrReasonCode.PREMISES_CLOSED, 5000.0, "prepaid", threshold) == NdrPriority.MEDIUM
    assert compute_priority(NdrReasonCode.OTHER, 300.0, "COD", threshold) == NdrPriority.HIGH
    assert compute_priority(NdrReasonCode.OTHER, None, None, threshold) == NdrPriority.MEDIUM


def test_sla_windows(now):
    assert sla_hours(NdrReasonCode.REFUSED) == 24
    assert sla_hours(NdrReasonCode.CASH_NOT_READY) == 48
    assert sla_hours(NdrReasonCode.INCORRECT_ADDRESS) == 36
    assert compute_due_at(NdrReasonCode.REFUSED, now) == now + timedelta(hours=24)


@pytest.mark.asyncio
async def test_carrier_event_opens_one_case_per_awb(
    db, service_for, now, make_tenant, make_shipment, make_subscription
):
    tenant = await make_tenant()
    await make_subscription(tenant)
    shipment = await make_shipment(tenant, "DL1001", payment_method="cod", status=ShipmentStatus.DELIVERY_FAILED)
    service = service_for(tenant.id)
    tracking = TrackingSnapshot(
        awb="DL1001",
        status=ShipmentStatus.DELIVERY_FAILED,
        remarks="Premises closed",
        ndr_reason=NdrReasonCode.PREMISES_CLOSED,
    )

    record = await service.create_from_carrier_event(shipment, tracking, 1, now)
    again = await service.create_from_carrier_event(shipment, tracking, 2, now + timedelta(hours=1))

    assert again.id == record.id
    assert record.status == NdrStatus.OPEN
    assert record.priority == NdrPriority.HIGH
    assert record.due_at == now + timedelta(hours=36)
    assert again.attempt_count == 2

    notifications = (await db.execute(
        select(Notification).where(Notification.tenant_id == tenant.id)
    )).scalars().all()
    assert [(n.channel, n.template, n.reference_id) for n in notifications] == [
        (NotificationChannel.WHATSAPP, "ndr_created", record.id)
    ]
    assert await event_types(db, tenant.id) == ["ndr.created"]


@pytest.mark.asyncio
async def test_illegal_transitions_leave_case_unchanged(service_for, now, make_tenant, make_ndr):
    tenant = await make_tenant()
    tenant_id = tenant.id
    record = await make_ndr(tenant, "DL2001")
    rto = await make_ndr(tenant, "DL2002", status=NdrStatus.RTO_INITIATED)
    record_id, rto_id = record.id, rto.id
    service = service_for(tenant_id)

    skipped = await service.resolve(record_id, "delivered", now=now)
    backwards = await service.transition(rto_id, NdrStatus.IN_PROGRESS, now=now)

    assert skipped.error.kind == ErrorKind.BUSINESS_RULE
    assert skipped.error.code == "invalid_transition"
    assert backwards.error.code == "invalid_transition"
    assert (await service.get(record_id)).status == NdrStatus.OPEN
    assert (await service.get(record_id)).resolved_at is None
    assert (await service.get(rto_id)).status == NdrStatus.RTO_INITIATED


@pytest.mark.asyncio
async def test_reattempt_schedules_and_rederives_due_date(
    db, service_for, now, make_tenant, make_user, make_ndr, make_subscription
):
    tenant = await make_tenant()
    await make_subscription(tenant)
    agent = await make_user(tenant, "ravi@acme.test")
    record = await make_ndr(tenant, "DL3001", reason=NdrReasonCode.CASH_NOT_READY)
    service = service_for(tenant.id)

    assigned = await service.assign(record.id, agent.id, now)
    assert assigned.ok and assigned.value.status == NdrStatus.IN_PROGRESS

    first_date = now + timedelta(days=1)
    first = await service.schedule_reattempt(record.id, first_date, performed_by=agent.id, now=now)
    current = await service.get(record.id)
    assert first.value.sequence == 1
    assert current.status == NdrStatus.REATTEMPT_SCHEDULED
    assert current.reattempt_at == first_date
    assert current.due_at == first_date + timedelta(hours=48)

    second_date = now + timedelta(days=2)
    second = await service.schedule_reattempt(record.id, second_date, performed_by=agent.id, now=now)
    current = await service.get(record.id)
    assert second.value.sequence == 2
    assert current.status == NdrStatus.REATTEMPT_SCHEDULED
    assert current.due_at == second_date + timedelta(hours=48)

    past = await service.schedule_reattempt(record.id, now - timedelta(hours=1), now=now)
    assert past.error.kind == ErrorKind.VALIDATION
    assert past.error.code == "reattempt_in_past"

    actions = await service.list_actions(record.id)
    assert [a.sequence for a in actions] == [1, 2]
    assert await event_types(db, tenant.id) == ["ndr.assigned", "ndr.status_changed"]


@pytest.mark.asyncio
async def test_reattempt_on_open_case_is_rejected(service_for, now, make_tenant, make_ndr):
    tenant = await make_tenant()
    record = await make_ndr(tenant, "DL3101")
    record_id = record.id
    service = service_for(tenant.id)

    result = await service.schedule_reattempt(record_id, now + timedelta(days=1), now=now)

    assert result.error.code == "invalid_transition"
    assert (await service.get(record_id)).status == NdrStatus.OPEN
    assert await service.list_actions(record_id) == []


@pytest.mark.asyncio
async def test_refused_outcome_announces_without_changing_state(
    db, service_for, now, make_tenant, make_ndr, make_subscription
):
    tenant = await make_tenant()
    await make_subscription(tenant)
    record = await make_ndr(tenant, "DL4001", status=NdrStatus.IN_PROGRESS)
    service = service_for(tenant.id)

    result = await service.record_action(
        record.id, NdrActionType.CALL, outcome=NdrActionOutcome.REFUSED, notes="does not want it", now=now
    )

    assert result.ok
    assert (await service.get(record.id)).status == NdrStatus.IN_PROGRESS
    assert await event_types(db, tenant.id) == ["ndr.customer_refused"]


@pytest.mark.asyncio
async def test_resolution_closes_the_case(db, service_for, now, make_tenant, make_user, make_ndr, make_subscription):
    tenant = await make_tenant()
    await make_subscription(tenant)
    agent = await make_user(tenant, "ravi@acme.test")
    record = await make_ndr(tenant, "DL5001", status=NdrStatus.IN_PROGRESS, assigned_user_id=agent.id)
    service = service_for(tenant.id)

    rto = await service.initiate_rto(record.id, performed_by=agent.id, now=now)
    resolved = await service.resolve(record.id, "returned to origin", performed_by=agent.id, now=now)

    assert rto.ok and resolved.ok
    current = await service.get(record.id)
    assert current.status == NdrStatus.RESOLVED
    assert current.resolution == "returned to origin"
    assert current.resolved_at == now
    assert current.resolved_by == agent.id
    assert current.assigned_user_id is None

    late_action = await service.record_action(record.id, NdrActionType.CALL, now=now)
    late_assign = await service.assign(record.id, agent.id, now)
    assert late_action.error.code == "ndr_resolved"
    assert late_assign.error.code == "ndr_resolved"
    assert await event_types(db, tenant.id) == ["ndr.resolved", "ndr.status_changed"]


@pytest.mark.asyncio
async def test_manual_assignment_respects_capacity(service_for, now, make_tenant, make_user, make_ndr):
    tenant = await make_tenant()
    agent = await make_user(tenant, "full@acme.test", ndr_capacity=1)
    await make_ndr(tenant, "DL6001", status=NdrStatus.IN_PROGRESS, assigned_user_id=agent.id)
    waiting = await make_ndr(tenant, "DL6002")
    service = service_for(tenant.id)

    at_capacity = await service.assign(waiting.id, agent.id, now)
    unknown = await service.assign(waiting.id, "no-such-user", now)
    missing = await service.assign("no-such-ndr", agent.id, now)

    assert at_capacity.error.code == "agent_at_capacity"
    assert unknown.error.kind == ErrorKind.NOT_FOUND
    assert missing.error.kind == ErrorKind.NOT_FOUND
    assert (await service.get(waiting.id)).status == NdrStatus.OPEN


@pytest.mark.asyncio
async def test_follow_up_escalates_overdue_and_unattended_cases(
    db, service_for, now, make_tenant, make_ndr, make_subscription
):
    tenant = await make_tenant()
    await make_subscription(tenant)
    overdue = await make_ndr(
        tenant,
        "DL7001",
        status=NdrStatus.REATTEMPT_SCHEDULED,
        reattempt_at=now - timedelta(hours=2),
    )
    stale = await make_ndr(tenant, "DL7002", opened_at=now - timedelta(hours=5))
    fresh = await make_ndr(tenant, "DL7003", opened_at=now - timedelta(hours=1))
    service = service_for(tenant.id)

    stats = await service.follow_up(unassigned_alert_hours=4, now=now)
    again = await service.follow_up(unassigned_alert_hours=4, now=now + timedelta(minutes=30))

    assert (stats.reattempts_overdue, stats.unassigned_escalated) == (1, 1)
    assert (again.reattempts_overdue, again.unassigned_escalated) == (0, 0)

    moved = await service.get(overdue.id)
    assert moved.status == NdrStatus.IN_PROGRESS
    assert moved.reattempt_at is None
    assert moved.escalated_at == now
    assert (await service.get(stale.id)).escalated_at == now
    assert (await service.get(stale.id)).status == NdrStatus.OPEN
    assert (await service.get(fresh.id)).escalated_at is None
    assert await event_types(db, tenant.id) == ["ndr.escalated", "ndr.escalated"]


@pytest.mark.asyncio
async def test_cases_are_invisible_to_other_tenants(service_for, now, make_tenant, make_ndr):
    acme = await make_tenant("Acme")
    beta = await make_tenant("Beta")
    record = await make_ndr(acme, "DL8001")

    foreign = service_for(beta.id)

    assert await foreign.get(record.id) is None
    assert (await foreign.transition(record.id, NdrStatus.IN_PROGRESS, now=now)).error.kind == ErrorKind.NOT_FOUND
    assert await foreign.find_open_by_awb("DL8001") is None
