"""
NDR service: the non-delivery case state machine.

    open -> in_progress -> {reattempt_scheduled, resolved, rto_initiated}
    reattempt_scheduled -> {in_progress, resolved, rto_initiated}
    rto_initiated -> resolved

Any other transition is rejected and leaves the record untouched. Priority
and due date are derived here and nowhere else. Actions on one record are
serialised (in-process lock plus a row lock) so two agents never interleave
their follow-ups.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
import asyncio
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.adapters.base import TrackingSnapshot
from syncengine.config import Settings, settings
from syncengine.errors import ErrorKind, Result
from syncengine.logging_config import get_logger
from syncengine.metrics import track_ndr_assignment
from syncengine.models.commerce import Shipment
from syncengine.models.ndr import (
    NdrAction,
    NdrActionOutcome,
    NdrActionType,
    NdrPriority,
    NdrReasonCode,
    NdrRecord,
    NdrStatus,
)
from syncengine.models.notification import NotificationChannel
from syncengine.models.user import User
from syncengine.services.assignment_service import load_agents
from syncengine.services.notification_service import queue_notification
from syncengine.services.webhook_service import WebhookDispatcher
from syncengine.timeutils import utcnow


ALLOWED_TRANSITIONS: dict[NdrStatus, frozenset[NdrStatus]] = {
    NdrStatus.OPEN: frozenset({NdrStatus.IN_PROGRESS}),
    NdrStatus.IN_PROGRESS: frozenset({
        NdrStatus.REATTEMPT_SCHEDULED,
        NdrStatus.RESOLVED,
        NdrStatus.RTO_INITIATED,
    }),
    NdrStatus.REATTEMPT_SCHEDULED: frozenset({
        NdrStatus.IN_PROGRESS,
        NdrStatus.RESOLVED,
        NdrStatus.RTO_INITIATED,
    }),
    NdrStatus.RTO_INITIATED: frozenset({NdrStatus.RESOLVED}),
    NdrStatus.RESOLVED: frozenset(),
}

SLA_HOURS = {
    NdrReasonCode.REFUSED: 24,
    NdrReasonCode.CASH_NOT_READY: 48,
}
DEFAULT_SLA_HOURS = 36

COD_PAYMENT_METHODS = {"cod", "cash_on_delivery"}

# Record id -> lock; entries disappear once no coroutine holds the lock
_record_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _lock_for(ndr_id: str) -> asyncio.Lock:
    lock = _record_locks.get(ndr_id)
    if lock is None:
        lock = asyncio.Lock()
        _record_locks[ndr_id] = lock
    return lock


def can_transition(current: NdrStatus, target: NdrStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def compute_priority(
    reason: NdrReasonCode,
    order_value: Optional[float],
    payment_method: Optional[str],
    high_value_threshold: float,
) -> NdrPriority:
    """Urgent for refusals; high for high-value or cash-on-delivery orders; medium otherwise."""
    if reason == NdrReasonCode.REFUSED:
        return NdrPriority.URGENT
    if order_value is not None and order_value > high_value_threshold:
        return NdrPriority.HIGH
    if payment_method and payment_method.lower() in COD_PAYMENT_METHODS:
        return NdrPriority.HIGH
    return NdrPriority.MEDIUM


def sla_hours(reason: NdrReasonCode) -> int:
    return SLA_HOURS.get(reason, DEFAULT_SLA_HOURS)


def compute_due_at(reason: NdrReasonCode, start: datetime) -> datetime:
    return start + timedelta(hours=sla_hours(reason))


def ndr_event(record: NdrRecord, **extra) -> dict:
    data = {
        "ndrId": record.id,
        "awb": record.awb,
        "orderRef": record.order_ref,
        "status": record.status.value,
        "priority": record.priority.value,
        "reason": record.reason.value,
        "dueAt": record.due_at.isoformat() if record.due_at else None,
        "assignedUserId": record.assigned_user_id,
    }
    data.update(extra)
    return data


@dataclass
class FollowUpStats:
    reattempts_overdue: int = 0
    unassigned_escalated: int = 0


class NdrService:
    """NDR case operations for one tenant."""

    def __init__(
        self,
        db: AsyncSession,
        tenant_id: str,
        dispatcher: Optional[WebhookDispatcher] = None,
        config: Settings = settings,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.dispatcher = dispatcher
        self.config = config
        self.log = get_logger(tenant_id=tenant_id, component="ndr")

    async def get(self, ndr_id: str, for_update: bool = False) -> NdrRecord | None:
        """Get NDR record by ID within tenant."""
        stmt = select(NdrRecord).where(
            NdrRecord.id == ndr_id,
            NdrRecord.tenant_id == self.tenant_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_open_by_awb(self, awb: str) -> NdrRecord | None:
        stmt = select(NdrRecord).where(
            NdrRecord.tenant_id == self.tenant_id,
            NdrRecord.awb == awb,
            NdrRecord.status != NdrStatus.RESOLVED,
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def create_from_carrier_event(
        self,
        shipment: Shipment,
        tracking: TrackingSnapshot,
        attempt_number: int = 1,
        now: datetime | None = None,
    ) -> NdrRecord:
        """
        Open a case for a carrier-reported failed delivery.

        A carrier resending the same NDR for an AWB with an unresolved case
        updates that case instead of opening another.
        """
        now = now or utcnow()
        existing = await self.find_open_by_awb(shipment.awb)
        if existing is not None:
            existing.attempt_count = max(existing.attempt_count, attempt_number)
            if tracking.remarks:
                existing.carrier_remarks = tracking.remarks
            await self.db.commit()
            self.log.info("ndr_carrier_update", ndr_id=existing.id, awb=shipment.awb, attempt=attempt_number)
            return existing

        reason = tracking.ndr_reason or NdrReasonCode.OTHER
        record = NdrRecord(
            tenant_id=self.tenant_id,
            shipment_id=shipment.id,
            order_ref=shipment.order_ref,
            awb=shipment.awb,
            reason=reason,
            carrier_remarks=tracking.remarks,
            attempt_count=attempt_number,
            status=NdrStatus.OPEN,
            priority=compute_priority(
                reason,
                shipment.order_value,
                shipment.payment_method,
                self.config.NDR_HIGH_VALUE_THRESHOLD,
            ),
            opened_at=now,
            due_at=compute_due_at(reason, now),
            order_value=shipment.order_value,
            payment_method=shipment.payment_method,
            customer_phone=shipment.customer_phone,
        )
        self.db.add(record)
        await self.db.flush()

        if record.customer_phone:
            queue_notification(
                self.db,
                self.tenant_id,
                NotificationChannel.WHATSAPP,
                record.customer_phone,
                "ndr_created",
                f"We could not deliver your order {record.order_ref or record.awb}. "
                "Reply to reschedule the delivery.",
                reference_id=record.id,
            )

        await self.db.commit()
        self.log.info(
            "ndr_created",
            ndr_id=record.id,
            awb=record.awb,
            reason=reason.value,
            priority=record.priority.value,
        )
        await self._emit("ndr.created", record, f"ndr.created:{record.id}", now)
        return record

    async def transition(
        self,
        ndr_id: str,
        target: NdrStatus,
        performed_by: str | None = None,
        resolution: str | None = None,
        now: datetime | None = None,
    ) -> Result:
        """
        Move a record to `target` if the state machine allows it.

        Returns:
            Result with the record, or a business_rule failure leaving it unchanged
        """
        now = now or utcnow()
        async with _lock_for(ndr_id):
            record = await self.get(ndr_id, for_update=True)
            if record is None:
                return Result.failure(ErrorKind.NOT_FOUND, "ndr_not_found", "no such NDR")
            result = self._apply_transition(record, target, performed_by, resolution, now)
            if not result.ok:
                await self.db.rollback()
                return result
            await self.db.commit()

        await self._emit_transition(record, now)
        return Result.success(record)

    async def assign(self, ndr_id: str, user_id: str, now: datetime | None = None) -> Result:
        """Manually assign a case. Agents at capacity are rejected."""
        now = now or utcnow()
        async with _lock_for(ndr_id):
            record = await self.get(ndr_id, for_update=True)
            if record is None:
                return Result.failure(ErrorKind.NOT_FOUND, "ndr_not_found", "no such NDR")
            if record.status == NdrStatus.RESOLVED:
                return Result.failure(ErrorKind.BUSINESS_RULE, "ndr_resolved", "resolved cases cannot be assigned")
            if record.assigned_user_id == user_id:
                return Result.success(record)

            loads = await load_agents(self.db, self.tenant_id, self.config.NDR_DEFAULT_AGENT_CAPACITY, [user_id])
            if not loads:
                return Result.failure(ErrorKind.NOT_FOUND, "agent_not_found", "no such active user")
            if not loads[0].has_capacity:
                return Result.failure(
                    ErrorKind.BUSINESS_RULE,
                    "agent_at_capacity",
                    f"agent already holds {loads[0].open_count} of {loads[0].capacity} cases",
                )

            moved = record.status == NdrStatus.OPEN
            if moved:
                self._apply_transition(record, NdrStatus.IN_PROGRESS, None, None, now)
            record.assigned_user_id = user_id
            record.assigned_at = now
            await self._touch_agent(user_id, now)
            await self.db.commit()
            track_ndr_assignment("manual")

        self.log.info("ndr_assigned", ndr_id=record.id, user_id=user_id)
        await self._emit("ndr.assigned", record, f"ndr.assigned:{record.id}:{user_id}:{now.isoformat()}", now)
        return Result.success(record)

    async def record_action(
        self,
        ndr_id: str,
        action_type: NdrActionType,
        outcome: NdrActionOutcome | None = None,
        notes: str | None = None,
        reattempt_at: datetime | None = None,
        performed_by: str | None = None,
        now: datetime | None = None,
    ) -> Result:
        """
        Append a follow-up action.

        A reattempt date moves the case to reattempt_scheduled and re-derives
        its due date. A refused outcome raises ndr.customer_refused without
        changing state.
        """
        now = now or utcnow()
        async with _lock_for(ndr_id):
            record = await self.get(ndr_id, for_update=True)
            if record is None:
                return Result.failure(ErrorKind.NOT_FOUND, "ndr_not_found", "no such NDR")
            if record.status == NdrStatus.RESOLVED:
                return Result.failure(ErrorKind.BUSINESS_RULE, "ndr_resolved", "resolved cases are closed")

            previous_status = record.status
            if reattempt_at is not None:
                if reattempt_at <= now:
                    return Result.failure(ErrorKind.VALIDATION, "reattempt_in_past", "reattempt date must be in the future")
                if record.status != NdrStatus.REATTEMPT_SCHEDULED:
                    moved = self._apply_transition(record, NdrStatus.REATTEMPT_SCHEDULED, performed_by, None, now)
                    if not moved.ok:
                        await self.db.rollback()
                        return moved
                record.reattempt_at = reattempt_at
                record.due_at = compute_due_at(record.reason, reattempt_at)

            sequence = await self._next_sequence(record.id)
            action = NdrAction(
                tenant_id=self.tenant_id,
                ndr_id=record.id,
                sequence=sequence,
                action_type=action_type,
                outcome=outcome,
                notes=notes,
                reattempt_at=reattempt_at,
                performed_by=performed_by,
                performed_at=now,
            )
            self.db.add(action)
            await self.db.commit()

        self.log.info(
            "ndr_action_recorded",
            ndr_id=record.id,
            action_type=action_type.value,
            outcome=outcome.value if outcome else None,
            sequence=sequence,
        )
        if record.status != previous_status:
            await self._emit_transition(record, now)
        if outcome == NdrActionOutcome.REFUSED:
            await self._emit(
                "ndr.customer_refused",
                record,
                f"ndr.customer_refused:{record.id}:{sequence}",
                now,
                actionId=action.id,
            )
        return Result.success(action)

    async def schedule_reattempt(
        self,
        ndr_id: str,
        reattempt_at: datetime,
        performed_by: str | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Result:
        return await self.record_action(
            ndr_id,
            NdrActionType.REATTEMPT,
            outcome=NdrActionOutcome.REATTEMPT_REQUESTED,
            notes=notes,
            reattempt_at=reattempt_at,
            performed_by=performed_by,
            now=now,
        )

    async def initiate_rto(self, ndr_id: str, performed_by: str | None = None, now: datetime | None = None) -> Result:
        return await self.transition(ndr_id, NdrStatus.RTO_INITIATED, performed_by=performed_by, now=now)

    async def resolve(
        self,
        ndr_id: str,
        resolution: str,
        performed_by: str | None = None,
        now: datetime | None = None,
    ) -> Result:
        return await self.transition(
            ndr_id, NdrStatus.RESOLVED, performed_by=performed_by, resolution=resolution, now=now
        )

    async def list_actions(self, ndr_id: str) -> list[NdrAction]:
        stmt = (
            select(NdrAction)
            .where(NdrAction.tenant_id == self.tenant_id, NdrAction.ndr_id == ndr_id)
            .order_by(NdrAction.performed_at, NdrAction.sequence)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def follow_up(self, unassigned_alert_hours: int, now: datetime | None = None) -> FollowUpStats:
        """
        Escalation sweep.

        Reattempts whose date has passed go back to in_progress; open cases
        nobody picked up within `unassigned_alert_hours` are escalated once.
        """
        now = now or utcnow()
        stats = FollowUpStats()

        overdue_stmt = select(NdrRecord).where(
            NdrRecord.tenant_id == self.tenant_id,
            NdrRecord.status == NdrStatus.REATTEMPT_SCHEDULED,
            NdrRecord.reattempt_at < now,
        )
        overdue = list((await self.db.execute(overdue_stmt)).scalars().all())
        missed = {record.id: record.reattempt_at for record in overdue}
        for record in overdue:
            self._apply_transition(record, NdrStatus.IN_PROGRESS, None, None, now)
            record.escalated_at = now
            stats.reattempts_overdue += 1

        cutoff = now - timedelta(hours=unassigned_alert_hours)
        aging_stmt = select(NdrRecord).where(
            NdrRecord.tenant_id == self.tenant_id,
            NdrRecord.status == NdrStatus.OPEN,
            NdrRecord.assigned_user_id.is_(None),
            NdrRecord.opened_at <= cutoff,
            NdrRecord.escalated_at.is_(None),
        )
        aging = list((await self.db.execute(aging_stmt)).scalars().all())
        for record in aging:
            record.escalated_at = now
            stats.unassigned_escalated += 1

        await self.db.commit()

        for record in overdue:
            await self._emit(
                "ndr.escalated",
                record,
                f"ndr.escalated:{record.id}:reattempt:{missed[record.id].isoformat()}",
                now,
                escalationReason="reattempt_overdue",
            )
        for record in aging:
            await self._emit(
                "ndr.escalated",
                record,
                f"ndr.escalated:{record.id}:unassigned",
                now,
                escalationReason="unassigned",
            )
        if overdue or aging:
            self.log.info("ndr_follow_up", **stats.__dict__)
        return stats

    async def emit_assigned(self, assignments: list[tuple[str, str]], now: datetime | None = None):
        """Announce assignments made by the auto-assignment pass."""
        now = now or utcnow()
        for ndr_id, user_id in assignments:
            record = await self.get(ndr_id)
            if record is not None:
                await self._emit("ndr.assigned", record, f"ndr.assigned:{ndr_id}:{user_id}:{now.isoformat()}", now)

    def _apply_transition(
        self,
        record: NdrRecord,
        target: NdrStatus,
        performed_by: str | None,
        resolution: str | None,
        now: datetime,
    ) -> Result:
        if not can_transition(record.status, target):
            self.log.info(
                "ndr_transition_rejected",
                ndr_id=record.id,
                current=record.status.value,
                target=target.value,
            )
            return Result.failure(
                ErrorKind.BUSINESS_RULE,
                "invalid_transition",
                f"cannot move from {record.status.value} to {target.value}",
            )

        record.status = target
        if target == NdrStatus.IN_PROGRESS:
            record.reattempt_at = None
        if target == NdrStatus.RESOLVED:
            record.resolution = resolution
            record.resolved_at = now
            record.resolved_by = performed_by
            record.assigned_user_id = None
        return Result.success(record)

    async def _next_sequence(self, ndr_id: str) -> int:
        stmt = select(func.coalesce(func.max(NdrAction.sequence), 0)).where(
            NdrAction.tenant_id == self.tenant_id,
            NdrAction.ndr_id == ndr_id,
        )
        return (await self.db.execute(stmt)).scalar_one() + 1

    async def _touch_agent(self, user_id: str, now: datetime):
        stmt = select(User).where(User.id == user_id, User.tenant_id == self.tenant_id)
        user = (await self.db.execute(stmt)).scalar_one_or_none()
        if user is not None:
            user.last_assigned_at = now

    async def _emit_transition(self, record: NdrRecord, now: datetime):
        event_type = "ndr.resolved" if record.status == NdrStatus.RESOLVED else "ndr.status_changed"
        await self._emit(event_type, record, f"{event_type}:{record.id}:{record.status.value}:{now.isoformat()}", now)

    async def _emit(self, event_type: str, record: NdrRecord, key: str, now: datetime, **extra):
        if self.dispatcher is None:
            return
        await self.dispatcher.dispatch(event_type, ndr_event(record, **extra), idempotency_key=key, now=now)
