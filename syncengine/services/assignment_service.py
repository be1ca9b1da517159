"""
NDR assignment engine.

Distributes unassigned open NDR cases across agents: most urgent and
soonest-due cases first, each to the eligible agent with the fewest open
cases, ties going to whoever was assigned least recently.

SECURITY: All queries MUST include tenant_id filter.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.config import Settings, settings
from syncengine.logging_config import get_logger
from syncengine.metrics import track_ndr_assignment
from syncengine.models.ndr import NdrRecord, NdrStatus
from syncengine.models.notification import AlertKind
from syncengine.models.user import User, UserRole
from syncengine.services.alert_service import raise_alert, resolve_alerts
from syncengine.timeutils import utcnow

# Statuses that count against an agent's capacity
WORKING_STATUSES = (
    NdrStatus.IN_PROGRESS,
    NdrStatus.REATTEMPT_SCHEDULED,
    NdrStatus.RTO_INITIATED,
)

NO_CAPACITY_REFERENCE = "ndr_queue"


@dataclass
class AgentLoad:
    """Transient view of one agent's workload."""
    user_id: str
    open_count: int
    capacity: int
    last_assigned_at: Optional[datetime] = None

    @property
    def has_capacity(self) -> bool:
        return self.open_count < self.capacity


@dataclass
class AssignmentResult:
    assigned: list[tuple[str, str]] = field(default_factory=list)  # (ndr_id, user_id)
    remaining: int = 0
    no_capacity: bool = False


def pick_agent(loads: Iterable[AgentLoad]) -> AgentLoad | None:
    """Agent with spare capacity and the lowest open count; least recently assigned wins ties."""
    eligible = [load for load in loads if load.has_capacity]
    if not eligible:
        return None
    return min(eligible, key=lambda load: (load.open_count, load.last_assigned_at or datetime.min))


def assignment_order(record: NdrRecord) -> tuple:
    return (-record.priority.rank, record.due_at)


async def load_agents(
    db: AsyncSession,
    tenant_id: str,
    default_capacity: int,
    user_ids: Optional[list[str]] = None,
) -> list[AgentLoad]:
    """
    Compute AgentLoad for the tenant's active agents.

    Args:
        db: Tenant session
        tenant_id: Tenant ID
        default_capacity: Capacity for agents without an override
        user_ids: Restrict to these users (any role) instead of all agents
    """
    stmt = select(User).where(User.tenant_id == tenant_id, User.is_active.is_(True))
    if user_ids is not None:
        stmt = stmt.where(User.id.in_(user_ids))
    else:
        stmt = stmt.where(User.role == UserRole.AGENT)
    result = await db.execute(stmt)
    users = list(result.scalars().all())
    if not users:
        return []

    count_stmt = (
        select(NdrRecord.assigned_user_id, func.count(NdrRecord.id))
        .where(
            NdrRecord.tenant_id == tenant_id,
            NdrRecord.assigned_user_id.in_([u.id for u in users]),
            NdrRecord.status.in_(WORKING_STATUSES),
        )
        .group_by(NdrRecord.assigned_user_id)
    )
    counts = dict((await db.execute(count_stmt)).all())

    return [
        AgentLoad(
            user_id=user.id,
            open_count=counts.get(user.id, 0),
            capacity=user.ndr_capacity if user.ndr_capacity is not None else default_capacity,
            last_assigned_at=user.last_assigned_at,
        )
        for user in users
    ]


class AssignmentService:
    """Auto-assignment pass for one tenant."""

    def __init__(self, db: AsyncSession, tenant_id: str, config: Settings = settings):
        self.db = db
        self.tenant_id = tenant_id
        self.config = config
        self.log = get_logger(tenant_id=tenant_id, component="ndr_assignment")

    async def auto_assign(self, now: datetime | None = None) -> AssignmentResult:
        """
        Assign unassigned open cases until the queue is empty or no agent has capacity.

        Assigned cases move to in_progress. Running out of capacity stops the
        pass and raises an ndr_no_capacity operator alert. The caller commits.
        """
        now = now or utcnow()
        stmt = select(NdrRecord).where(
            NdrRecord.tenant_id == self.tenant_id,
            NdrRecord.status == NdrStatus.OPEN,
            NdrRecord.assigned_user_id.is_(None),
        )
        result = await self.db.execute(stmt)
        queue = sorted(result.scalars().all(), key=assignment_order)

        outcome = AssignmentResult()
        if not queue:
            return outcome

        loads = await load_agents(self.db, self.tenant_id, self.config.NDR_DEFAULT_AGENT_CAPACITY)
        users = {}
        if loads:
            user_rows = await self.db.execute(
                select(User).where(User.tenant_id == self.tenant_id, User.id.in_([load.user_id for load in loads]))
            )
            users = {user.id: user for user in user_rows.scalars().all()}

        for index, record in enumerate(queue):
            agent = pick_agent(loads)
            if agent is None:
                outcome.no_capacity = True
                outcome.remaining = len(queue) - index
                await raise_alert(
                    self.db,
                    self.tenant_id,
                    AlertKind.NDR_NO_CAPACITY,
                    NO_CAPACITY_REFERENCE,
                    f"{outcome.remaining} NDR cases waiting, every agent is at capacity",
                    now,
                )
                self.log.warning("ndr_assignment_no_capacity", remaining=outcome.remaining)
                break

            record.assigned_user_id = agent.user_id
            record.assigned_at = now
            record.status = NdrStatus.IN_PROGRESS
            agent.open_count += 1
            agent.last_assigned_at = now
            users[agent.user_id].last_assigned_at = now
            outcome.assigned.append((record.id, agent.user_id))
            track_ndr_assignment("auto")

        if not outcome.no_capacity:
            await resolve_alerts(self.db, self.tenant_id, AlertKind.NDR_NO_CAPACITY, NO_CAPACITY_REFERENCE, now)

        self.log.info(
            "ndr_assignment_pass",
            assigned=len(outcome.assigned),
            remaining=outcome.remaining,
            no_capacity=outcome.no_capacity,
        )
        return outcome
